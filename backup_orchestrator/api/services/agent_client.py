"""HTTP client for the remote backup agent."""

import logging
from typing import Any

import httpx

from backup_orchestrator.core.config import Settings, get_settings
from backup_orchestrator.core.errors import (
    AgentResponseError,
    AgentTimeoutError,
    AgentUnreachableError,
    BackupError,
    ErrorCode,
    windows_code_from_message,
)
from backup_orchestrator.core.heartbeat import AgentEndpoint

logger = logging.getLogger(__name__)


class AgentClient:
    """Thin wrapper over the agent's JSON-over-HTTP protocol.

    The agent reports application failures as HTTP 500 with a JSON body, so
    JSON bodies are returned regardless of status; only transport problems
    and undecodable replies raise.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    async def _post(
        self,
        endpoint: AgentEndpoint,
        path: str,
        payload: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        url = f"{endpoint.base_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error(f"Agent at {endpoint.base_url} unreachable: {e}")
            raise AgentUnreachableError(f"Agent unreachable: {e}") from e
        except httpx.TimeoutException as e:
            logger.error(f"Agent at {endpoint.base_url} timed out on {path} after {timeout}s")
            raise AgentTimeoutError(f"Agent did not answer {path} within {timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Error communicating with agent at {endpoint.base_url}: {e}")
            raise BackupError(ErrorCode.UNEXPECTED_ERROR, f"Error communicating with agent: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            if response.is_success:
                raise AgentResponseError(f"Invalid agent response: {e}") from e
            body = response.text[:500]
            raise AgentResponseError(
                f"Agent responded with status {response.status_code}: {body}",
                windows_code=windows_code_from_message(body),
            ) from e

        if not isinstance(data, dict):
            raise AgentResponseError(f"Unexpected agent response type: {type(data).__name__}")

        if not response.is_success:
            logger.debug(f"Agent answered {path} with status {response.status_code}")
        return data

    async def backup(self, endpoint: AgentEndpoint, request: dict[str, Any]) -> dict[str, Any]:
        """POST /backup and return the raw agent result."""
        return await self._post(
            endpoint, "/backup", request, self.settings.agent_backup_timeout_seconds
        )

    async def delete_paths(
        self,
        endpoint: AgentEndpoint,
        paths: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """POST /filesystem/delete with ``[{path, credentials}]`` entries."""
        return await self._post(
            endpoint,
            "/filesystem/delete",
            {"paths": paths},
            self.settings.agent_filesystem_timeout_seconds,
        )

    async def list_job_backups(
        self,
        endpoint: AgentEndpoint,
        job_label: str,
        mappings: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """POST /backups/job and return the per-mapping backup listings."""
        data = await self._post(
            endpoint,
            "/backups/job",
            {"job_label": job_label, "mappings": mappings},
            self.settings.agent_backup_timeout_seconds,
        )
        listings = data.get("mappings") or data.get("Mappings") or []
        if not listings and data.get("error"):
            raise AgentResponseError(str(data["error"]))
        if not isinstance(listings, list):
            raise AgentResponseError("Agent returned a malformed backup listing")
        return listings
