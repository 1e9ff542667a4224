"""Backup Orchestrator.

Central coordinator for file backups performed by remote agents: decides
when each job runs, drives the host's agent mapping by mapping, interprets
the outcome and rotates old backup versions.
"""

__version__ = "0.1.0"
