"""Service layer for ClawPanel.

Provides job lifecycle management, container provisioning and the
synchronisation of panel settings into running containers.
"""

from src.services.job_service import InvalidStateTransition, JobService

__all__ = [
    "JobService",
    "InvalidStateTransition",
]
