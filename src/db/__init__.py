"""Database module for ClawPanel instance, channel, provider and job records."""

from src.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from src.db.models import (
    Channel,
    ChannelType,
    Instance,
    InstanceStatus,
    Job,
    JobStatus,
    JobStep,
    Provider,
    ProviderType,
    StepStatus,
)

__all__ = [
    # Models
    "Instance",
    "Channel",
    "Provider",
    "Job",
    "JobStep",
    # Enums
    "InstanceStatus",
    "ChannelType",
    "ProviderType",
    "JobStatus",
    "StepStatus",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
