"""SQLAlchemy ORM models for the ClawPanel instance record store.

This module defines the relational side of the panel: provisioned
instances, their channels and AI providers, and the job/step records
used to track long-running operations. Uses SQLAlchemy 2.0 style
with Mapped and mapped_column.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class JobStatus(str, Enum):
    """Status values for long-running jobs.

    Lifecycle: pending -> running -> completed/failed
               pending -> failed (aborted before start)
    """

    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class StepStatus(str, Enum):
    """Status values for individual steps within a job.

    Lifecycle: pending -> running -> completed/failed
               pending -> failed (outstanding step of an aborted job)
    """

    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class InstanceStatus(str, Enum):
    """Panel-side status of a provisioned instance."""

    stopped = "stopped"
    running = "running"
    error = "error"


class ChannelType(str, Enum):
    """Chat channel types the gateway can bridge."""

    WHATSAPP = "WHATSAPP"
    TELEGRAM = "TELEGRAM"
    SLACK = "SLACK"
    DISCORD = "DISCORD"
    TEAMS = "TEAMS"
    GOOGLE_CHAT = "GOOGLE_CHAT"
    SIGNAL = "SIGNAL"
    IMESSAGE = "IMESSAGE"
    MATRIX = "MATRIX"
    MATTERMOST = "MATTERMOST"
    NEXTCLOUD = "NEXTCLOUD"
    NOSTR = "NOSTR"
    LINE = "LINE"
    ZALO = "ZALO"
    WEBHOOK = "WEBHOOK"
    CLI = "CLI"
    WEB = "WEB"
    API = "API"


class ProviderType(str, Enum):
    """AI and service provider types that can be attached to an instance."""

    OPENAI = "OPENAI"
    ANTHROPIC = "ANTHROPIC"
    OPENROUTER = "OPENROUTER"
    CUSTOM = "CUSTOM"
    ELEVENLABS = "ELEVENLABS"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.completed.value, StepStatus.failed.value})


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Instance(Base):
    """One tenant's provisioned agent environment, backed by one container.

    Attributes:
        id: UUID primary key
        name: Display name
        slug: Unique URL-safe identifier, also used to derive the container name
        description: Optional free-form description
        container_name: LXC container name (clawdbot-<slug>)
        container_host: Host running the container
        container_type: Container runtime (always 'lxc' today)
        status: Panel-side status (stopped, running, error)
        is_hidden: Excluded from listings when True
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "instances"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    container_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    container_host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    container_type: Mapped[str] = mapped_column(String(20), nullable=False, default="lxc")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InstanceStatus.stopped.value
    )
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    channels: Mapped[list["Channel"]] = relationship(
        "Channel", back_populates="instance", cascade="all, delete-orphan"
    )
    providers: Mapped[list["Provider"]] = relationship(
        "Provider", back_populates="instance", cascade="all, delete-orphan"
    )
    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="instance")

    @property
    def has_container(self) -> bool:
        """True when the instance is mapped to a container on a host."""
        return bool(self.container_host and self.container_name)

    def __repr__(self) -> str:
        return f"<Instance(id={self.id!r}, slug={self.slug!r}, status={self.status!r})>"


class Channel(Base):
    """A configured communication surface for one instance.

    The config_json blob is the panel's own copy of the channel settings.
    It may hold panel-only keys (denyFrom, contactLabels, the pairing phone)
    that are never written into the container's gateway document.
    """

    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    instance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("instances.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="disconnected")
    config_json: Mapped[str | None] = mapped_column(Text, nullable=True, default="{}")
    dm_policy: Mapped[str | None] = mapped_column(String(20), nullable=True)
    allow_from_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    instance: Mapped["Instance"] = relationship("Instance", back_populates="channels")

    __table_args__ = (
        UniqueConstraint("instance_id", "type", name="uq_channel_instance_type"),
        Index("idx_channels_instance_id", "instance_id"),
    )

    @property
    def config(self) -> dict[str, Any]:
        """Parsed panel-side config blob (empty dict when unset)."""
        if not self.config_json:
            return {}
        return json.loads(self.config_json)

    @property
    def allow_from(self) -> list[str] | None:
        """Parsed allow list, or None when never set."""
        if self.allow_from_json is None:
            return None
        return json.loads(self.allow_from_json)

    def __repr__(self) -> str:
        return f"<Channel(id={self.id!r}, type={self.type!r}, active={self.is_active!r})>"


class Provider(Base):
    """AI or service credential configured for one instance.

    The API key is stored as an AES-256-GCM envelope (see
    src.services.credential_encryption) and only decrypted when it is
    pushed into the container.

    Attributes:
        id: UUID primary key
        instance_id: Owning instance
        type: ProviderType value
        name: Display name
        encrypted_api_key: Versioned encryption envelope
        base_url: Optional API base URL override
        model: Optional model identifier
        is_default: At most one default provider per instance
        is_active: Inactive providers are removed from the container on sync
        priority: Lower sorts first when no default is flagged
    """

    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    instance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("instances.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    base_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    instance: Mapped["Instance"] = relationship("Instance", back_populates="providers")

    __table_args__ = (
        Index("idx_providers_instance_id", "instance_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Provider(id={self.id!r}, type={self.type!r}, "
            f"default={self.is_default!r}, active={self.is_active!r})>"
        )


class Job(Base):
    """Long-running operation tied to one instance.

    Attributes:
        id: UUID primary key
        instance_id: Instance the job operates on
        user_id: Panel user who initiated the job
        type: Operation type (e.g. 'instance.create')
        description: Human-readable description
        status: pending, running, completed or failed
        input_json: Parameters the job was started with (JSON text)
        result_json: Aggregate result payload set on success (JSON text)
        error_code: Error code if job failed (E-XXXX format)
        error_message: Human-readable error message if failed
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    instance_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("instances.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.pending.value
    )
    input_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps (ISO8601 strings for SQLite compatibility)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    started_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso, onupdate=utc_now_iso
    )

    instance: Mapped["Instance | None"] = relationship("Instance", back_populates="jobs")
    steps: Mapped[list["JobStep"]] = relationship(
        "JobStep",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobStep.position",
    )

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_instance_id", "instance_id"),
        Index("idx_jobs_created_at", "created_at"),
    )

    @property
    def result(self) -> dict[str, Any] | None:
        """Parsed result payload, or None when the job has not completed."""
        if self.result_json is None:
            return None
        return json.loads(self.result_json)

    def __repr__(self) -> str:
        return f"<Job(id={self.id!r}, type={self.type!r}, status={self.status!r})>"


class JobStep(Base):
    """Ordered sub-task of a job.

    Steps are addressed by their id; position is fixed when the job is
    created and only used for ordering.
    """

    __tablename__ = "job_steps"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StepStatus.pending.value
    )
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ended_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    job: Mapped["Job"] = relationship("Job", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_job_step_position"),
        Index("idx_job_steps_job_id", "job_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def __repr__(self) -> str:
        return (
            f"<JobStep(id={self.id!r}, job_id={self.job_id!r}, "
            f"position={self.position}, status={self.status!r})>"
        )
