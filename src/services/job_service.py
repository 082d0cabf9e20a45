"""Job service implementing job/step lifecycle management with state machine validation.

This module records the progress of long-running operations such as
instance provisioning. It never runs work itself: the caller performs each
action between transition calls and the service persists the resulting
state so the panel can poll it.

Step transitions for one job are serialized by locking the parent Job row
(SELECT ... FOR UPDATE; a no-op on SQLite, where writes are already
serialized by the database lock).
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import Job, JobStatus, JobStep, StepStatus
from src.errors.domain import (
    InvalidStateError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# Valid state transitions for job lifecycle
JOB_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.pending: [JobStatus.running, JobStatus.failed],
    JobStatus.running: [JobStatus.completed, JobStatus.failed],
    JobStatus.completed: [],  # terminal
    JobStatus.failed: [],  # terminal (retry creates a new job)
}

# Valid state transitions for step lifecycle
STEP_TRANSITIONS: dict[StepStatus, list[StepStatus]] = {
    StepStatus.pending: [StepStatus.running, StepStatus.failed],
    StepStatus.running: [StepStatus.completed, StepStatus.failed],
    StepStatus.completed: [],  # terminal
    StepStatus.failed: [],  # terminal
}


def _utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


class JobService:
    """Service for job and step lifecycle management.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the job service with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    # =========================================================================
    # Job CRUD Operations
    # =========================================================================

    def create_job(
        self,
        instance_id: str | None,
        description: str,
        step_names: list[str],
        job_type: str = "instance.create",
        user_id: str | None = None,
        input_data: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> Job:
        """Create a pending job with one pending step per name.

        Args:
            instance_id: Instance the job operates on.
            description: Human-readable description.
            step_names: Ordered step labels; positions follow list order.
            job_type: Operation type recorded on the job.
            user_id: Panel user who initiated the job.
            input_data: Parameters the job was started with.
            commit: Commit immediately. Pass False to join a caller's
                transaction (the caller commits).

        Returns:
            The created Job with its steps.

        Raises:
            ValidationError: If step_names is empty.
        """
        if not step_names:
            raise ValidationError("A job needs at least one step")

        now = _utc_now_iso()
        job = Job(
            instance_id=instance_id,
            user_id=user_id,
            type=job_type,
            description=description,
            status=JobStatus.pending.value,
            input_json=json.dumps(input_data) if input_data is not None else None,
            created_at=now,
            updated_at=now,
        )
        job.steps = [
            JobStep(position=index, name=name, status=StepStatus.pending.value)
            for index, name in enumerate(step_names)
        ]
        self.db.add(job)
        if commit:
            self.db.commit()
            self.db.refresh(job)
        else:
            self.db.flush()
        logger.info("Created job %s (%s) with %d steps", job.id, job_type, len(step_names))
        return job

    def get_job(self, job_id: str) -> Job | None:
        """Get a job by its ID.

        Args:
            job_id: The UUID of the job to retrieve.

        Returns:
            The Job object if found, None otherwise.
        """
        return self.db.query(Job).filter(Job.id == job_id).first()

    def get_step(self, step_id: str) -> JobStep | None:
        """Get a step by its ID."""
        return self.db.query(JobStep).filter(JobStep.id == step_id).first()

    def list_jobs(
        self,
        instance_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs with optional filtering and pagination.

        Args:
            instance_id: Filter by instance (optional).
            status: Filter by job status (optional).
            limit: Maximum number of jobs to return (default 50).
            offset: Number of jobs to skip for pagination (default 0).

        Returns:
            List of Job objects matching the criteria, ordered by created_at DESC.
        """
        query = self.db.query(Job)
        if instance_id is not None:
            query = query.filter(Job.instance_id == instance_id)
        if status is not None:
            query = query.filter(Job.status == status.value)
        query = query.order_by(Job.created_at.desc())
        query = query.limit(limit).offset(offset)
        return query.all()

    def get_steps(self, job_id: str) -> list[JobStep]:
        """Return a job's steps in position order."""
        return (
            self.db.query(JobStep)
            .filter(JobStep.job_id == job_id)
            .order_by(JobStep.position)
            .all()
        )

    # =========================================================================
    # Job State Machine
    # =========================================================================

    def start_job(self, job_id: str) -> Job:
        """Transition a job to running. Starting a running job is a no-op.

        Raises:
            NotFoundError: If the job does not exist.
            InvalidStateTransition: If the job is already terminal.
        """
        job = self._lock_job(job_id)
        current = JobStatus(job.status)
        if current == JobStatus.running:
            return job
        self._check_job_transition(current, JobStatus.running)

        now = _utc_now_iso()
        job.status = JobStatus.running.value
        job.started_at = now
        job.updated_at = now
        self.db.commit()
        self.db.refresh(job)
        return job

    def complete_job(self, job_id: str, result: dict[str, Any] | None = None) -> Job:
        """Mark a running job completed with an aggregate result payload.

        Raises:
            NotFoundError: If the job does not exist.
            InvalidStateTransition: If the job is not running.
            InvalidStateError: If any step is not completed.
        """
        job = self._lock_job(job_id)
        self._check_job_transition(JobStatus(job.status), JobStatus.completed)

        unfinished = [s.name for s in self.get_steps(job_id) if s.status != StepStatus.completed.value]
        if unfinished:
            raise InvalidStateError(
                f"Job '{job_id}' cannot complete; steps not completed: {', '.join(unfinished)}"
            )

        now = _utc_now_iso()
        job.status = JobStatus.completed.value
        job.result_json = json.dumps(result) if result is not None else None
        job.completed_at = now
        job.updated_at = now
        self.db.commit()
        self.db.refresh(job)
        logger.info("Job %s completed", job_id)
        return job

    def fail_job(self, job_id: str, error_message: str, error_code: str | None = None) -> Job:
        """Mark a job failed. Safe to call on a pending job (abort).

        Outstanding steps are left untouched; call fail_outstanding_steps
        first so observers see a consistent per-step picture. Failing an
        already failed job is a no-op.

        Raises:
            NotFoundError: If the job does not exist.
            InvalidStateTransition: If the job already completed.
        """
        job = self._lock_job(job_id)
        current = JobStatus(job.status)
        if current == JobStatus.failed:
            return job
        self._check_job_transition(current, JobStatus.failed)

        now = _utc_now_iso()
        job.status = JobStatus.failed.value
        job.error_code = error_code
        job.error_message = error_message
        job.completed_at = now
        job.updated_at = now
        self.db.commit()
        self.db.refresh(job)
        logger.warning("Job %s failed: %s", job_id, error_message)
        return job

    # =========================================================================
    # Step State Machine
    # =========================================================================

    def start_step(self, step_id: str) -> JobStep:
        """Transition a step to running.

        Every earlier step must be terminal and no other step of the job
        may be running. Starting a running step is a no-op.

        Raises:
            NotFoundError: If the step does not exist.
            InvalidStateError: If the job is not running or ordering is violated.
            InvalidStateTransition: If the step is terminal.
        """
        step = self._require_step(step_id)
        job = self._lock_job(step.job_id)
        current = StepStatus(step.status)
        if current == StepStatus.running:
            return step
        self._check_step_transition(current, StepStatus.running)

        if job.status != JobStatus.running.value:
            raise InvalidStateError(
                f"Step '{step.name}' cannot start while job '{job.id}' is {job.status}"
            )
        for sibling in self.get_steps(job.id):
            if sibling.id == step.id:
                continue
            if sibling.status == StepStatus.running.value:
                raise InvalidStateError(
                    f"Step '{step.name}' cannot start while '{sibling.name}' is running"
                )
            if sibling.position < step.position and not sibling.is_terminal:
                raise InvalidStateError(
                    f"Step '{step.name}' cannot start before '{sibling.name}' finishes"
                )

        now = _utc_now_iso()
        step.status = StepStatus.running.value
        step.started_at = now
        job.updated_at = now
        self.db.commit()
        self.db.refresh(step)
        logger.debug("Job %s step %d (%s) started", job.id, step.position, step.name)
        return step

    def complete_step(self, step_id: str, output: str | None = None) -> JobStep:
        """Mark a running step completed. Idempotent when already completed.

        Completing the last step does not complete the job.

        Raises:
            NotFoundError: If the step does not exist.
            InvalidStateTransition: If the step is pending or failed.
        """
        step = self._require_step(step_id)
        job = self._lock_job(step.job_id)
        current = StepStatus(step.status)
        if current == StepStatus.completed:
            return step
        self._check_step_transition(current, StepStatus.completed)

        now = _utc_now_iso()
        step.status = StepStatus.completed.value
        step.output = output
        step.ended_at = now
        job.updated_at = now
        self.db.commit()
        self.db.refresh(step)
        logger.debug("Job %s step %d (%s) completed", job.id, step.position, step.name)
        return step

    def fail_step(self, step_id: str, error: str) -> JobStep:
        """Mark a step failed. Idempotent when already failed.

        Raises:
            NotFoundError: If the step does not exist.
            InvalidStateTransition: If the step already completed.
        """
        step = self._require_step(step_id)
        job = self._lock_job(step.job_id)
        current = StepStatus(step.status)
        if current == StepStatus.failed:
            return step
        self._check_step_transition(current, StepStatus.failed)

        now = _utc_now_iso()
        step.status = StepStatus.failed.value
        step.error = error
        step.ended_at = now
        job.updated_at = now
        self.db.commit()
        self.db.refresh(step)
        logger.debug("Job %s step %d (%s) failed: %s", job.id, step.position, step.name, error)
        return step

    def fail_outstanding_steps(self, job_id: str, error: str) -> int:
        """Fail every pending or running step of a job with the same error.

        Returns:
            Number of steps transitioned.
        """
        job = self._lock_job(job_id)
        now = _utc_now_iso()
        count = 0
        for step in self.get_steps(job_id):
            if step.is_terminal:
                continue
            step.status = StepStatus.failed.value
            step.error = error
            step.ended_at = now
            count += 1
        job.updated_at = now
        self.db.commit()
        return count

    # =========================================================================
    # Aggregation
    # =========================================================================

    def get_job_summary(self, job_id: str) -> dict[str, Any]:
        """Get a progress summary for polling clients.

        Returns:
            Dictionary with job status, step counts and per-step details.

        Raises:
            NotFoundError: If the job does not exist.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)

        steps = self.get_steps(job_id)
        counts = {status.value: 0 for status in StepStatus}
        current_step = None
        for step in steps:
            counts[step.status] += 1
            if step.status == StepStatus.running.value:
                current_step = step.name

        return {
            "job_id": job.id,
            "instance_id": job.instance_id,
            "type": job.type,
            "status": job.status,
            "total_steps": len(steps),
            "completed_steps": counts[StepStatus.completed.value],
            "failed_steps": counts[StepStatus.failed.value],
            "pending_steps": counts[StepStatus.pending.value],
            "current_step": current_step,
            "error_code": job.error_code,
            "error_message": job.error_message,
            "result": job.result,
            "steps": [
                {
                    "id": step.id,
                    "position": step.position,
                    "name": step.name,
                    "status": step.status,
                    "output": step.output,
                    "error": step.error,
                    "started_at": step.started_at,
                    "ended_at": step.ended_at,
                }
                for step in steps
            ],
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_job(self, job_id: str) -> Job:
        job = (
            self.db.query(Job)
            .filter(Job.id == job_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    def _require_step(self, step_id: str) -> JobStep:
        step = (
            self.db.query(JobStep)
            .filter(JobStep.id == step_id)
            .populate_existing()
            .first()
        )
        if step is None:
            raise NotFoundError("Step", step_id)
        return step

    @staticmethod
    def _check_job_transition(current: JobStatus, target: JobStatus) -> None:
        allowed = JOB_TRANSITIONS.get(current, [])
        if target not in allowed:
            raise InvalidStateTransition("Job", current, target, allowed)

    @staticmethod
    def _check_step_transition(current: StepStatus, target: StepStatus) -> None:
        allowed = STEP_TRANSITIONS.get(current, [])
        if target not in allowed:
            raise InvalidStateTransition("Step", current, target, allowed)
