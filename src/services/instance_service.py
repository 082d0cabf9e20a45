"""Instance registration, provisioning launch and container status refresh."""

import logging
import re
from collections.abc import Callable

from sqlalchemy.orm import Session

from src.cli.config import ClawPanelConfig
from src.db.models import Instance, InstanceStatus, Job
from src.errors.domain import DuplicateSlugError, NotFoundError, ValidationError
from src.services.background import BackgroundTasks, background_tasks
from src.services.errors import RemoteError
from src.services.job_service import JobService
from src.services.provisioning import PROVISIONING_STEPS, ProvisioningPipeline
from src.services.remote_executor import RemoteExecutor

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")

PROVISION_JOB_TYPE = "instance.create"


class InstanceService:
    """Creates instances and hands their provisioning to the background.

    Attributes:
        db: Session used for the synchronous writes of the caller.
        session_factory: Source of fresh sessions for the detached pipeline.
        executor: Remote executor for container hosts.
        config: Panel configuration.
        runner: Background task runner for pipeline runs.
    """

    def __init__(
        self,
        db: Session,
        session_factory: Callable[[], Session],
        executor: RemoteExecutor,
        config: ClawPanelConfig | None = None,
        runner: BackgroundTasks | None = None,
    ) -> None:
        self.db = db
        self.session_factory = session_factory
        self.executor = executor
        self.config = config or ClawPanelConfig()
        self.runner = runner or background_tasks

    def get_instance(self, instance_id: str) -> Instance | None:
        return self.db.query(Instance).filter(Instance.id == instance_id).first()

    def get_by_slug(self, slug: str) -> Instance | None:
        return self.db.query(Instance).filter(Instance.slug == slug).first()

    def list_instances(self, include_hidden: bool = False) -> list[Instance]:
        query = self.db.query(Instance)
        if not include_hidden:
            query = query.filter(Instance.is_hidden.is_(False))
        return query.order_by(Instance.created_at).all()

    def create_instance(
        self,
        name: str,
        slug: str,
        description: str | None = None,
        host: str | None = None,
        user_id: str | None = None,
    ) -> tuple[Instance, Job]:
        """Register an instance together with its pending provisioning job.

        Both rows are committed in one transaction; a duplicate slug is
        rejected before anything is written.

        Raises:
            ValidationError: If the name is empty or the slug is malformed.
            DuplicateSlugError: If another instance already uses the slug.
        """
        if not name or not name.strip():
            raise ValidationError("Instance name must not be empty")
        if not SLUG_PATTERN.match(slug or ""):
            raise ValidationError(
                f"Invalid slug '{slug}': use lowercase letters, digits and hyphens only"
            )
        if self.get_by_slug(slug) is not None:
            raise DuplicateSlugError(slug)

        instance = Instance(
            name=name.strip(),
            slug=slug,
            description=description,
            container_name=f"{self.config.lxc.container_prefix}{slug}",
            container_host=host or self.config.lxc.default_host,
            container_type="lxc",
            status=InstanceStatus.stopped.value,
        )
        try:
            self.db.add(instance)
            self.db.flush()
            job = self._new_provisioning_job(instance, user_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(instance)
        logger.info("Registered instance %s (%s) with job %s", instance.slug, instance.id, job.id)
        return instance, job

    def _new_provisioning_job(self, instance: Instance, user_id: str | None) -> Job:
        return JobService(self.db).create_job(
            instance.id,
            f"Provision instance {instance.name}",
            list(PROVISIONING_STEPS),
            job_type=PROVISION_JOB_TYPE,
            user_id=user_id,
            input_data={"slug": instance.slug, "host": instance.container_host},
            commit=False,
        )

    def launch_provisioning(self, job_id: str) -> str:
        """Start the pipeline for a job as a detached task and return the id."""
        pipeline = ProvisioningPipeline(self.session_factory, self.executor, self.config)
        self.runner.submit(pipeline.run(job_id), name=f"provision:{job_id}")
        return job_id

    def provision_instance(
        self,
        name: str,
        slug: str,
        description: str | None = None,
        host: str | None = None,
        user_id: str | None = None,
    ) -> str:
        """Create an instance and start provisioning it. Returns the job id."""
        _, job = self.create_instance(name, slug, description, host, user_id)
        return self.launch_provisioning(job.id)

    def retry_provisioning(self, instance_id: str, user_id: str | None = None) -> str:
        """Re-run provisioning for an existing instance under a fresh job.

        Raises:
            NotFoundError: If the instance does not exist.
        """
        instance = self.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)
        job = self._new_provisioning_job(instance, user_id)
        self.db.commit()
        logger.info("Retrying provisioning of %s with job %s", instance.slug, job.id)
        return self.launch_provisioning(job.id)

    async def refresh_instance_statuses(self, host: str | None = None) -> dict[str, str]:
        """Update instance status from the containers a host reports.

        Instances whose container is listed become running or stopped.
        Instances in ``error`` keep that status unless their container is
        running. An unreachable host changes nothing.

        Returns:
            Slug to new status for every instance that changed.
        """
        host = host or self.config.lxc.default_host
        try:
            containers = await self.executor.list_containers(host)
        except RemoteError as e:
            logger.warning("Cannot list containers on %s: %s", host, e)
            return {}

        by_name = {c.name: c for c in containers}
        changed: dict[str, str] = {}
        instances = self.db.query(Instance).filter(Instance.container_host == host).all()
        for instance in instances:
            info = by_name.get(instance.container_name)
            if info is None:
                continue
            if info.status.lower() == "running":
                status = InstanceStatus.running.value
            elif instance.status == InstanceStatus.error.value:
                continue
            else:
                status = InstanceStatus.stopped.value
            if instance.status != status:
                instance.status = status
                changed[instance.slug] = status
        if changed:
            self.db.commit()
            logger.info("Refreshed instance statuses on %s: %s", host, changed)
        return changed
