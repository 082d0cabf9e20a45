"""Eight-step pipeline turning a registered instance into a running gateway.

Each step checks the container first and only acts when something is
missing, so re-running the pipeline after a partial failure is safe and
skips finished work. Progress is recorded through JobService; the pipeline
runs detached and never raises to its caller.

On an error before the last step, every unfinished step is failed with the
same error text, the job is failed and the instance goes to ``error``.
Starting the gateway (the last step) is retried once and never fails the job.
"""

import asyncio
import logging
import secrets
from collections.abc import Callable
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.cli.config import ClawPanelConfig, GatewayDefaults
from src.db.models import Instance, InstanceStatus, JobStatus, utc_now_iso
from src.errors.domain import NotFoundError
from src.services.agent_runtime import AgentRuntime
from src.services.errors import RemoteError, RemoteExecutionError
from src.services.gateway_config import (
    AUTH_PROFILES_PATH,
    WORKSPACE_DIR,
    GatewayConfigBridge,
)
from src.services.job_service import JobService
from src.services.remote_executor import RemoteExecutor
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

PROVISIONING_STEPS = (
    "Create LXC container",
    "Install Node.js",
    "Install openclaw",
    "Create directory structure",
    "Generate base configuration",
    "Seed workspace and auth profiles",
    "Repair configuration (doctor)",
    "Start gateway",
)

WORKSPACE_TEMPLATES = ("SOUL.md", "IDENTITY.md", "USER.md", "TOOLS.md", "AGENTS.md")

TEMPLATES_DIR = Path(__file__).parent / "templates"

UNEXPECTED_ERROR_CODE = "E-4001"
DATABASE_ERROR_CODE = "E-4002"
TEMPLATE_ERROR_CODE = "E-4003"


def _template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        # Markdown is written verbatim.
        autoescape=select_autoescape(default=False),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )


def render_workspace_files(instance_name: str, assistant_name: str = "OpenClaw Assistant") -> dict[str, str]:
    """Render every workspace template for one instance."""
    env = _template_env()
    context = {"instance_name": instance_name, "assistant_name": assistant_name}
    return {name: env.get_template(name).render(**context) for name in WORKSPACE_TEMPLATES}


def build_base_config(defaults: GatewayDefaults, token: str | None = None) -> dict[str, Any]:
    """Minimal gateway document for a fresh container.

    Args:
        defaults: Gateway port, bind, mode and model defaults.
        token: Gateway auth token; 24 random bytes hex-encoded when omitted.
    """
    return {
        "meta": {"lastTouchedVersion": defaults.agent_version, "lastTouchedAt": utc_now_iso()},
        "agents": {
            "defaults": {
                "workspace": WORKSPACE_DIR,
                "maxConcurrent": defaults.max_concurrent,
                "subagents": {"maxConcurrent": defaults.subagent_max_concurrent},
                "model": {"primary": defaults.default_model},
            },
        },
        "commands": {"native": "auto", "nativeSkills": "auto"},
        "messages": {"ackReactionScope": "group-mentions"},
        "gateway": {
            "mode": defaults.mode,
            "auth": {"mode": "token", "token": token or secrets.token_hex(24)},
            "port": defaults.port,
            "bind": defaults.bind,
            "tailscale": {"mode": "off", "resetOnExit": False},
        },
        "auth": {"profiles": {}},
        "plugins": {"entries": {"whatsapp": {"enabled": True}}},
        "channels": {"whatsapp": {"selfChatMode": False, "dmPolicy": "pairing"}},
        "hooks": {
            "internal": {
                "enabled": True,
                "entries": {
                    "boot-md": {"enabled": True},
                    "command-logger": {"enabled": True},
                    "session-memory": {"enabled": True},
                },
            },
        },
        "skills": {"install": {"nodeManager": "npm"}},
    }


def error_code_for(exc: BaseException) -> str:
    """E-XXXX code carried by an error, or the unexpected-error code."""
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.startswith("E-"):
        return code
    if isinstance(exc, SQLAlchemyError):
        return DATABASE_ERROR_CODE
    if isinstance(exc, TemplateError):
        return TEMPLATE_ERROR_CODE
    return UNEXPECTED_ERROR_CODE


def error_text_for(exc: BaseException) -> str:
    text = str(exc) or type(exc).__name__
    return sanitize_error_message(text) or type(exc).__name__


class ProvisioningPipeline:
    """Runs the provisioning steps for one job.

    Attributes:
        session_factory: Callable returning a new SQLAlchemy session; the
            pipeline outlives the request that created the job, so it
            never shares the caller's session.
        executor: Remote executor for the container host.
        config: Panel configuration (image, timeouts, gateway defaults).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: RemoteExecutor,
        config: ClawPanelConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.executor = executor
        self.config = config or ClawPanelConfig()

    async def run(self, job_id: str) -> None:
        """Execute every step of a provisioning job. Never raises."""
        db = self.session_factory()
        jobs = JobService(db)
        instance_id: str | None = None
        try:
            job = jobs.get_job(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            instance_id = job.instance_id
            instance = db.get(Instance, instance_id) if instance_id else None
            if instance is None:
                raise NotFoundError("Instance", str(instance_id))

            await self._run_steps(db, jobs, job_id, instance)
        except Exception as e:
            logger.exception("Provisioning job %s failed: %s", job_id, e)
            self._record_failure(db, jobs, job_id, instance_id, e)
        finally:
            db.close()

    async def _run_steps(self, db: Session, jobs: JobService, job_id: str, instance: Instance) -> None:
        host = instance.container_host or self.config.lxc.default_host
        container = instance.container_name or f"{self.config.lxc.container_prefix}{instance.slug}"
        bridge = GatewayConfigBridge(
            self.executor,
            timeout=self.config.provisioning.command_timeout,
            hot_reload=self.config.gateway.hot_reload,
        )
        runtime = AgentRuntime(self.executor, host, container, self.config.provisioning, bridge)

        jobs.start_job(job_id)
        steps = jobs.get_steps(job_id)
        actions = [
            self._ensure_container,
            self._ensure_node,
            self._ensure_agent,
            self._ensure_directories,
            self._ensure_base_config,
            self._seed_workspace,
            self._run_doctor,
            self._start_gateway,
        ]
        if len(steps) != len(actions):
            raise ValueError(f"Job {job_id} has {len(steps)} steps, expected {len(actions)}")

        logger.info("Provisioning %s on %s (job %s)", container, host, job_id)
        for step, action in zip(steps, actions):
            if step.status == "completed":
                continue
            jobs.start_step(step.id)
            output = await action(runtime, instance)
            jobs.complete_step(step.id, output)
            logger.info("Job %s step %d done: %s", job_id, step.position + 1, output)

        instance.status = InstanceStatus.running.value
        db.commit()
        jobs.complete_job(job_id, {"containerName": container, "status": "running"})

    def _record_failure(
        self,
        db: Session,
        jobs: JobService,
        job_id: str,
        instance_id: str | None,
        exc: Exception,
    ) -> None:
        message = error_text_for(exc)
        code = error_code_for(exc)
        try:
            db.rollback()
            job = jobs.get_job(job_id)
            if job is None:
                return
            jobs.fail_outstanding_steps(job_id, message)
            if job.status in (JobStatus.pending.value, JobStatus.running.value):
                jobs.fail_job(job_id, message, error_code=code)
            if instance_id:
                instance = db.get(Instance, instance_id)
                if instance is not None:
                    instance.status = InstanceStatus.error.value
                    db.commit()
        except Exception as e:
            logger.exception("Could not record failure of job %s: %s", job_id, e)

    # =========================================================================
    # Steps
    # =========================================================================

    async def _ensure_container(self, runtime: AgentRuntime, instance: Instance) -> str:
        if await runtime.probe_container():
            return f"Container {runtime.container} already exists, reusing"

        settings = self.config.provisioning
        image = self.config.lxc.image
        result = await self.executor.launch_container(
            runtime.host, runtime.container, image, timeout=settings.launch_timeout
        )
        if not result.ok:
            raise RemoteExecutionError(
                f"lxc launch {image} {runtime.container}", result.exit_code, result.stderr
            )
        await asyncio.sleep(settings.container_settle_seconds)
        return f"Container {runtime.container} created"

    async def _ensure_node(self, runtime: AgentRuntime, instance: Instance) -> str:
        version = await runtime.node_version()
        if version:
            return f"Node.js already installed: {version}"
        await runtime.install_node()
        version = await runtime.node_version()
        if not version:
            raise RemoteExecutionError("node --version", 1, "Node.js missing after install")
        return f"Node.js installed: {version}"

    async def _ensure_agent(self, runtime: AgentRuntime, instance: Instance) -> str:
        if await runtime.is_installed():
            return f"openclaw already installed: {await runtime.version()}"
        await runtime.install()
        if not await runtime.is_installed():
            raise RemoteExecutionError("npm install -g openclaw", 1, "openclaw missing after install")
        return f"openclaw installed: {await runtime.version()}"

    async def _ensure_directories(self, runtime: AgentRuntime, instance: Instance) -> str:
        await runtime.ensure_directories()
        checks = await runtime.check_directories()
        summary = ", ".join(f"{name}:{'OK' if ok else 'MISSING'}" for name, ok in checks.items())
        return f"Directories: {summary}"

    async def _ensure_base_config(self, runtime: AgentRuntime, instance: Instance) -> str:
        existing = await runtime.bridge.read(runtime.host, runtime.container)
        if existing is not None:
            return "openclaw.json already exists, kept"
        await runtime.bridge.write(
            runtime.host, runtime.container, build_base_config(self.config.gateway)
        )
        return "Base configuration generated with gateway token"

    async def _seed_workspace(self, runtime: AgentRuntime, instance: Instance) -> str:
        bridge, host, container = runtime.bridge, runtime.host, runtime.container
        created = 0
        for name, content in render_workspace_files(instance.name).items():
            path = f"{WORKSPACE_DIR}/{name}"
            if await bridge.file_exists(host, container, path):
                continue
            await bridge.write_text(host, container, path, content)
            created += 1
        if not await bridge.file_exists(host, container, AUTH_PROFILES_PATH):
            await bridge.write_json(host, container, AUTH_PROFILES_PATH, {})
        return f"{created} workspace file(s) created, auth profiles OK"

    async def _run_doctor(self, runtime: AgentRuntime, instance: Instance) -> str:
        result = await runtime.run_doctor()
        return f"Doctor finished (exit: {result.exit_code})"

    async def _start_gateway(self, runtime: AgentRuntime, instance: Instance) -> str:
        for attempt in (1, 2):
            try:
                started = await runtime.start_gateway()
                if started.success:
                    return f"Gateway started: {started.output}"
                logger.warning("Gateway start attempt %d in %s failed: %s", attempt, runtime.container, started.output)
            except RemoteError as e:
                logger.warning("Gateway start attempt %d in %s failed: %s", attempt, runtime.container, e)
            if attempt == 1:
                await asyncio.sleep(self.config.provisioning.gateway_retry_delay_seconds)
        return "Gateway did not start automatically; start it from the panel"
