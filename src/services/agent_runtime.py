"""Operations on the agent software installed in one container.

Wraps the shell commands used to detect, install and run openclaw and its
gateway process. Every probe is read-only so the provisioning pipeline can
call it first and skip work that is already done.
"""

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass
from typing import Literal

from src.cli.config import ProvisioningConfig
from src.services.errors import ConfigParseError, RemoteError, RemoteExecutionError
from src.services.gateway_config import (
    AUTH_PROFILES_PATH,
    GATEWAY_PROCESS_PATTERN,
    OPENCLAW_BIN,
    OPENCLAW_DIR,
    GatewayConfigBridge,
)
from src.services.remote_executor import ExecResult, RemoteExecutor

logger = logging.getLogger(__name__)

# Created by ensure_directories, relative to OPENCLAW_DIR
SCAFFOLD_DIRECTORIES = (
    "agents/main/agent",
    "agents/main/sessions",
    "credentials/whatsapp/default",
    "devices",
    "cron",
    "workspace",
    "memory",
    "identity",
    "canvas",
)

# Reported by check_directories
CHECKED_DIRECTORIES = ("agents", "credentials", "devices", "cron", "workspace", "memory")

_VERSION_PATTERN = re.compile(r"(\d{4}\.\d+\.\d+)")

# The kernel truncates process names to 15 chars ("openclaw-gatewa"),
# so match on the full command line.
_GATEWAY_PGREP = f'pgrep -f "{GATEWAY_PROCESS_PATTERN}"'

CheckStatus = Literal["ok", "warning", "error"]


@dataclass(frozen=True)
class GatewayStatus:
    running: bool
    pid: int | None = None
    port: int | None = None


@dataclass(frozen=True)
class GatewayStartResult:
    success: bool
    pid: int | None
    output: str


@dataclass(frozen=True)
class ValidationCheck:
    name: str
    status: CheckStatus
    detail: str


class AgentRuntime:
    """Agent software operations bound to one container.

    Attributes:
        executor: Remote executor used for every command.
        host: Container host.
        container: Container name.
        settings: Provisioning timeouts and delays.
        bridge: Document accessor for the same container.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        host: str,
        container: str,
        settings: ProvisioningConfig | None = None,
        bridge: GatewayConfigBridge | None = None,
    ) -> None:
        self.executor = executor
        self.host = host
        self.container = container
        self.settings = settings or ProvisioningConfig()
        self.bridge = bridge or GatewayConfigBridge(executor, timeout=self.settings.command_timeout)

    async def run(self, command: str, timeout: float | None = None) -> ExecResult:
        return await self.executor.execute(
            self.host, self.container, command, timeout or self.settings.command_timeout
        )

    async def run_checked(self, command: str, timeout: float | None = None) -> ExecResult:
        """Run a command and raise RemoteExecutionError on non-zero exit."""
        result = await self.run(command, timeout)
        if not result.ok:
            raise RemoteExecutionError(command, result.exit_code, result.stderr or result.stdout)
        return result

    # =========================================================================
    # Container, runtime and agent software
    # =========================================================================

    async def probe_container(self) -> bool:
        """True when the container answers a trivial command."""
        try:
            result = await self.run("echo ok", self.settings.probe_timeout)
        except RemoteError as e:
            logger.info("Container %s did not answer probe: %s", self.container, e)
            return False
        return result.ok and result.stdout.strip() == "ok"

    async def node_version(self) -> str | None:
        result = await self.run("node --version 2>/dev/null")
        if result.ok and "v" in result.stdout:
            return result.stdout.strip()
        return None

    async def install_node(self) -> ExecResult:
        logger.info("Installing Node.js in %s", self.container)
        return await self.run_checked(
            "apt-get update -qq && apt-get install -y -qq nodejs npm curl",
            self.settings.install_timeout,
        )

    async def is_installed(self) -> bool:
        result = await self.run(f"test -f {OPENCLAW_BIN} && echo yes || echo no")
        return result.stdout.strip() == "yes"

    async def version(self) -> str | None:
        result = await self.run(
            f"{OPENCLAW_BIN} --version 2>/dev/null || npm list -g openclaw --depth=0 2>/dev/null | grep openclaw"
        )
        if not result.ok and not result.stdout.strip():
            return None
        match = _VERSION_PATTERN.search(result.stdout)
        if match:
            return match.group(1)
        return result.stdout.strip() or None

    async def install(self) -> ExecResult:
        logger.info("Installing openclaw in %s", self.container)
        return await self.run_checked("npm install -g openclaw 2>&1", self.settings.install_timeout)

    # =========================================================================
    # Directories
    # =========================================================================

    async def ensure_directories(self) -> None:
        paths = " ".join(shlex.quote(f"{OPENCLAW_DIR}/{d}") for d in SCAFFOLD_DIRECTORIES)
        await self.run_checked(f"mkdir -p {paths}")

    async def check_directories(self) -> dict[str, bool]:
        """Report which of CHECKED_DIRECTORIES exist under the openclaw dir."""
        names = " ".join(CHECKED_DIRECTORIES)
        result = await self.run(
            f'cd {OPENCLAW_DIR} 2>/dev/null && for d in {names}; do '
            f'test -d "$d" && echo "$d:yes" || echo "$d:no"; done'
        )
        checks = {name: False for name in CHECKED_DIRECTORIES}
        if not result.ok:
            return checks
        for line in result.stdout.splitlines():
            name, _, value = line.strip().partition(":")
            if name in checks:
                checks[name] = value == "yes"
        return checks

    # =========================================================================
    # Self-repair and gateway
    # =========================================================================

    async def run_doctor(self) -> ExecResult:
        """Run openclaw's own consistency fixer. Exit code is not checked."""
        return await self.run(
            f"{OPENCLAW_BIN} doctor --fix --non-interactive 2>&1", self.settings.doctor_timeout
        )

    async def start_gateway(self) -> GatewayStartResult:
        """Kill any stale gateway, clear its lock and start a fresh one.

        The gateway is started with nohup after sourcing ``.env`` (API keys)
        when present, then verified with pgrep after a grace period.
        """
        await self.run(
            f'killall -9 openclaw-gateway 2>/dev/null; pkill -9 -f "{GATEWAY_PROCESS_PATTERN}" 2>/dev/null; '
            f"sleep 1; rm -f {OPENCLAW_DIR}/gateway.lock",
            10,
        )
        result = await self.run(
            f"cd {OPENCLAW_DIR} && [ -f .env ] && set -a && . .env && set +a; "
            f"nohup {OPENCLAW_BIN} gateway > /tmp/openclaw-gateway.log 2>&1 & echo $!",
            15,
        )
        lines = result.stdout.strip().splitlines()
        try:
            pid = int(lines[-1]) if lines else None
        except ValueError:
            pid = None
        if pid is None:
            return GatewayStartResult(False, None, result.stderr or "Failed to start")

        await asyncio.sleep(self.settings.gateway_start_grace_seconds)
        check = await self.run(f"{_GATEWAY_PGREP} >/dev/null 2>&1 && echo OK || echo DEAD")
        success = "OK" in check.stdout
        return GatewayStartResult(success, pid, f"PID: {pid}" if success else f"PID {pid} exited")

    async def stop_gateway(self) -> bool:
        result = await self.run(
            f'pkill -f "{GATEWAY_PROCESS_PATTERN}" 2>/dev/null; sleep 1; '
            f"{_GATEWAY_PGREP} >/dev/null 2>&1 && echo STILL_RUNNING || echo STOPPED"
        )
        return result.stdout.strip() == "STOPPED"

    async def gateway_status(self) -> GatewayStatus:
        result = await self.run(f"{_GATEWAY_PGREP} 2>/dev/null && echo FOUND || echo NOTFOUND")
        lines = [line.strip() for line in result.stdout.splitlines()]
        running = "FOUND" in lines
        pid = None
        if running:
            pid = next((int(line) for line in lines if line.isdigit()), None)

        port = None
        try:
            document = await self.bridge.read(self.host, self.container)
        except ConfigParseError:
            document = None
        if document:
            port = (document.get("gateway") or {}).get("port")
        return GatewayStatus(running=running, pid=pid, port=port)

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_instance(self) -> list[ValidationCheck]:
        """Run the health checks an operator sees on the instance page."""
        checks: list[ValidationCheck] = []

        installed = await self.is_installed()
        checks.append(ValidationCheck(
            "openclaw_installed",
            "ok" if installed else "error",
            "openclaw installed" if installed else "openclaw not found",
        ))
        if not installed:
            return checks

        version = await self.version()
        checks.append(ValidationCheck(
            "openclaw_version",
            "ok" if version else "warning",
            f"Version: {version}" if version else "Could not detect version",
        ))

        try:
            document = await self.bridge.read(self.host, self.container)
            checks.append(ValidationCheck(
                "config_exists",
                "ok" if document is not None else "error",
                "openclaw.json found" if document is not None else "openclaw.json not found",
            ))
        except ConfigParseError as e:
            checks.append(ValidationCheck("config_exists", "error", e.message))

        dirs = await self.check_directories()
        missing = [name for name, present in dirs.items() if not present]
        checks.append(ValidationCheck(
            "directories",
            "warning" if missing else "ok",
            f"Missing: {', '.join(missing)}" if missing else "All directories exist",
        ))

        gateway = await self.gateway_status()
        checks.append(ValidationCheck(
            "gateway_running",
            "ok" if gateway.running else "warning",
            f"Gateway running (PID: {gateway.pid}, port: {gateway.port})"
            if gateway.running else "Gateway is not running",
        ))

        try:
            profiles = await self.bridge.read_json(self.host, self.container, AUTH_PROFILES_PATH)
        except ConfigParseError:
            profiles = None
        count = len(profiles or {})
        checks.append(ValidationCheck(
            "provider_configured",
            "ok" if count else "warning",
            f"{count} provider(s) configured" if count else "No provider configured",
        ))

        return checks
