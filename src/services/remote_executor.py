"""Shell execution inside LXC containers, locally or over SSH.

The executor is the only way the panel touches a container. Commands run
as ``lxc exec <container> -- bash -c <command>`` on the container host;
hosts listed in ``LxcConfig.local_hosts`` run the command directly, all
others are reached over ssh.

A non-zero exit code is returned, not raised: callers decide whether a
failing command is fatal. Only timeouts and an unreachable host raise.

Example:
    executor = LxcExecutor(config.lxc)
    result = await executor.execute("10.0.0.5", "clawdbot-acme", "node --version")
    if result.ok:
        print(result.stdout)
"""

import asyncio
import json
import logging
import shlex
from dataclasses import dataclass, field
from typing import Literal, Protocol

from src.cli.config import LxcConfig
from src.services.errors import RemoteError, RemoteExecutionError, RemoteTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

ContainerAction = Literal["start", "stop", "restart"]


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one remote command.

    stdout is kept verbatim so file contents survive; stderr is stripped.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ContainerInfo:
    """One row of ``lxc list``."""

    name: str
    status: str
    addresses: list[str] = field(default_factory=list)


class RemoteExecutor(Protocol):
    """Contract the provisioning core needs from a container runtime."""

    async def execute(
        self,
        host: str,
        container: str,
        command: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> ExecResult:
        """Run a bash command inside a container.

        Raises:
            RemoteTimeoutError: If the command exceeds timeout seconds.
            RemoteError: If the host cannot be reached at all.
        """
        ...

    async def list_containers(self, host: str) -> list[ContainerInfo]:
        """List containers on a host."""
        ...

    async def launch_container(
        self, host: str, name: str, image: str, timeout: float = 120.0
    ) -> ExecResult:
        """Create and start a container from an image."""
        ...


class LxcExecutor:
    """RemoteExecutor backed by the lxc CLI and asyncio subprocesses."""

    def __init__(self, config: LxcConfig | None = None) -> None:
        self.config = config or LxcConfig()

    def is_local(self, host: str) -> bool:
        return host in self.config.local_hosts

    def host_argv(self, host: str, command: str) -> list[str]:
        """Build the argv that runs a shell command on the container host."""
        if self.is_local(host):
            return ["bash", "-c", command]
        argv = [
            "ssh",
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self.config.connect_timeout}",
        ]
        if self.config.ssh_key:
            argv += ["-i", self.config.ssh_key]
        argv += [f"{self.config.ssh_user}@{host}", command]
        return argv

    async def run_on_host(
        self, host: str, command: str, timeout: float = DEFAULT_TIMEOUT
    ) -> ExecResult:
        """Run a shell command on the container host itself.

        Raises:
            RemoteTimeoutError: If the command exceeds timeout seconds. The
                local process (bash or ssh) is killed.
            RemoteError: If the process cannot be spawned.
        """
        argv = self.host_argv(host, command)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RemoteError(
                code="E-3003",
                message=f"Could not reach container host {host}: {e}",
                remediation="Verify SSH access and that LXD is running on the host.",
                details={"host": host},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Command on %s timed out after %ss", host, timeout)
            raise RemoteTimeoutError(command, timeout)

        return ExecResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    async def execute(
        self,
        host: str,
        container: str,
        command: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> ExecResult:
        lxc_command = shlex.join(["lxc", "exec", container, "--", "bash", "-c", command])
        result = await self.run_on_host(host, lxc_command, timeout)
        logger.debug("exec %s/%s exit=%d", host, container, result.exit_code)
        return result

    async def list_containers(self, host: str) -> list[ContainerInfo]:
        """Parse ``lxc list --format json``.

        Raises:
            RemoteExecutionError: If lxc exits non-zero.
            RemoteError: If the listing is not valid JSON.
        """
        command = "lxc list --format json"
        result = await self.run_on_host(host, command)
        if not result.ok:
            raise RemoteExecutionError(command, result.exit_code, result.stderr)
        try:
            rows = json.loads(result.stdout.strip() or "[]")
        except json.JSONDecodeError as e:
            raise RemoteError(
                code="E-3002",
                message=f"Failed to parse container list from {host}: {e}",
                details={"output": result.stdout[:200]},
            ) from e
        return [_container_info(row) for row in rows if isinstance(row, dict)]

    async def launch_container(
        self, host: str, name: str, image: str, timeout: float = 120.0
    ) -> ExecResult:
        logger.info("Launching container %s on %s from %s", name, host, image)
        return await self.run_on_host(host, shlex.join(["lxc", "launch", image, name]), timeout)

    async def control_container(
        self, host: str, name: str, action: ContainerAction, timeout: float = 60.0
    ) -> ExecResult:
        """Start, stop or restart a container.

        Raises:
            RemoteExecutionError: If lxc exits non-zero.
        """
        command = shlex.join(["lxc", action, name])
        result = await self.run_on_host(host, command, timeout)
        if not result.ok:
            raise RemoteExecutionError(command, result.exit_code, result.stderr)
        logger.info("Container %s on %s: %s ok", name, host, action)
        return result


def _container_info(row: dict) -> ContainerInfo:
    addresses: list[str] = []
    network = (row.get("state") or {}).get("network") or {}
    for iface in network.values():
        for addr in iface.get("addresses") or []:
            if addr.get("scope") == "global":
                addresses.append(addr.get("address", ""))
    return ContainerInfo(
        name=row.get("name", ""),
        status=(row.get("status") or "unknown").lower(),
        addresses=addresses,
    )
