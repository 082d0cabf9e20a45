"""Tests for agent software probes, gateway control and instance validation."""

import asyncio
import json
import os
import shutil

import pytest

from src.cli.config import ProvisioningConfig
from src.services.agent_runtime import CHECKED_DIRECTORIES, AgentRuntime
from src.services.errors import RemoteExecutionError
from src.services.gateway_config import (
    AUTH_PROFILES_PATH,
    CONFIG_PATH,
    OPENCLAW_BIN,
    OPENCLAW_DIR,
)
from src.services.remote_executor import ExecResult, LxcExecutor

CONTAINER = "clawdbot-acme"


@pytest.fixture
def runtime(executor):
    settings = ProvisioningConfig(gateway_start_grace_seconds=0)
    return AgentRuntime(executor, "localhost", CONTAINER, settings)


def _checks(checks):
    return {c.name: c.status for c in checks}


class TestProbes:
    @pytest.mark.asyncio
    async def test_probe_missing_container(self, runtime):
        assert await runtime.probe_container() is False

    @pytest.mark.asyncio
    async def test_probe_existing_container(self, runtime, executor):
        executor.add_container(CONTAINER)
        assert await runtime.probe_container() is True

    @pytest.mark.asyncio
    async def test_versions_of_installed_software(self, runtime, executor):
        executor.add_container(CONTAINER, node=True, openclaw=True)

        assert await runtime.node_version() == "v20.11.1"
        assert await runtime.is_installed() is True
        assert await runtime.version() == "2026.1.29"

    @pytest.mark.asyncio
    async def test_fresh_container_has_nothing(self, runtime, executor):
        executor.add_container(CONTAINER)

        assert await runtime.node_version() is None
        assert await runtime.is_installed() is False

    @pytest.mark.asyncio
    async def test_failed_install_raises(self, runtime, executor):
        executor.add_container(CONTAINER)
        executor.script(r"^apt-get", ExecResult(100, "", "E: Unable to locate package nodejs"))

        with pytest.raises(RemoteExecutionError, match="Unable to locate package"):
            await runtime.install_node()

    @pytest.mark.asyncio
    async def test_directories(self, runtime, executor):
        executor.add_container(CONTAINER)
        assert not any((await runtime.check_directories()).values())

        await runtime.ensure_directories()

        assert await runtime.check_directories() == {name: True for name in CHECKED_DIRECTORIES}


class TestGateway:
    @pytest.mark.asyncio
    async def test_start_and_status(self, runtime, executor):
        box = executor.add_container(CONTAINER)
        box.files[CONFIG_PATH] = json.dumps({"gateway": {"port": 18790}})

        started = await runtime.start_gateway()
        status = await runtime.gateway_status()

        assert started.success and started.pid == 4242
        assert status.running and status.pid == 4242 and status.port == 18790
        lock_cleanup = executor.commands_matching(r"^killall")[0]
        assert f"rm -f {OPENCLAW_DIR}/gateway.lock" in lock_cleanup

    @pytest.mark.asyncio
    async def test_gateway_that_dies_is_reported(self, runtime, executor):
        box = executor.add_container(CONTAINER)
        box.gateway_start_failures = 1

        started = await runtime.start_gateway()

        assert not started.success
        assert started.output == "PID 4242 exited"

    @pytest.mark.asyncio
    async def test_no_pid_is_a_failed_start(self, runtime, executor):
        executor.add_container(CONTAINER)
        executor.script("nohup", ExecResult(0, "", "bash: openclaw: not found"))

        started = await runtime.start_gateway()

        assert not started.success
        assert started.pid is None

    @pytest.mark.asyncio
    async def test_stop(self, runtime, executor):
        box = executor.add_container(CONTAINER, gateway_running=True)
        assert await runtime.stop_gateway() is True
        assert not box.gateway_running

    @pytest.mark.asyncio
    async def test_status_with_corrupt_document(self, runtime, executor):
        box = executor.add_container(CONTAINER)
        box.files[CONFIG_PATH] = "{oops"

        status = await runtime.gateway_status()

        assert not status.running
        assert status.port is None


class TestValidation:
    @pytest.mark.asyncio
    async def test_not_installed_stops_early(self, runtime, executor):
        executor.add_container(CONTAINER)

        checks = await runtime.validate_instance()

        assert _checks(checks) == {"openclaw_installed": "error"}

    @pytest.mark.asyncio
    async def test_provisioned_container(self, runtime, executor):
        box = executor.add_provisioned_container(CONTAINER)
        box.gateway_running = True
        box.files[AUTH_PROFILES_PATH] = json.dumps({"openai": {"apiKey": "k"}})

        checks = await runtime.validate_instance()

        assert _checks(checks) == {
            "openclaw_installed": "ok",
            "openclaw_version": "ok",
            "config_exists": "ok",
            "directories": "ok",
            "gateway_running": "ok",
            "provider_configured": "ok",
        }

    @pytest.mark.asyncio
    async def test_warnings_and_errors(self, runtime, executor):
        box = executor.add_container(CONTAINER, openclaw=True)
        box.files[CONFIG_PATH] = "[]"

        checks = {c.name: c for c in await runtime.validate_instance()}

        assert checks["config_exists"].status == "error"
        assert checks["directories"].status == "warning"
        assert checks["directories"].detail.startswith("Missing: agents")
        assert checks["gateway_running"].status == "warning"
        assert checks["provider_configured"].status == "warning"


class LocalShellExecutor(LxcExecutor):
    """Runs container commands in a local ``bash -c``, like lxc exec does."""

    async def execute(self, host, container, command, timeout=30.0):
        return await self.run_on_host("localhost", command, timeout)


needs_procps = pytest.mark.skipif(
    shutil.which("pgrep") is None or shutil.which("pkill") is None or os.path.exists(OPENCLAW_BIN),
    reason="needs pgrep/pkill and a host without openclaw",
)


@needs_procps
class TestGatewayCommandsInRealShell:
    """The process checks must not match the shell that runs them."""

    @pytest.fixture
    def shell_runtime(self):
        settings = ProvisioningConfig(gateway_start_grace_seconds=0.5)
        return AgentRuntime(LocalShellExecutor(), "localhost", CONTAINER, settings)

    @pytest.mark.asyncio
    async def test_status_without_gateway(self, shell_runtime):
        status = await shell_runtime.gateway_status()
        assert status.running is False
        assert status.pid is None

    @pytest.mark.asyncio
    async def test_start_without_binary_fails(self, shell_runtime):
        started = await shell_runtime.start_gateway()

        assert started.success is False
        assert started.output == f"PID {started.pid} exited"

    @pytest.mark.asyncio
    async def test_stop_without_gateway(self, shell_runtime):
        assert await shell_runtime.stop_gateway() is True

    @pytest.mark.asyncio
    async def test_status_and_stop_find_the_gateway(self, shell_runtime):
        # sleep running under the gateway's process title
        gateway = await asyncio.create_subprocess_exec("bash", "-c", "exec -a openclaw-gateway sleep 30")
        try:
            await asyncio.sleep(0.2)
            status = await shell_runtime.gateway_status()
            assert status.running is True
            assert status.pid == gateway.pid

            assert await shell_runtime.stop_gateway() is True
            await asyncio.wait_for(gateway.wait(), 5)
        finally:
            if gateway.returncode is None:
                gateway.kill()
                await gateway.wait()
