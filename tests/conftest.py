"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Database fixtures (file-based SQLite, fresh per test)
- FakeExecutor: a scripted stand-in for LxcExecutor that simulates the
  filesystem and processes of containers
- Common test data builders
"""

import os
import re
import shlex
from collections.abc import Generator
from dataclasses import dataclass, field

# Keep the module-level engine of src.db.connection off the real data dir.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.cli.config import ClawPanelConfig, ProvisioningConfig
from src.db.models import Base, Instance, InstanceStatus
from src.services.background import BackgroundTasks
from src.services.errors import RemoteError
from src.services.gateway_config import OPENCLAW_BIN, OPENCLAW_DIR
from src.services.remote_executor import ContainerInfo, ExecResult


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring a real container host"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def session_factory(tmp_path) -> sessionmaker:
    """Session factory over a file-based SQLite database.

    File-based so the provisioning pipeline's own sessions and the test's
    session see each other's commits through separate connections.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'panel.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def credential_key() -> bytes:
    return bytes(range(32))


@pytest.fixture
def fast_config() -> ClawPanelConfig:
    """Configuration with every provisioning delay set to zero."""
    return ClawPanelConfig(
        provisioning=ProvisioningConfig(
            container_settle_seconds=0,
            gateway_start_grace_seconds=0,
            gateway_retry_delay_seconds=0,
        )
    )


@pytest.fixture
def runner() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def make_instance():
    """Builder inserting an Instance row."""
    return _make_instance


def _make_instance(
    db: Session,
    slug: str = "acme",
    host: str = "localhost",
    status: str = InstanceStatus.running.value,
    with_container: bool = True,
) -> Instance:
    """Insert and return an Instance row."""
    instance = Instance(
        name=slug.title(),
        slug=slug,
        container_name=f"clawdbot-{slug}" if with_container else None,
        container_host=host if with_container else None,
        status=status,
    )
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


# ============================================================================
# Fake executor
# ============================================================================


@dataclass
class FakeContainer:
    """Simulated state of one container."""

    name: str
    status: str = "Running"
    files: dict[str, str] = field(default_factory=dict)
    dirs: set[str] = field(default_factory=set)
    node: bool = False
    openclaw: bool = False
    gateway_running: bool = False
    # Number of upcoming gateway starts that die right after launch
    gateway_start_failures: int = 0


@dataclass
class Script:
    pattern: re.Pattern
    result: ExecResult | None
    exc: Exception | None
    times: int | None


_WRITE_PAYLOAD = re.compile(r"printf %s (\S+) \| base64 -d > (\S+);")
_WRITE_MOVE = re.compile(r"mv -f (\S+) (\S+)$")
_READ = re.compile(r"^if \[ -f (\S+) \]")
_EXISTS = re.compile(r"^test -e (\S+) ")


class FakeExecutor:
    """RemoteExecutor double: records commands and simulates containers.

    Commands are answered from FakeContainer state the way the real shell
    snippets would behave. ``script`` overrides the answer for commands
    matching a regex, either with a result or by raising an exception.
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.commands: list[str] = []
        self.launches: list[tuple[str, str, str]] = []
        self.launch_error: Exception | None = None
        self.launch_result: ExecResult | None = None
        self.unreachable_hosts: set[str] = set()
        self._scripts: list[Script] = []

    # --- setup helpers ---

    def add_container(self, name: str, **state) -> FakeContainer:
        box = FakeContainer(name=name, **state)
        self.containers[name] = box
        return box

    def add_provisioned_container(self, name: str, document: str | None = None) -> FakeContainer:
        """A container where every provisioning step is already satisfied."""
        from src.services.agent_runtime import SCAFFOLD_DIRECTORIES
        from src.services.gateway_config import AUTH_PROFILES_PATH, CONFIG_PATH, WORKSPACE_DIR
        from src.services.provisioning import WORKSPACE_TEMPLATES

        box = self.add_container(name, node=True, openclaw=True)
        box.dirs.add(OPENCLAW_DIR)
        for d in SCAFFOLD_DIRECTORIES:
            _add_dir(box, f"{OPENCLAW_DIR}/{d}")
        box.files[CONFIG_PATH] = document or '{"gateway": {"port": 18789}}'
        box.files[AUTH_PROFILES_PATH] = "{}"
        for name_ in WORKSPACE_TEMPLATES:
            box.files[f"{WORKSPACE_DIR}/{name_}"] = "existing\n"
        return box

    def script(
        self,
        pattern: str,
        result: ExecResult | None = None,
        exc: Exception | None = None,
        times: int | None = None,
    ) -> None:
        """Answer commands matching pattern with result or by raising exc.

        times=None applies the script to every match.
        """
        self._scripts.append(Script(re.compile(pattern), result, exc, times))

    def commands_matching(self, pattern: str) -> list[str]:
        regex = re.compile(pattern)
        return [c for c in self.commands if regex.search(c)]

    # --- RemoteExecutor contract ---

    async def execute(self, host: str, container: str, command: str, timeout: float = 30.0) -> ExecResult:
        self.commands.append(command)
        if host in self.unreachable_hosts:
            raise RemoteError(code="E-3003", message=f"Could not reach container host {host}")
        scripted = self._take_script(command)
        if scripted is not None:
            if scripted.exc is not None:
                raise scripted.exc
            return scripted.result or ExecResult(0)

        box = self.containers.get(container)
        if box is None:
            return ExecResult(1, "", f"Error: Instance not found: {container}")
        return self._handle(box, command)

    async def list_containers(self, host: str) -> list[ContainerInfo]:
        if host in self.unreachable_hosts:
            raise RemoteError(code="E-3003", message=f"Could not reach container host {host}")
        return [ContainerInfo(name=b.name, status=b.status.lower()) for b in self.containers.values()]

    async def launch_container(self, host: str, name: str, image: str, timeout: float = 120.0) -> ExecResult:
        self.launches.append((host, name, image))
        if self.launch_error is not None:
            raise self.launch_error
        if self.launch_result is not None:
            return self.launch_result
        self.add_container(name)
        return ExecResult(0, f"Creating {name}\nStarting {name}")

    # --- internals ---

    def _take_script(self, command: str) -> Script | None:
        for script in self._scripts:
            if script.times == 0 or not script.pattern.search(command):
                continue
            if script.times is not None:
                script.times -= 1
            return script
        return None

    def _handle(self, box: FakeContainer, command: str) -> ExecResult:
        if command == "echo ok":
            return ExecResult(0, "ok")
        if command.startswith("node --version"):
            return ExecResult(0, "v20.11.1") if box.node else ExecResult(127, "")
        if command.startswith("apt-get"):
            box.node = True
            return ExecResult(0, "installed")
        if command.startswith(f"test -f {OPENCLAW_BIN}"):
            return ExecResult(0, "yes" if box.openclaw else "no")
        if command.startswith(f"{OPENCLAW_BIN} --version"):
            return ExecResult(0, "openclaw 2026.1.29") if box.openclaw else ExecResult(1, "")
        if command.startswith("npm install -g openclaw"):
            box.openclaw = True
            return ExecResult(0, "added 1 package")
        if command.startswith("mkdir -p"):
            for path in shlex.split(command)[2:]:
                _add_dir(box, path)
            return ExecResult(0)
        if command.startswith(f"cd {OPENCLAW_DIR} 2>/dev/null && for d in"):
            names = command.split(" for d in ", 1)[1].split(";", 1)[0].split()
            lines = [f"{n}:{'yes' if f'{OPENCLAW_DIR}/{n}' in box.dirs else 'no'}" for n in names]
            return ExecResult(0, "\n".join(lines))
        if "| base64 -d >" in command:
            return self._write(box, command)
        match = _READ.match(command)
        if match:
            from src.services.gateway_config import MISSING_SENTINEL
            path = match.group(1)
            if path in box.files:
                return ExecResult(0, box.files[path])
            return ExecResult(0, MISSING_SENTINEL)
        match = _EXISTS.match(command)
        if match:
            path = match.group(1)
            return ExecResult(0, "yes" if path in box.files or path in box.dirs else "no")
        if "doctor --fix" in command:
            return ExecResult(0, "Doctor complete")
        if command.startswith("killall"):
            box.gateway_running = False
            return ExecResult(0)
        if "nohup" in command:
            if box.gateway_start_failures > 0:
                box.gateway_start_failures -= 1
                box.gateway_running = False
            else:
                box.gateway_running = True
            return ExecResult(0, "4242")
        if "echo OK || echo DEAD" in command:
            return ExecResult(0, "OK" if box.gateway_running else "DEAD")
        if "echo FOUND || echo NOTFOUND" in command:
            return ExecResult(0, "4242\nFOUND" if box.gateway_running else "NOTFOUND")
        if "echo STILL_RUNNING || echo STOPPED" in command:
            box.gateway_running = False
            return ExecResult(0, "STOPPED")
        if command.startswith("kill -USR1"):
            return ExecResult(0)
        return ExecResult(0)

    def _write(self, box: FakeContainer, command: str) -> ExecResult:
        import base64

        payload = _WRITE_PAYLOAD.search(command)
        move = _WRITE_MOVE.search(command)
        if payload is None or move is None:
            return ExecResult(2, "", "malformed write command")
        content = base64.b64decode(payload.group(1)).decode("utf-8")
        target = move.group(2)
        if "cp -p" in command and target in box.files:
            box.files[f"{target}.bak"] = box.files[target]
        box.files[target] = content
        _add_dir(box, target.rsplit("/", 1)[0])
        return ExecResult(0)


def _add_dir(box: FakeContainer, path: str) -> None:
    while path and path != "/":
        box.dirs.add(path)
        path = path.rsplit("/", 1)[0]


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()
