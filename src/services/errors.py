"""Shared service-layer error types.

Provides the errors raised while talking to containers: remote command
failures and unreadable configuration documents. Centralised here to avoid
circular imports between the executor, the config bridge and the pipeline.
"""

from dataclasses import dataclass


@dataclass
class RemoteError(Exception):
    """Base error for container-side failures.

    Attributes:
        code: ClawPanel error code (E-XXXX format)
        message: Human-readable error message
        remediation: Suggested fix
        details: Raw error details
    """

    code: str
    message: str
    remediation: str = ""
    details: dict | None = None

    def __str__(self) -> str:
        """Return formatted error message."""
        return f"[{self.code}] {self.message}"


class RemoteTimeoutError(RemoteError):
    """A remote command exceeded its deadline and was killed."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(
            code="E-3001",
            message=f"Command timed out after {timeout:g}s: {_short(command)}",
            remediation="Check the host and container are reachable, then retry.",
        )
        self.command = command
        self.timeout = timeout


class RemoteExecutionError(RemoteError):
    """A remote command exited non-zero where success was required."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(
            code="E-3002",
            message=f"Command exited with code {exit_code}: {_short(command)} ({detail})",
            remediation="Inspect the container state and retry.",
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ConfigParseError(RemoteError):
    """An existing remote JSON document is not a valid JSON object."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(
            code="E-1001",
            message=f"Configuration document {path} could not be parsed: {detail}",
            remediation="Fix or remove the file inside the container, then retry.",
        )
        self.path = path
        self.detail = detail


def _short(command: str, limit: int = 120) -> str:
    """Trim long shell commands (base64 payloads) for messages."""
    command = " ".join(command.split())
    if len(command) <= limit:
        return command
    return command[: limit - 3] + "..."
