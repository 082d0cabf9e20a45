"""Read and write JSON/text documents inside a container.

The gateway reads ``/root/.openclaw/openclaw.json``. This module is the only
writer of that file: every write goes through the safeguard that strips
keys the gateway refuses to start with, keeps the previous version as
``openclaw.json.bak`` and replaces the file atomically (payload written to a
temp file, then renamed over the target), so the gateway never sees a
truncated document.

A missing file reads as ``None``. A present but unparseable file raises
ConfigParseError so callers can tell "not provisioned yet" from "broken".
"""

import base64
import copy
import json
import logging
import posixpath
import shlex
from typing import Any
from uuid import uuid4

from src.services.errors import ConfigParseError, RemoteError, RemoteExecutionError
from src.services.remote_executor import RemoteExecutor

logger = logging.getLogger(__name__)

OPENCLAW_DIR = "/root/.openclaw"
OPENCLAW_BIN = "/usr/bin/openclaw"
CONFIG_PATH = f"{OPENCLAW_DIR}/openclaw.json"
AUTH_PROFILES_PATH = f"{OPENCLAW_DIR}/agents/main/agent/auth-profiles.json"
WORKSPACE_DIR = f"{OPENCLAW_DIR}/workspace"

MISSING_SENTINEL = "__CLAWPANEL_MISSING__"

# pgrep/pkill -f pattern for the gateway process ("openclaw gateway" or its
# "openclaw-gateway" title). The bracket keeps the pattern from matching the
# command line of the shell that runs it.
GATEWAY_PROCESS_PATTERN = "[o]penclaw[ -]gateway"

# Keys the gateway rejects inside channels.<key>; denyFrom and
# contactLabels only exist in the panel's own channel config.
FORBIDDEN_CHANNEL_KEYS = frozenset({"enabled", "contactLabels", "denyFrom"})


def ensure_object(parent: dict[str, Any], key: str) -> dict[str, Any]:
    """parent[key] as a dict, replacing a missing or non-object value."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = parent[key] = {}
    return value


def sanitize_document(document: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a gateway document with refused keys removed.

    Strips FORBIDDEN_CHANNEL_KEYS from every ``channels.<key>`` object and
    ``agents.defaults.identity``. Each removal is logged at WARNING.
    """
    safe = copy.deepcopy(document)

    channels = safe.get("channels")
    if isinstance(channels, dict):
        for name, channel in channels.items():
            if not isinstance(channel, dict):
                continue
            for key in sorted(FORBIDDEN_CHANNEL_KEYS & channel.keys()):
                logger.warning("Removing refused key channels.%s.%s before write", name, key)
                del channel[key]

    agents = safe.get("agents")
    defaults = agents.get("defaults") if isinstance(agents, dict) else None
    if isinstance(defaults, dict) and "identity" in defaults:
        logger.warning("Removing refused key agents.defaults.identity before write")
        del defaults["identity"]

    return safe


def build_read_command(path: str) -> str:
    """Shell command printing a file, or the missing sentinel if absent."""
    p = shlex.quote(path)
    return f"if [ -f {p} ]; then cat {p}; else printf %s {MISSING_SENTINEL}; fi"


def build_write_command(path: str, content: str, backup: bool = False) -> str:
    """Shell command replacing a file atomically with base64-carried content.

    The payload lands in a sibling temp file first and is renamed over the
    target only after it was fully written. With backup=True an existing
    target is copied to ``<path>.bak`` before the rename.
    """
    payload = base64.b64encode(content.encode("utf-8")).decode("ascii")
    tmp = f"{path}.tmp.{uuid4().hex[:8]}"
    p, t = shlex.quote(path), shlex.quote(tmp)
    parts = [
        "set -e",
        f"trap {shlex.quote('rm -f ' + t)} EXIT",
        f"mkdir -p {shlex.quote(posixpath.dirname(path))}",
        f"printf %s {payload} | base64 -d > {t}",
    ]
    if backup:
        parts.append(f"if [ -f {p} ]; then cp -p {p} {shlex.quote(path + '.bak')}; fi")
    parts.append(f"mv -f {t} {p}")
    return "; ".join(parts)


def build_exists_command(path: str) -> str:
    p = shlex.quote(path)
    return f"test -e {p} && echo yes || echo no"


class GatewayConfigBridge:
    """Document accessor for one container host, over a RemoteExecutor.

    Attributes:
        executor: Executor used for every remote command.
        timeout: Per-command timeout in seconds.
        hot_reload: Send SIGUSR1 to the gateway after writing the main document.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        timeout: float = 30.0,
        hot_reload: bool = True,
    ) -> None:
        self.executor = executor
        self.timeout = timeout
        self.hot_reload = hot_reload

    # =========================================================================
    # Generic helpers
    # =========================================================================

    async def read_text(self, host: str, container: str, path: str) -> str | None:
        """Read a text file; None when it does not exist.

        Raises:
            RemoteExecutionError: If the read command fails.
            RemoteTimeoutError: If the command times out.
        """
        command = build_read_command(path)
        result = await self.executor.execute(host, container, command, self.timeout)
        if not result.ok:
            raise RemoteExecutionError(command, result.exit_code, result.stderr)
        if result.stdout == MISSING_SENTINEL:
            return None
        return result.stdout

    async def write_text(
        self,
        host: str,
        container: str,
        path: str,
        content: str,
        backup: bool = False,
    ) -> None:
        """Atomically replace a text file, creating parent directories.

        Raises:
            RemoteExecutionError: If the write command fails.
            RemoteTimeoutError: If the command times out.
        """
        command = build_write_command(path, content, backup=backup)
        result = await self.executor.execute(host, container, command, self.timeout)
        if not result.ok:
            raise RemoteExecutionError(command, result.exit_code, result.stderr)
        logger.debug("Wrote %s in %s (%d bytes)", path, container, len(content))

    async def file_exists(self, host: str, container: str, path: str) -> bool:
        """True when path exists.

        Raises:
            RemoteExecutionError: If the check itself fails.
        """
        command = build_exists_command(path)
        result = await self.executor.execute(host, container, command, self.timeout)
        if not result.ok:
            raise RemoteExecutionError(command, result.exit_code, result.stderr)
        return result.stdout.strip() == "yes"

    async def read_json(self, host: str, container: str, path: str) -> dict[str, Any] | None:
        """Read and parse a JSON object document.

        Returns:
            The parsed object, or None when the file does not exist.

        Raises:
            ConfigParseError: If the file is empty, not JSON, or not an object.
        """
        text = await self.read_text(host, container, path)
        if text is None:
            return None
        if not text.strip():
            raise ConfigParseError(path, "document is empty")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigParseError(path, str(e)) from e
        if not isinstance(data, dict):
            raise ConfigParseError(path, f"expected a JSON object, got {type(data).__name__}")
        return data

    async def write_json(
        self,
        host: str,
        container: str,
        path: str,
        data: dict[str, Any],
        backup: bool = False,
    ) -> None:
        await self.write_text(host, container, path, json.dumps(data, indent=2) + "\n", backup=backup)

    # =========================================================================
    # Main gateway document
    # =========================================================================

    async def read(self, host: str, container: str) -> dict[str, Any] | None:
        """Fetch the gateway document; None means not provisioned yet."""
        return await self.read_json(host, container, CONFIG_PATH)

    async def write(self, host: str, container: str, document: dict[str, Any]) -> dict[str, Any]:
        """Sanitize and write the gateway document, keeping a .bak copy.

        Returns:
            The document as written (after sanitizing).
        """
        safe = sanitize_document(document)
        await self.write_json(host, container, CONFIG_PATH, safe, backup=True)
        logger.info("Gateway document written in %s on %s", container, host)
        if self.hot_reload:
            await self.reload_gateway(host, container)
        return safe

    async def reload_gateway(self, host: str, container: str) -> bool:
        """Ask a running gateway to re-read its document (SIGUSR1).

        Best effort: returns False instead of raising when the signal could
        not be delivered.
        """
        command = f"kill -USR1 $(pgrep -f '{GATEWAY_PROCESS_PATTERN}' | head -1) 2>/dev/null; true"
        try:
            await self.executor.execute(host, container, command, self.timeout)
        except RemoteError as e:
            logger.warning("Hot reload of gateway in %s failed: %s", container, e)
            return False
        return True
