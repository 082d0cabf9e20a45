"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./clawpanel.yaml (working directory)
3. ~/.clawpanel/config.yaml (user home)

Environment variables override YAML: CLAWPANEL_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "CLAWPANEL_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class LxcConfig(BaseModel):
    """How the panel reaches LXD hosts and which image new containers use."""

    default_host: str = "localhost"
    local_hosts: list[str] = ["localhost", "127.0.0.1"]
    ssh_user: str = "root"
    ssh_key: str | None = None
    connect_timeout: int = 10
    image: str = "ubuntu:24.04"
    container_prefix: str = "clawdbot-"

    @field_validator("local_hosts", mode="before")
    @classmethod
    def split_host_list(cls, value: Any) -> Any:
        """Accept a comma-separated string (env override form)."""
        if isinstance(value, str):
            return [host.strip() for host in value.split(",") if host.strip()]
        return value


class ProvisioningConfig(BaseModel):
    """Timeouts and delays for the provisioning pipeline, in seconds."""

    probe_timeout: float = 5
    launch_timeout: float = 120
    install_timeout: float = 120
    doctor_timeout: float = 30
    command_timeout: float = 30
    container_settle_seconds: float = 8
    gateway_start_grace_seconds: float = 4
    gateway_retry_delay_seconds: float = 5


class GatewayDefaults(BaseModel):
    """Values written into a freshly generated gateway document."""

    port: int = 18789
    bind: str = "loopback"
    mode: str = "local"
    default_model: str = "anthropic:claude-sonnet-4-20250514"
    agent_version: str = "2026.1.29"
    max_concurrent: int = 4
    subagent_max_concurrent: int = 8
    hot_reload: bool = True


class LoggingConfig(BaseModel):
    """Root logger configuration applied by the CLI."""

    level: str = "info"
    format: Literal["text", "json"] = "text"
    file: str | None = None


class ClawPanelConfig(BaseModel):
    """Top-level configuration for the ClawPanel provisioning core."""

    lxc: LxcConfig = Field(default_factory=LxcConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    gateway: GatewayDefaults = Field(default_factory=GatewayDefaults)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "clawpanel.yaml",
        Path.cwd() / "clawpanel.yml",
        Path.home() / ".clawpanel" / "config.yaml",
        Path.home() / ".clawpanel" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(value: str) -> Any:
    """Coerce an env string to int, float or bool where it looks like one."""
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply CLAWPANEL_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix. For example,
    ``CLAWPANEL_PROVISIONING_INSTALL_TIMEOUT`` maps to section
    ``provisioning``, field ``install_timeout``. Variables that name no
    known section (CLAWPANEL_DB_PATH, CLAWPANEL_CREDENTIAL_KEY) are ignored.
    """
    known_sections = sorted(ClawPanelConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        suffix = key[len(_ENV_PREFIX):].lower()
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix) and len(suffix) > len(section_prefix):
                field = suffix[len(section_prefix):]
                section_data = data.setdefault(section, {})
                if isinstance(section_data, dict):
                    section_data[field] = _coerce(value)
                break
    return data


def load_config(config_path: str | None = None) -> ClawPanelConfig:
    """Load ClawPanel configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.clawpanel/). Defaults plus
            env overrides are used when no file exists.

    Returns:
        Parsed and validated ClawPanelConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return ClawPanelConfig(**data)


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root logger from the logging section."""
    if config.format == "json":
        fmt = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
    else:
        fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=fmt,
        handlers=handlers,
        force=True,
    )
