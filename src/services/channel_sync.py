"""Push channel settings from the panel into the gateway document.

Each channel type maps to a key in the gateway document
(``plugins.entries.<key>`` and ``channels.<key>``) and carries a table that
renames panel credential fields to the names the gateway expects.
The document is fetched fresh, mutated in place and written back on every
call (last write wins; there is no remote locking).

Rules enforced on ``channels.<key>``:
- never an ``enabled`` key (the gateway refuses to start with it)
- never ``denyFrom``; deny lists only live in the panel's channel config
- an ``open`` DM policy always means ``allowFrom == ["*"]``
- empty, None or missing credential values are not written
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import Channel, ChannelType, Instance
from src.errors.domain import NotFoundError, ValidationError
from src.services.background import BackgroundTasks, background_tasks
from src.services.gateway_config import GatewayConfigBridge, ensure_object
from src.services.errors import RemoteError
from src.utils.redaction import redact_for_logging

logger = logging.getLogger(__name__)

DM_POLICIES = frozenset({"pairing", "allowlist", "open", "disabled"})

# Panel-only keys never copied into the gateway document
INTERNAL_KEYS = frozenset({"contactLabels", "denyFrom", "phone"})


@dataclass(frozen=True)
class ChannelSpec:
    """Per-type gateway key, display label and credential renames."""

    remote_key: str
    label: str
    credential_map: dict[str, str] = field(default_factory=dict)
    config_fields: tuple[str, ...] = ()


CHANNEL_SPECS: dict[ChannelType, ChannelSpec] = {
    ChannelType.WHATSAPP: ChannelSpec("whatsapp", "WhatsApp", {}, ("phone",)),
    ChannelType.TELEGRAM: ChannelSpec(
        "telegram", "Telegram",
        {"botToken": "token", "botUsername": "username"},
        ("botToken", "botUsername"),
    ),
    ChannelType.SLACK: ChannelSpec(
        "slack", "Slack",
        {"botToken": "botToken", "appToken": "appToken", "signingSecret": "signingSecret"},
        ("botToken", "appToken", "signingSecret"),
    ),
    ChannelType.DISCORD: ChannelSpec(
        "discord", "Discord",
        {"botToken": "token", "applicationId": "applicationId"},
        ("botToken", "applicationId"),
    ),
    ChannelType.TEAMS: ChannelSpec(
        "teams", "Microsoft Teams",
        {"appId": "appId", "appPassword": "appPassword", "tenantId": "tenantId"},
        ("appId", "appPassword", "tenantId"),
    ),
    ChannelType.GOOGLE_CHAT: ChannelSpec(
        "google-chat", "Google Chat",
        {"serviceAccountKey": "serviceAccountKey", "spaceId": "spaceId"},
        ("serviceAccountKey", "spaceId"),
    ),
    ChannelType.SIGNAL: ChannelSpec(
        "signal", "Signal",
        {"phone": "phone", "signalCliPath": "signalCliPath"},
        ("phone", "signalCliPath"),
    ),
    ChannelType.IMESSAGE: ChannelSpec(
        "imessage", "iMessage", {"bridgeUrl": "bridgeUrl"}, ("bridgeUrl",)
    ),
    ChannelType.MATRIX: ChannelSpec(
        "matrix", "Matrix",
        {"homeserver": "homeserver", "accessToken": "accessToken", "userId": "userId"},
        ("homeserver", "accessToken", "userId"),
    ),
    ChannelType.MATTERMOST: ChannelSpec(
        "mattermost", "Mattermost",
        {"serverUrl": "url", "botToken": "token"},
        ("serverUrl", "botToken"),
    ),
    ChannelType.NEXTCLOUD: ChannelSpec(
        "nextcloud", "Nextcloud Talk",
        {"serverUrl": "url", "botToken": "token"},
        ("serverUrl", "botToken"),
    ),
    ChannelType.NOSTR: ChannelSpec("nostr", "Nostr"),
    ChannelType.LINE: ChannelSpec(
        "line", "LINE",
        {"channelAccessToken": "channelAccessToken", "channelSecret": "channelSecret"},
        ("channelAccessToken", "channelSecret"),
    ),
    ChannelType.ZALO: ChannelSpec("zalo", "Zalo"),
    ChannelType.WEBHOOK: ChannelSpec(
        "webhook", "Webhook",
        {"webhookUrl": "url", "secret": "secret"},
        ("webhookUrl", "secret"),
    ),
    ChannelType.CLI: ChannelSpec("cli", "CLI / Local"),
    ChannelType.WEB: ChannelSpec(
        "web", "Web Chat", {"allowedOrigins": "allowedOrigins"}, ("allowedOrigins",)
    ),
    ChannelType.API: ChannelSpec("api", "API", {"apiKey": "apiKey"}, ("apiKey",)),
}

_unmapped = set(ChannelType) - set(CHANNEL_SPECS)
if _unmapped:
    raise RuntimeError(f"Channel types without a ChannelSpec: {sorted(t.value for t in _unmapped)}")


def get_channel_spec(channel_type: ChannelType | str) -> ChannelSpec:
    """Resolve a channel type (enum or its name, any case) to its spec.

    Raises:
        ValidationError: If the type is not a supported channel type.
    """
    if isinstance(channel_type, ChannelType):
        return CHANNEL_SPECS[channel_type]
    try:
        return CHANNEL_SPECS[ChannelType(str(channel_type).upper())]
    except ValueError as e:
        raise ValidationError(f"Unknown channel type '{channel_type}'") from e


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def apply_channel_update(
    document: dict[str, Any],
    channel_type: ChannelType | str,
    enabled: bool,
    dm_policy: str | None = None,
    allow_from: list[str] | None = None,
    credentials: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Mutate a gateway document in place for one channel and return it.

    Only ``plugins.entries.<key>.enabled`` and ``channels.<key>`` are
    touched; everything else in the document passes through unchanged.

    Raises:
        ValidationError: On an unknown channel type or DM policy.
    """
    spec = get_channel_spec(channel_type)
    if dm_policy is not None and dm_policy not in DM_POLICIES:
        raise ValidationError(
            f"DM policy '{dm_policy}' is not one of {', '.join(sorted(DM_POLICIES))}"
        )
    key = spec.remote_key

    plugins = ensure_object(document, "plugins")
    entry = ensure_object(ensure_object(plugins, "entries"), key)
    entry["enabled"] = enabled

    channel = ensure_object(ensure_object(document, "channels"), key)

    if credentials:
        for source_key, remote_key in spec.credential_map.items():
            if _is_present(credentials.get(source_key)):
                channel[remote_key] = credentials[source_key]
        for source_key, value in credentials.items():
            if source_key in INTERNAL_KEYS or source_key in spec.credential_map:
                continue
            if _is_present(value):
                channel[source_key] = value

    if dm_policy is not None:
        channel["dmPolicy"] = dm_policy
    if channel.get("dmPolicy") == "open":
        channel["allowFrom"] = ["*"]
    elif allow_from is not None:
        channel["allowFrom"] = list(allow_from)

    channel.pop("denyFrom", None)
    channel.pop("enabled", None)
    return document


async def sync_channel(
    bridge: GatewayConfigBridge,
    host: str,
    container: str,
    channel_type: ChannelType | str,
    enabled: bool,
    dm_policy: str | None = None,
    allow_from: list[str] | None = None,
    credentials: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Read, update and write the gateway document for one channel.

    Returns:
        The document as written, or None when the container has no
        document yet (nothing to sync into).
    """
    # Validate before touching the container.
    get_channel_spec(channel_type)
    if dm_policy is not None and dm_policy not in DM_POLICIES:
        raise ValidationError(
            f"DM policy '{dm_policy}' is not one of {', '.join(sorted(DM_POLICIES))}"
        )

    document = await bridge.read(host, container)
    if document is None:
        logger.info("No gateway document in %s yet, skipping %s sync", container, channel_type)
        return None

    apply_channel_update(document, channel_type, enabled, dm_policy, allow_from, credentials)
    if credentials:
        logger.debug("Channel %s credentials: %s", channel_type, redact_for_logging(credentials))
    written = await bridge.write(host, container, document)
    logger.info("Synced channel %s into %s (enabled=%s)", channel_type, container, enabled)
    return written


async def sync_channel_record(
    db: Session, bridge: GatewayConfigBridge, channel_id: str
) -> dict[str, Any] | None:
    """Push a stored Channel row's state into its instance's container.

    Returns:
        The written document, or None when the instance has no container
        or no document yet.

    Raises:
        NotFoundError: If the channel does not exist.
    """
    channel = db.query(Channel).filter(Channel.id == channel_id).first()
    if channel is None:
        raise NotFoundError("Channel", channel_id)
    instance = channel.instance
    if not instance.has_container:
        logger.info("Instance %s has no container, skipping channel sync", instance.id)
        return None
    return await sync_channel(
        bridge,
        instance.container_host,
        instance.container_name,
        channel.type,
        channel.is_active,
        dm_policy=channel.dm_policy,
        allow_from=channel.allow_from,
        credentials=channel.config,
    )


async def _sync_channel_safe(
    bridge: GatewayConfigBridge,
    host: str,
    container: str,
    channel_type: str,
    enabled: bool,
    options: dict[str, Any],
) -> None:
    try:
        await sync_channel(bridge, host, container, channel_type, enabled, **options)
    except (RemoteError, ValidationError) as e:
        logger.warning("Channel %s sync into %s failed: %s", channel_type, container, e)
    except Exception as e:
        logger.exception("Channel %s sync into %s failed unexpectedly: %s", channel_type, container, e)


def submit_channel_sync(
    instance: Instance,
    bridge: GatewayConfigBridge,
    channel_type: ChannelType | str,
    enabled: bool,
    dm_policy: str | None = None,
    allow_from: list[str] | None = None,
    credentials: dict[str, Any] | None = None,
    runner: BackgroundTasks | None = None,
) -> bool:
    """Schedule a best-effort channel sync after a panel write.

    The panel's relational write is authoritative; failures are logged
    only. Returns False when the instance has no container to sync into.
    """
    if not instance.has_container:
        return False
    options = {
        "dm_policy": dm_policy,
        "allow_from": allow_from,
        "credentials": dict(credentials) if credentials else None,
    }
    (runner or background_tasks).submit(
        _sync_channel_safe(
            bridge,
            instance.container_host,
            instance.container_name,
            str(getattr(channel_type, "value", channel_type)),
            enabled,
            options,
        ),
        name=f"channel-sync:{instance.slug}:{channel_type}",
    )
    return True


def channel_types_metadata() -> list[dict[str, Any]]:
    """Type, label and form fields for every supported channel type."""
    return [
        {"type": t.value, "label": spec.label, "configFields": list(spec.config_fields)}
        for t, spec in CHANNEL_SPECS.items()
    ]
