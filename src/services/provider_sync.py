"""Push an instance's active providers into its container.

Three independent sub-steps, each best effort:

1. ``profiles``: the credential-profile document is replaced as a whole
   (one profile per active provider, keyed by lower-cased type), so
   deleted or deactivated providers disappear.
2. ``speech``: the speech-synthesis provider's key goes to
   ``skills.entries.sag.apiKey`` in the gateway document.
3. ``default_model``: ``agents.defaults.model.primary`` is set to
   ``<type>:<model or 'default'>`` of the default provider.

A failing sub-step is recorded in the result and does not stop the others.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import Instance, Provider, ProviderType
from src.errors.domain import NotFoundError
from src.services.background import BackgroundTasks, background_tasks
from src.services.credential_encryption import CredentialDecryptionError
from src.services.errors import RemoteError
from src.services.gateway_config import AUTH_PROFILES_PATH, GatewayConfigBridge, ensure_object
from src.services.provider_service import ProviderService

logger = logging.getLogger(__name__)

# Providers whose key feeds the speech skill rather than the model list
SPEECH_PROVIDER_TYPES = frozenset({ProviderType.ELEVENLABS.value})
SPEECH_SKILL = "sag"


@dataclass
class ResolvedProvider:
    """A provider row with its API key decrypted."""

    provider: Provider
    api_key: str


@dataclass
class ProviderSyncResult:
    """Outcome of one provider sync.

    Attributes:
        skipped: Instance has no container; nothing was attempted.
        profiles_written: Credential-profile document replaced.
        speech_key_written: Speech skill key written (False when no
            speech provider is active).
        default_model: Primary model written, or None when none was set.
        errors: Sub-step name to error text for every failed sub-step.
    """

    skipped: bool = False
    profiles_written: bool = False
    speech_key_written: bool = False
    default_model: str | None = None
    profile_count: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def build_auth_profiles(providers: list[ResolvedProvider]) -> dict[str, Any]:
    """Profiles document: one entry per provider keyed by lower-cased type."""
    profiles: dict[str, Any] = {}
    for item in providers:
        p = item.provider
        profile: dict[str, Any] = {"name": p.name, "type": p.type, "apiKey": item.api_key}
        if p.base_url:
            profile["baseUrl"] = p.base_url
        if p.model:
            profile["model"] = p.model
        profiles[p.type.lower()] = profile
    return profiles


def choose_default_provider(providers: list[Provider]) -> Provider | None:
    """The flagged default, else the first active model provider.

    ``providers`` must already be ordered by priority. Speech providers
    never become the default model.
    """
    candidates = [p for p in providers if p.type not in SPEECH_PROVIDER_TYPES]
    for provider in candidates:
        if provider.is_default:
            return provider
    return candidates[0] if candidates else None


def primary_model_for(provider: Provider) -> str:
    return f"{provider.type.lower()}:{provider.model or 'default'}"


class ProviderSync:
    """Provider synchronisation for one panel database."""

    def __init__(
        self,
        db: Session,
        bridge: GatewayConfigBridge,
        providers: ProviderService | None = None,
    ) -> None:
        self.db = db
        self.bridge = bridge
        self.providers = providers or ProviderService(db)

    def _resolve(self, instance_id: str, result: ProviderSyncResult) -> list[ResolvedProvider]:
        resolved = []
        for provider in self.providers.list_active(instance_id):
            try:
                resolved.append(ResolvedProvider(provider, self.providers.decrypt_api_key(provider)))
            except CredentialDecryptionError as e:
                logger.error("Cannot decrypt API key of provider %s: %s", provider.id, e)
                result.errors[f"decrypt:{provider.id}"] = str(e)
        return resolved

    async def sync(self, instance_id: str) -> ProviderSyncResult:
        """Run all sub-steps for an instance.

        Raises:
            NotFoundError: If the instance does not exist.
        """
        instance = self.db.get(Instance, instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)

        result = ProviderSyncResult()
        if not instance.has_container:
            result.skipped = True
            return result

        host, container = instance.container_host, instance.container_name
        resolved = self._resolve(instance_id, result)

        profiles = build_auth_profiles(resolved)
        try:
            await self.bridge.write_json(host, container, AUTH_PROFILES_PATH, profiles)
            result.profiles_written = True
            result.profile_count = len(profiles)
        except RemoteError as e:
            logger.warning("Writing auth profiles into %s failed: %s", container, e)
            result.errors["profiles"] = str(e)

        speech = next((r for r in resolved if r.provider.type in SPEECH_PROVIDER_TYPES), None)
        if speech is not None:
            try:
                result.speech_key_written = await self._update_document(
                    host, container, _set_speech_key, speech.api_key
                )
            except RemoteError as e:
                logger.warning("Writing speech key into %s failed: %s", container, e)
                result.errors["speech"] = str(e)

        default = choose_default_provider([r.provider for r in resolved])
        if default is not None:
            primary = primary_model_for(default)
            try:
                if await self._update_document(host, container, _set_primary_model, primary):
                    result.default_model = primary
            except RemoteError as e:
                logger.warning("Writing default model into %s failed: %s", container, e)
                result.errors["default_model"] = str(e)

        logger.info(
            "Provider sync for %s: %d profile(s), default=%s, errors=%s",
            instance.slug, result.profile_count, result.default_model, sorted(result.errors),
        )
        return result

    async def _update_document(self, host: str, container: str, mutate, value: str) -> bool:
        document = await self.bridge.read(host, container)
        if document is None:
            logger.info("No gateway document in %s yet", container)
            return False
        mutate(document, value)
        await self.bridge.write(host, container, document)
        return True


def _set_speech_key(document: dict[str, Any], api_key: str) -> None:
    entry = ensure_object(ensure_object(ensure_object(document, "skills"), "entries"), SPEECH_SKILL)
    entry["apiKey"] = api_key


def _set_primary_model(document: dict[str, Any], primary: str) -> None:
    model = ensure_object(ensure_object(ensure_object(document, "agents"), "defaults"), "model")
    model["primary"] = primary


async def _sync_providers_safe(session_factory, bridge: GatewayConfigBridge, instance_id: str) -> None:
    db = session_factory()
    try:
        result = await ProviderSync(db, bridge).sync(instance_id)
        if not result.ok:
            logger.warning("Provider sync for %s had errors: %s", instance_id, result.errors)
    except Exception as e:
        logger.exception("Provider sync for %s failed: %s", instance_id, e)
    finally:
        db.close()


def submit_provider_sync(
    session_factory,
    bridge: GatewayConfigBridge,
    instance_id: str,
    runner: BackgroundTasks | None = None,
) -> None:
    """Schedule a best-effort provider sync after a panel write.

    The task opens its own session from session_factory since the
    caller's session is gone by the time it runs.
    """
    (runner or background_tasks).submit(
        _sync_providers_safe(session_factory, bridge, instance_id),
        name=f"provider-sync:{instance_id}",
    )
