"""Tests for provider storage and provider synchronisation into containers."""

import json

import pytest

from src.db.models import Provider, ProviderType
from src.errors.domain import NotFoundError, ValidationError
from src.services.gateway_config import AUTH_PROFILES_PATH, CONFIG_PATH, GatewayConfigBridge
from src.services.provider_service import ProviderService
from src.services.provider_sync import (
    ProviderSync,
    choose_default_provider,
    primary_model_for,
    submit_provider_sync,
)
from src.services.remote_executor import ExecResult

CONTAINER = "clawdbot-acme"


@pytest.fixture
def instance(db_session, make_instance):
    return make_instance(db_session)


@pytest.fixture
def providers(db_session, credential_key):
    return ProviderService(db_session, key=credential_key)


@pytest.fixture
def bridge(executor):
    return GatewayConfigBridge(executor, hot_reload=False)


@pytest.fixture
def box(executor):
    box = executor.add_container(CONTAINER)
    box.files[CONFIG_PATH] = json.dumps({
        "gateway": {"port": 18789},
        "agents": {"defaults": {"model": {"primary": "anthropic:claude-sonnet-4-20250514"}}},
    })
    box.files[AUTH_PROFILES_PATH] = json.dumps({"stale": {"apiKey": "old"}})
    return box


@pytest.fixture
def sync(db_session, bridge, providers):
    return ProviderSync(db_session, bridge, providers)


def _json(box, path):
    return json.loads(box.files[path])


class TestProviderService:
    def test_api_key_is_encrypted_at_rest(self, providers, instance):
        provider = providers.create_provider(instance.id, ProviderType.OPENAI, "OpenAI", "sk-live-1")

        assert "sk-live-1" not in provider.encrypted_api_key
        assert providers.decrypt_api_key(provider) == "sk-live-1"

    def test_single_default_per_instance(self, providers, instance):
        a = providers.create_provider(instance.id, "OPENAI", "A", "k1", is_default=True)
        b = providers.create_provider(instance.id, "ANTHROPIC", "B", "k2", is_default=True)

        assert providers.get_provider(a.id).is_default is False
        assert providers.get_provider(b.id).is_default is True

    def test_unknown_type_and_empty_key_rejected(self, providers, instance):
        with pytest.raises(ValidationError):
            providers.create_provider(instance.id, "PAGERDUTY", "x", "k")
        with pytest.raises(ValidationError):
            providers.create_provider(instance.id, ProviderType.OPENAI, "x", "")

    def test_unknown_instance_rejected(self, providers):
        with pytest.raises(NotFoundError):
            providers.create_provider("missing", ProviderType.OPENAI, "x", "k")

    def test_list_active_orders_by_priority(self, providers, instance):
        low = providers.create_provider(instance.id, "OPENAI", "low", "k", priority=5)
        high = providers.create_provider(instance.id, "ANTHROPIC", "high", "k", priority=1)
        off = providers.create_provider(instance.id, "OPENROUTER", "off", "k")
        providers.update_provider(off.id, is_active=False)

        assert [p.id for p in providers.list_active(instance.id)] == [high.id, low.id]

    def test_update_re_encrypts_key(self, providers, instance):
        provider = providers.create_provider(instance.id, "OPENAI", "x", "old-key")
        providers.update_provider(provider.id, api_key="new-key")
        assert providers.decrypt_api_key(provider) == "new-key"

    def test_delete(self, providers, instance):
        provider = providers.create_provider(instance.id, "OPENAI", "x", "k")
        assert providers.delete_provider(provider.id) is True
        assert providers.delete_provider(provider.id) is False


class TestDefaultSelection:
    def test_flagged_default_wins(self):
        a = Provider(type="OPENAI", is_default=False)
        b = Provider(type="ANTHROPIC", is_default=True)
        assert choose_default_provider([a, b]) is b

    def test_first_model_provider_without_flag(self):
        speech = Provider(type="ELEVENLABS", is_default=True)
        a = Provider(type="OPENROUTER", is_default=False)
        assert choose_default_provider([speech, a]) is a

    def test_primary_model_string(self):
        assert primary_model_for(Provider(type="OPENAI", model="gpt-4o")) == "openai:gpt-4o"
        assert primary_model_for(Provider(type="CUSTOM", model=None)) == "custom:default"


class TestProviderSync:
    @pytest.mark.asyncio
    async def test_zero_providers_empties_profiles_and_keeps_model(self, sync, instance, box):
        result = await sync.sync(instance.id)

        assert result.ok
        assert _json(box, AUTH_PROFILES_PATH) == {}
        assert result.default_model is None
        model = _json(box, CONFIG_PATH)["agents"]["defaults"]["model"]["primary"]
        assert model == "anthropic:claude-sonnet-4-20250514"

    @pytest.mark.asyncio
    async def test_profiles_replace_document(self, sync, providers, instance, box):
        providers.create_provider(
            instance.id, ProviderType.OPENAI, "OpenAI", "sk-1", model="gpt-4o",
            base_url="https://api.example.test/v1",
        )
        providers.create_provider(instance.id, ProviderType.ANTHROPIC, "Claude", "sk-ant-2")

        result = await sync.sync(instance.id)

        profiles = _json(box, AUTH_PROFILES_PATH)
        assert set(profiles) == {"openai", "anthropic"}
        assert profiles["openai"] == {
            "name": "OpenAI",
            "type": "OPENAI",
            "apiKey": "sk-1",
            "baseUrl": "https://api.example.test/v1",
            "model": "gpt-4o",
        }
        assert result.profile_count == 2
        assert result.default_model == "openai:gpt-4o"
        assert _json(box, CONFIG_PATH)["agents"]["defaults"]["model"]["primary"] == "openai:gpt-4o"
        assert _json(box, CONFIG_PATH)["gateway"] == {"port": 18789}

    @pytest.mark.asyncio
    async def test_speech_key_goes_to_skill(self, sync, providers, instance, box):
        providers.create_provider(instance.id, ProviderType.ELEVENLABS, "Voice", "el-key", is_default=True)

        result = await sync.sync(instance.id)

        doc = _json(box, CONFIG_PATH)
        assert doc["skills"]["entries"]["sag"]["apiKey"] == "el-key"
        assert result.speech_key_written
        assert result.default_model is None

    @pytest.mark.asyncio
    async def test_null_sections_in_document_are_replaced(self, sync, providers, instance, box):
        box.files[CONFIG_PATH] = json.dumps({"gateway": {"port": 1}, "skills": None, "agents": {"defaults": None}})
        providers.create_provider(instance.id, ProviderType.ELEVENLABS, "Voice", "el-key")
        providers.create_provider(instance.id, ProviderType.OPENAI, "OpenAI", "sk-1", model="gpt-4o")

        result = await sync.sync(instance.id)

        doc = _json(box, CONFIG_PATH)
        assert result.ok
        assert doc["skills"] == {"entries": {"sag": {"apiKey": "el-key"}}}
        assert doc["agents"]["defaults"]["model"] == {"primary": "openai:gpt-4o"}
        assert doc["gateway"] == {"port": 1}

    @pytest.mark.asyncio
    async def test_failed_sub_step_does_not_stop_others(self, sync, providers, executor, instance, box):
        providers.create_provider(instance.id, ProviderType.ANTHROPIC, "Claude", "k", model="claude-opus")
        executor.script(r"auth-profiles\.json\.tmp", ExecResult(1, "", "read-only file system"))

        result = await sync.sync(instance.id)

        assert "profiles" in result.errors
        assert not result.profiles_written
        assert result.default_model == "anthropic:claude-opus"

    @pytest.mark.asyncio
    async def test_undecryptable_provider_is_skipped(self, sync, providers, db_session, instance, box):
        good = providers.create_provider(instance.id, ProviderType.OPENAI, "good", "k1")
        bad = providers.create_provider(instance.id, ProviderType.ANTHROPIC, "bad", "k2")
        bad.encrypted_api_key = good.encrypted_api_key
        db_session.commit()

        result = await sync.sync(instance.id)

        assert f"decrypt:{bad.id}" in result.errors
        assert set(_json(box, AUTH_PROFILES_PATH)) == {"openai"}

    @pytest.mark.asyncio
    async def test_instance_without_container_is_skipped(self, db_session, make_instance, sync, executor):
        bare = make_instance(db_session, slug="bare", with_container=False)
        result = await sync.sync(bare.id)
        assert result.skipped
        assert executor.commands == []

    @pytest.mark.asyncio
    async def test_unknown_instance(self, sync):
        with pytest.raises(NotFoundError):
            await sync.sync("missing")


class TestSubmitProviderSync:
    @pytest.mark.asyncio
    async def test_background_sync(self, session_factory, bridge, instance, box, runner, monkeypatch, credential_key):
        monkeypatch.setattr(
            "src.services.provider_service.get_or_create_key", lambda: credential_key
        )
        db = session_factory()
        ProviderService(db, key=credential_key).create_provider(instance.id, "OPENAI", "x", "sk-bg")
        db.close()

        submit_provider_sync(session_factory, bridge, instance.id, runner=runner)
        await runner.drain()

        assert _json(box, AUTH_PROFILES_PATH)["openai"]["apiKey"] == "sk-bg"

    @pytest.mark.asyncio
    async def test_background_failure_is_logged_not_raised(self, session_factory, bridge, runner, caplog):
        submit_provider_sync(session_factory, bridge, "missing", runner=runner)
        await runner.drain()
        assert any("Provider sync for missing failed" in m for m in caplog.messages)


