"""Tests for CLI command invocation against a simulated container host."""

import json

import pytest
from typer.testing import CliRunner

from src.cli import main as cli_main
from src.cli.main import app
from src.db.models import Channel, ChannelType, InstanceStatus, JobStatus
from src.services.gateway_config import AUTH_PROFILES_PATH, CONFIG_PATH
from src.services.job_service import JobService
from src.services.provider_service import ProviderService

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path, session_factory, executor, credential_key):
    """Point the CLI at the test database and the fake executor."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("CONTAINER_SETTLE_SECONDS", "GATEWAY_START_GRACE_SECONDS", "GATEWAY_RETRY_DELAY_SECONDS"):
        monkeypatch.setenv(f"CLAWPANEL_PROVISIONING_{name}", "0")
    monkeypatch.setattr(cli_main, "get_session_factory", lambda: session_factory)
    monkeypatch.setattr(cli_main, "get_executor", lambda cfg: executor)
    monkeypatch.setattr(cli_main, "configure_logging", lambda cfg: None)
    monkeypatch.setattr("src.services.provider_service.get_or_create_key", lambda: credential_key)
    monkeypatch.setattr(cli_main, "_config_path", None)


class TestInstanceCommands:
    def test_create_provisions_and_prints_job(self, session_factory, executor):
        result = runner.invoke(app, ["instance", "create", "Acme Support", "acme", "--json"])

        assert result.exit_code == 0, result.output
        summary = json.loads(result.output[result.output.index("{"):])
        assert summary["status"] == JobStatus.completed.value
        assert summary["completed_steps"] == 8
        assert "clawdbot-acme" in executor.containers

    def test_create_duplicate_slug_fails(self, db_session, make_instance):
        make_instance(db_session, slug="acme")

        result = runner.invoke(app, ["instance", "create", "Acme", "acme"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_create_failure_exits_nonzero(self, executor):
        executor.launch_error = RuntimeError("no storage pool")

        result = runner.invoke(app, ["instance", "create", "Acme", "acme"])

        assert result.exit_code == 1
        assert "failed" in result.output

    def test_retry_by_slug(self, db_session, make_instance, executor):
        make_instance(db_session, slug="acme", status=InstanceStatus.error.value)

        result = runner.invoke(app, ["instance", "retry", "acme"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output

    def test_retry_unknown_instance(self):
        result = runner.invoke(app, ["instance", "retry", "ghost"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_list_with_refresh(self, db_session, make_instance, executor):
        make_instance(db_session, slug="acme", status=InstanceStatus.stopped.value)
        executor.add_container("clawdbot-acme", status="Running")

        result = runner.invoke(app, ["instance", "list", "--refresh", "--json"])

        assert result.exit_code == 0, result.output
        rows = json.loads(result.output)
        assert [(r["slug"], r["status"]) for r in rows] == [("acme", "running")]

    def test_validate_reports_checks(self, db_session, make_instance, executor):
        make_instance(db_session, slug="acme")
        executor.add_provisioned_container("clawdbot-acme")

        result = runner.invoke(app, ["instance", "validate", "acme", "--json"])

        assert result.exit_code == 0, result.output
        names = [c["name"] for c in json.loads(result.output)]
        assert names[0] == "openclaw_installed"

    def test_validate_exits_nonzero_on_error_check(self, db_session, make_instance, executor):
        make_instance(db_session, slug="acme")
        executor.add_container("clawdbot-acme")

        result = runner.invoke(app, ["instance", "validate", "acme"])

        assert result.exit_code == 1


class TestJobShow:
    def test_show_failed_job_with_remediation(self, db_session, make_instance):
        instance = make_instance(db_session)
        jobs = JobService(db_session)
        job = jobs.create_job(instance.id, "Provision", ["Create LXC container"])
        jobs.start_job(job.id)
        jobs.fail_job(job.id, "Command timed out after 120s", error_code="E-3001")

        result = runner.invoke(app, ["job", "show", job.id])

        assert result.exit_code == 1
        assert "E-3001" in result.output
        assert "Fix:" in result.output

    def test_show_unknown_job(self):
        result = runner.invoke(app, ["job", "show", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestSyncCommands:
    @pytest.fixture
    def box(self, executor):
        box = executor.add_container("clawdbot-acme")
        box.files[CONFIG_PATH] = json.dumps({"gateway": {"port": 18789}})
        return box

    def test_channel_sync_with_options(self, db_session, make_instance, box):
        make_instance(db_session)

        result = runner.invoke(app, [
            "channel", "sync", "acme", "telegram",
            "--set", "botToken=123:abc", "--dm-policy", "allowlist", "--allow-from", "+15550100",
        ])

        assert result.exit_code == 0, result.output
        telegram = json.loads(box.files[CONFIG_PATH])["channels"]["telegram"]
        assert telegram == {"token": "123:abc", "dmPolicy": "allowlist", "allowFrom": ["+15550100"]}

    def test_channel_sync_from_stored_record(self, db_session, make_instance, box):
        instance = make_instance(db_session)
        db_session.add(Channel(
            instance_id=instance.id,
            type=ChannelType.DISCORD.value,
            name="Community",
            config_json=json.dumps({"botToken": "stored"}),
        ))
        db_session.commit()

        result = runner.invoke(app, ["channel", "sync", "acme", "discord"])

        assert result.exit_code == 0, result.output
        document = json.loads(box.files[CONFIG_PATH])
        assert document["channels"]["discord"]["token"] == "stored"

    def test_channel_sync_rejects_bad_setting(self, db_session, make_instance, box):
        make_instance(db_session)
        result = runner.invoke(app, ["channel", "sync", "acme", "telegram", "--set", "oops"])
        assert result.exit_code == 1

    def test_channel_sync_without_document(self, db_session, make_instance, executor):
        make_instance(db_session)
        executor.add_container("clawdbot-acme")

        result = runner.invoke(app, ["channel", "sync", "acme", "telegram"])

        assert result.exit_code == 1
        assert "nothing synced" in result.output

    def test_providers_sync(self, db_session, make_instance, box, credential_key):
        instance = make_instance(db_session)
        ProviderService(db_session, key=credential_key).create_provider(
            instance.id, "OPENAI", "OpenAI", "sk-cli", model="gpt-4o"
        )

        result = runner.invoke(app, ["providers", "sync", "acme", "--json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["default_model"] == "openai:gpt-4o"
        assert json.loads(box.files[AUTH_PROFILES_PATH])["openai"]["apiKey"] == "sk-cli"


class TestContainersAndConfig:
    def test_containers_list(self, executor):
        executor.add_container("clawdbot-acme")
        result = runner.invoke(app, ["containers", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output)[0]["name"] == "clawdbot-acme"

    def test_containers_list_unreachable_host(self, executor):
        executor.unreachable_hosts.add("10.0.0.5")
        result = runner.invoke(app, ["containers", "list", "--host", "10.0.0.5"])
        assert result.exit_code == 1
        assert "E-3003" in result.output

    def test_config_show_uses_env_override(self, monkeypatch):
        monkeypatch.setenv("CLAWPANEL_LXC_IMAGE", "debian/12")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "debian/12" in result.output

    def test_config_validate_missing_file(self, tmp_path):
        result = runner.invoke(app, ["config", "validate", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_config_validate_rejects_bad_values(self, tmp_path):
        config_file = tmp_path / "clawpanel.yaml"
        config_file.write_text("lxc:\n  connect_timeout: soon\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(config_file)])

        assert result.exit_code == 1
