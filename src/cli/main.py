"""ClawPanel CLI: operator commands for the provisioning core.

Usage:
    clawpanel db init                      Create the panel tables
    clawpanel instance create Acme acme    Register and provision an instance
    clawpanel job show <job-id>            Show job progress
    clawpanel channel sync acme telegram   Push a channel into the container
    clawpanel providers sync acme          Push providers into the container
"""

import asyncio
import logging
from collections.abc import Callable
from typing import NoReturn, Optional

import typer
import yaml
from rich.console import Console
from sqlalchemy.orm import Session

from src.cli.config import ClawPanelConfig, configure_logging, load_config
from src.cli.output import (
    format_container_table,
    format_instance_table,
    format_job_detail,
    format_provider_sync,
    format_validation,
)
from src.db.models import Channel, Instance
from src.errors.domain import DomainError, NotFoundError
from src.services.agent_runtime import AgentRuntime
from src.services.background import background_tasks
from src.services.channel_sync import sync_channel, sync_channel_record
from src.services.errors import RemoteError
from src.services.gateway_config import GatewayConfigBridge
from src.services.instance_service import InstanceService
from src.services.job_service import JobService
from src.services.provider_sync import ProviderSync
from src.services.remote_executor import LxcExecutor, RemoteExecutor

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="clawpanel",
    help="Provision and configure openclaw agent containers",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Panel database")
instance_app = typer.Typer(help="Manage instances")
job_app = typer.Typer(help="Inspect provisioning jobs")
channel_app = typer.Typer(help="Channel configuration")
providers_app = typer.Typer(help="Model provider configuration")
containers_app = typer.Typer(help="Containers on a host")
config_app = typer.Typer(help="Configuration management")

app.add_typer(db_app, name="db")
app.add_typer(instance_app, name="instance")
app.add_typer(job_app, name="job")
app.add_typer(channel_app, name="channel")
app.add_typer(providers_app, name="providers")
app.add_typer(containers_app, name="containers")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to clawpanel.yaml config file"
    ),
):
    """ClawPanel: provisioning core for openclaw instances."""
    global _config_path
    _config_path = config


def _load() -> ClawPanelConfig:
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    configure_logging(cfg.logging)
    return cfg


def get_session_factory() -> Callable[[], Session]:
    from src.db.connection import SessionLocal
    return SessionLocal


def get_executor(cfg: ClawPanelConfig) -> RemoteExecutor:
    return LxcExecutor(cfg.lxc)


def _bridge(executor: RemoteExecutor, cfg: ClawPanelConfig) -> GatewayConfigBridge:
    return GatewayConfigBridge(
        executor,
        timeout=cfg.provisioning.command_timeout,
        hot_reload=cfg.gateway.hot_reload,
    )


def _find_instance(db: Session, ref: str) -> Instance:
    instance = (
        db.query(Instance).filter((Instance.id == ref) | (Instance.slug == ref)).first()
    )
    if instance is None:
        raise NotFoundError("Instance", ref)
    return instance


def _require_container(instance: Instance) -> None:
    if not instance.has_container:
        console.print(f"[yellow]Instance {instance.slug} has no container yet.[/yellow]")
        raise typer.Exit(1)


def _emit(output: str, as_json: bool) -> None:
    # JSON bypasses Rich so long values are not wrapped
    if as_json:
        typer.echo(output)
    else:
        console.print(output)


def _fail(e: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {e}")
    if isinstance(e, RemoteError) and e.remediation:
        console.print(f"[dim]{e.remediation}[/dim]")
    raise typer.Exit(1)


# --- Database ---


@db_app.command("init")
def db_init():
    """Create the panel tables (safe to repeat)."""
    _load()
    from src.db.connection import init_db
    init_db()
    console.print("[green]Database initialised.[/green]")


# --- Instances ---


@instance_app.command("create")
def instance_create(
    name: str = typer.Argument(help="Display name"),
    slug: str = typer.Argument(help="Lowercase slug (a-z, 0-9, -)"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    host: Optional[str] = typer.Option(None, "--host", help="Container host"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Register an instance and provision its container.

    The command stays up until the provisioning job has finished, since
    the job runs on this process's event loop.
    """
    cfg = _load()
    session_factory = get_session_factory()
    executor = get_executor(cfg)

    async def _run() -> str:
        db = session_factory()
        try:
            service = InstanceService(db, session_factory, executor, cfg)
            job_id = service.provision_instance(name, slug, description, host)
        finally:
            db.close()
        console.print(f"Provisioning job [cyan]{job_id}[/cyan] started.")
        await background_tasks.drain()
        return job_id

    try:
        job_id = asyncio.run(_run())
    except DomainError as e:
        _fail(e)
    _print_job(session_factory, job_id, json_output)


@instance_app.command("retry")
def instance_retry(
    instance: str = typer.Argument(help="Instance id or slug"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Re-run provisioning for an instance under a new job."""
    cfg = _load()
    session_factory = get_session_factory()
    executor = get_executor(cfg)

    async def _run() -> str:
        db = session_factory()
        try:
            service = InstanceService(db, session_factory, executor, cfg)
            job_id = service.retry_provisioning(_find_instance(db, instance).id)
        finally:
            db.close()
        await background_tasks.drain()
        return job_id

    try:
        job_id = asyncio.run(_run())
    except DomainError as e:
        _fail(e)
    _print_job(session_factory, job_id, json_output)


@instance_app.command("list")
def instance_list(
    refresh: bool = typer.Option(False, "--refresh", help="Refresh status from the host first"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to refresh from"),
    all_instances: bool = typer.Option(False, "--all", help="Include hidden instances"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List registered instances."""
    cfg = _load()
    session_factory = get_session_factory()
    db = session_factory()
    try:
        service = InstanceService(db, session_factory, get_executor(cfg), cfg)
        if refresh:
            asyncio.run(service.refresh_instance_statuses(host))
        _emit(format_instance_table(service.list_instances(all_instances), as_json=json_output), json_output)
    finally:
        db.close()


@instance_app.command("validate")
def instance_validate(
    instance: str = typer.Argument(help="Instance id or slug"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run health checks inside an instance's container."""
    cfg = _load()
    executor = get_executor(cfg)
    db = get_session_factory()()
    try:
        target = _find_instance(db, instance)
        _require_container(target)
        runtime = AgentRuntime(
            executor, target.container_host, target.container_name,
            cfg.provisioning, _bridge(executor, cfg),
        )
        checks = asyncio.run(runtime.validate_instance())
    except (DomainError, RemoteError) as e:
        _fail(e)
    finally:
        db.close()
    _emit(format_validation(checks, as_json=json_output), json_output)
    if any(c.status == "error" for c in checks):
        raise typer.Exit(1)


# --- Jobs ---


def _print_job(session_factory: Callable[[], Session], job_id: str, as_json: bool) -> None:
    db = session_factory()
    try:
        summary = JobService(db).get_job_summary(job_id)
    finally:
        db.close()
    _emit(format_job_detail(summary, as_json=as_json), as_json)
    if summary["status"] == "failed":
        raise typer.Exit(1)


@job_app.command("show")
def job_show(
    job_id: str = typer.Argument(help="Job ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a job and the status of each step."""
    _load()
    try:
        _print_job(get_session_factory(), job_id, json_output)
    except DomainError as e:
        _fail(e)


# --- Channels ---


@channel_app.command("sync")
def channel_sync_cmd(
    instance: str = typer.Argument(help="Instance id or slug"),
    channel_type: str = typer.Argument(help="Channel type, e.g. telegram"),
    disable: bool = typer.Option(False, "--disable", help="Write the channel as disabled"),
    dm_policy: Optional[str] = typer.Option(None, "--dm-policy", help="pairing|allowlist|open|disabled"),
    allow_from: Optional[list[str]] = typer.Option(None, "--allow-from", help="Allowed sender (repeatable)"),
    settings: Optional[list[str]] = typer.Option(None, "--set", help="Credential key=value (repeatable)"),
):
    """Push a channel's settings into the gateway document.

    Without options the stored channel record is synced; options sync the
    given values directly.
    """
    cfg = _load()
    executor = get_executor(cfg)
    bridge = _bridge(executor, cfg)
    credentials: dict[str, str] = {}
    for item in settings or []:
        key, sep, value = item.partition("=")
        if not sep:
            console.print(f"[red]--set expects key=value, got '{item}'[/red]")
            raise typer.Exit(1)
        credentials[key] = value

    db = get_session_factory()()
    try:
        target = _find_instance(db, instance)
        _require_container(target)
        record = (
            db.query(Channel)
            .filter(Channel.instance_id == target.id, Channel.type == channel_type.upper())
            .first()
        )
        use_record = record is not None and not (disable or dm_policy or allow_from or credentials)
        if use_record:
            written = asyncio.run(sync_channel_record(db, bridge, record.id))
        else:
            written = asyncio.run(sync_channel(
                bridge, target.container_host, target.container_name, channel_type,
                not disable, dm_policy=dm_policy, allow_from=allow_from,
                credentials=credentials or None,
            ))
    except (DomainError, RemoteError) as e:
        _fail(e)
    finally:
        db.close()

    if written is None:
        console.print("[yellow]No gateway document in the container yet; nothing synced.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Channel {channel_type} synced into {target.container_name}.[/green]")


# --- Providers ---


@providers_app.command("sync")
def providers_sync(
    instance: str = typer.Argument(help="Instance id or slug"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Push active providers into the instance's container."""
    cfg = _load()
    executor = get_executor(cfg)
    db = get_session_factory()()
    try:
        target = _find_instance(db, instance)
        result = asyncio.run(ProviderSync(db, _bridge(executor, cfg)).sync(target.id))
    except DomainError as e:
        _fail(e)
    finally:
        db.close()
    _emit(format_provider_sync(result, as_json=json_output), json_output)
    if not result.ok:
        raise typer.Exit(1)


# --- Containers ---


@containers_app.command("list")
def containers_list(
    host: Optional[str] = typer.Option(None, "--host", help="Container host"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List containers on a host."""
    cfg = _load()
    executor = get_executor(cfg)
    try:
        containers = asyncio.run(executor.list_containers(host or cfg.lxc.default_host))
    except RemoteError as e:
        _fail(e)
    _emit(format_container_table(containers, as_json=json_output), json_output)


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration."""
    cfg = _load()

    console.print("[bold]LXC:[/bold]")
    console.print(f"  default_host: {cfg.lxc.default_host}")
    console.print(f"  local_hosts: {', '.join(cfg.lxc.local_hosts)}")
    console.print(f"  ssh_user: {cfg.lxc.ssh_user}")
    console.print(f"  ssh_key: {'set' if cfg.lxc.ssh_key else 'not set'}")
    console.print(f"  image: {cfg.lxc.image}")

    console.print("\n[bold]Provisioning:[/bold]")
    for field, value in cfg.provisioning.model_dump().items():
        console.print(f"  {field}: {value}")

    console.print("\n[bold]Gateway:[/bold]")
    for field, value in cfg.gateway.model_dump().items():
        console.print(f"  {field}: {value}")

    console.print("\n[bold]Logging:[/bold]")
    console.print(f"  level: {cfg.logging.level}")
    console.print(f"  format: {cfg.logging.format}")
    console.print(f"  file: {cfg.logging.file or '-'}")


@config_app.command("validate")
def config_validate(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate a config file."""
    path = config or _config_path
    try:
        cfg = load_config(config_path=path)
        console.print("[green]Config is valid.[/green]")
        console.print(f"  Default host: {cfg.lxc.default_host}")
        console.print(f"  Image: {cfg.lxc.image}")
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
