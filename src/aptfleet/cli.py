"""aptfleet command line interface."""

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from aptfleet.catalog import ResourceCatalog
from aptfleet.compiler import RepositoryCompiler
from aptfleet.config import Settings, load_settings
from aptfleet.constants import CONFIG_FILE, GPG_HOME
from aptfleet.errors import AptFleetError, CatalogOwnershipError, CompileAborted
from aptfleet.models import DNSAddress, RepositorySource
from aptfleet.models.resources import ResourceBase
from aptfleet.publisher import Publisher
from aptfleet.reconcile import CatalogCompiler, SkipMode
from aptfleet.scheduler import Scheduler
from aptfleet.signing import SigningService

logger = logging.getLogger(__name__)
console = Console()

cli = typer.Typer(add_completion=False, no_args_is_help=True, help="Signed APT repositories for a fleet.")

EXIT_ABORTED = 1
EXIT_QUARANTINED = 2


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


def _fail(error: Exception) -> typer.Exit:
    logger.error(str(error))
    return typer.Exit(EXIT_ABORTED)


@cli.callback()
def main_callback(
    ctx: typer.Context,
    config: Path = typer.Option(CONFIG_FILE, "--config", "-c", envvar="APTFLEET_CONFIG", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    if verbose:
        logging.getLogger("aptfleet").setLevel(logging.DEBUG)
    try:
        ctx.obj = load_settings(config)
    except AptFleetError as e:
        raise _fail(e) from e


@cli.command("compile")
def compile_repo(
    ctx: typer.Context,
    dist: list[str] = typer.Option([], "--dist", "-d", help="Distribution to compile (default: all)"),
):
    """Compile intake into signed, published snapshots."""
    failures: dict[str, Exception] = {}
    try:
        repo = _settings(ctx).require_repository()
        compiler = RepositoryCompiler(repo, SigningService(GPG_HOME))
        reports = [compiler.compile(name) for name in dist] if dist else compiler.compile_all()
    except CompileAborted as e:
        reports, failures = e.reports, e.failures
    except (AptFleetError, OSError) as e:
        raise _fail(e) from e

    quarantined = False
    for report in reports:
        state = "published" if report.changed else "unchanged"
        console.print(
            f"[bold]{report.distribution}[/bold]: {state}, {len(report.accepted)} accepted, "
            f"{len(report.duplicates)} duplicate, {len(report.quarantined)} quarantined, "
            f"{len(report.pending)} pending"
        )
        for record in report.quarantined:
            console.print(f"  [red]quarantined[/red] {record.path.name}: {record.reason}")
        quarantined = quarantined or bool(report.quarantined)
    for name, error in failures.items():
        console.print(f"[bold]{name}[/bold]: [red]aborted[/red], previous snapshot stays live: {error}")
    if failures:
        raise typer.Exit(EXIT_ABORTED)
    if quarantined:
        raise typer.Exit(EXIT_QUARANTINED)


@cli.command("list")
def list_packages(ctx: typer.Context, dist: str = typer.Argument(..., help="Distribution name")):
    """Show the live index of a distribution."""
    try:
        repo = _settings(ctx).require_repository()
        snapshot = RepositoryCompiler(repo, SigningService(GPG_HOME)).load_snapshot(dist)
    except AptFleetError as e:
        raise _fail(e) from e
    if snapshot is None:
        console.print(f"{dist} has not been published yet")
        return

    table = Table(title=f"{dist} ({snapshot.digest[:12]}, {snapshot.date})")
    for column in ("Component", "Architecture", "Package", "Version", "Filename"):
        table.add_column(column)
    for (component, architecture), entries in sorted(snapshot.index.items()):
        for entry in entries:
            table.add_row(component, architecture, entry.name, entry.version, entry.filename)
    console.print(table)


@cli.command("publish-key")
def publish_key(ctx: typer.Context):
    """Write the repository public key into the document root."""
    try:
        repo = _settings(ctx).require_repository()
        signer = SigningService(GPG_HOME) if repo.key_file is None else None
        path = Publisher(repo, signer).publish_key()
    except AptFleetError as e:
        raise _fail(e) from e
    console.print(f"Public key published at {path}")


@cli.command()
def vhost(
    ctx: typer.Context,
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout"),
):
    """Render the Apache vhost serving the repository."""
    try:
        publisher = Publisher(_settings(ctx).require_repository())
    except AptFleetError as e:
        raise _fail(e) from e
    if output is None:
        typer.echo(publisher.render_vhost(), nl=False)
    else:
        publisher.write_vhost(output)


@cli.command("keygen")
def keygen(
    name: str = typer.Argument(..., help="Real name on the key"),
    email: str = typer.Argument(..., help="E-mail address on the key"),
):
    """Generate a repository signing key in the keyring."""
    try:
        fingerprint = SigningService(GPG_HOME).generate_key(name, email)
    except AptFleetError as e:
        raise _fail(e) from e
    console.print(f"Generated signing key {fingerprint}")


@cli.command("import-key")
def import_key(path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Key file to import")):
    """Import key material into the signing keyring."""
    try:
        fingerprint = SigningService(GPG_HOME).import_key(path.read_bytes())
    except AptFleetError as e:
        raise _fail(e) from e
    console.print(f"Imported key {fingerprint}")


def _catalog(settings: Settings) -> ResourceCatalog:
    return ResourceCatalog.from_url(settings.node.catalog_url)


def _parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise typer.BadParameter("--at must be an ISO 8601 timestamp") from e


def _build_resource(model: type[ResourceBase], **fields) -> ResourceBase:
    try:
        return model(**fields)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors())
        raise typer.BadParameter(problems) from e


@cli.command("declare-source")
def declare_source(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Resource name"),
    location: str = typer.Argument(..., help="Repository base URL"),
    distribution: str = typer.Argument(..., help="Distribution to install from"),
    tag: list[str] = typer.Option(..., "--tag", "-t", help="Tag of the nodes to receive it"),
    component: list[str] = typer.Option(["main"], "--component", help="Repository component"),
    key_id: str | None = typer.Option(None, help="Fingerprint of the repository key"),
    key_source: str | None = typer.Option(None, help="URL of the repository public key"),
    include_source: bool = typer.Option(False, help="Also add a deb-src line"),
    at: str | None = typer.Option(None, help="Declaration timestamp (default: now)"),
):
    """Declare an APT source for every node carrying one of the tags."""
    settings = _settings(ctx)
    resource = _build_resource(
        RepositorySource,
        name=name,
        tags=frozenset(tag),
        location=location,
        distribution=distribution,
        components=tuple(component),
        key_id=key_id,
        key_source=key_source,
        include_source=include_source,
    )
    if not _catalog(settings).declare(resource, settings.node.node_id, _parse_timestamp(at)):
        console.print(f"[yellow]A newer declaration of {name} is already in the catalog[/yellow]")


@cli.command("declare-host")
def declare_host(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Resource name, used as host name if --hostname is not given"),
    ip: str = typer.Argument(..., help="IP address"),
    tag: list[str] = typer.Option(..., "--tag", "-t", help="Tag of the nodes to receive it"),
    hostname: str | None = typer.Option(None, help="Fully qualified host name"),
    alias: list[str] = typer.Option([], "--alias", help="Additional host name"),
    at: str | None = typer.Option(None, help="Declaration timestamp (default: now)"),
):
    """Declare a host name mapping for every node carrying one of the tags."""
    settings = _settings(ctx)
    resource = _build_resource(
        DNSAddress, name=name, tags=frozenset(tag), ip=ip, hostname=hostname, aliases=tuple(alias)
    )
    if not _catalog(settings).declare(resource, settings.node.node_id, _parse_timestamp(at)):
        console.print(f"[yellow]A newer declaration of {name} is already in the catalog[/yellow]")


@cli.command()
def retract(
    ctx: typer.Context,
    kind: str = typer.Argument(..., help="repository_source or dns_address"),
    name: str = typer.Argument(..., help="Resource name"),
):
    """Withdraw a resource this node declared."""
    settings = _settings(ctx)
    try:
        found = _catalog(settings).retract(kind, name, settings.node.node_id)
    except CatalogOwnershipError as e:
        raise _fail(e) from e
    if not found:
        console.print(f"{kind}/{name} is not in the catalog")


@cli.command()
def pull(ctx: typer.Context):
    """Show the resources this node receives."""
    node = _settings(ctx).node
    table = Table(title=f"{node.node_id} ({', '.join(sorted(node.tags)) or 'no tags'})")
    for column in ("Kind", "Name", "Tags", "Details"):
        table.add_column(column)
    for resource in _catalog(_settings(ctx)).pull(node.tags):
        details = " ".join(f"{k}={v}" for k, v in resource.payload().items() if v not in (None, [], False))
        table.add_row(resource.kind, resource.name, ", ".join(sorted(resource.tags)), details)
    console.print(table)


@cli.command()
def reconcile(
    ctx: typer.Context,
    skip_mode: SkipMode = typer.Option(SkipMode.FAST, help="When to re-download repository keys"),
):
    """Apply the catalog to this node."""
    settings = _settings(ctx)
    report = CatalogCompiler(_catalog(settings), settings.node, skip_mode=skip_mode).reconcile()
    for label, reason in report.failed.items():
        console.print(f"  [red]failed[/red] {label}: {reason}")
    if report.failed:
        raise typer.Exit(EXIT_ABORTED)


def build_scheduler(settings: Settings) -> Scheduler:
    """Schedule the compile job if this node hosts a repository, and always the reconcile job."""
    scheduler = Scheduler()
    if settings.repository is not None:
        compiler = RepositoryCompiler(settings.repository, SigningService(GPG_HOME))
        scheduler.add_job("compile", settings.schedule.compile_interval, compiler.compile_all)
    reconciler = CatalogCompiler(_catalog(settings), settings.node)
    scheduler.add_job("reconcile", settings.schedule.reconcile_interval, reconciler.reconcile)
    return scheduler


@cli.command()
def run(ctx: typer.Context, once: bool = typer.Option(False, help="Run every job once and exit")):
    """Run the compile and reconcile jobs on their intervals."""
    try:
        scheduler = build_scheduler(_settings(ctx))
    except AptFleetError as e:
        raise _fail(e) from e

    async def _serve():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await scheduler.run(stop)

    asyncio.run(scheduler.run_once() if once else _serve())
    disabled = [job.name for job in scheduler.jobs.values() if job.disabled]
    if disabled:
        logger.error(f"Disabled after a fatal error: {', '.join(disabled)}")
        raise typer.Exit(EXIT_ABORTED)


def main() -> None:
    """Main entry point for the aptfleet CLI."""
    cli()


if __name__ == "__main__":
    main()
