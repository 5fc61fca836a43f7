"""Thin CLI wrapper for imageforge.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console

from imageforge import __version__
from imageforge.config import Settings, get_settings, print_settings_json

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from imageforge.builds.schema import BuildConfig
    from imageforge.ledger.ledger import ReleaseReport
    from imageforge.providers import ProviderSet

app = typer.Typer(
    name="imageforge",
    help="Build deployable OS volume images with guaranteed host cleanup",
    no_args_is_help=True,
)
console = Console()

# Exit code of a build that was cancelled (SIGINT convention)
EXIT_ABORTED = 130

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "aborted": "yellow",
    "running": "blue",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"imageforge version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """imageforge - build, customize and capture OS volume images."""


def _echo_json(data: Any) -> None:
    """Print JSON without wrapping or markup so it stays machine-readable."""
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def _setup_logging(settings: Settings) -> None:
    from imageforge.log import configure_logging

    configure_logging(settings.log_level, settings.log_file)


def _open_db(settings: Settings) -> sessionmaker[Session]:
    from imageforge.db import open_database

    return open_database(settings.db_url)


def _load_providers(settings: Settings) -> ProviderSet:
    from imageforge.providers import ProviderLoadError, load_providers

    try:
        return load_providers(settings.providers)
    except ProviderLoadError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None


def _load_config(path: Path) -> BuildConfig:
    from pydantic import ValidationError
    from yaml import YAMLError

    from imageforge.builds.io import load_build_config

    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)

    try:
        return load_build_config(path)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except (ValueError, YAMLError) as e:
        console.print(f"[red]Invalid build config: {e}[/red]")
        raise typer.Exit(code=1) from None


def _print_release_report(report: ReleaseReport, title: str) -> None:
    console.print(f"[bold]{title}:[/bold]")
    if not report.released and not report.failures:
        console.print("  Nothing to release")
    for handle in report.released:
        console.print(f"  [green]released[/green] {handle.description}")
    for failure in report.failures:
        console.print(f"  [red]FAILED[/red] {failure.kind}:{failure.resource}")
        console.print(f"    {failure.error}", markup=False)
    console.print(f"  Session marker cleared: {report.marker_cleared}")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    build_timeout = (
        f"{settings.build_timeout}" if settings.build_timeout else "(no limit)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Working directory:   {settings.work_dir}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Download directory:  {settings.download_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Providers:           {settings.providers or '(not configured)'}")
    console.print(f"  Cache enabled:       {settings.cache_enabled}")
    console.print(f"  Auto recover:        {settings.auto_recover}")
    console.print(f"  Recovery upfront:    {settings.reserve_recovery_upfront}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Downloads:[/bold]")
    console.print(f"  Methods:             {', '.join(settings.download_methods)}")
    console.print(f"  Max downloads:       {settings.max_concurrent_downloads}")
    console.print(f"  Retries per method:  {settings.download_retries}")
    console.print(f"  Backoff step:        {settings.download_backoff}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  VM timeout:          {settings.vm_timeout}")
    console.print(f"  VM poll interval:    {settings.vm_poll_interval}")
    console.print(f"  Build timeout:       {build_timeout}")


builds_app = typer.Typer(help="Build images")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    config_path: Annotated[Path, typer.Argument(help="Build configuration (YAML/JSON)")],
    no_cache: Annotated[
        bool,
        typer.Option("--no-cache", help="Build from scratch even if a cached volume exists"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run a build end to end.

    Ctrl-C cancels the build; resources created so far are still released.
    """
    from imageforge.pipeline import CancellationToken, Pipeline
    from imageforge.types import SessionStatus

    settings = get_settings()
    build_config = _load_config(config_path)
    _setup_logging(settings)
    providers = _load_providers(settings)
    factory = _open_db(settings)

    token = CancellationToken(settings.build_timeout)

    def on_sigint(signum: int, frame: object) -> None:
        if token.cancelled:
            console.print("[yellow]Cleanup in progress, please wait...[/yellow]")
            return
        console.print("[yellow]Cancelling build; releasing resources...[/yellow]")
        token.cancel("interrupted by user")

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        pipeline = Pipeline(
            settings,
            providers,
            session_factory=factory,
            token=token,
            use_cache=not no_cache,
        )
        result = pipeline.run(build_config)
    finally:
        signal.signal(signal.SIGINT, previous)

    if json_output:
        _echo_json(result.to_dict())
    else:
        color = STATUS_COLORS.get(result.status.value, "white")
        console.print(f"[{color}]Build {result.status.value}[/{color}]")
        console.print(f"  Session:     {result.session_id}")
        console.print(f"  Cache hit:   {result.cache_hit}")
        console.print(f"  Stages:      {' -> '.join(result.stages)}")
        if result.artifact:
            console.print(f"  Artifact:    {result.artifact.path}")
            console.print(f"  SHA-256:     {result.artifact.sha256}")
        if result.manifest_path:
            console.print(f"  Manifest:    {result.manifest_path}")
        if result.failed_stage:
            console.print(f"  Failed in:   {result.failed_stage}")
        if result.error:
            console.print(f"  Error:       {result.error}", markup=False)
        for failure in result.partial_failures:
            console.print(
                f"  [yellow]Partial failure[/yellow] ({failure.stage}) {failure.item}: "
                f"{failure.error}"
            )
        if result.release_report and not result.release_report.ok:
            _print_release_report(result.release_report, "Release warnings")
            console.print(
                "[yellow]Run 'imageforge session recover' to finish cleanup[/yellow]"
            )
        if result.log_path:
            console.print(f"  Log:         {result.log_path}")

    if result.status == SessionStatus.ABORTED:
        raise typer.Exit(code=EXIT_ABORTED)
    if not result.succeeded:
        raise typer.Exit(code=1)


@builds_app.command("validate")
def build_validate(
    config_path: Annotated[Path, typer.Argument(help="Build configuration to validate")],
) -> None:
    """Validate a build configuration without building."""
    from imageforge.acquisition.fingerprint import BuildFingerprint

    build_config = _load_config(config_path)
    fingerprint = BuildFingerprint.from_config(build_config)

    console.print(f"[green]✓ Valid build config: {config_path.name}[/green]")
    console.print(
        f"  Product:        {build_config.release} {build_config.sku} {build_config.version}"
    )
    if build_config.image_index is not None:
        console.print(f"  Image index:    {build_config.image_index}")
    else:
        console.print(f"  Edition:        {build_config.edition}")
    console.print(f"  Disk size:      {build_config.disk_size_gb} GiB")
    if build_config.features:
        console.print(f"  Features:       {', '.join(sorted(build_config.features))}")
    console.print(f"  Updates:        {len(build_config.updates)}")
    console.print(f"  Drivers:        {len(build_config.drivers)}")
    console.print(f"  Customization:  {build_config.requires_customization}")
    console.print(f"  Artifact:       {build_config.artifact_name}")
    console.print(f"  Fingerprint:    {fingerprint.short_key}")


session_app = typer.Typer(help="Inspect and recover build sessions")
app.add_typer(session_app, name="session")


@session_app.command("status")
def session_status(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show whether a session is active or left behind by a crash."""
    from imageforge.ledger.marker import SessionMarker
    from imageforge.ledger.queries import list_outstanding_entries

    settings = get_settings()
    marker = SessionMarker(settings.marker_path)
    factory = _open_db(settings)

    if not marker.exists():
        state = "idle"
    elif marker.is_locked_elsewhere():
        state = "active"
    else:
        state = "stale"
    info = marker.read()

    with factory() as session:
        outstanding = [
            {"kind": e.kind, "resource": e.resource_key}
            for e in list_outstanding_entries(session)
        ]

    if json_output:
        _echo_json(
            {
                "state": state,
                "marker_path": str(marker.path),
                "session_id": info.session_id if info else None,
                "pid": info.pid if info else None,
                "started_at": info.started_at if info else None,
                "outstanding": outstanding,
            }
        )
        return

    color = {"idle": "green", "active": "blue", "stale": "red"}[state]
    console.print(f"Session state: [{color}]{state}[/{color}]")
    if info:
        console.print(f"  Session:   {info.session_id}")
        console.print(f"  PID:       {info.pid}")
        console.print(f"  Started:   {info.started_at}")
    if outstanding:
        console.print(f"  Recorded resources: {len(outstanding)}")
        for item in outstanding:
            console.print(f"    - {item['kind']}: {item['resource']}", markup=False)
    if state == "stale":
        console.print("[yellow]Run 'imageforge session recover' to clean up[/yellow]")


@session_app.command("recover")
def session_recover(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Release resources left behind by a session that did not exit cleanly."""
    from imageforge.ledger import ResourceLedger, SessionActiveError

    settings = get_settings()
    _setup_logging(settings)
    providers = _load_providers(settings)
    factory = _open_db(settings)

    ledger = ResourceLedger(providers, settings, factory)
    try:
        report = ledger.recover_orphaned()
    except SessionActiveError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _echo_json(report.to_dict())
    else:
        _print_release_report(report, "Recovery")

    if not report.ok:
        raise typer.Exit(code=1)


@session_app.command("list")
def session_list(
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status (running/succeeded/failed/aborted)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of sessions to return"),
    ] = 50,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build sessions, newest first."""
    from imageforge.ledger.queries import list_sessions
    from imageforge.types import SessionStatus

    status_filter: SessionStatus | None = None
    if status:
        try:
            status_filter = SessionStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: running, succeeded, failed, aborted")
            raise typer.Exit(code=1) from None

    factory = _open_db(get_settings())
    with factory() as session:
        records = list_sessions(session, status=status_filter, limit=limit)

        if json_output:
            _echo_json([_session_to_dict(r) for r in records])
            return

        if not records:
            console.print("[yellow]No build sessions found[/yellow]")
            return

        console.print(f"[bold]Found {len(records)} session(s):[/bold]")
        console.print()
        for r in records:
            color = STATUS_COLORS.get(r.status, "white")
            console.print(f"  [{color}]{r.session_id[:12]}[/{color}] {r.status}")
            console.print(f"    Started:   {r.started_at.isoformat()}")
            console.print(f"    Cache hit: {r.cache_hit}")
            if r.failed_stage:
                console.print(f"    Failed in: {r.failed_stage}")
            if r.error_message:
                console.print(f"    Error:     {r.error_message}", markup=False)
            console.print()


@session_app.command("show")
def session_show(
    session_id: Annotated[str, typer.Argument(help="Session ID or unique prefix")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of one build session."""
    from imageforge.ledger.queries import SessionNotFoundError, get_session_record

    factory = _open_db(get_settings())
    with factory() as session:
        try:
            record = get_session_record(session, session_id)
        except SessionNotFoundError:
            console.print(f"[red]Session not found: {session_id}[/red]")
            raise typer.Exit(code=1) from None

        data = _session_to_dict(record)
        data["summary"] = record.summary

    if json_output:
        _echo_json(data)
        return

    for key, value in data.items():
        if key == "summary" or value is None:
            continue
        console.print(f"  {key.replace('_', ' ').capitalize():14} {value}", markup=False)
    summary = data["summary"] or {}
    for failure in summary.get("partial_failures", []):
        console.print(
            f"  [yellow]Partial failure[/yellow] ({failure['stage']}) "
            f"{failure['item']}: {failure['error']}"
        )


def _session_to_dict(record: Any) -> dict[str, Any]:
    return {
        "session_id": record.session_id,
        "status": record.status,
        "fingerprint": record.fingerprint,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "failed_stage": record.failed_stage,
        "error_code": record.error_code,
        "error_message": record.error_message,
        "cache_hit": record.cache_hit,
        "artifact_path": record.artifact_path,
    }


cache_app = typer.Typer(help="Manage the patched volume cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached volumes, newest first."""
    from imageforge.acquisition.cache import ArtifactCache

    cache = ArtifactCache(get_settings().cache_dir)
    entries = cache.entries()

    if json_output:
        _echo_json([{**e.to_dict(), "image_path": str(e.image_path)} for e in entries])
        return

    if not entries:
        console.print("[yellow]No cached volumes[/yellow]")
        return

    console.print(f"[bold]{len(entries)} cached volume(s):[/bold]")
    for e in entries:
        fp = e.fingerprint
        console.print(f"  {e.entry_id}")
        console.print(f"    Product:  {fp.release} {fp.sku} {fp.version}")
        console.print(f"    Updates:  {', '.join(fp.updates) or '(none)'}")
        console.print(f"    Features: {', '.join(fp.features) or '(none)'}")
        console.print(f"    Size:     {e.size_bytes} bytes")
    console.print(f"Total size: {cache.total_size()} bytes")


@cache_app.command("lookup")
def cache_lookup(
    config_path: Annotated[Path, typer.Argument(help="Build configuration (YAML/JSON)")],
) -> None:
    """Check whether a build configuration has a cached volume."""
    from imageforge.acquisition.cache import ArtifactCache
    from imageforge.acquisition.fingerprint import BuildFingerprint

    build_config = _load_config(config_path)
    fingerprint = BuildFingerprint.from_config(build_config)
    entry = ArtifactCache(get_settings().cache_dir).lookup(fingerprint)

    if entry is None:
        console.print(f"[yellow]No cached volume for {fingerprint.short_key}[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[green]Cache hit: {entry.entry_id}[/green]")
    console.print(f"  Image:   {entry.image_path}")
    console.print(f"  Created: {entry.created_at}")


@cache_app.command("prune")
def cache_prune(
    keep: Annotated[
        int,
        typer.Option("--keep", "-k", min=0, help="Number of newest entries to keep"),
    ] = 1,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove all but the newest cached volumes."""
    from imageforge.acquisition.cache import ArtifactCache

    removed = ArtifactCache(get_settings().cache_dir).prune(keep)

    if json_output:
        _echo_json({"keep": keep, "pruned": [e.entry_id for e in removed]})
        return

    if not removed:
        console.print("[yellow]Nothing to prune[/yellow]")
        return
    console.print(f"[bold]Pruned {len(removed)} cached volume(s):[/bold]")
    for e in removed:
        console.print(f"  - {e.entry_id}")


__all__ = ["app"]
