from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.filesize import decimal
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from s3backer.auth import describe_credentials, resolve_aws_credentials
from s3backer.backup import backup_from_config
from s3backer.config import (
    DEFAULT_STORAGE_CLASS,
    BackerConfig,
    load_config,
    parse_target,
    save_config,
)
from s3backer.errors import BackupError
from s3backer.filters import PathFilter
from s3backer.models import BackupReport, FailureReport
from s3backer.state_db import ensure_db, load_last_failures, load_last_run
from s3backer.status_service import compute_status
from s3backer.store import ObjectStoreClient, S3ObjectStore
from s3backer.transfer_ui import BackupProgressUI


app = typer.Typer(help="Incremental archival backups of a directory to S3")
console = Console()

EXIT_FAILURES = 1
EXIT_FATAL = 2
NOISY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3")


def configure_logging(*, verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    log = logging.getLogger("s3backer")
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    log.propagate = False
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    log.addHandler(RichHandler(console=console, show_path=False, markup=False))
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        log.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log


def _build_store(config: BackerConfig) -> ObjectStoreClient:
    return S3ObjectStore.from_config(config, resolve_aws_credentials(config))


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_failures(report: FailureReport) -> None:
    if not report:
        return
    table = Table(title=f"Failed files ({len(report)})")
    table.add_column("Path")
    table.add_column("Reason", style="red")
    table.add_column("Message")
    for record in report:
        table.add_row(record.path, record.reason.value, record.message)
    console.print(table)


def _render_report(report: BackupReport) -> None:
    _render_path_summary("Uploaded", report.uploaded_paths, "green")
    _render_failures(report.failures)
    if not report.uploaded_paths and report.ok:
        console.print("[green]Bucket already matches the local directory.[/green]")
    console.print(
        f"Files: {report.total_files} | Size: {decimal(report.total_bytes)} | "
        f"Uploaded: {len(report.uploaded_paths)} | Unchanged: {len(report.skipped_paths)} | "
        f"Failed: {len(report.failures)}"
    )


async def _init_async(
    root: Path,
    target: str,
    *,
    region: str | None,
    endpoint_url: str | None,
    profile: str | None,
    storage_class: str,
    workers: int | None,
) -> BackerConfig:
    bucket, key_prefix = parse_target(target)
    config = BackerConfig(
        bucket=bucket,
        key_prefix=key_prefix,
        source_dir=str(root.resolve()),
        region=region,
        endpoint_url=endpoint_url,
        profile=profile,
        storage_class=storage_class,
        workers=workers,
    )
    await ensure_db(config.state_db_path)
    save_config(config, root)
    return config


@app.command()
def init(
    target: str = typer.Argument(..., help="Destination, e.g. s3://bucket/prefix."),
    region: str | None = typer.Option(None, "--region", help="AWS region of the bucket."),
    endpoint_url: str | None = typer.Option(
        None, "--endpoint-url", help="Custom S3-compatible endpoint."
    ),
    profile: str | None = typer.Option(None, "--profile", help="Named AWS profile."),
    storage_class: str = typer.Option(
        DEFAULT_STORAGE_CLASS, "--storage-class", help="Storage class for uploaded objects."
    ),
    workers: int | None = typer.Option(
        None, "--workers", min=1, help="Concurrent uploads. Defaults to the CPU count."
    ),
) -> None:
    """Configure the current directory for backup to TARGET."""
    root = Path.cwd().resolve()
    try:
        config = asyncio.run(
            _init_async(
                root,
                target,
                region=region,
                endpoint_url=endpoint_url,
                profile=profile,
                storage_class=storage_class,
                workers=workers,
            )
        )
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Initialized s3backer[/green] at {config.source_path}")
    console.print(f"Target: s3://{config.bucket}/{config.key_prefix}")
    console.print(f"Storage class: {config.storage_class}")
    console.print(f"Credentials: {describe_credentials(resolve_aws_credentials(config))}")


async def _backup_async(
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    *,
    workers: int | None,
    retry_failed: bool,
    log: logging.Logger,
) -> int:
    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        return EXIT_FATAL

    store = _build_store(config)
    path_filter = PathFilter.from_patterns(include, exclude)

    try:
        with BackupProgressUI(console=console) as ui:

            def on_indexed(index) -> None:
                ui.set_total_files(len(index))
                ui.start(index.total_bytes)

            report = await backup_from_config(
                config,
                store,
                workers=workers,
                path_filter=path_filter,
                retry_failed=retry_failed,
                log=log,
                on_indexed=on_indexed,
                on_progress=ui.update,
                on_file_done=lambda result: ui.file_done(result.path, result.outcome),
            )
    except KeyboardInterrupt:
        console.print("[yellow]Backup interrupted.[/yellow] Some files were not processed.")
        return 130
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        return EXIT_FATAL

    _render_report(report)
    return EXIT_FAILURES if report.failures else 0


@app.command()
def backup(
    workers: int | None = typer.Option(
        None, "--workers", "-w", min=1, help="Concurrent uploads (overrides config)."
    ),
    include: list[str] | None = typer.Option(
        None, "--include", help="Include glob pattern(s) (repeatable)."
    ),
    exclude: list[str] | None = typer.Option(
        None, "--exclude", help="Exclude glob pattern(s) (repeatable)."
    ),
    retry_failed: bool = typer.Option(
        False, "--retry-failed", help="Only back up files that failed in the last run."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Also write logs to a file."),
) -> None:
    """Upload new and changed files to the archival storage class."""
    log = configure_logging(verbose=verbose, log_file=log_file)
    raise typer.Exit(
        code=asyncio.run(
            _backup_async(
                tuple(include or ()),
                tuple(exclude or ()),
                workers=workers,
                retry_failed=retry_failed,
                log=log,
            )
        )
    )


@app.command()
def status(
    include: list[str] | None = typer.Option(
        None, "--include", help="Include glob pattern(s) (repeatable)."
    ),
    exclude: list[str] | None = typer.Option(
        None, "--exclude", help="Exclude glob pattern(s) (repeatable)."
    ),
    workers: int | None = typer.Option(None, "--workers", "-w", min=1),
) -> None:
    """Show which files the next backup would upload, without uploading."""
    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_FATAL)

    store = _build_store(config)
    try:
        with console.status("Comparing local files with the bucket..."):
            result = compute_status(
                config.to_job(),
                store,
                workers=workers or config.workers,
                path_filter=PathFilter.from_patterns(include, exclude),
            )
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=EXIT_FATAL)

    _render_path_summary("New", [r.path for r in result.new_files], "green")
    _render_path_summary("Modified", [r.path for r in result.modified_files], "yellow")
    _render_path_summary(
        "Unreadable", [f"{p}: {m}" for p, m in sorted(result.unreadable.items())], "red"
    )
    _render_path_summary(
        "Unreachable", [f"{p}: {m}" for p, m in sorted(result.unreachable.items())], "red"
    )
    if not result.has_changes:
        console.print("[green]No changes to back up.[/green]")
    console.print(
        f"Unchanged: {len(result.unchanged_files)} | Pending: {decimal(result.pending_bytes)}"
    )


async def _failures_async() -> int:
    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        return EXIT_FATAL

    last = await load_last_run(config.state_db_path)
    if last is None:
        console.print("No backup has been recorded yet.")
        return 0
    report = await load_last_failures(config.state_db_path)
    if not report:
        console.print(f"[green]Last run ({last.total_files} files) had no failures.[/green]")
        return 0
    _render_failures(report)
    console.print("Run `s3backer backup --retry-failed` to retry these files.")
    return 0


@app.command()
def failures() -> None:
    """List the files that failed in the most recent backup."""
    raise typer.Exit(code=asyncio.run(_failures_async()))
