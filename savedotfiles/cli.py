"""
Command Line Interface entry point using Typer.
"""
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer

from . import __version__
from .audit import AuditLogger, get_audit_log
from .config import (
    configured_items,
    get_log_file,
    get_token,
    load_settings,
    resolve_repository,
    save_token,
    update_settings,
)
from .errors import ConfigurationError, PackagingError, PublishError, ScheduleStoreError
from .items import resolve_items, skipped_specs
from .models import BackupJob, ItemOutcome, ItemSpec, ScheduleConfig
from .publish import publish, remote_summary
from .schedule import DAY_NAMES, InstallOutcome, default_installer, describe
from .staging import assemble
from .ui import (
    console,
    render_banner,
    render_error,
    render_item,
    render_progress,
    render_status,
    render_success_summary,
    render_table,
    render_warning,
)
from .utils import default_output_name, human_size, mask_token, sha256_file

app = typer.Typer(
    help=(
        "[bold cyan]SaveDotFiles[/]\n\n"
        "Archive your dotfiles, rotate them in a git repository and schedule weekly runs."
    ),
    no_args_is_help=True,
    rich_markup_mode="rich"
)
config_app = typer.Typer(help="Show or change persisted settings.", no_args_is_help=True)
app.add_typer(config_app, name="config")


class Compression(str, Enum):
    gzip = "gzip"
    bzip2 = "bzip2"
    xz = "xz"


class ScheduleAction(str, Enum):
    install = "install"
    remove = "remove"
    status = "status"


@app.command(name="backup")
def backup_cmd(
    output_name: Optional[str] = typer.Argument(None, help="Archive name without extension [default: dotfiles-backup-<timestamp>]"),
    push: bool = typer.Option(False, "--push", help="Publish the archive to the backup repository"),
    compression: Optional[str] = typer.Option(None, "--compression", "-c", help="gzip, bzip2 or xz [default: gzip]"),
    level: Optional[int] = typer.Option(None, "--level", "-l", help="Compression level 1-9 [default: 6]"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="owner/name, git URL or path of the backup repository"),
    source: Optional[Path] = typer.Option(None, "--source", "-s", help="Directory the items are relative to [default: home]"),
    dest: Optional[Path] = typer.Option(None, "--dest", "-d", help="Directory to write the archive to [default: home]"),
):
    """
    Archive the configured dotfiles into a compressed tarball.
    Missing items are skipped; unreadable entries are recorded in the archive README.
    """
    audit = AuditLogger()
    render_status("backup", f"Starting dotfiles backup at {datetime.now():%Y-%m-%d %H:%M:%S}")

    try:
        settings = load_settings()
        specs = configured_items(settings)
        home = Path.home()
        job = BackupJob.create(
            output_name=output_name or default_output_name(),
            codec=compression or settings.compression,
            level=level if level is not None else settings.level,
            push=push,
            repository=resolve_repository(repo, settings) if push else None,
            source_root=(source or home).expanduser().resolve(),
            destination=(dest or home).expanduser().resolve(),
        )
    except ConfigurationError as e:
        render_error(str(e))
        audit.log("backup_rejected", error=str(e))
        raise typer.Exit(1)

    audit.log("backup_start", output=job.archive_name, codec=job.codec, level=job.level, push=job.push)
    console.print(f"\n[yellow]Backing up dotfiles from {job.source_root}:[/]")

    def show(item):
        render_item(item.relative_path, item.outcome.value, item.detail)

    try:
        result = assemble(job, resolve_items(specs, job.source_root), specs=specs, on_item=show)
    except (ConfigurationError, PackagingError) as e:
        render_error(str(e))
        audit.log("backup_end", status="failed", error=str(e))
        raise typer.Exit(1)

    manifest = result.manifest
    audit.log(
        "backup_end",
        status="success",
        archive=str(result.path),
        size=result.size,
        included=manifest.count(ItemOutcome.INCLUDED),
        partial=manifest.count(ItemOutcome.PARTIAL),
        missing=manifest.count(ItemOutcome.MISSING),
    )
    render_success_summary("Backup complete!", {
        "File": str(result.path),
        "Size": human_size(result.size),
        "SHA-256": sha256_file(result.path),
        "Items": (
            f"{manifest.count(ItemOutcome.INCLUDED)} included, "
            f"{manifest.count(ItemOutcome.PARTIAL)} partial, "
            f"{manifest.count(ItemOutcome.MISSING)} missing, "
            f"{manifest.skipped} not present"
        ),
    })
    if manifest.errors:
        render_warning(f"{len(manifest.errors)} entries could not be copied; see README.md inside the archive.")

    if job.push and job.repository:
        try:
            with render_progress(f"Publishing to {job.repository}..."):
                published = publish(
                    result.path,
                    job.repository,
                    cap=settings.retention_cap,
                    timeout=settings.git_timeout,
                    token=get_token(),
                )
        except (PublishError, ConfigurationError) as e:
            render_warning(f"Publishing failed: {e}\nThe local archive is intact at {result.path}")
            audit.log("publish_end", status="failed", repository=job.repository, error=str(e))
            return

        audit.log("publish_end", status="success", repository=job.repository, removed=published.removed)
        if published.rotated:
            render_status("rotate", f"Rotated out {len(published.removed)} old backup(s): {', '.join(published.removed)}")
        render_success_summary("Published", remote_summary(published))
    else:
        console.print("\n[yellow]To restore on another machine:[/]")
        console.print(f"  1. Copy {job.archive_name} to the new machine")
        console.print(f"  2. tar -xf {job.archive_name}")
        console.print(f"  3. cd {job.output_name}")
        console.print("  4. ./restore-dotfiles.sh")


def _prompt_int(text: str, default: int, low: int, high: int) -> int:
    while True:
        value = typer.prompt(text, default=default, type=int)
        if low <= value <= high:
            return value
        render_error(f"Invalid value! Please enter a number between {low} and {high}.")


@app.command(name="schedule")
def schedule_cmd(
    action: ScheduleAction = typer.Argument(ScheduleAction.install, help="install, remove or status"),
    day: Optional[int] = typer.Option(None, "--day", help="Day of week, 0=Sunday .. 6=Saturday"),
    hour: Optional[int] = typer.Option(None, "--hour", help="Hour of day, 0-23"),
    push: Optional[bool] = typer.Option(None, "--push/--no-push", help="Publish each scheduled backup"),
):
    """Install, remove or inspect the weekly backup schedule."""
    installer = default_installer()
    audit = AuditLogger()

    try:
        if action == ScheduleAction.status:
            _show_schedule_status(installer)
            return

        if action == ScheduleAction.remove:
            removed = installer.remove()
            for warning in installer.warnings:
                render_warning(warning)
            if removed:
                audit.log("schedule_remove", backends=removed)
                render_status("delete", f"Removed backup jobs from: {', '.join(removed)}", style="green")
            else:
                render_status("info", "No backup jobs found to remove.", style="yellow")
            return

        if installer.primary.available() and all(b.is_installed() for b in installer.backends if b.available()):
            render_status("info", "Backup job already installed. Run 'schedule remove' first to reinstall.", style="yellow")
            return

        if day is None:
            console.print("\n[blue]Configure your backup schedule:[/]")
            for idx, name in enumerate(DAY_NAMES):
                console.print(f"  {idx} = {name}")
            day = _prompt_int("Day", 0, 0, 6)
        if hour is None:
            hour = _prompt_int("Hour (0-23, 24-hour format)", 2, 0, 23)
        if push is None:
            push = typer.confirm("Push backups to the git repository?", default=False)

        try:
            config = ScheduleConfig(day_of_week=day, hour=hour, push=push)
        except ValueError as e:
            render_error(f"Invalid schedule: {e}")
            raise typer.Exit(1)

        outcomes = installer.install(config)
    except ScheduleStoreError as e:
        render_error(str(e))
        raise typer.Exit(1)

    audit.log("schedule_install", outcomes={k: v.value for k, v in outcomes.items()}, day=day, hour=hour, push=push)
    for warning in installer.warnings:
        render_warning(warning)
    render_success_summary("Backup schedule", {
        "Schedule": describe(config),
        "Log file": str(installer.log_file),
        "Push": "Enabled" if config.push else "Disabled",
        **{f"{name} entry": outcome.value for name, outcome in outcomes.items()},
    })
    if outcomes.get("anacron") == InstallOutcome.INSTALLED:
        render_status("success", "Anacron protection enabled: missed backups run when the machine is back online.")


def _show_schedule_status(installer) -> None:
    rows = []
    for status in installer.status():
        entry = status.entry
        rows.append([
            status.backend,
            "[bold green]Installed[/]" if status.installed else "[bold red]Not installed[/]",
            f"{DAY_NAMES[entry.day_of_week]} {entry.hour:02d}:00" if entry else "-",
            "yes" if entry and entry.push else "-",
            f"{status.next_run:%Y-%m-%d %H:%M}" if status.next_run else "-",
        ])
    render_table("Backup Schedule Status", ["Backend", "Status", "When", "Push", "Next Run"], rows)

    lines = installer.tail_log(5)
    if lines:
        console.print("[blue]Last backup log entries:[/]")
        for line in lines:
            console.print(f"  {line}", highlight=False, markup=False)
    else:
        console.print("[dim]No backup logs found yet.[/]")


@app.command(name="items")
def items_cmd(
    source: Optional[Path] = typer.Option(None, "--source", "-s", help="Directory the items are relative to [default: home]"),
):
    """List configured items and what they resolve to on this host."""
    try:
        specs = configured_items()
    except ConfigurationError as e:
        render_error(str(e))
        raise typer.Exit(1)

    root = (source or Path.home()).expanduser()
    resolved = list(resolve_items(specs, root))
    rows = [[item.outcome.value, item.relative_path, item.detail or ""] for item in resolved]
    rows += [["absent", spec.path, "not present on this host"] for spec in skipped_specs(specs, resolved)]
    render_table(f"Items under {root}", ["Status", "Path", "Notes"], rows)


@config_app.command(name="show")
def config_show():
    """Show effective settings."""
    try:
        settings = load_settings()
        repo = resolve_repository(settings=settings)
    except ConfigurationError as e:
        render_error(str(e))
        raise typer.Exit(1)
    token = get_token()
    render_success_summary("Settings", {
        "Repository": repo,
        "Compression": f"{settings.compression} (level {settings.level})",
        "Retention cap": str(settings.retention_cap),
        "Git timeout": f"{settings.git_timeout}s" if settings.git_timeout else "none",
        "Items": "custom" if settings.items is not None else "built-in defaults",
        "Token": mask_token(token) if token else "not stored",
        "Log file": str(get_log_file()),
    })


@config_app.command(name="set-repo")
def config_set_repo(repo: str = typer.Argument(..., help="owner/name, git URL or absolute path")):
    """Persist the backup repository."""
    try:
        update_settings(repo=repo)
    except ConfigurationError as e:
        render_error(str(e))
        raise typer.Exit(1)
    render_status("success", f"Backup repository set to {repo}.")


@config_app.command(name="set")
def config_set(
    compression: Optional[Compression] = typer.Option(None, "--compression", "-c"),
    level: Optional[int] = typer.Option(None, "--level", "-l"),
    cap: Optional[int] = typer.Option(None, "--cap", help="Archives kept in the repository"),
    git_timeout: Optional[float] = typer.Option(None, "--git-timeout", help="Seconds before clone/push is abandoned"),
    item: Optional[List[str]] = typer.Option(None, "--item", "-i", help="Replace the item list (repeatable)"),
):
    """Persist backup defaults."""
    changes = {}
    if compression is not None:
        changes["compression"] = compression.value
    if level is not None:
        changes["level"] = level
    if cap is not None:
        changes["retention_cap"] = cap
    if git_timeout is not None:
        changes["git_timeout"] = git_timeout
    if item:
        changes["items"] = list(item)
    if not changes:
        render_status("info", "Nothing to change.")
        return
    try:
        if "items" in changes:
            for text in changes["items"]:
                ItemSpec.parse(text)
        update_settings(**changes)
    except ConfigurationError as e:
        render_error(str(e))
        raise typer.Exit(1)
    render_status("success", f"Updated: {', '.join(changes)}")


@config_app.command(name="set-token")
def config_set_token(
    token: str = typer.Option(..., "--token", "-t", prompt=True, hide_input=True),
):
    """Store a git token in the OS keyring for HTTPS pushes to GitHub."""
    if save_token(token):
        render_status("success", "Token stored in the OS keyring.")
    else:
        render_warning("Failed to store token in the OS keyring. Configure a git credential helper instead.")
        raise typer.Exit(1)


@app.command(name="doctor")
def run_doctor():
    """Check git, schedulers, codecs and settings."""
    render_banner()
    from .doctor import run_diagnostics
    with render_progress("Running diagnostic checks..."):
        results = run_diagnostics()

    rows = []
    for r in results:
        status_text = "[bold green]PASS[/]" if r.status == "pass" else "[bold yellow]WARN[/]" if r.status == "warn" else "[bold red]FAIL[/]"
        rows.append([status_text, r.name, r.detail])

    render_table("Doctor Diagnostics", ["Status", "Check", "Details"], rows)


@app.command(name="audit")
def show_audit(last_n: int = typer.Option(50, "--last", "-n", help="Number of recent events to show")):
    """Show recent audit logs."""
    events = get_audit_log(last_n)
    if not events:
        render_status("info", "No audit events found.")
        return

    rows = []
    for e in events:
        rows.append([e["timestamp"], e["event"], str(e["details"])])

    render_table("Audit Log", ["Timestamp", "Event", "Details"], rows)


@app.command(name="version")
def version_cmd():
    """Display SaveDotFiles version information."""
    render_status("info", f"savedotfiles v{__version__}")


if __name__ == "__main__":
    app()
