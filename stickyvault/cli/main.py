"""Command-line interface for StickyVault."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from stickyvault import __version__
from stickyvault.core.config import AppConfig, load_config
from stickyvault.core.models import NOTE_COLORS, ConflictInfo
from stickyvault.core.scheduler import SyncScheduler
from stickyvault.core.sync import RemoteSyncEngine
from stickyvault.core.vault import LocalVault, VaultError
from stickyvault.sources.notes.conflicts import get_conflict_versions, merge_notes
from stickyvault.sources.notes.markdown import (
    content_preview,
    format_timestamp,
    parse_checkboxes,
    render_note,
)
from stickyvault.sources.remote.dropbox import DropboxClient
from stickyvault.utils.credentials import CredentialStore, DropboxCredentials
from stickyvault.utils.db import SyncStateDB
from stickyvault.utils.logging import setup_logging
from stickyvault.utils.settings_db import (
    get_config_path,
    get_last_sync,
    get_settings_db,
    set_config_path,
)

app = typer.Typer(
    name="stickyvault",
    help="Markdown sticky notes in a local vault, mirrored to a Dropbox folder",
    add_completion=False,
)
notes_app = typer.Typer(help="Create, edit and list notes")
conflicts_app = typer.Typer(help="Inspect and resolve conflicted copies")
sync_app = typer.Typer(help="Synchronize the vault with Dropbox")
auth_app = typer.Typer(help="Manage Dropbox credentials")
app.add_typer(notes_app, name="notes")
app.add_typer(conflicts_app, name="conflicts")
app.add_typer(sync_app, name="sync")
app.add_typer(auth_app, name="auth")

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """StickyVault - sticky notes as markdown files."""
    ctx.ensure_object(dict)
    effective_config_path = config_file
    if effective_config_path is None:
        effective_config_path = get_config_path()

    cfg = load_config(effective_config_path)
    cfg.ensure_data_dir()
    ctx.obj["config"] = cfg

    if config_file is not None:
        set_config_path(config_file)

    setup_logging(cfg, level_name=log_level)


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


def _run(coro, action: str):
    """Run an async command body, turning unexpected failures into exit code 1."""
    try:
        return asyncio.run(coro)
    except typer.Exit:
        raise
    except VaultError as e:
        console.print(f"[red]Vault unavailable: {e}[/red]")
        raise typer.Exit(1) from e
    except Exception as e:
        console.print(f"[red]Failed to {action}: {e}[/red]")
        logging.exception("%s failed", action)
        raise typer.Exit(1) from e


async def _open_vault(cfg: AppConfig, watch: bool = False) -> LocalVault:
    vault = LocalVault(
        cfg.vault.path,
        watch_files=watch,
        stability_ms=cfg.vault.watch_stability_ms,
    )
    await vault.initialize()
    return vault


def _build_engine(cfg: AppConfig, vault: LocalVault) -> RemoteSyncEngine:
    credentials = DropboxCredentials(
        CredentialStore(),
        cfg.sync.app_key,
        token_url=cfg.sync.token_url,
        timeout=cfg.sync.request_timeout,
    )
    client = DropboxClient(
        credentials,
        api_url=cfg.sync.api_url,
        content_url=cfg.sync.content_url,
        timeout=cfg.sync.request_timeout,
    )
    return RemoteSyncEngine(
        vault,
        client,
        SyncStateDB(cfg.sync_state_db_path),
        cfg.sync,
        credentials=credentials,
        settings=get_settings_db(),
    )


def _resolve_color(value: str | None) -> str | None:
    if value is None:
        return None
    return NOTE_COLORS.get(value.lower(), value)


# General commands


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="StickyVault Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(False, "--show", "-s", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", "-i", help="Create a default configuration file"),
) -> None:
    """Manage configuration."""
    cfg = _config(ctx)

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path
        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            if not typer.confirm("Overwrite existing config?"):
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        set_config_path(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        return

    if show:
        table = Table(title="StickyVault Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)

        table.add_row("", "")
        table.add_row("[bold]Vault[/bold]", "")
        table.add_row("Path", str(cfg.vault.path))
        table.add_row("Watch Files", "✓" if cfg.vault.watch_files else "✗")
        table.add_row("Stability Window", f"{cfg.vault.watch_stability_ms} ms")

        table.add_row("", "")
        table.add_row("[bold]Sync[/bold]", "")
        table.add_row("Enabled", "✓" if cfg.sync.enabled else "✗")
        table.add_row("App Key", cfg.sync.app_key or "Not set")
        table.add_row("Remote Folder", cfg.sync.remote_folder)
        table.add_row("Interval", f"{cfg.sync.interval_minutes} min")
        table.add_row("Tolerance", f"{cfg.sync.tolerance_seconds} s")
        table.add_row("Grace Window", f"{cfg.sync.grace_seconds} s")

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Vault:[/yellow] {cfg.vault.path}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


@app.command()
def health(ctx: typer.Context) -> None:
    """Check that the vault and sync prerequisites are in place."""
    cfg = _config(ctx)

    console.print("[bold]Health Check[/bold]\n")

    if cfg.general.data_dir.exists():
        console.print("✓ Data directory exists", style="green")
    else:
        console.print("✗ Data directory does not exist", style="red")

    notes_dir = cfg.vault.path / "notes"
    if notes_dir.is_dir():
        count = sum(1 for _ in notes_dir.glob("*.md"))
        console.print(f"✓ Vault notes folder: {notes_dir} ({count} files)", style="green")
    else:
        console.print(f"ℹ Vault not initialized: {notes_dir}", style="yellow")

    if cfg.sync_state_db_path.exists():
        console.print(f"✓ Sync state DB ready: {cfg.sync_state_db_path}", style="green")
    else:
        console.print(f"ℹ Sync state DB not initialized: {cfg.sync_state_db_path}", style="yellow")

    if cfg.sync.enabled:
        if CredentialStore().has_dropbox_tokens(cfg.sync.app_key):
            console.print("✓ Dropbox token stored", style="green")
        else:
            console.print("✗ No Dropbox token stored (run 'stickyvault auth set-token')", style="red")
    else:
        console.print("ℹ Sync disabled", style="yellow")

    console.print("\n[dim]Status: Ready[/dim]")


# Notes


@notes_app.command("list")
def notes_list(
    ctx: typer.Context,
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Only notes with this tag"),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Filter by title"),
    pinned: bool = typer.Option(False, "--pinned", "-p", help="Only pinned notes"),
) -> None:
    """List notes in display order (pinned first)."""
    cfg = _config(ctx)

    async def run_list():
        vault = await _open_vault(cfg)
        notes = vault.pinned_notes() if pinned else vault.sorted_notes()
        if tag:
            tagged = {n.id for n in vault.notes_with_tag(tag)}
            notes = [n for n in notes if n.id in tagged]
        if search:
            matching = {n.id for n in vault.search_notes(search)}
            notes = [n for n in notes if n.id in matching]

        if not notes:
            console.print("[yellow]No notes found[/yellow]")
            return

        table = Table(title="Notes")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Title", style="cyan")
        table.add_column("Pinned", justify="center")
        table.add_column("Color")
        table.add_column("Tags")
        table.add_column("Updated", style="green")
        table.add_column("Preview", style="dim")

        for note in notes:
            table.add_row(
                note.id,
                note.title,
                "📌" if note.pinned else "",
                note.color,
                ", ".join(note.tags),
                format_timestamp(note.updated),
                content_preview(note.content, 40),
            )

        console.print(table)
        console.print(f"\n[dim]Total: {len(notes)} notes[/dim]")

    _run(run_list(), "list notes")


@notes_app.command("show")
def notes_show(ctx: typer.Context, note_id: str = typer.Argument(..., help="Note id")) -> None:
    """Print a note as stored on disk."""
    cfg = _config(ctx)

    async def run_show():
        vault = await _open_vault(cfg)
        note = vault.get_note(note_id)
        if note is None:
            console.print(f"[red]Note not found: {note_id}[/red]")
            raise typer.Exit(1)
        console.print(render_note(note), markup=False, highlight=False)

        checkboxes = parse_checkboxes(note.content)
        if checkboxes:
            done = sum(1 for item in checkboxes if item.checked)
            console.print(f"[dim]{done}/{len(checkboxes)} items checked[/dim]")

    _run(run_show(), "show note")


@notes_app.command("create")
def notes_create(
    ctx: typer.Context,
    title: Optional[str] = typer.Option(None, "--title", help="Note title"),
    content: str = typer.Option("", "--content", help="Note body (markdown)"),
    color: Optional[str] = typer.Option(None, "--color", help="Palette name or color value"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Tag (repeatable)"),
    pinned: bool = typer.Option(False, "--pin", help="Pin the note"),
) -> None:
    """Create a new note."""
    cfg = _config(ctx)

    async def run_create():
        vault = await _open_vault(cfg)
        note = await vault.create_note(
            title=title,
            content=content,
            color=_resolve_color(color),
            tags=tags or [],
            pinned=pinned,
        )
        if note is None:
            console.print("[red]Failed to write note[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✓ Created note[/green] {note.id}")

    _run(run_create(), "create note")


@notes_app.command("edit")
def notes_edit(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    title: Optional[str] = typer.Option(None, "--title"),
    content: Optional[str] = typer.Option(None, "--content"),
    color: Optional[str] = typer.Option(None, "--color"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", help="Replace tags (repeatable)"),
) -> None:
    """Change fields of an existing note."""
    cfg = _config(ctx)

    fields = {
        "title": title,
        "content": content,
        "color": _resolve_color(color),
        "tags": tags,
    }
    fields = {key: value for key, value in fields.items() if value is not None}
    if not fields:
        console.print("[yellow]Nothing to change[/yellow]")
        raise typer.Exit(0)

    async def run_edit():
        vault = await _open_vault(cfg)
        note = await vault.update_note(note_id, **fields)
        if note is None:
            console.print(f"[red]Note not found: {note_id}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✓ Updated note[/green] {note.id}")

    _run(run_edit(), "edit note")


@notes_app.command("delete")
def notes_delete(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete a note (the deletion reaches Dropbox on the next sync)."""
    cfg = _config(ctx)

    if not yes and not typer.confirm(f"Delete note {note_id}?"):
        console.print("[dim]Cancelled[/dim]")
        raise typer.Exit(0)

    async def run_delete():
        vault = await _open_vault(cfg)
        if not await vault.delete_note(note_id):
            console.print(f"[red]Note not found: {note_id}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]✓ Deleted note[/green] {note_id}")

    _run(run_delete(), "delete note")


@notes_app.command("pin")
def notes_pin(ctx: typer.Context, note_id: str = typer.Argument(..., help="Note id")) -> None:
    """Toggle whether a note is pinned."""
    cfg = _config(ctx)

    async def run_pin():
        vault = await _open_vault(cfg)
        note = await vault.toggle_pinned(note_id)
        if note is None:
            console.print(f"[red]Note not found: {note_id}[/red]")
            raise typer.Exit(1)
        state = "pinned" if note.pinned else "unpinned"
        console.print(f"[green]✓ Note {note_id} {state}[/green]")

    _run(run_pin(), "toggle pin")


@notes_app.command("check")
def notes_check(
    ctx: typer.Context,
    note_id: str = typer.Argument(..., help="Note id"),
    line: int = typer.Argument(..., help="Zero-based line number of the checkbox"),
) -> None:
    """Toggle a checkbox line in a note's body."""
    cfg = _config(ctx)

    async def run_check():
        vault = await _open_vault(cfg)
        note = await vault.toggle_checkbox(note_id, line)
        if note is None:
            console.print(f"[red]Note not found: {note_id}[/red]")
            raise typer.Exit(1)
        for item in parse_checkboxes(note.content):
            mark = "[green]☑[/green]" if item.checked else "☐"
            console.print(f"{item.line_index:>3} {mark} {item.text}")

    _run(run_check(), "toggle checkbox")


@notes_app.command("rebuild-index")
def notes_rebuild_index(ctx: typer.Context) -> None:
    """Re-derive index.json from the note files."""
    cfg = _config(ctx)

    async def run_rebuild():
        vault = await _open_vault(cfg)
        index = await vault.rebuild_index_from_disk()
        console.print(f"[green]✓ Index rebuilt with {len(index.notes)} notes[/green]")

    _run(run_rebuild(), "rebuild index")


# Conflicts


def _find_conflict(conflicts: list[ConflictInfo], selector: str) -> ConflictInfo | None:
    if selector.isdigit():
        position = int(selector) - 1
        return conflicts[position] if 0 <= position < len(conflicts) else None
    for conflict in conflicts:
        if selector in (conflict.conflict_path, Path(conflict.conflict_path).name):
            return conflict
    return None


@conflicts_app.command("list")
def conflicts_list(ctx: typer.Context) -> None:
    """List unresolved conflicted copies."""
    cfg = _config(ctx)

    async def run_list():
        vault = await _open_vault(cfg)
        conflicts = await vault.get_conflicts()
        if not conflicts:
            console.print("[green]No conflicts[/green]")
            return

        table = Table(title="Conflicts")
        table.add_column("#", justify="right")
        table.add_column("Note", style="cyan")
        table.add_column("Conflict File", style="yellow")
        table.add_column("Detected", style="dim")
        for position, conflict in enumerate(conflicts, start=1):
            table.add_row(str(position), conflict.note_id, conflict.conflict_path, conflict.detected_at)
        console.print(table)

    _run(run_list(), "list conflicts")


@conflicts_app.command("resolve")
def conflicts_resolve(
    ctx: typer.Context,
    selector: str = typer.Argument(..., help="Conflict number from 'conflicts list' or file name"),
    keep_conflict: bool = typer.Option(
        False,
        "--keep-conflict/--keep-original",
        help="Which version survives",
    ),
) -> None:
    """Keep one version and discard the other."""
    cfg = _config(ctx)

    async def run_resolve():
        vault = await _open_vault(cfg)
        conflict = _find_conflict(await vault.get_conflicts(), selector)
        if conflict is None:
            console.print(f"[red]Conflict not found: {selector}[/red]")
            raise typer.Exit(1)
        await vault.resolve_conflict(conflict, keep_conflict)
        kept = "conflicted copy" if keep_conflict else "original"
        console.print(f"[green]✓ Resolved conflict for {conflict.note_id}, kept {kept}[/green]")

    _run(run_resolve(), "resolve conflict")


@conflicts_app.command("merge")
def conflicts_merge(
    ctx: typer.Context,
    selector: str = typer.Argument(..., help="Conflict number from 'conflicts list' or file name"),
) -> None:
    """Append the conflicted copy to the original note and resolve the conflict."""
    cfg = _config(ctx)

    async def run_merge():
        vault = await _open_vault(cfg)
        conflict = _find_conflict(await vault.get_conflicts(), selector)
        if conflict is None:
            console.print(f"[red]Conflict not found: {selector}[/red]")
            raise typer.Exit(1)

        original, copy = await get_conflict_versions(vault.vault_path, conflict)
        if copy is None:
            console.print("[red]Conflicted copy is missing or unreadable[/red]")
            raise typer.Exit(1)
        if original is None:
            await vault.resolve_conflict(conflict, keep_conflict=True)
            console.print(f"[green]✓ Original was gone, restored {conflict.note_id} from copy[/green]")
            return

        merged = merge_notes(original, copy)
        await vault.update_note(
            conflict.note_id,
            content=merged.content,
            tags=merged.tags,
            reminders=merged.reminders,
        )
        await vault.resolve_conflict(conflict, keep_conflict=False)
        console.print(f"[green]✓ Merged conflicted copy into {conflict.note_id}[/green]")

    _run(run_merge(), "merge conflict")


# Sync


def _require_sync(cfg: AppConfig) -> None:
    if not cfg.sync.enabled:
        console.print("[red]Sync is not enabled in configuration[/red]")
        console.print("[dim]Set sync.enabled = true or STICKYVAULT_SYNC__ENABLED=true[/dim]")
        raise typer.Exit(1)


@sync_app.command("run")
def sync_run(ctx: typer.Context) -> None:
    """Run one full reconciliation pass."""
    cfg = _config(ctx)
    _require_sync(cfg)

    async def run_sync():
        vault = await _open_vault(cfg)
        engine = _build_engine(cfg, vault)
        try:
            await engine.initialize()
            return await engine.sync()
        finally:
            await engine.remote.close()

    result = _run(run_sync(), "sync")

    table = Table(title="Sync Result")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Uploaded", str(result.uploaded))
    table.add_row("Downloaded", str(result.downloaded))
    table.add_row("Deleted locally", str(result.deleted_local))
    table.add_row("Deleted remotely", str(result.deleted_remote))
    table.add_row("Unchanged", str(result.skipped))
    table.add_row("Remote conflicts", str(len(result.conflicts)))
    table.add_row("Errors", str(len(result.errors)))
    console.print(table)

    for error in result.errors:
        console.print(f"  [red]✗ {error}[/red]")
    for name in result.conflicts:
        console.print(f"  [yellow]⚠ Conflicted copy on Dropbox: {name}[/yellow]")

    if result.status == "not-authenticated":
        console.print("[red]Not authenticated with Dropbox. Run 'stickyvault auth set-token'.[/red]")
        raise typer.Exit(1)
    if result.errors:
        raise typer.Exit(1)


@sync_app.command("push")
def sync_push(ctx: typer.Context) -> None:
    """Upload every changed note without downloading or deleting anything."""
    cfg = _config(ctx)
    _require_sync(cfg)

    async def run_push():
        vault = await _open_vault(cfg)
        engine = _build_engine(cfg, vault)
        try:
            await engine.initialize()
            return await engine.sync_all_notes()
        finally:
            await engine.remote.close()

    result = _run(run_push(), "push notes")
    console.print(
        f"[green]✓ {result.uploaded} uploaded[/green], "
        f"{result.skipped} unchanged, "
        f"[red]{result.errors} errors[/red]"
    )
    if result.errors:
        raise typer.Exit(1)


@sync_app.command("status")
def sync_status(ctx: typer.Context) -> None:
    """Show tracked notes and the outcome of the last sync."""
    cfg = _config(ctx)

    async def run_status():
        state_db = SyncStateDB(cfg.sync_state_db_path)
        await state_db.initialize()
        return await state_db.get_stats()

    stats = _run(run_status(), "get sync status")
    last = get_last_sync()

    table = Table(title="Sync Status")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_row("Enabled", "✓" if cfg.sync.enabled else "✗")
    table.add_row("Remote Folder", cfg.sync.remote_folder)
    table.add_row("Tracked Notes", str(stats["total_tracked"]))
    table.add_row("State DB", str(cfg.sync_state_db_path))
    if last:
        table.add_row("Last Sync", str(last.get("finished_at")))
        table.add_row("Last Status", str(last.get("status")))
        table.add_row(
            "Last Counts",
            f"{last.get('uploaded', 0)} up, {last.get('downloaded', 0)} down, "
            f"{last.get('errors', 0)} errors",
        )
    else:
        table.add_row("Last Sync", "Never")
    console.print(table)


@sync_app.command("reset")
def sync_reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Forget upload hashes so the next pass re-checks every note."""
    cfg = _config(ctx)

    if not yes:
        console.print("[yellow]⚠ This clears the sync hash cache.[/yellow]")
        console.print("[dim]No notes are deleted; unchanged notes may be uploaded once more.[/dim]\n")
        if not typer.confirm("Reset sync state?"):
            console.print("[dim]Reset cancelled[/dim]")
            raise typer.Exit(0)

    async def run_reset():
        state_db = SyncStateDB(cfg.sync_state_db_path)
        await state_db.initialize()
        await state_db.clear()

    _run(run_reset(), "reset sync state")
    console.print("[green]✓ Sync state reset[/green]")


@sync_app.command("watch")
def sync_watch(ctx: typer.Context) -> None:
    """Watch the vault and sync on a timer and after changes until interrupted."""
    cfg = _config(ctx)
    _require_sync(cfg)

    async def run_watch():
        vault = await _open_vault(cfg, watch=cfg.vault.watch_files)
        engine = _build_engine(cfg, vault)
        await engine.initialize()
        engine.on_status_change(lambda status: console.print(f"[dim]sync status: {status}[/dim]"))
        scheduler = SyncScheduler(engine, cfg.sync)
        await scheduler.start()
        console.print(
            f"[cyan]Watching {vault.notes_dir}, syncing every "
            f"{cfg.sync.interval_minutes} minute(s). Press Ctrl+C to stop.[/cyan]"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()
            await vault.destroy()
            await engine.remote.close()

    try:
        _run(run_watch(), "watch vault")
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


# Auth


@auth_app.command("set-app-key")
def auth_set_app_key(
    ctx: typer.Context,
    app_key: str = typer.Argument(..., help="Dropbox app key"),
) -> None:
    """Store the Dropbox app key in the config file."""
    cfg = _config(ctx)
    cfg.sync.app_key = app_key
    config_path = cfg.general.config_file or cfg.default_config_path
    cfg.save_to_file(config_path)
    set_config_path(config_path)
    console.print(f"[green]✓ App key saved to {config_path}[/green]")


@auth_app.command("set-token")
def auth_set_token(
    ctx: typer.Context,
    access_token: Optional[str] = typer.Option(
        None, "--access-token", help="Access token (prompted if omitted)"
    ),
    refresh_token: Optional[str] = typer.Option(
        None, "--refresh-token", help="Refresh token for automatic renewal"
    ),
) -> None:
    """Store Dropbox tokens securely in the system keyring."""
    cfg = _config(ctx)

    if not access_token:
        access_token = typer.prompt("Dropbox access token", hide_input=True)

    try:
        CredentialStore().set_dropbox_tokens(cfg.sync.app_key, access_token, refresh_token)
    except Exception as e:
        console.print(f"[red]Failed to store token: {e}[/red]")
        raise typer.Exit(1) from e
    console.print("[green]✓ Dropbox token stored in system keyring[/green]")


@auth_app.command("logout")
def auth_logout(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Remove stored Dropbox tokens."""
    cfg = _config(ctx)

    if not yes and not typer.confirm("Remove stored Dropbox tokens?"):
        console.print("[dim]Cancelled[/dim]")
        raise typer.Exit(0)

    if CredentialStore().delete_dropbox_tokens(cfg.sync.app_key):
        console.print("[green]✓ Dropbox tokens removed[/green]")
    else:
        console.print("[yellow]No Dropbox tokens were stored[/yellow]")


@auth_app.command("test")
def auth_test(ctx: typer.Context) -> None:
    """Check that the stored token is accepted by Dropbox."""
    cfg = _config(ctx)

    async def run_test():
        vault = LocalVault(cfg.vault.path, watch_files=False)
        engine = _build_engine(cfg, vault)
        try:
            return await engine.test_connection()
        finally:
            await engine.remote.close()

    ok, detail = _run(run_test(), "test connection")
    if ok:
        console.print(f"[green]✓ Connected to Dropbox as {detail or 'unknown account'}[/green]")
    else:
        console.print(f"[red]✗ Connection failed: {detail}[/red]")
        raise typer.Exit(1)


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
