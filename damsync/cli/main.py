from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from damsync.core.config import DEFAULT_CONFIG_PATH, load_config, masked_config, save_config
from damsync.core.services import Services, build_services
from damsync.providers.imageshop.duplicates import (
    DEFAULT_DELAY_SEC,
    REDUCED_DELAY_SEC,
    delete_remote_duplicates,
    duplicates_report,
)
from damsync.providers.imageshop.errors import NotFoundError, SizeValidationError
from damsync.providers.imageshop.models import SizeSpec
from damsync.providers.imageshop.store import META_DOCUMENT_ID

app = typer.Typer(add_completion=False)
console = Console()


def _build_services() -> Services:
    return build_services()


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _delay(reduced_delay: bool, no_delay: bool) -> int:
    if no_delay:
        return 0
    if reduced_delay:
        return REDUCED_DELAY_SEC
    return DEFAULT_DELAY_SEC


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml (token masked)."""
    cfg = load_config(path)
    _print_json(masked_config(cfg))


@app.command("config-set-auth")
def config_set_auth(
    api_token: str = typer.Option(..., "--api-token", help="Imageshop API token"),
    upload_interface: str = typer.Option("", "--upload-interface", help="Interface new uploads are filed under"),
    site_url: Optional[str] = typer.Option(None, "--site-url", help="Public site URL used in permalink hints"),
    locale: Optional[str] = typer.Option(None, "--locale", help="Site locale, e.g. nb_NO"),
):
    """Set Imageshop credentials and site identity."""
    cfg = load_config()
    cfg.auth.api_token = api_token
    if upload_interface:
        cfg.auth.upload_interface = upload_interface
    if site_url:
        cfg.site.site_url = site_url
    if locale:
        cfg.site.locale = locale
    save_config(cfg)
    _print_json(
        {
            "ok": True,
            "api_token_set": bool(cfg.auth.api_token),
            "upload_interface": cfg.auth.upload_interface,
            "site_url": cfg.site.site_url,
            "locale": cfg.site.locale,
        }
    )


@app.command()
def status():
    """Show runtime and import progress summary."""
    services = _build_services()
    cfg = services.cfg
    progress = services.sync.get_sync_status()

    table = Table(title="imageshop-dam-sync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("api_token", "set" if cfg.auth.api_token else "(unset)")
    table.add_row("upload_interface", cfg.auth.upload_interface or "(unset)")
    table.add_row("site_url", cfg.site.site_url)
    table.add_row("language", services.client.language)
    table.add_row("attachments", str(progress["total"]))
    table.add_row("imported", str(progress["imported"]))
    table.add_row("push_pending", "yes" if progress["push_pending"] else "no")
    table.add_row("pull_pending", "yes" if progress["pull_pending"] else "no")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("test-connection")
def test_connection():
    """Check that the configured API token is accepted."""
    services = _build_services()
    ok = services.client.test_valid_token()
    _print_json({"ok": ok, "language": services.client.language})
    if not ok:
        raise typer.Exit(2)


@app.command("media-export")
def media_export(
    attachment_id: Optional[int] = typer.Argument(None, help="Local attachment id"),
    all_: bool = typer.Option(False, "--all", help="Export every attachment."),
    missing: bool = typer.Option(False, "--missing", help="Export attachments without an Imageshop reference."),
    force: bool = typer.Option(False, "--force", help="Re-export even when a reference exists."),
    verbose: bool = typer.Option(False, "--verbose"),
    reduced_delay: bool = typer.Option(False, "--reduced-delay", help="Wait 2s between items instead of 5s."),
    no_delay: bool = typer.Option(False, "--no-delay", help="Do not wait between items."),
):
    """Export attachments to the upload interface."""
    services = _build_services()
    delay = _delay(reduced_delay, no_delay)

    if all_ or missing:
        if all_:
            ids = services.store.attachment_ids()
        else:
            ids = [r["id"] for r in services.store.missing_meta(META_DOCUMENT_ID)]
            # Missing references are always exported as new documents.
            force = False
        if not ids:
            console.print("[yellow]No attachments were found to export.[/yellow]")
            raise typer.Exit(1)

        console.print(f"Starting export of {len(ids)} attachments...")
        summary = {"total": len(ids), "exported": 0, "errors": 0}
        for aid in ids:
            if verbose:
                console.print(f"Processing attachment with ID {aid}")
            if services.media.export_single(aid, force=force) is None:
                summary["errors"] += 1
            else:
                summary["exported"] += 1
            if delay:
                time.sleep(delay)
        _print_json(summary)
        if summary["errors"]:
            raise typer.Exit(2)
        return

    if attachment_id is None:
        console.print("[red]Please provide an attachment id, or use --all / --missing.[/red]")
        raise typer.Exit(1)

    ret = services.media.export_single(attachment_id, force=force)
    if ret is None:
        console.print("[red]An error occurred while exporting the media item, check the log.[/red]")
        raise typer.Exit(2)
    attachment = services.store.get_attachment(attachment_id)
    _print_json({"ok": True, "attachment_id": ret, "document_id": attachment.remote_document_id if attachment else None})


@app.command("meta-update")
def meta_update(
    attachment_id: Optional[int] = typer.Argument(None, help="Local attachment id"),
    all_: bool = typer.Option(False, "--all", help="Update every attachment linked to Imageshop."),
    verbose: bool = typer.Option(False, "--verbose"),
    reduced_delay: bool = typer.Option(False, "--reduced-delay"),
    no_delay: bool = typer.Option(False, "--no-delay"),
):
    """Repair Imageshop references and regenerate stored size metadata."""
    services = _build_services()
    delay = _delay(reduced_delay, no_delay)

    if all_:
        rows = services.store.with_meta(META_DOCUMENT_ID)
        if not rows:
            console.print("[yellow]No attachments with an Imageshop connection were found.[/yellow]")
            raise typer.Exit(1)
        console.print(f"Starting meta update for {len(rows)} attachments...")
        updated = 0
        for row in rows:
            if verbose:
                console.print(f"Processing attachment with ID {row['id']}")
            details = services.media.update_metadata(row["id"])
            if details is not None and details.sizes:
                updated += 1
            if delay:
                time.sleep(delay)
        _print_json({"total": len(rows), "updated": updated})
        return

    if attachment_id is None:
        console.print("[red]Please provide an attachment id, or use --all.[/red]")
        raise typer.Exit(1)

    try:
        details = services.media.update_metadata(attachment_id)
    except NotFoundError:
        console.print(f"[red]Could not find any attachment with the ID `{attachment_id}`.[/red]")
        raise typer.Exit(1)
    if details is None or not details.sizes:
        console.print("[yellow]The metadata update returned no sizes, is this a valid media item?[/yellow]")
        raise typer.Exit(2)
    _print_json({"ok": True, "attachment_id": attachment_id, "sizes": len(details.sizes)})


@app.command("duplicates-report")
def duplicates_report_cmd(as_json: bool = typer.Option(False, "--json")):
    """List attachments linked to Imageshop documents."""
    items = duplicates_report(_build_services().store)
    if as_json:
        _print_json(items)
        return
    table = Table(title="Linked attachments")
    table.add_column("Attachment ID")
    table.add_column("Attachment Name")
    table.add_column("Imageshop ID")
    for item in items:
        table.add_row(str(item["attachment_id"]), item["title"], str(item["document_id"]))
    console.print(table)


@app.command("duplicates-delete")
def duplicates_delete(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be deleted without deleting."),
    verbose: bool = typer.Option(False, "--verbose"),
    reduced_delay: bool = typer.Option(False, "--reduced-delay"),
    no_delay: bool = typer.Option(False, "--no-delay"),
):
    """Delete remote documents that duplicate a linked attachment's title."""
    services = _build_services()
    report = delete_remote_duplicates(
        services.store,
        services.client,
        services.cfg.auth.upload_interface,
        services.log_func,
        dry_run=dry_run,
        delay=_delay(reduced_delay, no_delay),
    )
    if verbose and report.log:
        console.print("## Begin report of deleted files")
        for line in report.log:
            console.print(line)
        console.print("## End report on deleted files")
    _print_json({"dry_run": dry_run, "deleted_count": report.deleted_count, "checked": report.checked, "errors": report.errors})


@app.command("sync-start")
def sync_start(direction: str = typer.Argument(..., help="push (local -> Imageshop) or pull (Imageshop -> local)")):
    """Queue a chunked sync run."""
    if direction not in ("push", "pull"):
        console.print("[red]direction must be `push` or `pull`[/red]")
        raise typer.Exit(1)
    result = _build_services().sync.start_sync(direction)
    _print_json({**result.to_dict(), "status_code": result.status_code})
    if result.status_code == 425:
        raise typer.Exit(3)


@app.command("sync-status")
def sync_status():
    """Show how many attachments are linked to Imageshop."""
    _print_json(_build_services().sync.get_sync_status())


@app.command("jobs-run")
def jobs_run(limit: Optional[int] = typer.Option(None, "--limit", help="Run at most this many due jobs.")):
    """Run due sync chunks now, in this process."""
    services = _build_services()
    ran = services.scheduler.run_due(limit=limit)
    _print_json({"ran": ran, "pending": len(services.scheduler.pending_jobs())})


@app.command()
def resolve(attachment_id: int, size: str):
    """Resolve one size (slug, WxH, WxHc or original) to a delivery URL."""
    services = _build_services()
    attachment = services.store.get_attachment(attachment_id)
    if attachment is None:
        console.print(f"[red]attachment_not_found: {attachment_id}[/red]")
        raise typer.Exit(1)
    try:
        spec = SizeSpec.parse(size, services.cfg.media.image_sizes)
    except SizeValidationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    resolved = services.resolver.resolve_size(attachment, spec)
    _print_json({"resolved": resolved.model_dump() if resolved else None})


@app.command("flush-cache")
def flush_cache(attachment_id: int):
    """Drop stored sizes and permalinks for an attachment and rebuild them."""
    services = _build_services()
    if services.store.get_attachment(attachment_id) is None:
        console.print(f"[red]attachment_not_found: {attachment_id}[/red]")
        raise typer.Exit(1)
    details = services.projector.flush_references(attachment_id)
    _print_json({"ok": True, "sizes": sorted(details.sizes) if details else []})


def main():
    app()


if __name__ == "__main__":
    main()
