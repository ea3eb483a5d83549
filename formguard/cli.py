"""CLI tools for FormGuard administration."""

import json

import click

from formguard.db.base import Base
from formguard.db.session import SessionLocal, engine


@click.group()
def cli():
    """FormGuard CLI tools."""
    pass


@cli.command()
def init_db():
    """
    Create database tables and storage directories.

    Development convenience; production deployments run ``alembic upgrade head``.

    Example:
        formguard init-db
    """
    from formguard.db import models  # noqa: F401
    from formguard.services.storage import ensure_storage_dirs

    Base.metadata.create_all(bind=engine)
    ensure_storage_dirs()
    click.echo("✓ Database tables and storage directories ready")


@cli.command()
@click.option("--title", required=True, help="Form title")
@click.option(
    "--fields-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file holding the field list (or {\"fields\": [...]})",
)
@click.option("--description", default=None, help="Optional description shown on the form")
@click.option("--max-file-size-mb", default=None, type=float, help="Form-wide upload limit")
def create_form(title: str, fields_file: str, description: str | None, max_file_size_mb: float | None):
    """
    Create an active form from a JSON field definition.

    Example:
        formguard create-form --title "Intake" --fields-file intake.json
    """
    from pydantic import ValidationError

    from formguard.services import form_service

    with open(fields_file, encoding="utf-8") as fh:
        payload = json.load(fh)
    fields = payload.get("fields", []) if isinstance(payload, dict) else payload

    form_settings = {}
    if max_file_size_mb:
        form_settings["max_file_size_mb"] = max_file_size_mb

    db = SessionLocal()
    try:
        form = form_service.create_form(
            db, title=title, fields=fields, description=description, form_settings=form_settings
        )
        db.commit()
        click.echo(f"✓ Created form: {title}")
        click.echo(f"  ID: {form.id}")
        click.echo(f"  Share link: /forms/public/{form.share_link}")
    except ValidationError as e:
        db.rollback()
        click.echo(f"❌ Invalid field definition:\n{e}")
        raise SystemExit(1)
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise
    finally:
        db.close()


@cli.command()
@click.option("--dry-run", is_flag=True, help="Preview changes without applying")
def cleanup(dry_run: bool):
    """
    Purge expired staged uploads, reconcile stored files and prune old audit events.

    Recommended: run hourly via cron.

    Example:
        formguard cleanup
        formguard cleanup --dry-run
    """
    from formguard.jobs.cleanup import run_cleanup

    if dry_run:
        click.echo("🔍 DRY RUN - no changes will be made")
        click.echo()

    db = SessionLocal()
    try:
        report = run_cleanup(db, dry_run=dry_run)
        verb = "Would remove" if dry_run else "Removed"
        click.echo(f"✓ {verb} {report.staged_purged} expired staged file(s)")
        click.echo(f"✓ {verb} {report.orphans_removed} orphan file(s)")
        click.echo(f"✓ Promotions completed: {report.promotions_completed}")
        click.echo(f"✓ Audit events pruned: {report.audit_events_pruned}")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise
    finally:
        db.close()


@cli.command()
@click.option("--days", default=7, help="Reporting window in days (default: 7)")
@click.option("--limit", default=20, help="Number of recent security events to list")
def security_report(days: int, limit: int):
    """
    Summarize recent access and security events.

    Example:
        formguard security-report --days 30
    """
    from formguard.services.audit_service import AccessLogger

    access_logger = AccessLogger()
    db = SessionLocal()
    try:
        stats = access_logger.get_access_statistics(db, days=days)
        click.echo(f"Last {days} day(s): {stats['total_events']} event(s)")
        click.echo(f"  Accepted submissions: {stats['submissions_accepted']}")
        click.echo(f"  Security events: {stats['security_events']}")
        for event_type, count in sorted(stats["by_event_type"].items()):
            click.echo(f"    {event_type}: {count}")

        if stats["top_security_ips"]:
            click.echo()
            click.echo("Top offending IPs:")
            for ip, count in stats["top_security_ips"]:
                click.echo(f"  {ip}: {count}")

        events = access_logger.get_recent_security_events(db, limit=limit)
        if events:
            click.echo()
            click.echo("Recent security events:")
            for event in events:
                click.echo(
                    f"  {event.created_at:%Y-%m-%d %H:%M:%S} {event.severity:<8} "
                    f"{event.event_type} {event.client_ip or '-'}"
                )
    finally:
        db.close()


if __name__ == "__main__":
    cli()
