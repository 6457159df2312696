"""CLI entry point for Mail Ad Cleaner."""

from __future__ import annotations

import asyncio

import click
from pydantic import ValidationError

from .classifier import create_gateway
from .config import Settings, load_settings
from .constants import INBOX
from .display import (
    configure_logging,
    display_classification_report,
    display_cleanup_report,
    display_locations,
    display_messages,
    display_settings,
)
from .errors import MailboxConnectionError, MailboxError
from .lifecycle import LifecycleOptions, LifecycleOrchestrator
from .mailbox import create_mailbox
from .models import FetchCriteria


def _settings(ctx: click.Context, **overrides) -> Settings:
    try:
        settings = load_settings(ctx.obj.get("env_file"), **overrides)
    except ValidationError as e:
        raise click.ClickException(f"Invalid configuration:\n{e}") from e
    configure_logging(settings.log_level)
    return settings


def _require_credentials(settings: Settings, require_openai: bool = True) -> None:
    """Stop before any connection is attempted when credentials are missing."""
    missing = settings.missing_credentials(require_openai=require_openai)
    if missing:
        raise click.ClickException(
            f"Missing required configuration: {', '.join(missing)}.\n"
            "Set them in the environment or in a .env file."
        )


def _run_lifecycle(settings: Settings, classify: bool, cleanup: bool) -> None:
    _require_credentials(settings, require_openai=classify)
    options = LifecycleOptions.from_settings(settings)
    display_settings(
        settings.provider,
        options.batch_size,
        options.max_age_days,
        options.delete_after_days,
        options.dry_run,
    )

    gateway = create_gateway(settings) if classify else None
    orchestrator = LifecycleOrchestrator(create_mailbox(settings), gateway, options)
    try:
        report = asyncio.run(orchestrator.run(classify=classify, cleanup=cleanup))
    except MailboxConnectionError as e:
        raise click.ClickException(str(e)) from e

    if classify:
        display_classification_report(report.classification)
    if cleanup:
        display_cleanup_report(report.cleanup, options.delete_after_days)


@click.group()
@click.version_option(version="0.1.0", prog_name="mail-ad-cleaner")
@click.option("--env-file", default=None, type=click.Path(dir_okay=False), help="Read settings from this .env file.")
@click.pass_context
def cli(ctx: click.Context, env_file: str | None) -> None:
    """Mail Ad Cleaner - label advertising mail with AI and purge it when it ages out."""
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@cli.command()
@click.option("--dry-run/--live", default=None, help="Report deletions without deleting (default from DRY_RUN).")
@click.option("--batch-size", default=None, type=int, help="Maximum emails per pass.")
@click.option("--max-age-days", default=None, type=int, help="Only look at emails newer than this.")
@click.option("--delete-after-days", default=None, type=int, help="Delete advertising emails at least this old.")
@click.pass_context
def run(
    ctx: click.Context,
    dry_run: bool | None,
    batch_size: int | None,
    max_age_days: int | None,
    delete_after_days: int | None,
) -> None:
    """Classify the inbox, then clean up old advertising."""
    settings = _settings(
        ctx,
        dry_run=dry_run,
        batch_size=batch_size,
        max_email_age_days=max_age_days,
        delete_from_advertising_days=delete_after_days,
    )
    _run_lifecycle(settings, classify=True, cleanup=True)


@cli.command()
@click.option("--batch-size", default=None, type=int, help="Maximum emails to classify.")
@click.pass_context
def classify(ctx: click.Context, batch_size: int | None) -> None:
    """Classify unprocessed inbox emails and label them."""
    settings = _settings(ctx, batch_size=batch_size)
    _run_lifecycle(settings, classify=True, cleanup=False)


@cli.command()
@click.option("--dry-run/--live", default=None, help="Report deletions without deleting (default from DRY_RUN).")
@click.option("--delete-after-days", default=None, type=int, help="Delete advertising emails at least this old.")
@click.pass_context
def cleanup(ctx: click.Context, dry_run: bool | None, delete_after_days: int | None) -> None:
    """Delete advertising emails past the age threshold."""
    settings = _settings(ctx, dry_run=dry_run, delete_from_advertising_days=delete_after_days)
    _run_lifecycle(settings, classify=False, cleanup=True)


@cli.command()
@click.pass_context
def folders(ctx: click.Context) -> None:
    """List the mailbox folders or labels."""
    settings = _settings(ctx)
    _require_credentials(settings, require_openai=False)
    mailbox = create_mailbox(settings)
    try:
        with mailbox:
            locations = mailbox.list_locations()
    except MailboxError as e:
        raise click.ClickException(str(e)) from e
    display_locations(locations, mailbox.location_kind)


@cli.command()
@click.option("-l", "--location", default=INBOX, show_default=True, help="Folder or label to look at.")
@click.option("-n", "--limit", default=10, show_default=True, type=int, help="Maximum emails to show.")
@click.option("--max-age-days", default=30, show_default=True, type=int, help="Only emails newer than this.")
@click.pass_context
def peek(ctx: click.Context, location: str, limit: int, max_age_days: int) -> None:
    """Show emails in a folder or label without changing anything."""
    settings = _settings(ctx)
    _require_credentials(settings, require_openai=False)
    try:
        criteria = FetchCriteria(max_age_days=max_age_days, batch_size=limit, exclude_processed=False)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    mailbox = create_mailbox(settings)
    try:
        with mailbox:
            messages = mailbox.fetch(criteria, location)
    except MailboxError as e:
        raise click.ClickException(str(e)) from e
    display_messages(messages, location, settings.delete_from_advertising_days)
