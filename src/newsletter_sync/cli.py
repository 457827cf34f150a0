"""CLI entry point for Newsletter Sync."""

from __future__ import annotations

import logging

import click
import httpx
from rich.logging import RichHandler

from .cache import SQLiteCache
from .config import Settings
from .constants import PROVIDER_GMAIL, PROVIDER_OUTLOOK
from .display import (
    confirm_import,
    console,
    display_accounts,
    display_import_result,
    display_preview,
    display_provider_check,
    display_progress,
    display_rules,
    display_sender_detail,
    display_sync_report,
    display_whitelist,
    display_whitelisted_domains,
    select_senders,
)
from .errors import NewsletterSyncError
from .models import Confidence, EmailAccount, Rule
from .oauth import build_connect_url, handle_oauth_callback
from .providers.base import ProviderRegistry
from .rules import ACTION_TYPES, CONDITION_TYPES
from .store import SQLiteStore
from .sync import SyncOrchestrator


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # googleapiclient logs every discovery fetch at INFO
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _settings(ctx: click.Context) -> Settings:
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = Settings.from_env()
    return ctx.obj["settings"]


def _store(ctx: click.Context) -> SQLiteStore:
    if "store" not in ctx.obj:
        ctx.obj["store"] = ctx.with_resource(SQLiteStore(_settings(ctx).db_path))
    return ctx.obj["store"]


def _registry(ctx: click.Context) -> ProviderRegistry:
    if "registry" not in ctx.obj:
        ctx.obj["registry"] = ProviderRegistry.from_settings(_settings(ctx))
    return ctx.obj["registry"]


def _orchestrator(ctx: click.Context) -> SyncOrchestrator:
    if "orchestrator" not in ctx.obj:
        settings = _settings(ctx)
        cache = ctx.obj.get("cache") or ctx.with_resource(SQLiteCache(settings.cache_path))
        ctx.obj["orchestrator"] = SyncOrchestrator(
            _store(ctx),
            cache,
            _registry(ctx),
            max_workers=settings.max_workers,
        )
    return ctx.obj["orchestrator"]


def _owned_account(ctx: click.Context, account_id: int) -> EmailAccount:
    account = _store(ctx).find_account_by_id(account_id)
    if account is None or account.user_id != ctx.obj["user_id"]:
        raise click.ClickException(f"Email account {account_id} not found")
    return account


@click.group()
@click.version_option(version="0.1.0", prog_name="newsletter-sync")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "-u",
    "--user",
    "user_id",
    default=1,
    type=int,
    envvar="NEWSLETTER_SYNC_USER",
    help="User id that owns accounts, whitelist and rules.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, user_id: int) -> None:
    """Newsletter Sync - import newsletters from Gmail and Outlook into one store."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["user_id"] = user_id


# --- accounts ---


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Show which email providers have OAuth client credentials configured."""
    settings = _settings(ctx)
    display_provider_check(settings)
    if not (settings.gmail_configured or settings.outlook_configured):
        console.print("[red]No provider configured. Set GOOGLE_CLIENT_ID/SECRET or OUTLOOK_CLIENT_ID/SECRET.[/red]")
        ctx.exit(1)


@cli.command()
@click.argument("provider", type=click.Choice([PROVIDER_GMAIL, PROVIDER_OUTLOOK]))
@click.pass_context
def connect(ctx: click.Context, provider: str) -> None:
    """Print the consent URL for connecting a mailbox."""
    try:
        url = build_connect_url(_registry(ctx), provider)
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e
    console.print("Open this URL in a browser, then pass the redirect URL to 'callback':")
    console.print(url, soft_wrap=True)


@cli.command()
@click.argument("redirect_url")
@click.pass_context
def callback(ctx: click.Context, redirect_url: str) -> None:
    """Finish connecting a mailbox from the OAuth redirect URL."""
    params = dict(httpx.URL(redirect_url).params)
    try:
        account = handle_oauth_callback(_registry(ctx), _store(ctx), ctx.obj["user_id"], params)
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"[green]Connected {account.provider} account {account.email} (id {account.id}).[/green]")


@cli.command()
@click.pass_context
def accounts(ctx: click.Context) -> None:
    """List connected email accounts."""
    found = _store(ctx).find_accounts_by_user(ctx.obj["user_id"])
    if not found:
        console.print("[dim]No email accounts connected.[/dim]")
        return
    display_accounts(found)


@cli.command()
@click.argument("account_id", type=int)
@click.option("--keep-newsletters", is_flag=True, help="Keep imported newsletters, detached from the account.")
@click.pass_context
def disconnect(ctx: click.Context, account_id: int, keep_newsletters: bool) -> None:
    """Remove a connected account."""
    account = _owned_account(ctx, account_id)
    store = _store(ctx)
    store.delete_account(account_id, delete_newsletters=not keep_newsletters)
    console.print(f"[green]Disconnected {account.email}.[/green]")


@cli.command()
@click.argument("account_id", type=int)
@click.option("--enable/--disable", default=None, help="Turn scheduled sync on or off.")
@click.option("-f", "--frequency", type=int, default=None, help="Minutes between scheduled syncs.")
@click.pass_context
def schedule(ctx: click.Context, account_id: int, enable: bool | None, frequency: int | None) -> None:
    """Configure scheduled sync for an account."""
    _owned_account(ctx, account_id)
    store = _store(ctx)
    if enable is not None:
        store.set_account_sync_enabled(account_id, enable)
    if frequency is not None:
        store.set_account_sync_frequency(account_id, frequency * 60)
    display_accounts([store.find_account_by_id(account_id)])


# --- preview / import ---


@cli.command()
@click.argument("account_id", type=int)
@click.option(
    "--min-confidence",
    type=click.Choice([c.value for c in Confidence]),
    default=Confidence.LOW.value,
    help="Hide senders below this confidence.",
)
@click.option("--select", "interactive", is_flag=True, help="Pick senders to whitelist and import.")
@click.pass_context
def preview(ctx: click.Context, account_id: int, min_confidence: str, interactive: bool) -> None:
    """Scan recent mail and group likely newsletters by sender."""
    _owned_account(ctx, account_id)
    orchestrator = _orchestrator(ctx)
    try:
        result = orchestrator.start_preview(account_id)
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e

    if not result.groups:
        console.print("[yellow]No candidate messages found.[/yellow]")
        return

    shown = display_preview(result, min_confidence=Confidence(min_confidence))
    if not interactive:
        return

    selected = select_senders(shown)
    if not selected:
        console.print("[yellow]No senders selected.[/yellow]")
        return

    console.print()
    for group in selected:
        display_sender_detail(group)

    if not confirm_import(selected):
        console.print("[dim]Cancelled.[/dim]")
        return

    try:
        imported = orchestrator.commit_whitelist_and_import(
            account_id, [g.email for g in selected], preview_data=result
        )
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e
    display_import_result(imported)


@cli.command(name="import")
@click.argument("account_id", type=int)
@click.argument("senders", nargs=-1)
@click.option("-d", "--domain", "domains", multiple=True, help="Whitelist every sender of this domain.")
@click.option("--fresh", is_flag=True, help="Ignore the cached preview and list messages again.")
@click.pass_context
def import_cmd(
    ctx: click.Context, account_id: int, senders: tuple[str, ...], domains: tuple[str, ...], fresh: bool
) -> None:
    """Whitelist SENDERS (and --domain entries) and import their newsletters."""
    if not senders and not domains:
        raise click.UsageError("Give at least one sender address or --domain.")
    _owned_account(ctx, account_id)
    orchestrator = _orchestrator(ctx)
    cached = None if fresh else orchestrator.cached_preview(account_id)
    if cached is not None:
        console.print(
            f"[dim]Using cached preview from {cached.generated_at:%Y-%m-%d %H:%M} "
            f"({cached.total_messages} messages)[/dim]"
        )

    try:
        result = orchestrator.commit_whitelist_and_import(
            account_id, senders, preview_data=cached, accepted_domains=domains
        )
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e
    display_import_result(result)


# --- sync ---


@cli.command()
@click.option("-a", "--account", "account_id", type=int, default=None, help="Sync only this account.")
@click.pass_context
def sync(ctx: click.Context, account_id: int | None) -> None:
    """Import new mail from whitelisted senders."""
    try:
        report = _orchestrator(ctx).run_manual_sync(ctx.obj["user_id"], account_id)
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e
    display_sync_report(report)
    if not report.success:
        ctx.exit(1)


@cli.command(name="scheduled-sync")
@click.pass_context
def scheduled_sync(ctx: click.Context) -> None:
    """Sync every enabled account that is due (for cron)."""
    report = _orchestrator(ctx).run_scheduled_sync()
    display_sync_report(report)


@cli.command()
@click.argument("account_id", type=int)
@click.pass_context
def progress(ctx: click.Context, account_id: int) -> None:
    """Show the latest sync progress for an account."""
    snapshot = _orchestrator(ctx).get_progress(ctx.obj["user_id"], account_id)
    if snapshot is None:
        raise click.ClickException(f"Email account {account_id} not found")
    display_progress(snapshot)


@cli.command()
@click.pass_context
def purge(ctx: click.Context) -> None:
    """Delete archived newsletters binned more than 15 days ago."""
    removed = _orchestrator(ctx).purge_archived()
    console.print(f"[green]Purged {removed} archived newsletters.[/green]")


# --- whitelist ---


@cli.group()
def whitelist() -> None:
    """Manage whitelisted senders and domains."""


@whitelist.command(name="add")
@click.argument("value")
@click.option("-d", "--domain", "is_domain", is_flag=True, help="VALUE is a domain; accept every sender under it.")
@click.option("-n", "--name", default=None, help="Display name for the sender.")
@click.pass_context
def whitelist_add(ctx: click.Context, value: str, is_domain: bool, name: str | None) -> None:
    """Whitelist a sender address, or a whole domain with --domain."""
    store = _store(ctx)
    if is_domain:
        try:
            entry = store.upsert_whitelisted_domain(ctx.obj["user_id"], value)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="VALUE") from e
        console.print(f"[green]Whitelisted every sender at {entry.domain}.[/green]")
        return
    if "@" not in value:
        raise click.BadParameter(f"{value!r} is not an address; use --domain for domains", param_hint="VALUE")
    entry = store.upsert_whitelist_entry(ctx.obj["user_id"], value, name)
    console.print(f"[green]Whitelisted {entry.email}.[/green]")


@whitelist.command(name="list")
@click.pass_context
def whitelist_list(ctx: click.Context) -> None:
    """List whitelisted senders and domains."""
    store = _store(ctx)
    entries = store.find_whitelist_by_user(ctx.obj["user_id"])
    domains = store.find_whitelisted_domains_by_user(ctx.obj["user_id"])
    if not entries and not domains:
        console.print("[dim]Whitelist is empty.[/dim]")
        return
    if entries:
        display_whitelist(entries)
    if domains:
        display_whitelisted_domains(domains)


@whitelist.command(name="remove")
@click.argument("value")
@click.option("-d", "--domain", "is_domain", is_flag=True, help="VALUE is a whitelisted domain.")
@click.pass_context
def whitelist_remove(ctx: click.Context, value: str, is_domain: bool) -> None:
    """Stop importing from a sender or domain."""
    store = _store(ctx)
    if is_domain:
        removed = store.delete_whitelisted_domain(ctx.obj["user_id"], value)
    else:
        removed = store.delete_whitelist_entry(ctx.obj["user_id"], value)
    if not removed:
        raise click.ClickException(f"{value} is not whitelisted")
    console.print(f"[green]Removed {value.strip().lower()}.[/green]")


# --- rules ---


@cli.group()
def rules() -> None:
    """Manage post-import rules."""


@rules.command(name="add")
@click.argument("name")
@click.option("--when", "condition_type", type=click.Choice(CONDITION_TYPES), required=True)
@click.option("--matches", "condition_value", required=True, help="Sender address or text to look for.")
@click.option("--then", "action_type", type=click.Choice(ACTION_TYPES), required=True)
@click.option("--value", "action_value", required=True, help="Category, priority or folder to set.")
@click.option("-p", "--priority", default=0, type=int, help="Lower runs first; later rules win.")
@click.pass_context
def rules_add(
    ctx: click.Context,
    name: str,
    condition_type: str,
    condition_value: str,
    action_type: str,
    action_value: str,
    priority: int,
) -> None:
    """Add a rule."""
    if action_type == "priority" and not action_value.lstrip("-").isdigit():
        raise click.BadParameter("priority value must be an integer", param_hint="--value")
    rule = _store(ctx).insert_rule(
        Rule(
            user_id=ctx.obj["user_id"],
            name=name,
            condition_type=condition_type,
            condition_value=condition_value,
            action_type=action_type,
            action_value=action_value,
            priority=priority,
        )
    )
    console.print(f"[green]Added rule {rule.id}.[/green]")


@rules.command(name="list")
@click.pass_context
def rules_list(ctx: click.Context) -> None:
    """List rules."""
    found = _store(ctx).find_rules_by_user(ctx.obj["user_id"])
    if not found:
        console.print("[dim]No rules defined.[/dim]")
        return
    display_rules(found)


@rules.command(name="apply")
@click.argument("newsletter_id", type=int)
@click.pass_context
def rules_apply(ctx: click.Context, newsletter_id: int) -> None:
    """Re-run the active rules against one newsletter."""
    try:
        updates = _orchestrator(ctx).apply_rules_to_newsletter(newsletter_id)
    except NewsletterSyncError as e:
        raise click.ClickException(str(e)) from e
    if not updates:
        console.print("[dim]No rules matched.[/dim]")
        return
    for field_name, value in updates.items():
        console.print(f"[bold]{field_name}[/bold] = {value}")
