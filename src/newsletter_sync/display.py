"""Rich-based display functions for Newsletter Sync."""

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .config import Settings
from .models import (
    Confidence,
    EmailAccount,
    ImportResult,
    PreviewResult,
    Rule,
    SenderGroup,
    SenderResult,
    SenderStatus,
    SyncProgress,
    SyncReport,
    WhitelistEntry,
    WhitelistedDomain,
)

console = Console()

_CONFIDENCE_COLORS = {
    Confidence.HIGH: "green",
    Confidence.MEDIUM: "yellow",
    Confidence.LOW: "dim",
}

_STATUS_COLORS = {
    SenderStatus.SUCCESS: "green",
    SenderStatus.ERROR: "red",
    SenderStatus.SKIPPED: "dim",
}


def _fmt_dt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def display_preview(preview: PreviewResult, min_confidence: Confidence = Confidence.LOW) -> list[SenderGroup]:
    """Display preview groups (already sorted) and return the ones shown."""
    groups = [g for g in preview.groups if g.confidence.rank >= min_confidence.rank]

    table = Table(title="Newsletter Preview")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Count", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Confidence")
    table.add_column("Status")

    for idx, group in enumerate(groups, start=1):
        color = _CONFIDENCE_COLORS[group.confidence]
        if group.is_whitelisted:
            status = f"[cyan]whitelisted ({group.imported_count} imported)[/cyan]"
        else:
            status = ""
        table.add_row(
            str(idx),
            f"[{color}]{group.email}[/{color}]",
            group.name,
            str(group.count),
            str(group.score),
            f"[{color}]{group.confidence.value}[/{color}]",
            status,
        )

    console.print(table)
    console.print(
        Panel(
            f"Senders shown: {len(groups)}  |  "
            f"Messages: {sum(g.count for g in groups)} of {preview.total_messages}",
            title="Summary",
        )
    )
    return groups


def display_sender_detail(group: SenderGroup) -> None:
    """Display detailed information for a single sender."""
    color = _CONFIDENCE_COLORS[group.confidence]

    lines = [
        f"[bold]Email:[/bold] {group.email}",
        f"[bold]Name:[/bold] {group.name}",
        f"[bold]Messages:[/bold] {group.count}",
        f"[bold]Score:[/bold] [{color}]{group.score}[/{color}]",
        f"[bold]Confidence:[/bold] [{color}]{group.confidence.value}[/{color}]",
    ]

    if group.sample and group.sample.reasons:
        lines.append("")
        lines.append("[bold]Signals:[/bold]")
        for reason in group.sample.reasons:
            lines.append(f"  - {reason}")

    if group.sample_subjects:
        lines.append("")
        lines.append("[bold]Sample subjects:[/bold]")
        for subject in group.sample_subjects:
            lines.append(f"  - {subject}")

    console.print(Panel("\n".join(lines), title="Sender Detail"))


def select_senders(groups: list[SenderGroup]) -> list[SenderGroup]:
    """Ask the user to pick senders by number; returns the selection (possibly empty)."""
    console.print()
    console.print(
        "[bold]Select senders to import (comma-separated numbers, 'all', or 'q' to quit):[/bold]"
    )
    selection = console.input("> ").strip()

    if selection.lower() == "q":
        console.print("[dim]Cancelled.[/dim]")
        return []

    if selection.lower() == "all":
        return list(groups)

    try:
        indices = [int(x.strip()) - 1 for x in selection.split(",")]
    except ValueError:
        console.print("[red]Invalid selection.[/red]")
        return []
    return [groups[i] for i in indices if 0 <= i < len(groups)]


def confirm_import(selected: list[SenderGroup]) -> bool:
    """Show the senders about to be whitelisted and ask for confirmation."""
    lines = ["[bold]These senders will be whitelisted and imported:[/bold]", ""]
    for group in selected:
        lines.append(f"  - {group.email} ({group.count} messages)")

    console.print(Panel("\n".join(lines), title="Confirm Import"))
    return Confirm.ask("Continue?", console=console, default=True)


def _sender_results_table(results: list[SenderResult], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Sender")
    table.add_column("Status")
    table.add_column("Imported", justify="right")
    table.add_column("Error")
    for result in results:
        color = _STATUS_COLORS[result.status]
        table.add_row(
            result.email,
            f"[{color}]{result.status.value}[/{color}]",
            str(result.count),
            result.error or "",
        )
    return table


def display_import_result(result: ImportResult) -> None:
    if result.results:
        console.print(_sender_results_table(result.results, "Import Results"))
    console.print(
        Panel(
            f"[bold green]Imported {result.imported_count} newsletters[/bold green]  |  "
            f"Skipped: {result.skipped_count}",
            title="Done",
        )
    )


def display_sync_report(report: SyncReport) -> None:
    table = Table(title="Sync Report")
    table.add_column("Account")
    table.add_column("Provider")
    table.add_column("Synced", justify="right")
    table.add_column("Result")

    for account in report.accounts:
        if account.success:
            outcome = f"[green]{account.message}[/green]"
        else:
            outcome = f"[red]{account.error_type}: {account.error}[/red]"
        table.add_row(account.email, account.provider, str(account.synced_count), outcome)

    if report.accounts:
        console.print(table)
    color = "green" if report.success else "red"
    console.print(Panel(f"[{color}]{report.message}[/{color}]", title="Summary"))


def display_progress(progress: SyncProgress) -> None:
    lines = [
        f"[bold]Status:[/bold] {progress.status.value}",
        f"[bold]Progress:[/bold] {progress.progress}%",
        f"[bold]Synced:[/bold] {progress.synced}",
        f"[bold]Processed:[/bold] {progress.total_processed} / {progress.total}",
        f"[bold]Updated:[/bold] {_fmt_dt(progress.updated_at)}",
    ]
    if progress.message:
        lines.append(f"[bold]Message:[/bold] {progress.message}")
    console.print(Panel("\n".join(lines), title=f"Account {progress.account_id}"))
    if progress.results:
        console.print(_sender_results_table(progress.results, "Senders"))


def display_accounts(accounts: list[EmailAccount]) -> None:
    table = Table(title="Email Accounts")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Provider")
    table.add_column("Email")
    table.add_column("Sync")
    table.add_column("Last synced")
    for account in accounts:
        table.add_row(
            str(account.id),
            account.provider,
            account.email,
            f"every {account.sync_frequency // 60} min" if account.sync_enabled else "[dim]off[/dim]",
            _fmt_dt(account.last_synced_at),
        )
    console.print(table)


def display_whitelist(entries: list[WhitelistEntry]) -> None:
    table = Table(title="Whitelisted Senders")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Domain", style="dim")
    for entry in entries:
        table.add_row(entry.email, entry.name or "", entry.domain)
    console.print(table)


def display_whitelisted_domains(domains: list[WhitelistedDomain]) -> None:
    table = Table(title="Whitelisted Domains")
    table.add_column("Domain")
    table.add_column("Added", style="dim")
    for entry in domains:
        table.add_row(entry.domain, _fmt_dt(entry.created_at))
    console.print(table)


def display_provider_check(settings: Settings) -> None:
    table = Table(title="Provider Configuration")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Redirect URI", style="dim")
    rows = [
        ("gmail", settings.gmail_configured, settings.google_redirect_uri),
        ("outlook", settings.outlook_configured, settings.outlook_redirect_uri),
    ]
    for provider, configured, redirect_uri in rows:
        status = "[green]configured[/green]" if configured else "[red]missing client id or secret[/red]"
        table.add_row(provider, status, redirect_uri or "-")
    console.print(table)


def display_rules(rules: list[Rule]) -> None:
    table = Table(title="Rules")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Name")
    table.add_column("When")
    table.add_column("Then")
    table.add_column("Priority", justify="right")
    table.add_column("Active")
    for rule in rules:
        table.add_row(
            str(rule.id),
            rule.name,
            f"{rule.condition_type} ~ {rule.condition_value!r}",
            f"{rule.action_type} = {rule.action_value}",
            str(rule.priority),
            "yes" if rule.is_active else "[dim]no[/dim]",
        )
    console.print(table)
