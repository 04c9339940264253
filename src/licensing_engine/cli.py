"""Command-line interface for licensing_engine.

Provides the ``licensing`` entry point with subcommands covering the
engine's caller API, the lifecycle sweep and dossier reports.
"""

import asyncio
import contextlib
import dataclasses
import json
import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, Any, Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from licensing_engine.config import EngineConfig
from licensing_engine.errors import ConflictDetected, IneligibleForRenewal, LicensingError
from licensing_engine.events.outbox import OutboxSink
from licensing_engine.events.webhook import WebhookDispatcher
from licensing_engine.lifecycle import LicenseEvent
from licensing_engine.models import (
    Actor,
    ActorRole,
    Conflict,
    Decision,
    License,
    LicenseScope,
    LicenseStatus,
    LicenseType,
    PricingBreakdown,
    PricingStrategy,
)
from licensing_engine.reporters import MarkdownReporter
from licensing_engine.service import LicensingEngine

app = typer.Typer(
    name="licensing",
    help="License lifecycle and conflict management for creator-owned assets.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

# Configure logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)
logger = logging.getLogger("licensing_engine")

ActorOption = Annotated[
    str,
    typer.Option(
        "--actor",
        "-a",
        envvar="LICENSING_ACTOR",
        help="Acting identity as ROLE:ID, e.g. brand:acme or creator:alice",
    ),
]


def _setup_logging(verbose: bool) -> None:
    """Configure logging level based on verbosity flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.getLogger("licensing_engine").setLevel(level)


@app.callback()
def main(
    ctx: typer.Context,
    db: Annotated[
        Optional[Path],
        typer.Option(
            "--db",
            envvar="LICENSING_DB_PATH",
            help="SQLite database file",
        ),
    ] = None,
    webhook_url: Annotated[
        Optional[str],
        typer.Option(
            "--webhook-url",
            envvar="LICENSING_WEBHOOK_URL",
            help="Deliver domain events to this endpoint after each command",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """Manage licenses between brands and asset owners."""
    _setup_logging(verbose)
    config = EngineConfig.from_env()
    overrides: dict[str, Any] = {}
    if db is not None:
        overrides["db_path"] = db
    if webhook_url:
        overrides["webhook_url"] = webhook_url
    if overrides:
        config = dataclasses.replace(config, **overrides)
    ctx.obj = config


def _engine(ctx: typer.Context) -> LicensingEngine:
    return LicensingEngine(config=ctx.obj, sink=OutboxSink())


def _parse_actor(raw: str) -> Actor:
    role, sep, actor_id = raw.partition(":")
    if role.lower() == "system" and not sep:
        return Actor.system()
    try:
        parsed_role = ActorRole(role.upper())
    except ValueError:
        parsed_role = None
    if not sep or not actor_id or parsed_role is None:
        err_console.print(
            f"[red]Error:[/red] Invalid actor {raw!r}; expected ROLE:ID with ROLE one of "
            "brand, creator, admin"
        )
        raise typer.Exit(code=1)
    return Actor(id=actor_id, role=parsed_role)


def _parse_date(raw: str, name: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        err_console.print(f"[red]Error:[/red] {name} must be an ISO date (YYYY-MM-DD)")
        raise typer.Exit(code=1)


def _print_conflicts(conflicts: list[Conflict]) -> None:
    table = Table(title="Conflicts")
    table.add_column("License")
    table.add_column("Reason")
    table.add_column("Brand")
    table.add_column("Status")
    table.add_column("Term")
    table.add_column("Details")
    for c in conflicts:
        table.add_row(
            c.license_id,
            c.reason.value,
            c.brand_id,
            c.status.value,
            f"{c.start_date} to {c.end_date}",
            c.details,
        )
    console.print(table)


@contextlib.contextmanager
def _guard() -> Iterator[None]:
    """Turn engine errors into a red message and exit code 1."""
    try:
        yield
    except ConflictDetected as e:
        err_console.print(f"[red]Conflict:[/red] {e}")
        _print_conflicts(e.conflicts)
        raise typer.Exit(code=1)
    except IneligibleForRenewal as e:
        err_console.print("[red]Not eligible for renewal:[/red]")
        for reason in e.reasons:
            err_console.print(f"  - {reason}")
        raise typer.Exit(code=1)
    except LicensingError as e:
        err_console.print(f"[red]{type(e).__name__}:[/red] {e}")
        raise typer.Exit(code=1)


def _deliver(engine: LicensingEngine) -> None:
    """Flush buffered events to the configured webhook, if any."""
    outbox = engine.sink
    if not isinstance(outbox, OutboxSink) or not len(outbox):
        return
    if not engine.config.webhook_url:
        logger.debug("No webhook configured; dropping %d event(s)", len(outbox))
        return

    async def flush():
        async with WebhookDispatcher(engine.config.webhook_url) as dispatcher:
            return await dispatcher.flush(outbox)

    report = asyncio.run(flush())
    if not report.ok:
        err_console.print(
            f"[yellow]Warning:[/yellow] {len(report.failed)} event(s) could not be delivered"
        )


def _print_license(lic: License) -> None:
    console.print(f"[bold]{lic.id}[/bold] [cyan]{lic.status.value}[/cyan]")
    console.print(
        f"  {lic.license_type.value} on {lic.ip_asset_id} for {lic.brand_id}, "
        f"{lic.start_date} to {lic.end_date}, fee {lic.fee_amount}"
    )
    if lic.parent_license_id:
        console.print(f"  [dim]Renews {lic.parent_license_id}[/dim]")


def _print_breakdown(breakdown: PricingBreakdown) -> None:
    table = Table(title=f"Renewal pricing ({breakdown.strategy.value})")
    table.add_column("Step")
    table.add_column("Percent", justify="right")
    table.add_column("Amount", justify="right")
    table.add_row("Original fee", "", str(breakdown.original_fee))
    table.add_row("Base renewal fee", "", str(breakdown.base_renewal_fee))
    for adj in breakdown.adjustments:
        table.add_row(adj.label, f"{adj.percent}%", f"{adj.amount:+d}")
    table.add_row("[bold]Final fee[/bold]", "", f"[bold]{breakdown.final_fee}[/bold]")
    console.print(table)
    console.print(f"Confidence: {breakdown.confidence_score}/100")
    if breakdown.clamp_applied:
        console.print("[yellow]Clamp applied[/yellow]")
    for line in breakdown.reasoning:
        console.print(f"  - {line}")


@app.command()
def owners(
    ctx: typer.Context,
    asset: Annotated[str, typer.Argument(help="IP asset id")],
    shares: Annotated[
        list[str],
        typer.Argument(help="Owner shares as CREATOR:BPS, summing to 10000"),
    ],
) -> None:
    """Record the owners of an asset in the ownership ledger."""
    parsed = []
    for raw in shares:
        creator_id, _, bps = raw.partition(":")
        if not bps.isdigit():
            err_console.print(f"[red]Error:[/red] Invalid share {raw!r}; expected CREATOR:BPS")
            raise typer.Exit(code=1)
        parsed.append((creator_id, int(bps)))

    engine = _engine(ctx)
    with _guard():
        engine.record_ownership(asset, parsed)
    console.print(f"[green]Recorded {len(parsed)} owner(s) for[/green] {asset}")


@app.command()
def create(
    ctx: typer.Context,
    actor: ActorOption,
    asset: Annotated[str, typer.Option("--asset", help="IP asset id")],
    brand: Annotated[str, typer.Option("--brand", help="Licensee brand id")],
    start: Annotated[str, typer.Option("--start", help="Start date (inclusive)")],
    end: Annotated[str, typer.Option("--end", help="End date (exclusive)")],
    fee: Annotated[int, typer.Option("--fee", help="Fee in minor currency units")],
    license_type: Annotated[
        LicenseType, typer.Option("--type", help="License type")
    ] = LicenseType.NON_EXCLUSIVE,
    rev_share: Annotated[
        int, typer.Option("--rev-share", help="Revenue share in basis points")
    ] = 0,
    media: Annotated[
        Optional[list[str]], typer.Option("--media", help="Media channel (repeatable)")
    ] = None,
    placement: Annotated[
        Optional[list[str]], typer.Option("--placement", help="Placement (repeatable)")
    ] = None,
    territory: Annotated[
        Optional[list[str]], typer.Option("--territory", help="Territory (repeatable)")
    ] = None,
    category: Annotated[
        Optional[str], typer.Option("--category", help="Exclusivity category")
    ] = None,
    block: Annotated[
        Optional[list[str]], typer.Option("--block", help="Blocked competitor brand id")
    ] = None,
    signature: Annotated[
        bool, typer.Option("--signature", help="Require a signature before activation")
    ] = False,
    draft: Annotated[
        bool, typer.Option("--draft", help="Create as DRAFT without submitting")
    ] = False,
) -> None:
    """Create a license and submit it for owner approval."""
    scope = LicenseScope(
        media=media or [],
        placements=placement or [],
        territories=territory or ["GLOBAL"],
        exclusivity_category=category,
        blocked_competitors=block or [],
    )
    engine = _engine(ctx)
    with _guard():
        lic = engine.create(
            _parse_actor(actor),
            ip_asset_id=asset,
            brand_id=brand,
            license_type=license_type,
            start_date=_parse_date(start, "--start"),
            end_date=_parse_date(end, "--end"),
            fee_amount=fee,
            rev_share_bps=rev_share,
            scope=scope,
            signature_required=signature,
            submit=not draft,
        )
    _deliver(engine)
    console.print("[green]Created[/green]")
    _print_license(lic)


@app.command()
def approve(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
    actor: ActorOption,
    reject: Annotated[bool, typer.Option("--reject", help="Reject instead")] = False,
    comments: Annotated[Optional[str], typer.Option("--comments")] = None,
) -> None:
    """Record an owner's approval (or rejection) of a submitted license."""
    engine = _engine(ctx)
    with _guard():
        lic = engine.approve(
            license_id,
            _parse_actor(actor),
            Decision.REJECTED if reject else Decision.APPROVED,
            comments,
        )
    _deliver(engine)
    _print_license(lic)


@app.command()
def transition(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
    event: Annotated[LicenseEvent, typer.Argument(help="Lifecycle event")],
    actor: ActorOption,
    reason: Annotated[Optional[str], typer.Option("--reason")] = None,
) -> None:
    """Apply a lifecycle event (SIGN, DISPUTE, SUSPEND, ...) to a license."""
    engine = _engine(ctx)
    with _guard():
        lic = engine.transition(license_id, event, _parse_actor(actor), reason)
    _deliver(engine)
    _print_license(lic)


@app.command()
def terminate(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
    actor: ActorOption,
    reason: Annotated[str, typer.Option("--reason", help="Why (10 to 500 characters)")],
) -> None:
    """Irreversibly terminate a license."""
    engine = _engine(ctx)
    with _guard():
        lic = engine.terminate(license_id, _parse_actor(actor), reason)
    _deliver(engine)
    _print_license(lic)


@app.command()
def show(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
) -> None:
    """Show a license with its status history."""
    engine = _engine(ctx)
    with _guard():
        lic = engine.get(license_id)
        history = engine.get_status_history(license_id)
    _print_license(lic)

    table = Table(title="Status history")
    table.add_column("#", justify="right")
    table.add_column("When")
    table.add_column("Event")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Actor")
    table.add_column("Reason")
    for entry in history:
        table.add_row(
            str(entry.sequence),
            entry.at.strftime("%Y-%m-%d %H:%M"),
            entry.event,
            entry.from_status.value if entry.from_status else "",
            entry.to_status.value,
            entry.actor_id,
            entry.reason or "",
        )
    console.print(table)


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    brand: Annotated[Optional[str], typer.Option("--brand")] = None,
    asset: Annotated[Optional[str], typer.Option("--asset")] = None,
    status: Annotated[Optional[LicenseStatus], typer.Option("--status")] = None,
) -> None:
    """List licenses."""
    engine = _engine(ctx)
    licenses = engine.list_licenses(brand_id=brand, ip_asset_id=asset, status=status)
    if not licenses:
        console.print("[yellow]No licenses found[/yellow]")
        return

    table = Table()
    for column in ("Id", "Asset", "Brand", "Type", "Status", "Start", "End", "Fee"):
        table.add_column(column)
    for lic in licenses:
        table.add_row(
            lic.id,
            lic.ip_asset_id,
            lic.brand_id,
            lic.license_type.value,
            lic.status.value,
            str(lic.start_date),
            str(lic.end_date),
            str(lic.fee_amount),
        )
    console.print(table)


@app.command()
def conflicts(
    ctx: typer.Context,
    asset: Annotated[str, typer.Option("--asset")],
    start: Annotated[str, typer.Option("--start")],
    end: Annotated[str, typer.Option("--end")],
    license_type: Annotated[LicenseType, typer.Option("--type")] = LicenseType.EXCLUSIVE,
    brand: Annotated[Optional[str], typer.Option("--brand")] = None,
    territory: Annotated[Optional[list[str]], typer.Option("--territory")] = None,
) -> None:
    """Check a prospective grant for conflicts without reserving anything."""
    engine = _engine(ctx)
    scope = LicenseScope(territories=territory or ["GLOBAL"])
    with _guard():
        result = engine.check_conflicts(
            asset,
            _parse_date(start, "--start"),
            _parse_date(end, "--end"),
            license_type,
            scope=scope,
            brand_id=brand,
        )
    if not result.has_conflicts:
        console.print("[green]No conflicts[/green]")
        return
    _print_conflicts(result.conflicts)
    if result.blocking():
        raise typer.Exit(code=1)


@app.command()
def preview(
    ctx: typer.Context,
    asset: Annotated[str, typer.Argument(help="IP asset id")],
) -> None:
    """Summarize what is currently occupying an asset."""
    result = _engine(ctx).conflict_preview(asset)
    console.print(f"[bold]Occupying licenses:[/bold] {result.occupying_licenses}")
    console.print(f"[bold]Exclusive:[/bold] {result.exclusive_licenses}")
    if result.blocked_media:
        console.print(f"[bold]Blocked media:[/bold] {', '.join(result.blocked_media)}")
    if result.territories_in_use:
        console.print(f"[bold]Territories in use:[/bold] {', '.join(result.territories_in_use)}")
    console.print(f"[bold]Earliest exclusive start:[/bold] {result.suggested_start_date}")


def _parse_change(raw: str) -> tuple[str, Any]:
    name, sep, value = raw.partition("=")
    if not sep:
        err_console.print(f"[red]Error:[/red] Invalid change {raw!r}; expected FIELD=VALUE")
        raise typer.Exit(code=1)
    if name in ("fee_amount", "rev_share_bps"):
        try:
            return name, int(value)
        except ValueError:
            err_console.print(f"[red]Error:[/red] {name} must be an integer")
            raise typer.Exit(code=1)
    if name == "auto_renew":
        return name, value.lower() in ("1", "true", "yes")
    if name == "scope":
        try:
            return name, json.loads(value)
        except json.JSONDecodeError as e:
            err_console.print(f"[red]Error:[/red] scope must be JSON: {e}")
            raise typer.Exit(code=1)
    return name, value


@app.command()
def amend(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
    actor: ActorOption,
    changes: Annotated[
        list[str], typer.Option("--set", help="FIELD=VALUE (repeatable)")
    ],
    justification: Annotated[str, typer.Option("--justification", "-j")],
    deadline_days: Annotated[Optional[int], typer.Option("--deadline-days")] = None,
) -> None:
    """Propose an amendment to an ACTIVE license."""
    engine = _engine(ctx)
    with _guard():
        amendment = engine.propose_amendment(
            license_id,
            _parse_actor(actor),
            dict(_parse_change(c) for c in changes),
            justification,
            deadline_days=deadline_days,
        )
    _deliver(engine)
    console.print(
        f"[green]Amendment #{amendment.number}[/green] {amendment.id} "
        f"{amendment.status.value}, due {amendment.approval_deadline:%Y-%m-%d}"
    )


@app.command()
def extend(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
    actor: ActorOption,
    days: Annotated[int, typer.Option("--days", help="Days to add")],
    justification: Annotated[str, typer.Option("--justification", "-j")],
) -> None:
    """Request an extension of a license's end date."""
    engine = _engine(ctx)
    with _guard():
        extension = engine.request_extension(
            license_id, _parse_actor(actor), days, justification
        )
    _deliver(engine)
    console.print(
        f"[green]Extension[/green] {extension.id} {extension.status.value}: "
        f"new end {extension.new_end_date}, additional fee {extension.additional_fee}"
    )


@app.command()
def decide(
    ctx: typer.Context,
    kind: Annotated[str, typer.Argument(help="'amendment' or 'extension'")],
    item_id: Annotated[str, typer.Argument(help="Amendment or extension id")],
    actor: ActorOption,
    reject: Annotated[bool, typer.Option("--reject", help="Reject instead")] = False,
    comments: Annotated[Optional[str], typer.Option("--comments")] = None,
) -> None:
    """Approve or reject an amendment or extension."""
    decision = Decision.REJECTED if reject else Decision.APPROVED
    engine = _engine(ctx)
    if kind == "amendment":
        process = engine.process_amendment_approval
    elif kind == "extension":
        process = engine.process_extension_approval
    else:
        err_console.print(f"[red]Unknown kind:[/red] {kind}")
        err_console.print("Valid kinds: amendment, extension")
        raise typer.Exit(code=1)

    with _guard():
        item = process(item_id, _parse_actor(actor), decision, comments)
    _deliver(engine)
    console.print(f"{kind.capitalize()} {item.id}: [cyan]{item.status.value}[/cyan]")


@app.command()
def renewal(
    ctx: typer.Context,
    action: Annotated[str, typer.Argument(help="'check', 'price', 'offer' or 'accept'")],
    target_id: Annotated[str, typer.Argument(help="License id (offer id for 'accept')")],
    actor: Annotated[
        Optional[str],
        typer.Option("--actor", "-a", envvar="LICENSING_ACTOR", help="Acting identity"),
    ] = None,
    strategy: Annotated[
        PricingStrategy, typer.Option("--strategy")
    ] = PricingStrategy.AUTOMATIC,
    custom: Annotated[
        Optional[str], typer.Option("--custom", help="Negotiated adjustment percent")
    ] = None,
) -> None:
    """Check eligibility, preview pricing, generate or accept renewal offers."""
    custom_percent = None
    if custom is not None:
        try:
            custom_percent = Decimal(custom)
        except InvalidOperation:
            err_console.print("[red]Error:[/red] --custom must be a number")
            raise typer.Exit(code=1)

    engine = _engine(ctx)
    with _guard():
        if action == "check":
            result = engine.check_renewal_eligibility(target_id)
            if result.eligible:
                console.print(
                    f"[green]Eligible[/green]: {result.days_until_expiration} days to "
                    f"expiration, renewal term {result.proposed_start_date} to "
                    f"{result.proposed_end_date}"
                )
            else:
                console.print("[red]Not eligible[/red]")
                for reason in result.reasons:
                    console.print(f"  - {reason}")
            for warning in result.warnings:
                console.print(f"  [yellow]! {warning}[/yellow]")
        elif action == "price":
            _print_breakdown(
                engine.preview_renewal_pricing(
                    target_id, strategy, custom_adjustment_percent=custom_percent
                )
            )
        elif action in ("offer", "accept"):
            if actor is None:
                err_console.print("[red]Error:[/red] --actor is required")
                raise typer.Exit(code=1)
            if action == "offer":
                offer = engine.generate_renewal_offer(
                    target_id,
                    _parse_actor(actor),
                    strategy,
                    custom_adjustment_percent=custom_percent,
                )
                _print_breakdown(offer.breakdown)
                console.print(
                    f"[green]Offer[/green] {offer.id} valid until {offer.expires_at:%Y-%m-%d}"
                )
            else:
                child = engine.accept_renewal_offer(target_id, _parse_actor(actor))
                console.print("[green]Renewal created[/green]")
                _print_license(child)
        else:
            err_console.print(f"[red]Unknown action:[/red] {action}")
            err_console.print("Valid actions: check, price, offer, accept")
            raise typer.Exit(code=1)
    _deliver(engine)


@app.command()
def stats(
    ctx: typer.Context,
    brand: Annotated[Optional[str], typer.Option("--brand")] = None,
    asset: Annotated[Optional[str], typer.Option("--asset")] = None,
) -> None:
    """Show portfolio statistics."""
    engine = _engine(ctx)
    result = engine.get_stats(brand_id=brand, ip_asset_id=asset)
    console.print(f"[bold]Total:[/bold] {result.total}")
    console.print(f"[bold]Active:[/bold] {result.total_active}")
    for status_name, count in result.by_status.items():
        console.print(f"  {status_name}: {count}")
    console.print(f"[bold]Active fees:[/bold] {result.active_fee_total}")
    console.print(
        f"[bold]Expiring:[/bold] {result.expiring_in_30_days} / "
        f"{result.expiring_in_60_days} / {result.expiring_in_90_days} (30/60/90 days)"
    )
    console.print(f"[bold]Renewal rate:[/bold] {result.renewal_rate:.1%}")


@app.command()
def sweep(ctx: typer.Context) -> None:
    """Run the lifecycle sweep: expiries, renewals and overdue approvals."""
    engine = _engine(ctx)
    report = engine.reconcile()
    _deliver(engine)

    console.print(f"Processed [bold]{report.processed}[/bold] item(s)")
    for label, ids in (
        ("Marked expiring", report.marked_expiring),
        ("Expired", report.expired),
        ("Renewed", report.renewed),
        ("Auto-renewed", report.auto_renewed),
        ("Expired offers", report.expired_offers),
        ("Rejected amendments", report.rejected_amendments),
        ("Expired extensions", report.expired_extensions),
        ("Canceled drafts", report.canceled_drafts),
    ):
        if ids:
            console.print(f"  {label}: {len(ids)}")
    if report.errors:
        console.print(f"\n[red]Errors ({len(report.errors)}):[/red]")
        for error in report.errors:
            console.print(f"  - {error}")
        raise typer.Exit(code=1)


@app.command()
def report(
    ctx: typer.Context,
    license_id: Annotated[str, typer.Argument(help="License id")],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Output file path"),
    ] = None,
    template: Annotated[
        Optional[Path],
        typer.Option(
            "--template",
            "-t",
            help="Custom Jinja2 template file",
            exists=True,
            readable=True,
        ),
    ] = None,
) -> None:
    """Generate a Markdown dossier for a license."""
    engine = _engine(ctx)
    with _guard():
        dossier = engine.dossier(license_id)

    reporter = MarkdownReporter(template_path=template)
    output = output or Path(f"{license_id}{reporter.default_extension}")
    try:
        reporter.write(dossier, output)
    except OSError as e:
        err_console.print(f"[red]Error writing output:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]Generated:[/green] {output}")


@app.command()
def info(ctx: typer.Context) -> None:
    """Show the database location and size."""
    details = _engine(ctx).store.info()
    console.print(f"[bold]Database:[/bold] {details['path']}")
    console.print(f"[bold]Licenses:[/bold] {details['licenses']}")
    console.print(f"[bold]Size:[/bold] {details['size_bytes'] / 1024:.1f} KB")


if __name__ == "__main__":
    app()
