"""
CLI interface for Token Quota.

Operator access to ledgers, top-ups, usage history and tier resolution.
"""

import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from token_quota.config.loader import QuotaConfig, default_quota_config, load_quota_config
from token_quota.core.ledger import LockTimeout, TokenLedgerService
from token_quota.core.plans import parse_plan
from token_quota.core.tier_resolver import TierResolver
from token_quota.demo.seed_demo_data import seed_demo_data
from token_quota.storage.accounts import AccountDirectory
from token_quota.storage.db import DEFAULT_DB_PATH
from token_quota.storage.models import TokenLedger
from token_quota.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML quota config")
PLAN_OPTION = typer.Option("free", "--plan", "-p", help="Plan of the ledger (free, standard, premium)")


def _load_config(config_path: Optional[str]) -> QuotaConfig:
    if config_path is None:
        return default_quota_config()
    return load_quota_config(config_path)


def _format_tokens(amount: int, unlimited: bool = False) -> str:
    """Format a token count, hiding the unlimited sentinel."""
    return "unlimited" if unlimited else f"{amount:,}"


def _display_ledger(ledger: TokenLedger) -> None:
    table = Table(title=f"Token ledger: {ledger.identifier} ({ledger.plan})")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Daily tokens", _format_tokens(ledger.available_tokens, ledger.is_unlimited))
    table.add_row("Purchased tokens", _format_tokens(ledger.purchased_tokens))
    table.add_row("Daily limit", _format_tokens(ledger.daily_limit, ledger.is_unlimited))
    table.add_row("Consumed today", _format_tokens(ledger.total_consumed_today))
    table.add_row("Last reset", ledger.last_reset.isoformat())
    console.print(table)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _handle_storage_error(e: sqlite3.OperationalError) -> None:
    if "no such table" in str(e).lower():
        console.print("\n[bold yellow]Token ledger is not initialized[/]")
        console.print("Run `token-quota init` to create the database\n")
        sys.exit(EXIT_CODE_FAIL)
    _fail(str(e))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Token Quota CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Token Quota - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Token Quota database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    identifier: str = typer.Argument(..., help="User id or session id"),
    plan: str = PLAN_OPTION,
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Show a ledger's balances, applying any due daily reset."""
    try:
        service = TokenLedgerService(db, _load_config(config))
        _display_ledger(service.get_or_create(identifier, parse_plan(plan)))
    except sqlite3.OperationalError as e:
        _handle_storage_error(e)
    except LockTimeout as e:
        _fail(f"{e}, try again")
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))
    sys.exit(EXIT_CODE_OK)


@app.command()
def consume(
    identifier: str = typer.Argument(..., help="User id or session id"),
    cost: int = typer.Argument(..., help="Tokens to consume"),
    plan: str = PLAN_OPTION,
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Consume tokens from a ledger, daily balance first."""
    try:
        service = TokenLedgerService(db, _load_config(config))
        result = service.consume(identifier, parse_plan(plan), cost)
    except sqlite3.OperationalError as e:
        _handle_storage_error(e)
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))

    if not result.success:
        _fail(f"{result.reason.value} (daily {result.remaining_daily:,}, purchased {result.remaining_purchased:,})")

    console.print(
        f"[green]✓[/] Consumed {cost:,} tokens "
        f"(daily {result.daily_used:,}, purchased {result.purchased_used:,})"
    )
    console.print(f"Remaining purchased tokens: {result.remaining_purchased:,}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def topup(
    identifier: str = typer.Argument(..., help="User id the purchase belongs to"),
    amount: int = typer.Argument(..., help="Tokens purchased"),
    plan: str = PLAN_OPTION,
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Add purchased tokens to a ledger."""
    try:
        service = TokenLedgerService(db, _load_config(config))
        result = service.add_purchased(identifier, parse_plan(plan), amount)
    except sqlite3.OperationalError as e:
        _handle_storage_error(e)
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))

    if not result.success:
        _fail(result.reason.value)

    console.print(f"[green]✓[/] Added {amount:,} tokens, purchased balance {result.new_purchased_balance:,}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def history(
    identifier: str = typer.Argument(..., help="User id or session id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of events to show (max 100)"),
    db: str = DB_OPTION
):
    """Show an identifier's token events, newest first."""
    try:
        events = TokenLedgerService(db).usage_history(identifier, limit=limit)
    except sqlite3.OperationalError as e:
        _handle_storage_error(e)
    except ValueError as e:
        _fail(str(e))

    if not events:
        console.print(f"\n[dim]No token events found for {identifier}.[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Token events: {identifier}")
    table.add_column("When")
    table.add_column("Event")
    table.add_column("Plan")
    table.add_column("Tokens", justify="right")
    table.add_column("Daily used", justify="right")
    table.add_column("Purchased used", justify="right")
    for event in events:
        payload = event.payload
        table.add_row(
            event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            str(payload.get("plan", "")),
            f"{payload.get('cost', payload.get('amount', 0)):,}",
            f"{payload.get('daily_used', 0):,}",
            f"{payload.get('purchased_used', 0):,}"
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def tier(
    user_id: str = typer.Argument(..., help="User to resolve"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Resolve a user's effective subscription tier."""
    try:
        quota_config = _load_config(config)
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))

    resolver = TierResolver(AccountDirectory(db), quota_config.trial)
    plan = resolver.resolve(user_id)
    trial = resolver.trial_status()

    console.print(f"\n[bold]Tier:[/bold] {plan.value}")
    plan_config = quota_config.plans[plan]
    console.print(f"Daily limit: {_format_tokens(plan_config.daily_limit, plan_config.is_unlimited)}")
    if not plan_config.can_purchase:
        console.print("Token purchases are not available on this plan")
    if trial.is_trial_active:
        console.print(f"Standard trial active, {trial.days_until_trial_end} days left")
    elif trial.is_in_grace_period:
        console.print(f"Trial ended, grace period has {trial.grace_days_remaining} days left")
    else:
        console.print("Trial and grace period have ended")
    sys.exit(EXIT_CODE_OK)


@app.command("seed-demo")
def seed_demo(db: str = DB_OPTION):
    """Insert demo accounts covering every tier resolution path."""
    try:
        seeded = seed_demo_data(db)
    except sqlite3.Error as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Seeded {len(seeded)} demo accounts")
    for user_id in seeded:
        console.print(f"  {user_id}")
    sys.exit(EXIT_CODE_OK)


if __name__ == "__main__":
    app()
