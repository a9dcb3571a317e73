"""
CLI interface for Tale Forge Credits.

Operator access to balances, the ledger, grants, refunds and pricing.
"""

import logging
import os
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tale_forge_credits.config.loader import (
    CreditConfig,
    default_credit_config,
    load_credit_config,
)
from tale_forge_credits.core.coordinator import CreditCoordinator
from tale_forge_credits.core.errors import CreditEngineError, StoreUnavailable
from tale_forge_credits.core.reconciliation import (
    ReconciliationResult,
    reconcile_account,
    reconcile_all,
)
from tale_forge_credits.storage.db import DEFAULT_DB_PATH
from tale_forge_credits.storage.models import SubscriptionTier, TransactionReason
from tale_forge_credits.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_ENV_VAR = "TALE_FORGE_CREDITS_DB"
CONFIG_ENV_VAR = "TALE_FORGE_CREDITS_CONFIG"


class _State:
    db_path: str = DEFAULT_DB_PATH
    config_path: Optional[str] = None


state = _State()


def _load_config() -> CreditConfig:
    if state.config_path:
        return load_credit_config(state.config_path)
    return default_credit_config()


def _coordinator() -> CreditCoordinator:
    return CreditCoordinator.from_config(_load_config(), state.db_path)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {str(error)}")
    if isinstance(error, StoreUnavailable) and "no such table" in str(error).lower():
        console.print("Run `tale-forge-credits init` to initialize the database")
    sys.exit(EXIT_CODE_FAIL)


def _parse_tier(value: str) -> SubscriptionTier:
    try:
        return SubscriptionTier(value.lower())
    except ValueError:
        valid = ", ".join(tier.value for tier in SubscriptionTier)
        raise typer.BadParameter(f"tier must be one of: {valid}")


def _cost_inputs(text: Optional[str], duration: Optional[float]) -> dict:
    inputs = {}
    if text is not None:
        inputs["text"] = text
    if duration is not None:
        inputs["duration_seconds"] = duration
    return inputs


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help=f"SQLite database path (default: ${DB_ENV_VAR} or {DEFAULT_DB_PATH})"
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Credit configuration YAML (default: ${CONFIG_ENV_VAR} or built-in)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Tale Forge Credits CLI."""
    state.db_path = db or os.environ.get(DB_ENV_VAR) or DEFAULT_DB_PATH
    state.config_path = config or os.environ.get(CONFIG_ENV_VAR)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)]
    )
    if ctx.invoked_subcommand is None:
        console.print("Tale Forge Credits - Use --help to see available commands")


@app.command()
def init():
    """Initialize the credits database."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("open-account")
def open_account(
    user_id: str = typer.Argument(..., help="User to register"),
    tier: str = typer.Option("free", "--tier", "-t", help="Subscription tier")
):
    """Open a credit account seeded with the welcome bonus."""
    subscription_tier = _parse_tier(tier)
    try:
        account = _coordinator().open_account(user_id, subscription_tier)
    except (CreditEngineError, ValueError) as e:
        _fail(e)
    console.print(
        f"[green]✓[/] Account {account.user_id} ({account.subscription_tier.value}) "
        f"balance: {account.current_balance}"
    )


@app.command()
def balance(user_id: str = typer.Argument(..., help="User to look up")):
    """Show a user's balance and tier."""
    try:
        account = _coordinator().store.get_account(user_id)
    except CreditEngineError as e:
        _fail(e)
    console.print(f"\n[bold]Account:[/bold] {account.user_id}")
    console.print(f"Tier: {account.subscription_tier.value}")
    console.print(f"Balance: {account.current_balance} credits")
    console.print(f"Welcome bonus: {account.seed_balance} credits\n")


@app.command("set-tier")
def set_tier(
    user_id: str = typer.Argument(..., help="User to update"),
    tier: str = typer.Argument(..., help="New subscription tier")
):
    """Move a user to another subscription tier."""
    subscription_tier = _parse_tier(tier)
    try:
        account = _coordinator().store.set_subscription_tier(user_id, subscription_tier)
    except CreditEngineError as e:
        _fail(e)
    console.print(f"[green]✓[/] {account.user_id} is now on {account.subscription_tier.value}")


@app.command()
def grant(
    user_id: str = typer.Argument(..., help="User receiving credits"),
    amount: int = typer.Argument(..., help="Credits to grant"),
    reference: str = typer.Option(..., "--reference", "-r", help="Payment event id"),
    renewal: bool = typer.Option(False, "--renewal", help="Record as a subscription renewal")
):
    """Grant purchased credits; replaying the same reference is a no-op."""
    reason = TransactionReason.SUBSCRIPTION_RENEWAL if renewal else TransactionReason.PURCHASE
    try:
        applied = _coordinator().grant(user_id, amount, reason, reference)
    except (CreditEngineError, ValueError) as e:
        _fail(e)
    suffix = " (already applied)" if applied.replayed else ""
    console.print(f"[green]✓[/] Balance: {applied.new_balance}{suffix}")


@app.command()
def refund(
    user_id: str = typer.Argument(..., help="User to refund"),
    amount: int = typer.Argument(..., help="Credits to refund"),
    reference: str = typer.Option(..., "--reference", "-r", help="Artifact or charge reference")
):
    """Refund credits for a charge; idempotent per reference."""
    try:
        applied = _coordinator().refund(user_id, amount, reference)
    except (CreditEngineError, ValueError) as e:
        _fail(e)
    suffix = " (already applied)" if applied.replayed else ""
    console.print(f"[green]✓[/] Balance: {applied.new_balance}{suffix}")


@app.command()
def adjust(
    user_id: str = typer.Argument(..., help="User to adjust"),
    amount: int = typer.Option(..., "--amount", "-a", help="Signed credit amount"),
    reference: str = typer.Option(..., "--reference", "-r", help="Adjustment reference")
):
    """Apply a signed admin adjustment to a balance."""
    try:
        applied = _coordinator().adjust(user_id, amount, reference)
    except (CreditEngineError, ValueError) as e:
        _fail(e)
    console.print(f"[green]✓[/] Balance: {applied.new_balance}")


@app.command()
def transactions(
    user_id: str = typer.Argument(..., help="User whose ledger to show"),
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Maximum rows to show"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Filter by reason")
):
    """List a user's transactions, newest first."""
    reason_filter = None
    if reason:
        try:
            reason_filter = TransactionReason(reason)
        except ValueError:
            valid = ", ".join(r.value for r in TransactionReason)
            raise typer.BadParameter(f"reason must be one of: {valid}")

    try:
        store = _coordinator().store
        store.get_account(user_id)
        rows = []
        for tx in store.list_transactions(user_id, reason=reason_filter, page_size=limit):
            rows.append(tx)
            if len(rows) >= limit:
                break
    except CreditEngineError as e:
        _fail(e)

    if not rows:
        console.print(f"\n[dim]No transactions for {user_id}.[/]\n")
        return

    table = Table(title=f"Transactions for {user_id}")
    table.add_column("Created")
    table.add_column("Reason")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Reference")
    for tx in rows:
        table.add_row(
            tx.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            tx.reason.value,
            f"{tx.amount:+d}",
            str(tx.balance_after),
            tx.reference_id
        )
    console.print(table)


@app.command()
def quote(
    kind: str = typer.Argument(..., help="Operation kind"),
    text: Optional[str] = typer.Option(None, "--text", help="Text to narrate (audio)"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Clip length in seconds (video)")
):
    """Show what an operation would cost."""
    try:
        cost = _coordinator().quote(kind, _cost_inputs(text, duration))
    except (CreditEngineError, ValueError) as e:
        _fail(e)
    console.print(f"{cost.operation_kind.value}: {cost.computed_cost} credits")


@app.command()
def check(
    user_id: str = typer.Argument(..., help="User to check"),
    kind: str = typer.Argument(..., help="Operation kind"),
    text: Optional[str] = typer.Option(None, "--text", help="Text to narrate (audio)"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Clip length in seconds (video)")
):
    """Check whether a user may perform an operation."""
    try:
        result = _coordinator().check(user_id, kind, _cost_inputs(text, duration))
    except (CreditEngineError, ValueError) as e:
        _fail(e)

    if result.allowed:
        console.print(
            f"[green]ALLOWED[/] {result.operation_kind.value} "
            f"(cost {result.cost}, balance {result.balance})"
        )
        return

    console.print(f"[red]DENIED[/] {result.operation_kind.value}: {result.reason.value}")
    if result.deficit is not None:
        console.print(f"Cost {result.cost}, balance {result.balance}, short by {result.deficit}")
    if result.resets_at is not None:
        console.print(f"Used {result.used}/{result.limit}, resets at {result.resets_at.isoformat()}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def reconcile(
    user_id: Optional[str] = typer.Argument(None, help="Reconcile a single user")
):
    """Verify balances against the ledger."""
    try:
        store = _coordinator().store
        if user_id:
            results: List[ReconciliationResult] = [reconcile_account(store, user_id)]
        else:
            results = reconcile_all(store)
    except CreditEngineError as e:
        _fail(e)

    table = Table(title="Ledger Reconciliation")
    table.add_column("User")
    table.add_column("Balance", justify="right")
    table.add_column("Seed", justify="right")
    table.add_column("Ledger", justify="right")
    table.add_column("Drift", justify="right")
    for result in results:
        drift = f"{result.drift:+d}"
        table.add_row(
            result.user_id,
            str(result.current_balance),
            str(result.seed_balance),
            str(result.ledger_total),
            drift if result.balanced else f"[red]{drift}[/]"
        )
    console.print(table)

    drifted = [result for result in results if not result.balanced]
    if drifted:
        console.print(f"[red]{len(drifted)} account(s) out of balance[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] All accounts balanced")


if __name__ == "__main__":
    app()
