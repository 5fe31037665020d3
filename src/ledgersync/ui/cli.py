from __future__ import annotations

import json
import sys

from dotenv import load_dotenv
from loguru import logger
import typer

from ledgersync.adapters.cache.net_worth_cache import NetWorthCache
from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import SyncSettings, load_sync_settings_from_env
from ledgersync.jobs.sync.runner import run_sync
from ledgersync.models.sync import Platform, SyncOptions, SyncStatus
from ledgersync.services.alerts import AlertTrigger, LoggingAlertSink
from ledgersync.tools.categorize.classifier import CategoryClassifier
from ledgersync.tools.sync.errors import AccountLoadError

# Load environment variables from .env
load_dotenv()

app = typer.Typer(help="ledgersync: background sync for bank and mobile money.")

STATUS_LABELS = {
    SyncStatus.ACTIVE: "Synced",
    SyncStatus.AUTH_REQUIRED: "Needs Re-authentication",
    SyncStatus.ERROR: "Sync Error",
    SyncStatus.IN_PROGRESS: "Syncing",
}


def _settings() -> SyncSettings:
    try:
        return load_sync_settings_from_env()
    except ValueError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2) from e


def _db(settings: SyncSettings) -> DB:
    return DB(settings.database_url)


@app.callback()
def main_callback() -> None:
    """Configure logging once for every command."""
    level = _settings().log_level
    logger.remove()
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}",
        level=level,
    )


@app.command("init-db")
def init_db() -> None:
    """Create the ledger tables."""
    settings = _settings()
    _db(settings).create_schema()
    typer.echo(f"Schema ready at {settings.database_url}")


@app.command("run-sync")
def run_sync_cmd(
    force: bool = typer.Option(False, "--force", help="Sync every account now"),
    bank_stale_hours: int | None = typer.Option(None, min=0),
    mobile_money_stale_hours: int | None = typer.Option(None, min=0),
    bank_concurrency: int | None = typer.Option(None, min=1),
    mobile_money_concurrency: int | None = typer.Option(None, min=1),
    deadline_seconds: float | None = typer.Option(None, min=1.0),
) -> None:
    """Run one sync pass and print the report as JSON."""
    settings = _settings()
    defaults = settings.sync_options(force_sync=force)
    options = SyncOptions(
        force_sync=force,
        bank_stale_hours=(
            bank_stale_hours
            if bank_stale_hours is not None
            else defaults.bank_stale_hours
        ),
        mobile_money_stale_hours=(
            mobile_money_stale_hours
            if mobile_money_stale_hours is not None
            else defaults.mobile_money_stale_hours
        ),
        max_concurrent_bank=bank_concurrency or defaults.max_concurrent_bank,
        max_concurrent_mobile_money=(
            mobile_money_concurrency or defaults.max_concurrent_mobile_money
        ),
        deadline_seconds=deadline_seconds or defaults.deadline_seconds,
    )

    alerts = AlertTrigger(
        LoggingAlertSink(), debounce_seconds=settings.alert_debounce_seconds
    )
    try:
        report = run_sync(options, settings, alert_trigger=alerts)
    except AccountLoadError as e:
        typer.echo(f"Sync failed: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        # Short-lived process: evaluate pending alerts before exiting.
        alerts.flush()

    typer.echo(json.dumps(report.to_dict(), indent=2))


def _link(
    *,
    user_id: str,
    platform: Platform,
    account_name: str,
    reference_id: str,
    phone_number: str | None,
    opening_balance: float,
    account_id: str | None,
) -> None:
    db = _db(_settings())
    account = db.link_account(
        user_id=user_id,
        platform=platform,
        account_name=account_name,
        reference_id=reference_id,
        phone_number=phone_number,
        opening_balance_cents=round(opening_balance * 100),
        account_id=account_id,
    )
    typer.echo(f"Linked {platform.value} account {account.account_id}")


@app.command("link-bank")
def link_bank(
    user_id: str = typer.Option(...),
    account_name: str = typer.Option(...),
    reference_id: str = typer.Option(..., help="Bank aggregator account id"),
    opening_balance: float = typer.Option(0.0),
    account_id: str | None = typer.Option(None, help="Re-link an existing account"),
) -> None:
    """Link (or re-link) a bank account."""
    _link(
        user_id=user_id,
        platform=Platform.BANK,
        account_name=account_name,
        reference_id=reference_id,
        phone_number=None,
        opening_balance=opening_balance,
        account_id=account_id,
    )


@app.command("link-mobile-money")
def link_mobile_money(
    user_id: str = typer.Option(...),
    account_name: str = typer.Option(...),
    reference_id: str = typer.Option(..., help="Wallet reference id"),
    phone_number: str = typer.Option(..., help="Wallet MSISDN"),
    opening_balance: float = typer.Option(0.0),
    account_id: str | None = typer.Option(None, help="Re-link an existing account"),
) -> None:
    """Link (or re-link) a mobile-money wallet."""
    _link(
        user_id=user_id,
        platform=Platform.MOBILE_MONEY,
        account_name=account_name,
        reference_id=reference_id,
        phone_number=phone_number,
        opening_balance=opening_balance,
        account_id=account_id,
    )


@app.command("deactivate")
def deactivate(account_id: str) -> None:
    """Stop syncing an account."""
    if not _db(_settings()).deactivate_account(account_id):
        typer.echo(f"Account {account_id} not found", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deactivated {account_id}")


@app.command("accounts")
def accounts(user_id: str | None = typer.Option(None)) -> None:
    """List linked accounts with their sync health."""
    for account in _db(_settings()).list_accounts(user_id):
        synced_at = account.last_synced_at
        last = synced_at.isoformat() if synced_at else "never"
        state = STATUS_LABELS[account.sync_status]
        if not account.is_active:
            state = "Deactivated"
        typer.echo(
            f"{account.account_id}  {account.platform.value:<12}  "
            f"{account.account_name:<24}  {state:<24}  "
            f"failures={account.consecutive_failures}  last_synced={last}"
        )


@app.command("classify")
def classify(
    narration: str,
    amount: float,
    platform: str | None = typer.Option(None, help="bank or mobile_money"),
    counterparty: str | None = typer.Option(None),
) -> None:
    """Dry-run the category classifier on one transaction."""
    suggestion = CategoryClassifier().classify(
        narration,
        amount,
        Platform(platform).value if platform else None,
        counterparty,
    )
    typer.echo(
        json.dumps(
            {
                "category_id": suggestion.category_id,
                "confidence": suggestion.confidence,
                "band": suggestion.band,
                "suggested_type": suggestion.suggested_type,
                "reasons": list(suggestion.reasons),
            },
            indent=2,
        )
    )


@app.command("feedback")
def feedback(transaction_id: str, category_id: str) -> None:
    """Set a transaction's category. Later syncs keep this choice."""
    if not CategoryClassifier().taxonomy.is_valid_key(category_id):
        typer.echo(f"Unknown category {category_id!r}", err=True)
        raise typer.Exit(code=2)
    try:
        txn = _db(_settings()).apply_category_feedback(transaction_id, category_id)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from e
    typer.echo(f"{txn.id} -> {txn.category_id}")


@app.command("net-worth")
def net_worth(user_id: str) -> None:
    """Print the user's net worth in ledger-currency minor units."""
    settings = _settings()
    db = _db(settings)
    cache = NetWorthCache(settings.net_worth_ttl_seconds)
    snapshot = cache.warm(user_id, lambda: db.compute_net_worth(user_id))
    typer.echo(
        json.dumps(
            {
                "user_id": snapshot.user_id,
                "currency": settings.ledger_currency,
                "total_assets_cents": snapshot.total_assets_cents,
                "total_liabilities_cents": snapshot.total_liabilities_cents,
                "net_worth_cents": snapshot.net_worth_cents,
                "computed_at": snapshot.computed_at.isoformat(),
            },
            indent=2,
        )
    )


def main() -> None:
    app()
