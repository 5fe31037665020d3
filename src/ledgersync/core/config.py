from __future__ import annotations

from dataclasses import dataclass, field
import os

from ledgersync.models.sync import SyncOptions

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Process configuration loaded at startup."""

    database_url: str = "sqlite:///ledgersync.db"
    bank_stale_hours: int = 6
    mobile_money_stale_hours: int = 4
    bank_max_concurrency: int = 3
    mobile_money_max_concurrency: int = 5
    run_deadline_seconds: float = 300.0
    failure_threshold: int = 3
    default_lookback_days: int = 30
    ledger_currency: str = "GHS"
    fx_rates: dict[str, float] = field(default_factory=dict)
    alert_debounce_seconds: float = 5.0
    net_worth_ttl_seconds: float = 300.0
    log_level: str = "INFO"

    def sync_options(self, *, force_sync: bool = False) -> SyncOptions:
        return SyncOptions(
            force_sync=force_sync,
            bank_stale_hours=self.bank_stale_hours,
            mobile_money_stale_hours=self.mobile_money_stale_hours,
            max_concurrent_bank=self.bank_max_concurrency,
            max_concurrent_mobile_money=self.mobile_money_max_concurrency,
            deadline_seconds=self.run_deadline_seconds,
        )


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def parse_fx_rates(raw: str) -> dict[str, float]:
    """Parse ``"USD=15.5,NGN=0.0098"`` into a currency -> rate mapping."""
    rates: dict[str, float] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        code, sep, value = chunk.partition("=")
        if not sep:
            raise ValueError(f"LEDGERSYNC_FX_RATES entry {chunk!r} is not CODE=RATE")
        try:
            rate = float(value)
        except ValueError as e:
            raise ValueError(f"LEDGERSYNC_FX_RATES rate for {code!r} is invalid") from e
        if rate <= 0:
            raise ValueError(f"LEDGERSYNC_FX_RATES rate for {code!r} must be positive")
        rates[code.strip().upper()] = rate
    return rates


def load_sync_settings_from_env() -> SyncSettings:
    """Load settings from env and validate them."""
    log_level = os.environ.get("LEDGERSYNC_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(
            "LEDGERSYNC_LOG_LEVEL must be one of: " + ", ".join(sorted(LOG_LEVELS))
        )

    ledger_currency = os.environ.get("LEDGERSYNC_LEDGER_CURRENCY", "GHS").strip()
    if len(ledger_currency) != 3:
        raise ValueError("LEDGERSYNC_LEDGER_CURRENCY must be a 3-letter code")

    return SyncSettings(
        database_url=os.environ.get(
            "LEDGERSYNC_DATABASE_URL", "sqlite:///ledgersync.db"
        ).strip(),
        bank_stale_hours=_int_env("LEDGERSYNC_BANK_STALE_HOURS", 6),
        mobile_money_stale_hours=_int_env("LEDGERSYNC_MOBILE_MONEY_STALE_HOURS", 4),
        bank_max_concurrency=_int_env(
            "LEDGERSYNC_BANK_MAX_CONCURRENCY", 3, minimum=1
        ),
        mobile_money_max_concurrency=_int_env(
            "LEDGERSYNC_MOBILE_MONEY_MAX_CONCURRENCY", 5, minimum=1
        ),
        run_deadline_seconds=_float_env("LEDGERSYNC_RUN_DEADLINE_SECONDS", 300.0),
        failure_threshold=_int_env("LEDGERSYNC_FAILURE_THRESHOLD", 3, minimum=1),
        default_lookback_days=_int_env(
            "LEDGERSYNC_DEFAULT_LOOKBACK_DAYS", 30, minimum=1
        ),
        ledger_currency=ledger_currency.upper(),
        fx_rates=parse_fx_rates(os.environ.get("LEDGERSYNC_FX_RATES", "")),
        alert_debounce_seconds=_float_env("LEDGERSYNC_ALERT_DEBOUNCE_SECONDS", 5.0),
        net_worth_ttl_seconds=_float_env("LEDGERSYNC_NET_WORTH_TTL_SECONDS", 300.0),
        log_level=log_level,
    )
