from __future__ import annotations

import os

import pytest

from ledgersync.core.config import (
    SyncSettings,
    load_sync_settings_from_env,
    parse_fx_rates,
)
from ledgersync.models.sync import Platform


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("LEDGERSYNC_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults_when_env_is_empty() -> None:
    settings = load_sync_settings_from_env()

    assert settings == SyncSettings()
    assert settings.bank_stale_hours == 6
    assert settings.mobile_money_stale_hours == 4
    assert settings.failure_threshold == 3
    assert settings.ledger_currency == "GHS"


def test_env_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    # input
    monkeypatch.setenv("LEDGERSYNC_DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("LEDGERSYNC_BANK_STALE_HOURS", "12")
    monkeypatch.setenv("LEDGERSYNC_MOBILE_MONEY_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("LEDGERSYNC_RUN_DEADLINE_SECONDS", "90.5")
    monkeypatch.setenv("LEDGERSYNC_LEDGER_CURRENCY", "ngn")
    monkeypatch.setenv("LEDGERSYNC_FX_RATES", "USD=1500, ghs=110")
    monkeypatch.setenv("LEDGERSYNC_LOG_LEVEL", "debug")

    # act
    settings = load_sync_settings_from_env()

    # assert
    assert settings.database_url == "sqlite:///:memory:"
    assert settings.bank_stale_hours == 12
    assert settings.mobile_money_max_concurrency == 8
    assert settings.run_deadline_seconds == 90.5
    assert settings.ledger_currency == "NGN"
    assert settings.fx_rates == {"USD": 1500.0, "GHS": 110.0}
    assert settings.log_level == "DEBUG"


def test_sync_options_mirror_settings() -> None:
    settings = SyncSettings(bank_max_concurrency=2, run_deadline_seconds=60.0)

    options = settings.sync_options(force_sync=True)

    assert options.force_sync is True
    assert options.max_concurrent_bank == 2
    assert options.deadline_seconds == 60.0
    assert options.stale_hours(Platform.BANK) == 6


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("LEDGERSYNC_BANK_STALE_HOURS", "six", "must be an integer"),
        ("LEDGERSYNC_BANK_MAX_CONCURRENCY", "0", "must be >= 1"),
        ("LEDGERSYNC_RUN_DEADLINE_SECONDS", "-5", "must be positive"),
        ("LEDGERSYNC_LOG_LEVEL", "LOUD", "must be one of"),
        ("LEDGERSYNC_LEDGER_CURRENCY", "CEDI", "3-letter code"),
        ("LEDGERSYNC_FX_RATES", "USD:15", "is not CODE=RATE"),
    ],
)
def test_invalid_env_values_raise(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        load_sync_settings_from_env()


def test_parse_fx_rates_rejects_non_positive_rates() -> None:
    assert parse_fx_rates("") == {}
    with pytest.raises(ValueError, match="must be positive"):
        parse_fx_rates("USD=0")
