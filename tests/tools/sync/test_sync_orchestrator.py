from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
import time

import pytest

from ledgersync.adapters.cache.net_worth_cache import NetWorthCache
from ledgersync.adapters.db.facade import DB, SyncHealthPatch
from ledgersync.models.sync import (
    AccountOutcome,
    DateRange,
    LinkedAccount,
    NetWorthSnapshot,
    OutcomeStatus,
    Platform,
    SyncOptions,
    SyncStatus,
)
from ledgersync.services.alerts import AlertTrigger
from ledgersync.tools.sync.errors import AccountLoadError
from ledgersync.tools.sync.orchestrator import (
    SyncOrchestrator,
    is_due,
    sync_priority,
)

# Helper functions


def create_db() -> DB:
    """Create in-memory database instance."""
    db = DB("sqlite:///:memory:")
    db.create_schema()
    return db


def link(
    db: DB,
    account_id: str,
    platform: Platform = Platform.BANK,
    *,
    user_id: str = "user_1",
) -> LinkedAccount:
    return db.link_account(
        user_id=user_id,
        platform=platform,
        account_name=f"Account {account_id}",
        reference_id=f"ref_{account_id}",
        phone_number="233244000111" if platform is Platform.MOBILE_MONEY else None,
        account_id=account_id,
    )


def set_health(
    db: DB,
    account_id: str,
    *,
    status: SyncStatus,
    failures: int,
    last_synced_at: datetime | None = None,
) -> None:
    account = db.get_account(account_id)
    assert account is not None
    applied = db.update_account_sync_health(
        account_id,
        SyncHealthPatch(
            sync_status=status,
            consecutive_failures=failures,
            last_synced_at=last_synced_at,
        ),
        expected_version=account.version,
    )
    assert applied


class ActivityTracker:
    """Counts concurrently running scripted syncs across workers."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    def enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def exit(self) -> None:
        self.active -= 1


class ScriptedWorker:
    """Mock PlatformSyncWorker returning scripted outcomes per account."""

    def __init__(
        self,
        platform: Platform,
        *,
        statuses: dict[str, OutcomeStatus] | None = None,
        new: dict[str, int] | None = None,
        delay: float = 0.0,
        raise_error: bool = False,
        on_sync: Callable[[LinkedAccount], None] | None = None,
        tracker: ActivityTracker | None = None,
    ) -> None:
        self.platform = platform
        self._statuses = statuses or {}
        self._new = new or {}
        self._delay = delay
        self._raise_error = raise_error
        self._on_sync = on_sync
        self.tracker = tracker or ActivityTracker()
        self.calls: list[str] = []
        self.claimed: list[LinkedAccount] = []

    async def sync_account(
        self, account: LinkedAccount, date_range: DateRange | None = None
    ) -> AccountOutcome:
        self.calls.append(account.account_id)
        self.claimed.append(account)
        self.tracker.enter()
        try:
            if self._on_sync is not None:
                self._on_sync(account)
            if self._delay:
                await asyncio.sleep(self._delay)
        finally:
            self.tracker.exit()

        if self._raise_error:
            raise RuntimeError(f"worker blew up on {account.account_id}")

        status = self._statuses.get(account.account_id, OutcomeStatus.SUCCESS)
        if status is not OutcomeStatus.SUCCESS:
            return AccountOutcome(
                account_id=account.account_id,
                user_id=account.user_id,
                platform=account.platform,
                status=status,
                error_detail="scripted failure",
            )
        new = self._new.get(account.account_id, 0)
        return AccountOutcome(
            account_id=account.account_id,
            user_id=account.user_id,
            platform=account.platform,
            status=status,
            transactions_synced=new,
            new_transactions=new,
            new_expense_transactions=new,
        )


class RecordingNotifier:
    """Mock NotificationTrigger that records (or fails) every call."""

    def __init__(self, *, fail: bool = False) -> None:
        self._fail = fail
        self.reauth: list[tuple[str, str, Platform]] = []
        self.completed: list[tuple[str, str, int, Platform]] = []

    async def notify_reauth_required(
        self,
        user_id: str,
        account_name: str,
        account_id: str,
        platform: Platform,
    ) -> None:
        if self._fail:
            raise RuntimeError("push gateway down")
        self.reauth.append((user_id, account_id, platform))

    async def notify_sync_completed(
        self,
        user_id: str,
        account_name: str,
        transaction_count: int,
        platform: Platform,
    ) -> None:
        if self._fail:
            raise RuntimeError("push gateway down")
        self.completed.append((user_id, account_name, transaction_count, platform))


class RecordingSink:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def evaluate_budget_alerts(self, user_id: str) -> None:
        self.calls.append(user_id)


class FailingLoadDB(DB):
    def load_active_accounts(self) -> list[LinkedAccount]:
        raise RuntimeError("database unavailable")


class LosingClaimDB(DB):
    def claim_account_for_sync(
        self,
        account_id: str,
        *,
        expected_version: int,
        now: datetime,
    ) -> LinkedAccount | None:
        return None


def create_orchestrator(
    db: DB,
    *workers: ScriptedWorker,
    notifier: RecordingNotifier | None = None,
    **kwargs: object,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        db,
        {w.platform: w for w in workers},  # type: ignore[misc]
        notifier or RecordingNotifier(),
        **kwargs,  # type: ignore[arg-type]
    )


def test_run_reports_both_platforms_and_notifies_reauth() -> None:
    # input
    db = create_db()
    link(db, "acc_bank", Platform.BANK)
    link(db, "acc_wallet", Platform.MOBILE_MONEY)
    bank = ScriptedWorker(Platform.BANK, new={"acc_bank": 15})
    wallet = ScriptedWorker(
        Platform.MOBILE_MONEY, statuses={"acc_wallet": OutcomeStatus.AUTH_ERROR}
    )
    notifier = RecordingNotifier()

    # act
    report = asyncio.run(
        create_orchestrator(db, bank, wallet, notifier=notifier).run(SyncOptions())
    )

    # assert
    assert report.total_accounts == 2
    assert report.total_new_transactions == 15
    assert report.count(OutcomeStatus.SUCCESS) == 1
    assert report.count(OutcomeStatus.AUTH_ERROR) == 1
    assert report.timed_out is False
    assert report.finished_at is not None
    assert notifier.reauth == [("user_1", "acc_wallet", Platform.MOBILE_MONEY)]
    assert notifier.completed == [
        ("user_1", "Account acc_bank", 15, Platform.BANK)
    ]

    bank_account = db.get_account("acc_bank")
    wallet_account = db.get_account("acc_wallet")
    assert bank_account is not None and wallet_account is not None
    assert bank_account.sync_status is SyncStatus.ACTIVE
    assert bank_account.consecutive_failures == 0
    assert bank_account.last_synced_at is not None
    assert bank_account.sync_started_at is None
    assert wallet_account.sync_status is SyncStatus.AUTH_REQUIRED
    assert wallet_account.consecutive_failures == 1
    assert wallet_account.last_synced_at is None


def test_worker_receives_claimed_account() -> None:
    db = create_db()
    loaded = link(db, "acc_bank")
    bank = ScriptedWorker(Platform.BANK)

    asyncio.run(create_orchestrator(db, bank).run())

    assert bank.claimed[0].sync_status is SyncStatus.IN_PROGRESS
    assert bank.claimed[0].version == loaded.version + 1


def test_failing_platform_does_not_affect_the_other() -> None:
    # input
    db = create_db()
    for i in range(3):
        link(db, f"acc_bank_{i}", Platform.BANK)
        link(db, f"acc_wallet_{i}", Platform.MOBILE_MONEY)
    bank = ScriptedWorker(Platform.BANK, raise_error=True)
    wallet = ScriptedWorker(Platform.MOBILE_MONEY)

    # act
    report = asyncio.run(create_orchestrator(db, bank, wallet).run())

    # assert
    bank_statuses = {o.status for o in report.outcomes[Platform.BANK]}
    wallet_statuses = {o.status for o in report.outcomes[Platform.MOBILE_MONEY]}
    assert bank_statuses == {OutcomeStatus.ERROR}
    assert wallet_statuses == {OutcomeStatus.SUCCESS}
    assert report.total_accounts == 6


def test_concurrency_is_bounded_per_platform() -> None:
    # input
    delay = 0.05
    db = create_db()
    for i in range(5):
        link(db, f"acc_bank_{i}", Platform.BANK)
    bank = ScriptedWorker(Platform.BANK, delay=delay)
    options = SyncOptions(max_concurrent_bank=2)

    # act
    started = time.monotonic()
    report = asyncio.run(create_orchestrator(db, bank).run(options))
    elapsed = time.monotonic() - started

    # expected
    rounds = 3  # ceil(5 / 2)

    # assert
    assert report.count(OutcomeStatus.SUCCESS) == 5
    assert bank.tracker.max_active == 2
    assert elapsed >= rounds * delay * 0.9


def test_platform_pools_run_side_by_side() -> None:
    db = create_db()
    link(db, "acc_bank", Platform.BANK)
    link(db, "acc_wallet", Platform.MOBILE_MONEY)
    tracker = ActivityTracker()
    bank = ScriptedWorker(Platform.BANK, delay=0.05, tracker=tracker)
    wallet = ScriptedWorker(Platform.MOBILE_MONEY, delay=0.05, tracker=tracker)
    options = SyncOptions(max_concurrent_bank=1, max_concurrent_mobile_money=1)

    asyncio.run(create_orchestrator(db, bank, wallet).run(options))

    assert tracker.max_active == 2


def test_failure_streak_crossing_threshold_notifies_once() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_bank")
    set_health(db, "acc_bank", status=SyncStatus.ERROR, failures=2)
    bank = ScriptedWorker(Platform.BANK, statuses={"acc_bank": OutcomeStatus.ERROR})
    notifier = RecordingNotifier()
    orchestrator = create_orchestrator(db, bank, notifier=notifier)

    # act
    asyncio.run(orchestrator.run(SyncOptions()))
    asyncio.run(orchestrator.run(SyncOptions(force_sync=True)))

    # assert
    account = db.get_account("acc_bank")
    assert account is not None
    assert bank.calls == ["acc_bank", "acc_bank"]
    assert account.consecutive_failures == 4
    assert account.sync_status is SyncStatus.ERROR
    assert len(notifier.reauth) == 1


def test_rate_limited_keeps_failure_streak_and_success_resets_it() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_bank")
    set_health(db, "acc_bank", status=SyncStatus.ERROR, failures=2)
    limited = ScriptedWorker(
        Platform.BANK, statuses={"acc_bank": OutcomeStatus.RATE_LIMITED}
    )

    # act
    asyncio.run(create_orchestrator(db, limited).run(SyncOptions(force_sync=True)))
    after_limit = db.get_account("acc_bank")
    asyncio.run(
        create_orchestrator(db, ScriptedWorker(Platform.BANK)).run(
            SyncOptions(force_sync=True)
        )
    )
    after_success = db.get_account("acc_bank")

    # assert
    assert after_limit is not None and after_success is not None
    assert after_limit.consecutive_failures == 2
    assert after_limit.sync_status is SyncStatus.ERROR
    assert after_success.consecutive_failures == 0
    assert after_success.sync_status is SyncStatus.ACTIVE
    assert after_success.last_synced_at is not None


def test_backoff_delays_recently_failed_account() -> None:
    db = create_db()
    link(db, "acc_bank")
    set_health(db, "acc_bank", status=SyncStatus.ERROR, failures=2)
    bank = ScriptedWorker(Platform.BANK, statuses={"acc_bank": OutcomeStatus.ERROR})
    orchestrator = create_orchestrator(db, bank)

    asyncio.run(orchestrator.run())
    # Three failures now; the next attempt waits 8 minutes.
    second = asyncio.run(orchestrator.run())

    assert bank.calls == ["acc_bank"]
    assert second.total_accounts == 0


def test_stale_lock_is_recovered_but_fresh_lock_is_left_alone() -> None:
    # helper setup
    now = datetime.now(UTC)
    db = create_db()
    old = link(db, "acc_old")
    recent = link(db, "acc_recent")
    db.claim_account_for_sync(
        "acc_old", expected_version=old.version, now=now - timedelta(hours=7)
    )
    db.claim_account_for_sync(
        "acc_recent", expected_version=recent.version, now=now - timedelta(hours=1)
    )
    bank = ScriptedWorker(Platform.BANK)

    # act
    report = asyncio.run(
        create_orchestrator(db, bank).run(SyncOptions(force_sync=True))
    )

    # assert
    recovered = db.get_account("acc_old")
    untouched = db.get_account("acc_recent")
    assert bank.calls == ["acc_old"]
    assert report.total_accounts == 1
    assert recovered is not None and untouched is not None
    assert recovered.sync_status is SyncStatus.ACTIVE
    assert untouched.sync_status is SyncStatus.IN_PROGRESS


def test_deadline_cancels_in_flight_and_skips_pending() -> None:
    # input
    db = create_db()
    for i in range(3):
        link(db, f"acc_bank_{i}", Platform.BANK)
    link(db, "acc_wallet", Platform.MOBILE_MONEY)
    bank = ScriptedWorker(Platform.BANK, delay=1.0)
    wallet = ScriptedWorker(Platform.MOBILE_MONEY)
    options = SyncOptions(max_concurrent_bank=1, deadline_seconds=0.2)

    # act
    report = asyncio.run(create_orchestrator(db, bank, wallet).run(options))

    # assert
    assert report.timed_out is True
    assert report.total_accounts == 4
    assert report.count(OutcomeStatus.CANCELLED) == 1
    assert report.count(OutcomeStatus.SKIPPED) == 2
    assert report.count(OutcomeStatus.SUCCESS) == 1
    cancelled = next(
        o for o in report.all_outcomes() if o.status is OutcomeStatus.CANCELLED
    )
    assert cancelled.account_id == "acc_bank_0"
    in_flight = db.get_account("acc_bank_0")
    never_started = db.get_account("acc_bank_2")
    assert in_flight is not None and never_started is not None
    assert in_flight.sync_status is SyncStatus.IN_PROGRESS
    assert never_started.sync_status is SyncStatus.ACTIVE


def test_account_load_failure_raises() -> None:
    db = FailingLoadDB("sqlite:///:memory:")
    db.create_schema()

    with pytest.raises(AccountLoadError, match="database unavailable"):
        asyncio.run(create_orchestrator(db, ScriptedWorker(Platform.BANK)).run())


def test_lost_claim_is_reported_as_skipped() -> None:
    db = LosingClaimDB("sqlite:///:memory:")
    db.create_schema()
    link(db, "acc_bank")
    bank = ScriptedWorker(Platform.BANK)

    report = asyncio.run(create_orchestrator(db, bank).run())

    assert bank.calls == []
    assert [o.status for o in report.all_outcomes()] == [OutcomeStatus.SKIPPED]


def test_lost_health_update_sends_no_notification() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_wallet", Platform.MOBILE_MONEY)

    def relink(account: LinkedAccount) -> None:
        # The user re-links while the sync is running.
        db.link_account(
            user_id=account.user_id,
            platform=account.platform,
            account_name=account.account_name,
            reference_id="fresh_ref",
            phone_number="233244000111",
            account_id=account.account_id,
        )

    wallet = ScriptedWorker(
        Platform.MOBILE_MONEY,
        statuses={"acc_wallet": OutcomeStatus.AUTH_ERROR},
        on_sync=relink,
    )
    notifier = RecordingNotifier()

    # act
    report = asyncio.run(
        create_orchestrator(db, wallet, notifier=notifier).run()
    )

    # assert
    account = db.get_account("acc_wallet")
    assert report.count(OutcomeStatus.AUTH_ERROR) == 1
    assert notifier.reauth == []
    assert account is not None
    assert account.sync_status is SyncStatus.ACTIVE
    assert account.consecutive_failures == 0


def test_missing_worker_fails_only_that_platform() -> None:
    db = create_db()
    link(db, "acc_bank", Platform.BANK)
    link(db, "acc_wallet", Platform.MOBILE_MONEY)

    report = asyncio.run(
        create_orchestrator(db, ScriptedWorker(Platform.BANK)).run()
    )

    wallet_outcome = report.outcomes[Platform.MOBILE_MONEY][0]
    wallet = db.get_account("acc_wallet")
    assert report.outcomes[Platform.BANK][0].status is OutcomeStatus.SUCCESS
    assert wallet_outcome.status is OutcomeStatus.ERROR
    assert "No worker configured" in (wallet_outcome.error_detail or "")
    assert wallet is not None
    assert wallet.sync_status is SyncStatus.ERROR
    assert wallet.consecutive_failures == 1


def test_notification_failure_does_not_fail_the_run() -> None:
    db = create_db()
    link(db, "acc_bank")
    bank = ScriptedWorker(
        Platform.BANK, statuses={"acc_bank": OutcomeStatus.AUTH_ERROR}
    )

    report = asyncio.run(
        create_orchestrator(db, bank, notifier=RecordingNotifier(fail=True)).run()
    )

    account = db.get_account("acc_bank")
    assert report.count(OutcomeStatus.AUTH_ERROR) == 1
    assert account is not None
    assert account.sync_status is SyncStatus.AUTH_REQUIRED


def test_changed_balances_invalidate_net_worth_cache() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_1", user_id="user_1")
    link(db, "acc_2", user_id="user_2")
    cache = NetWorthCache(ttl_seconds=600)
    for user_id in ("user_1", "user_2"):
        cache.warm(
            user_id,
            lambda user_id=user_id: NetWorthSnapshot(
                user_id=user_id, total_assets_cents=100, total_liabilities_cents=0
            ),
        )
    bank = ScriptedWorker(Platform.BANK, new={"acc_1": 3})

    # act
    asyncio.run(create_orchestrator(db, bank, net_worth_cache=cache).run())

    # assert
    assert cache.get("user_1") is None
    assert cache.get("user_2") is not None


def test_new_expenses_trigger_one_alert_per_user() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_bank", Platform.BANK, user_id="user_1")
    link(db, "acc_wallet", Platform.MOBILE_MONEY, user_id="user_1")
    link(db, "acc_quiet", Platform.BANK, user_id="user_2")
    sink = RecordingSink()
    alerts = AlertTrigger(sink, debounce_seconds=60)
    bank = ScriptedWorker(Platform.BANK, new={"acc_bank": 2})
    wallet = ScriptedWorker(Platform.MOBILE_MONEY, new={"acc_wallet": 4})

    # act
    try:
        asyncio.run(
            create_orchestrator(db, bank, wallet, alert_trigger=alerts).run()
        )
        pending = alerts.pending_users()
        flushed = alerts.flush()
    finally:
        alerts.close()

    # assert
    assert pending == {"user_1"}
    assert flushed == ["user_1"]
    assert sink.calls == ["user_1"]


def test_run_writes_audit_log() -> None:
    db = create_db()
    link(db, "acc_bank")
    link(db, "acc_wallet", Platform.MOBILE_MONEY)
    bank = ScriptedWorker(Platform.BANK, new={"acc_bank": 2})
    wallet = ScriptedWorker(
        Platform.MOBILE_MONEY, statuses={"acc_wallet": OutcomeStatus.RATE_LIMITED}
    )

    asyncio.run(create_orchestrator(db, bank, wallet).run())

    bank_log = db.list_sync_log("acc_bank")
    wallet_log = db.list_sync_log("acc_wallet")
    assert [(e.status, e.new_transactions) for e in bank_log] == [("success", 2)]
    assert [e.status for e in wallet_log] == ["rate_limited"]


def test_failure_threshold_must_be_positive() -> None:
    with pytest.raises(ValueError):
        create_orchestrator(create_db(), failure_threshold=0)


# is_due / sync_priority


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


def create_account(
    platform: Platform = Platform.BANK,
    *,
    sync_status: SyncStatus = SyncStatus.ACTIVE,
    failures: int = 0,
    last_synced_at: datetime | None = None,
    last_sync_attempt_at: datetime | None = None,
    sync_started_at: datetime | None = None,
    is_active: bool = True,
) -> LinkedAccount:
    return LinkedAccount(
        account_id="acc_1",
        user_id="user_1",
        platform=platform,
        account_name="Test",
        reference_id="ref",
        sync_status=sync_status,
        consecutive_failures=failures,
        last_synced_at=last_synced_at,
        last_sync_attempt_at=last_sync_attempt_at,
        sync_started_at=sync_started_at,
        is_active=is_active,
    )


def test_is_due_uses_platform_staleness_threshold() -> None:
    five_hours_ago = NOW - timedelta(hours=5)
    options = SyncOptions()

    bank = create_account(Platform.BANK, last_synced_at=five_hours_ago)
    wallet = create_account(Platform.MOBILE_MONEY, last_synced_at=five_hours_ago)

    assert is_due(create_account(), options, NOW)
    assert not is_due(bank, options, NOW)
    assert is_due(wallet, options, NOW)
    assert is_due(bank, SyncOptions(force_sync=True), NOW)


def test_is_due_excludes_inactive_and_auth_required_accounts() -> None:
    inactive = create_account(is_active=False)
    needs_auth = create_account(sync_status=SyncStatus.AUTH_REQUIRED)

    assert not is_due(inactive, SyncOptions(force_sync=True), NOW)
    assert not is_due(needs_auth, SyncOptions(), NOW)
    assert is_due(needs_auth, SyncOptions(force_sync=True), NOW)


def test_is_due_applies_exponential_backoff() -> None:
    def failed(minutes_ago: int) -> LinkedAccount:
        return create_account(
            sync_status=SyncStatus.ERROR,
            failures=2,
            last_sync_attempt_at=NOW - timedelta(minutes=minutes_ago),
        )

    assert not is_due(failed(3), SyncOptions(), NOW)
    assert is_due(failed(5), SyncOptions(), NOW)
    assert is_due(failed(3), SyncOptions(force_sync=True), NOW)


def test_is_due_in_progress_only_when_lock_is_stale() -> None:
    fresh = create_account(
        sync_status=SyncStatus.IN_PROGRESS, sync_started_at=NOW - timedelta(hours=1)
    )
    stale = create_account(
        sync_status=SyncStatus.IN_PROGRESS, sync_started_at=NOW - timedelta(hours=7)
    )

    assert not is_due(fresh, SyncOptions(force_sync=True), NOW)
    assert is_due(stale, SyncOptions(), NOW)


def test_sync_priority_favors_unsynced_and_failing_accounts() -> None:
    assert sync_priority(create_account(), NOW) == 80
    assert sync_priority(create_account(sync_status=SyncStatus.ERROR), NOW) == 90
    assert (
        sync_priority(create_account(last_synced_at=NOW - timedelta(days=3)), NOW)
        == 56
    )
    assert (
        sync_priority(create_account(last_synced_at=NOW - timedelta(days=30)), NOW)
        == 70
    )
    needs_auth = create_account(
        sync_status=SyncStatus.AUTH_REQUIRED, last_synced_at=NOW
    )
    assert sync_priority(needs_auth, NOW) == 30
