from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import time

import loguru
from loguru import logger

from ledgersync.adapters.cache.net_worth_cache import NetWorthCache
from ledgersync.adapters.db.facade import DB, SyncHealthPatch
from ledgersync.models.sync import (
    AccountOutcome,
    LinkedAccount,
    OutcomeStatus,
    Platform,
    SyncOptions,
    SyncReport,
    SyncStatus,
)
from ledgersync.services.alerts import AlertTrigger
from ledgersync.services.notifications import NotificationTrigger
from ledgersync.tools.sync.errors import (
    AccountLoadError,
    outcome_status_for,
    to_sync_error,
)
from ledgersync.tools.sync.worker import PlatformSyncWorker

DEFAULT_FAILURE_THRESHOLD = 3
MAX_BACKOFF_EXPONENT = 6


def is_due(account: LinkedAccount, options: SyncOptions, now: datetime) -> bool:
    """Decide whether an account should be synced in this run.

    Accounts stuck in progress are only due once their lock is older than
    the platform threshold, even under force sync.
    """
    if not account.is_active:
        return False

    threshold = timedelta(hours=options.stale_hours(account.platform))

    if account.sync_status is SyncStatus.IN_PROGRESS:
        started = account.sync_started_at or account.last_sync_attempt_at
        return started is None or now - started > threshold

    if options.force_sync:
        return True

    # Needs the user to re-link first.
    if account.sync_status is SyncStatus.AUTH_REQUIRED:
        return False

    if account.consecutive_failures > 0 and account.last_sync_attempt_at is not None:
        exponent = min(account.consecutive_failures, MAX_BACKOFF_EXPONENT)
        if now - account.last_sync_attempt_at < timedelta(minutes=2**exponent):
            return False

    if account.last_synced_at is None:
        return True
    return now - account.last_synced_at > threshold


def sync_priority(account: LinkedAccount, now: datetime) -> int:
    """Dispatch priority within a platform queue, 1 (last) to 100 (first)."""
    priority = 50
    if account.last_synced_at is None:
        priority += 30
    else:
        days = max(0, (now - account.last_synced_at).days)
        priority += min(days * 2, 20)
    if account.sync_status is SyncStatus.AUTH_REQUIRED:
        priority -= 20
    elif account.sync_status is SyncStatus.ERROR:
        priority += 10
    return max(1, min(100, priority))


class OrchestratorLogger:
    """Handles all logging for SyncOrchestrator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def run_start(
        self, loaded: int, queues: Mapping[Platform, list[LinkedAccount]]
    ) -> None:
        sizes = {p.value: len(q) for p, q in queues.items()}
        self._logger.bind(loaded=loaded, **sizes).info(
            "Sync run starting: {} active accounts, {} bank and {} mobile money due",
            loaded,
            sizes[Platform.BANK.value],
            sizes[Platform.MOBILE_MONEY.value],
        )

    def load_failed(self, error: Exception) -> None:
        self._logger.bind(error=type(error).__name__).error(
            "Could not load linked accounts: {}", error
        )

    def claim_lost(self, account: LinkedAccount) -> None:
        self._logger.bind(account_id=account.account_id).info(
            "Account {} was claimed by another run; skipping", account.account_id
        )

    def worker_raised(self, account: LinkedAccount, error: BaseException) -> None:
        self._logger.bind(account_id=account.account_id).opt(exception=error).error(
            "Worker raised for account {}", account.account_id
        )

    def health_update_lost(self, account: LinkedAccount) -> None:
        self._logger.bind(account_id=account.account_id).warning(
            "Sync health for account {} changed concurrently; keeping the other update",
            account.account_id,
        )

    def reauth_required(self, account: LinkedAccount, failures: int) -> None:
        self._logger.bind(
            account_id=account.account_id,
            platform=account.platform.value,
            failures=failures,
        ).warning(
            "Account {} needs re-authentication ({} consecutive failures)",
            account.account_id,
            failures,
        )

    def side_effect_failed(self, what: str, error: Exception) -> None:
        self._logger.bind(side_effect=what).opt(exception=error).warning(
            "{} failed: {}", what, error
        )

    def deadline_reached(self, cancelled: int, skipped: int) -> None:
        self._logger.bind(cancelled=cancelled, skipped=skipped).warning(
            "Run deadline reached: {} accounts cancelled, {} never dispatched",
            cancelled,
            skipped,
        )

    def run_complete(self, report: SyncReport) -> None:
        self._logger.bind(
            accounts=report.total_accounts,
            synced=report.total_transactions_synced,
            success=report.count(OutcomeStatus.SUCCESS),
            duration=report.duration_seconds,
        ).info(
            "Sync run complete: {} accounts, {} transactions, {} succeeded in {:.2f}s",
            report.total_accounts,
            report.total_transactions_synced,
            report.count(OutcomeStatus.SUCCESS),
            report.duration_seconds,
        )


@dataclass
class _RunState:
    """Bookkeeping that guarantees every due account is reported once."""

    pending: dict[str, LinkedAccount] = field(default_factory=dict)
    in_flight: dict[str, LinkedAccount] = field(default_factory=dict)
    finished: list[AccountOutcome] = field(default_factory=list)


class SyncOrchestrator:
    """Runs one sync pass over every due account on both platforms.

    Each platform gets its own fixed-size pool of coroutines draining its own
    queue, so a slow or failing platform never holds up the other. Account
    failures are reported per account; only failing to load the accounts
    raises.
    """

    def __init__(
        self,
        db: DB,
        workers: Mapping[Platform, PlatformSyncWorker],
        notifier: NotificationTrigger,
        *,
        alert_trigger: AlertTrigger | None = None,
        net_worth_cache: NetWorthCache | None = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        record_audit_log: bool = True,
        clock: Callable[[], datetime] | None = None,
        logger: OrchestratorLogger | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._db = db
        self._workers = dict(workers)
        self._notifier = notifier
        self._alert_trigger = alert_trigger
        self._net_worth_cache = net_worth_cache
        self._failure_threshold = failure_threshold
        self._record_audit_log = record_audit_log
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logger or OrchestratorLogger()

    async def run(self, options: SyncOptions | None = None) -> SyncReport:
        """Sync every due account and return the full report.

        Raises:
            AccountLoadError: If the linked accounts cannot be loaded
        """
        options = options or SyncOptions()
        now = self._clock()

        try:
            accounts = self._db.load_active_accounts()
        except Exception as e:
            self._logger.load_failed(e)
            raise AccountLoadError(f"Could not load linked accounts: {e}") from e

        queues = self._build_queues(accounts, options, now)
        self._logger.run_start(len(accounts), queues)

        report = SyncReport(started_at=now)
        state = _RunState(
            pending={a.account_id: a for queue in queues.values() for a in queue}
        )

        drains = [
            self._drain_queue(platform, queue, options, state)
            for platform, queue in queues.items()
            if queue
        ]
        try:
            await asyncio.wait_for(
                asyncio.gather(*drains), timeout=options.deadline_seconds
            )
        except TimeoutError:
            report.timed_out = True

        for outcome in self._close_out(state):
            report.add(outcome)

        self._after_run(report)
        report.finished_at = self._clock()
        if self._record_audit_log:
            self._write_audit_log(report)
        self._logger.run_complete(report)
        return report

    def _build_queues(
        self,
        accounts: Iterable[LinkedAccount],
        options: SyncOptions,
        now: datetime,
    ) -> dict[Platform, list[LinkedAccount]]:
        queues: dict[Platform, list[LinkedAccount]] = {p: [] for p in Platform}
        for account in accounts:
            if is_due(account, options, now):
                queues[account.platform].append(account)
        for queue in queues.values():
            queue.sort(key=lambda a: (-sync_priority(a, now), a.account_id))
        return queues

    async def _drain_queue(
        self,
        platform: Platform,
        accounts: list[LinkedAccount],
        options: SyncOptions,
        state: _RunState,
    ) -> None:
        queue: asyncio.Queue[LinkedAccount] = asyncio.Queue()
        for account in accounts:
            queue.put_nowait(account)
        pool_size = min(options.max_concurrent(platform), len(accounts))
        await asyncio.gather(
            *(self._pool_worker(queue, state) for _ in range(pool_size))
        )

    async def _pool_worker(
        self,
        queue: asyncio.Queue[LinkedAccount],
        state: _RunState,
    ) -> None:
        while True:
            try:
                account = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            state.pending.pop(account.account_id, None)
            await self._sync_one(account, state)

    async def _sync_one(self, account: LinkedAccount, state: _RunState) -> None:
        started = time.monotonic()
        try:
            claimed = self._db.claim_account_for_sync(
                account.account_id,
                expected_version=account.version,
                now=self._clock(),
            )
        except Exception as e:  # noqa: BLE001 - reported on the account
            self._logger.side_effect_failed("Claiming account", e)
            state.finished.append(
                self._failed_outcome(account, e, time.monotonic() - started)
            )
            return

        if claimed is None:
            self._logger.claim_lost(account)
            state.finished.append(
                _outcome(
                    account,
                    OutcomeStatus.SKIPPED,
                    "Account was claimed by a concurrent sync run",
                )
            )
            return

        state.in_flight[account.account_id] = claimed
        worker = self._workers.get(account.platform)
        try:
            if worker is None:
                raise LookupError(f"No worker configured for {account.platform.value}")
            outcome = await worker.sync_account(claimed)
        except Exception as e:  # noqa: BLE001 - one account never aborts the run
            self._logger.worker_raised(account, e)
            outcome = self._failed_outcome(account, e, time.monotonic() - started)
        state.in_flight.pop(account.account_id, None)
        state.finished.append(outcome)

        applied, reauth = self._update_health(account, claimed, outcome)
        if not applied:
            return
        if reauth:
            await self._notify_reauth(account)
        if outcome.status is OutcomeStatus.SUCCESS and outcome.new_transactions > 0:
            await self._notify_sync_completed(account, outcome)

    def _update_health(
        self,
        loaded: LinkedAccount,
        claimed: LinkedAccount,
        outcome: AccountOutcome,
    ) -> tuple[bool, bool]:
        """Write the post-run health patch. Returns (applied, reauth_needed)."""
        patch = self._health_patch(loaded, outcome)
        try:
            applied = self._db.update_account_sync_health(
                claimed.account_id, patch, expected_version=claimed.version
            )
        except Exception as e:  # noqa: BLE001 - the account stays in progress
            self._logger.side_effect_failed("Updating sync health", e)
            return False, False
        if not applied:
            self._logger.health_update_lost(loaded)
            return False, False

        crossed = (
            loaded.consecutive_failures
            < self._failure_threshold
            <= patch.consecutive_failures
        )
        became_auth_required = (
            patch.sync_status is SyncStatus.AUTH_REQUIRED
            and loaded.sync_status is not SyncStatus.AUTH_REQUIRED
        )
        return True, crossed or became_auth_required

    def _health_patch(
        self, loaded: LinkedAccount, outcome: AccountOutcome
    ) -> SyncHealthPatch:
        failures = loaded.consecutive_failures
        if outcome.status is OutcomeStatus.SUCCESS:
            return SyncHealthPatch(
                sync_status=SyncStatus.ACTIVE,
                consecutive_failures=0,
                last_synced_at=self._clock(),
            )
        if outcome.status is OutcomeStatus.AUTH_ERROR:
            return SyncHealthPatch(
                sync_status=SyncStatus.AUTH_REQUIRED,
                consecutive_failures=failures + 1,
                last_sync_error=outcome.error_detail,
            )
        if outcome.status is OutcomeStatus.RATE_LIMITED:
            # The streak is untouched; so is the status, unless it was a stale lock.
            status = loaded.sync_status
            if status is SyncStatus.IN_PROGRESS:
                status = SyncStatus.ERROR if failures else SyncStatus.ACTIVE
            return SyncHealthPatch(
                sync_status=status,
                consecutive_failures=failures,
                last_sync_error=outcome.error_detail,
            )
        return SyncHealthPatch(
            sync_status=SyncStatus.ERROR,
            consecutive_failures=failures + 1,
            last_sync_error=outcome.error_detail,
        )

    async def _notify_reauth(self, account: LinkedAccount) -> None:
        self._logger.reauth_required(account, account.consecutive_failures + 1)
        try:
            await self._notifier.notify_reauth_required(
                account.user_id,
                account.account_name,
                account.account_id,
                account.platform,
            )
        except Exception as e:  # noqa: BLE001 - notifications never fail a sync
            self._logger.side_effect_failed("Re-auth notification", e)

    async def _notify_sync_completed(
        self, account: LinkedAccount, outcome: AccountOutcome
    ) -> None:
        try:
            await self._notifier.notify_sync_completed(
                account.user_id,
                account.account_name,
                outcome.new_transactions,
                account.platform,
            )
        except Exception as e:  # noqa: BLE001
            self._logger.side_effect_failed("Sync-completed notification", e)

    def _close_out(self, state: _RunState) -> list[AccountOutcome]:
        """Finished outcomes plus placeholders for what the deadline cut off."""
        cancelled = [
            _outcome(
                account,
                OutcomeStatus.CANCELLED,
                "Run deadline reached while syncing; left for stale-lock recovery",
            )
            for account in state.in_flight.values()
        ]
        skipped = [
            _outcome(
                account,
                OutcomeStatus.SKIPPED,
                "Run deadline reached before the account was dispatched",
            )
            for account in state.pending.values()
        ]
        if cancelled or skipped:
            self._logger.deadline_reached(len(cancelled), len(skipped))
        return [*state.finished, *cancelled, *skipped]

    def _after_run(self, report: SyncReport) -> None:
        outcomes = report.all_outcomes()

        if self._net_worth_cache is not None:
            # Cancelled accounts may have stored some pages before the deadline.
            changed = {
                o.user_id
                for o in outcomes
                if o.changed_balances or o.status is OutcomeStatus.CANCELLED
            }
            for user_id in sorted(changed):
                self._net_worth_cache.invalidate(user_id)

        if self._alert_trigger is not None:
            users = {o.user_id for o in outcomes if o.new_expense_transactions > 0}
            for user_id in sorted(users):
                try:
                    self._alert_trigger.on_expense_transactions_changed(user_id)
                except Exception as e:  # noqa: BLE001
                    self._logger.side_effect_failed("Alert trigger", e)

    def _write_audit_log(self, report: SyncReport) -> None:
        try:
            self._db.record_sync_report(report)
        except Exception as e:  # noqa: BLE001 - the audit log is best effort
            self._logger.side_effect_failed("Writing sync audit log", e)

    @staticmethod
    def _failed_outcome(
        account: LinkedAccount, error: Exception, duration: float
    ) -> AccountOutcome:
        sync_error = to_sync_error(error)
        outcome = _outcome(account, outcome_status_for(sync_error), str(sync_error))
        outcome.error_kind = sync_error.kind
        outcome.duration_seconds = duration
        return outcome


def _outcome(
    account: LinkedAccount, status: OutcomeStatus, detail: str | None = None
) -> AccountOutcome:
    return AccountOutcome(
        account_id=account.account_id,
        user_id=account.user_id,
        platform=account.platform,
        status=status,
        error_detail=detail,
    )
