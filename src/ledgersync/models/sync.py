"""Domain types shared by the sync workers, the orchestrator and the store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
import enum
from typing import Any, Literal

TransactionType = Literal["income", "expense"]


class Platform(enum.Enum):
    """External transaction data source."""

    BANK = "bank"
    MOBILE_MONEY = "mobile_money"


class SyncStatus(enum.Enum):
    """Sync health of a linked account."""

    ACTIVE = "active"
    AUTH_REQUIRED = "auth_required"
    ERROR = "error"
    IN_PROGRESS = "in_progress"


class OutcomeStatus(enum.Enum):
    """Per-account result of one orchestrator pass."""

    SUCCESS = "success"
    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"
    # Never dispatched (lost the claim, or the deadline hit first).
    SKIPPED = "skipped"
    # In flight when the run deadline hit.
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class LinkedAccount:
    """A user's account on one platform, as loaded for a sync pass.

    ``reference_id`` and ``phone_number`` are platform credentials and are
    excluded from ``repr`` so they never reach log output.
    """

    account_id: str
    user_id: str
    platform: Platform
    account_name: str
    reference_id: str = field(repr=False)
    phone_number: str | None = field(default=None, repr=False)
    sync_status: SyncStatus = SyncStatus.ACTIVE
    consecutive_failures: int = 0
    last_synced_at: datetime | None = None
    last_sync_attempt_at: datetime | None = None
    sync_started_at: datetime | None = None
    is_active: bool = True
    version: int = 0


@dataclass(frozen=True, slots=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            msg = f"DateRange start {self.start} is after end {self.end}"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class RawTransactionRecord:
    """Platform-native transaction before normalization. Never persisted."""

    platform_transaction_id: str
    amount: float  # signed, platform currency
    currency: str
    timestamp: datetime
    narration: str
    counterparty: str | None = None


@dataclass(slots=True)
class LedgerTransaction:
    """Normalized transaction as stored in the ledger."""

    id: str
    account_id: str
    user_id: str
    platform: Platform
    platform_transaction_id: str
    amount_cents: int  # positive magnitude in ledger currency
    type: TransactionType
    transaction_date: date
    description: str
    counterparty: str | None = None
    category_id: str | None = None
    auto_categorized: bool = False
    categorization_confidence: float | None = None
    needs_review: bool = False


@dataclass(slots=True)
class AccountOutcome:
    """Result of syncing a single account."""

    account_id: str
    user_id: str
    platform: Platform
    status: OutcomeStatus
    transactions_synced: int = 0
    new_transactions: int = 0
    updated_transactions: int = 0
    new_expense_transactions: int = 0
    duration_seconds: float = 0.0
    error_detail: str | None = None
    error_kind: str | None = None

    @property
    def changed_balances(self) -> bool:
        return (self.new_transactions + self.updated_transactions) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "platform": self.platform.value,
            "status": self.status.value,
            "transactions_synced": self.transactions_synced,
            "new_transactions": self.new_transactions,
            "updated_transactions": self.updated_transactions,
            "duration_seconds": round(self.duration_seconds, 3),
            "error_detail": self.error_detail,
        }


@dataclass(slots=True)
class SyncReport:
    """Aggregated outcome of one orchestrator run."""

    started_at: datetime
    finished_at: datetime | None = None
    outcomes: dict[Platform, list[AccountOutcome]] = field(
        default_factory=lambda: {platform: [] for platform in Platform}
    )
    timed_out: bool = False

    def add(self, outcome: AccountOutcome) -> None:
        self.outcomes[outcome.platform].append(outcome)

    def all_outcomes(self) -> list[AccountOutcome]:
        return [o for platform in Platform for o in self.outcomes[platform]]

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.all_outcomes() if o.status is status)

    @property
    def total_accounts(self) -> int:
        return len(self.all_outcomes())

    @property
    def total_transactions_synced(self) -> int:
        return sum(o.transactions_synced for o in self.all_outcomes())

    @property
    def total_new_transactions(self) -> int:
        return sum(o.new_transactions for o in self.all_outcomes())

    @property
    def total_updated_transactions(self) -> int:
        return sum(o.updated_transactions for o in self.all_outcomes())

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "timed_out": self.timed_out,
            "total_accounts": self.total_accounts,
            "total_transactions_synced": self.total_transactions_synced,
            "total_new_transactions": self.total_new_transactions,
            "total_updated_transactions": self.total_updated_transactions,
            "totals_by_status": {
                status.value: self.count(status) for status in OutcomeStatus
            },
            "platforms": {
                platform.value: [o.to_dict() for o in self.outcomes[platform]]
                for platform in Platform
            },
        }


@dataclass(frozen=True, slots=True)
class SyncOptions:
    """Options for a single orchestrator run."""

    force_sync: bool = False
    bank_stale_hours: int = 6
    mobile_money_stale_hours: int = 4
    max_concurrent_bank: int = 3
    max_concurrent_mobile_money: int = 5
    deadline_seconds: float | None = 300.0

    def __post_init__(self) -> None:
        if self.max_concurrent_bank < 1 or self.max_concurrent_mobile_money < 1:
            msg = "Per-platform concurrency caps must be positive integers"
            raise ValueError(msg)
        if self.bank_stale_hours < 0 or self.mobile_money_stale_hours < 0:
            msg = "Staleness thresholds must not be negative"
            raise ValueError(msg)
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            msg = "deadline_seconds must be positive when set"
            raise ValueError(msg)

    def stale_hours(self, platform: Platform) -> int:
        if platform is Platform.BANK:
            return self.bank_stale_hours
        return self.mobile_money_stale_hours

    def max_concurrent(self, platform: Platform) -> int:
        if platform is Platform.BANK:
            return self.max_concurrent_bank
        return self.max_concurrent_mobile_money


@dataclass(frozen=True, slots=True)
class NetWorthSnapshot:
    user_id: str
    total_assets_cents: int
    total_liabilities_cents: int
    computed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def net_worth_cents(self) -> int:
        return self.total_assets_cents - self.total_liabilities_cents
