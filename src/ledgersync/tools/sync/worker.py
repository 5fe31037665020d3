from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import hashlib
import time

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB, UpsertAction
from ledgersync.infra.clients.base import (
    CredentialsRef,
    PlatformClient,
    TransactionPage,
)
from ledgersync.models.sync import (
    AccountOutcome,
    DateRange,
    LedgerTransaction,
    LinkedAccount,
    OutcomeStatus,
    Platform,
    RawTransactionRecord,
)
from ledgersync.taxonomy.core import UNCATEGORIZED_KEY
from ledgersync.tools.categorize.classifier import CategoryClassifier
from ledgersync.tools.sync.currency import CurrencyNormalizer
from ledgersync.tools.sync.errors import (
    AuthError,
    DataError,
    SyncError,
    outcome_status_for,
    to_sync_error,
)

DEFAULT_LOOKBACK_DAYS = 30
HISTORY_LIMIT = 20


def derive_transaction_id(platform: Platform, platform_transaction_id: str) -> str:
    """Stable ledger id for one upstream record. Pure function of its inputs."""
    payload = f"{platform.value}:{platform_transaction_id}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


@dataclass
class PageResult:
    """Counts from persisting one fetched page."""

    processed: int = 0
    inserted: int = 0
    updated: int = 0
    inserted_expenses: int = 0


class SyncWorkerLogger:
    """Handles all logging for the platform sync workers.

    Only account ids are bound; credentials never reach a log record.
    """

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, account: LinkedAccount, date_range: DateRange) -> None:
        self._logger.bind(
            account_id=account.account_id,
            platform=account.platform.value,
            start=date_range.start.isoformat(),
            end=date_range.end.isoformat(),
        ).info(
            "Syncing {} account {} ({} to {})",
            account.platform.value,
            account.account_id,
            date_range.start,
            date_range.end,
        )

    def credentials_rejected(self, account: LinkedAccount) -> None:
        self._logger.bind(
            account_id=account.account_id, platform=account.platform.value
        ).warning("Credentials rejected for account {}", account.account_id)

    def fetch_page_complete(
        self, account: LinkedAccount, page_num: int, record_count: int
    ) -> None:
        self._logger.bind(
            account_id=account.account_id, page=page_num, count=record_count
        ).debug(
            "Fetched {} records for account {} (page {})",
            record_count,
            account.account_id,
            page_num,
        )

    def page_persisted(
        self, account: LinkedAccount, page_num: int, result: PageResult
    ) -> None:
        self._logger.bind(
            account_id=account.account_id,
            page=page_num,
            inserted=result.inserted,
            updated=result.updated,
        ).debug(
            "Persisted page {} for account {}: {} new, {} updated",
            page_num,
            account.account_id,
            result.inserted,
            result.updated,
        )

    def sync_complete(self, outcome: AccountOutcome) -> None:
        self._logger.bind(
            account_id=outcome.account_id,
            platform=outcome.platform.value,
            synced=outcome.transactions_synced,
            new=outcome.new_transactions,
            updated=outcome.updated_transactions,
        ).info(
            "Account {} synced: {} processed, {} new, {} updated in {:.2f}s",
            outcome.account_id,
            outcome.transactions_synced,
            outcome.new_transactions,
            outcome.updated_transactions,
            outcome.duration_seconds,
        )

    def sync_failed(
        self, account: LinkedAccount, error: SyncError, processed: int, pages: int
    ) -> None:
        self._logger.bind(
            account_id=account.account_id,
            platform=account.platform.value,
            error_kind=error.kind,
            processed=processed,
            pages=pages,
        ).warning(
            "Account {} sync failed ({}) after {} pages, {} records kept: {}",
            account.account_id,
            error.kind,
            pages,
            processed,
            error,
        )


class PlatformSyncWorker:
    """Syncs one linked account at a time against one upstream platform.

    Steps per account run strictly in order: credential check, page-by-page
    fetch, normalization, classification of new records, upsert. Every
    failure is captured into the returned ``AccountOutcome``; retrying is the
    orchestrator's job.
    """

    platform: Platform

    def __init__(
        self,
        client: PlatformClient,
        db: DB,
        classifier: CategoryClassifier,
        normalizer: CurrencyNormalizer,
        *,
        default_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        clock: Callable[[], datetime] | None = None,
        logger: SyncWorkerLogger | None = None,
    ) -> None:
        if client.platform is not self.platform:
            msg = (
                f"{type(self).__name__} needs a {self.platform.value} client, "
                f"got {client.platform.value}"
            )
            raise ValueError(msg)
        self._client = client
        self._db = db
        self._classifier = classifier
        self._normalizer = normalizer
        self._default_lookback_days = default_lookback_days
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logger or SyncWorkerLogger()

    def default_date_range(self, account: LinkedAccount) -> DateRange:
        today = self._clock().astimezone(UTC).date()
        if account.last_synced_at is None:
            start = today - timedelta(days=self._default_lookback_days)
        else:
            # Re-fetch the day of the last sync; upserts make the overlap harmless.
            start = min(account.last_synced_at.astimezone(UTC).date(), today)
        return DateRange(start=start, end=today)

    async def sync_account(
        self,
        account: LinkedAccount,
        date_range: DateRange | None = None,
    ) -> AccountOutcome:
        """Sync one account and report what happened. Failures land in the outcome."""
        started = time.monotonic()
        outcome = AccountOutcome(
            account_id=account.account_id,
            user_id=account.user_id,
            platform=account.platform,
            status=OutcomeStatus.SUCCESS,
        )
        pages = 0
        try:
            if account.platform is not self.platform:
                raise DataError(
                    f"Account platform {account.platform.value} does not match "
                    f"{self.platform.value} worker"
                )
            date_range = date_range or self.default_date_range(account)
            self._logger.sync_start(account, date_range)

            credentials = self.credentials_for(account)
            if not await self._client.validate_credentials(credentials):
                self._logger.credentials_rejected(account)
                raise AuthError("Upstream platform rejected the account credentials")

            cursor: str | None = None
            while True:
                page = await self._client.fetch_transactions(
                    credentials, date_range, cursor=cursor
                )
                pages += 1
                self._logger.fetch_page_complete(account, pages, len(page.records))

                result = PageResult()
                try:
                    self._persist_page(account, page, result)
                finally:
                    # Rows written before a store failure still count.
                    outcome.transactions_synced += result.processed
                    outcome.new_transactions += result.inserted
                    outcome.updated_transactions += result.updated
                    outcome.new_expense_transactions += result.inserted_expenses
                self._logger.page_persisted(account, pages, result)

                if not page.has_more:
                    break
                cursor = page.next_cursor
        except Exception as exc:  # noqa: BLE001 - captured into the outcome
            error = to_sync_error(exc)
            outcome.status = outcome_status_for(error)
            outcome.error_kind = error.kind
            outcome.error_detail = str(error)
            self._logger.sync_failed(account, error, outcome.transactions_synced, pages)
        finally:
            outcome.duration_seconds = time.monotonic() - started

        if outcome.status is OutcomeStatus.SUCCESS:
            self._logger.sync_complete(outcome)
        return outcome

    def credentials_for(self, account: LinkedAccount) -> CredentialsRef:
        return CredentialsRef.for_account(account)

    # -------- normalization --------

    def describe(self, record: RawTransactionRecord) -> str:
        """Ledger description for a record. Platforms override the fallback."""
        return " ".join(record.narration.split())

    def normalize(
        self, account: LinkedAccount, record: RawTransactionRecord
    ) -> LedgerTransaction:
        if not record.platform_transaction_id:
            raise DataError("Upstream record has no transaction id")
        signed_cents = self._normalizer.to_ledger_cents(record.amount, record.currency)
        timestamp = record.timestamp
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(UTC)
        return LedgerTransaction(
            id=derive_transaction_id(self.platform, record.platform_transaction_id),
            account_id=account.account_id,
            user_id=account.user_id,
            platform=self.platform,
            platform_transaction_id=record.platform_transaction_id,
            amount_cents=abs(signed_cents),
            type="expense" if signed_cents < 0 else "income",
            transaction_date=timestamp.date(),
            description=self.describe(record),
            counterparty=record.counterparty,
        )

    # -------- persistence --------

    def _persist_page(
        self, account: LinkedAccount, page: TransactionPage, result: PageResult
    ) -> None:
        # Normalize the whole page first so a malformed record writes nothing
        # from its page; earlier pages are already stored.
        candidates = [self.normalize(account, record) for record in page.records]

        for txn in candidates:
            action = self._upsert(txn)
            result.processed += 1
            if action == "inserted":
                result.inserted += 1
                if txn.type == "expense":
                    result.inserted_expenses += 1
            elif action == "updated":
                result.updated += 1

    def _upsert(self, txn: LedgerTransaction) -> UpsertAction:
        if self._db.get_transaction(txn.id) is None:
            self._apply_classification(txn)
        # Existing rows keep their category; the store only refreshes
        # upstream-owned fields.
        return self._db.upsert_transaction(txn)

    def _apply_classification(self, txn: LedgerTransaction) -> None:
        history = self._db.find_similar_transactions(
            txn.user_id, txn.description, limit=HISTORY_LIMIT
        )
        suggestion = self._classifier.classify(
            txn.description,
            txn.amount_cents / 100,
            self.platform.value,
            txn.counterparty,
            transaction_type=txn.type,
            history=history,
        )
        band = suggestion.band
        txn.category_id = suggestion.category_id if band != "low" else UNCATEGORIZED_KEY
        txn.auto_categorized = True
        txn.categorization_confidence = suggestion.confidence
        txn.needs_review = band == "medium"


class BankWorker(PlatformSyncWorker):
    platform = Platform.BANK

    def describe(self, record: RawTransactionRecord) -> str:
        text = super().describe(record)
        if text:
            return text
        return record.counterparty or "Bank transaction"


class MobileMoneyWorker(PlatformSyncWorker):
    platform = Platform.MOBILE_MONEY

    def credentials_for(self, account: LinkedAccount) -> CredentialsRef:
        if not account.phone_number:
            raise AuthError(
                "Mobile money account has no phone number; re-link required"
            )
        return super().credentials_for(account)

    def describe(self, record: RawTransactionRecord) -> str:
        text = super().describe(record)
        if record.counterparty and record.counterparty.lower() not in text.lower():
            return f"{text} - {record.counterparty}" if text else record.counterparty
        return text or "Mobile money transaction"


def worker_for(
    client: PlatformClient,
    db: DB,
    classifier: CategoryClassifier,
    normalizer: CurrencyNormalizer,
    **kwargs: object,
) -> PlatformSyncWorker:
    """Build the worker matching ``client.platform``."""
    worker_cls: type[PlatformSyncWorker] = (
        BankWorker if client.platform is Platform.BANK else MobileMoneyWorker
    )
    return worker_cls(
        client, db, classifier, normalizer, **kwargs  # type: ignore[arg-type]
    )

