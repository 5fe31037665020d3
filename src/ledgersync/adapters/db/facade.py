from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
import re
from typing import Literal
import uuid

from sqlalchemy import case, create_engine, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ledgersync.adapters.db.models import (
    Base,
    LedgerTransactionRow,
    LinkedAccountRow,
    NotificationRow,
    SyncLogEntry,
)
from ledgersync.models.sync import (
    LedgerTransaction,
    LinkedAccount,
    NetWorthSnapshot,
    Platform,
    SyncReport,
    SyncStatus,
)

UpsertAction = Literal["inserted", "updated", "unchanged"]

_TOKEN = re.compile(r"[a-z0-9]{3,}")


@dataclass(frozen=True, slots=True)
class SyncHealthPatch:
    """Post-run health fields for one account, applied as a single update."""

    sync_status: SyncStatus
    consecutive_failures: int
    last_synced_at: datetime | None = None  # None leaves the column untouched
    last_sync_error: str | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _account_from_row(row: LinkedAccountRow) -> LinkedAccount:
    return LinkedAccount(
        account_id=row.account_id,
        user_id=row.user_id,
        platform=Platform(row.platform),
        account_name=row.account_name,
        reference_id=row.reference_id,
        phone_number=row.phone_number,
        sync_status=SyncStatus(row.sync_status),
        consecutive_failures=row.consecutive_failures,
        last_synced_at=_as_utc(row.last_synced_at),
        last_sync_attempt_at=_as_utc(row.last_sync_attempt_at),
        sync_started_at=_as_utc(row.sync_started_at),
        is_active=row.is_active,
        version=row.version,
    )


def _transaction_from_row(row: LedgerTransactionRow) -> LedgerTransaction:
    return LedgerTransaction(
        id=row.id,
        account_id=row.account_id,
        user_id=row.user_id,
        platform=Platform(row.platform),
        platform_transaction_id=row.platform_transaction_id,
        amount_cents=row.amount_cents,
        type="income" if row.type == "income" else "expense",
        transaction_date=row.transaction_date,
        description=row.description,
        counterparty=row.counterparty,
        category_id=row.category_id,
        auto_categorized=row.auto_categorized,
        categorization_confidence=row.categorization_confidence,
        needs_review=row.needs_review,
    )


class DB:
    """Ledger store: accounts, transactions, audit log and notification outbox."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///ledgersync.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    # -------- Accounts --------

    def link_account(
        self,
        *,
        user_id: str,
        platform: Platform,
        account_name: str,
        reference_id: str,
        phone_number: str | None = None,
        opening_balance_cents: int = 0,
        account_id: str | None = None,
    ) -> LinkedAccount:
        """Create a linked account, or re-link an existing one.

        Re-linking replaces the credentials and resets sync health, which is
        how an account leaves ``auth_required``.
        """
        with self.session() as session:  # type: Session
            row = session.get(LinkedAccountRow, account_id) if account_id else None
            if row is None:
                row = LinkedAccountRow(
                    account_id=account_id or uuid.uuid4().hex,
                    user_id=user_id,
                    platform=platform.value,
                    account_name=account_name,
                    reference_id=reference_id,
                    phone_number=phone_number,
                    sync_status=SyncStatus.ACTIVE.value,
                    consecutive_failures=0,
                    is_active=True,
                    opening_balance_cents=opening_balance_cents,
                    version=0,
                )
                session.add(row)
            else:
                row.reference_id = reference_id
                row.phone_number = phone_number
                row.account_name = account_name
                row.sync_status = SyncStatus.ACTIVE.value
                row.consecutive_failures = 0
                row.last_sync_error = None
                row.sync_started_at = None
                row.is_active = True
                row.version = row.version + 1
                row.updated_at = datetime.now(UTC)
            session.flush()
            session.refresh(row)
            return _account_from_row(row)

    def deactivate_account(self, account_id: str) -> bool:
        with self.session() as session:  # type: Session
            result = session.execute(
                update(LinkedAccountRow)
                .where(LinkedAccountRow.account_id == account_id)
                .values(
                    is_active=False,
                    version=LinkedAccountRow.version + 1,
                    updated_at=datetime.now(UTC),
                )
            )
            return result.rowcount > 0

    def get_account(self, account_id: str) -> LinkedAccount | None:
        with self.session() as session:  # type: Session
            row = session.get(LinkedAccountRow, account_id)
            return _account_from_row(row) if row else None

    def list_accounts(self, user_id: str | None = None) -> list[LinkedAccount]:
        with self.session() as session:  # type: Session
            stmt = select(LinkedAccountRow).order_by(LinkedAccountRow.account_id)
            if user_id is not None:
                stmt = stmt.where(LinkedAccountRow.user_id == user_id)
            return [_account_from_row(r) for r in session.scalars(stmt)]

    def load_active_accounts(self) -> list[LinkedAccount]:
        """Return every account that has not been deactivated by its user."""
        with self.session() as session:  # type: Session
            stmt = (
                select(LinkedAccountRow)
                .where(LinkedAccountRow.is_active.is_(True))
                .order_by(LinkedAccountRow.account_id)
            )
            return [_account_from_row(r) for r in session.scalars(stmt)]

    def claim_account_for_sync(
        self,
        account_id: str,
        *,
        expected_version: int,
        now: datetime,
    ) -> LinkedAccount | None:
        """Mark an account in progress if nobody touched it since it was loaded.

        Returns:
            The claimed account (with its new version) or None when the
            compare-and-set lost to another writer.
        """
        with self.session() as session:  # type: Session
            result = session.execute(
                update(LinkedAccountRow)
                .where(
                    LinkedAccountRow.account_id == account_id,
                    LinkedAccountRow.version == expected_version,
                    LinkedAccountRow.is_active.is_(True),
                )
                .values(
                    sync_status=SyncStatus.IN_PROGRESS.value,
                    sync_started_at=now,
                    last_sync_attempt_at=now,
                    version=LinkedAccountRow.version + 1,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                return None
            row = session.get(LinkedAccountRow, account_id, populate_existing=True)
            return _account_from_row(row) if row else None

    def update_account_sync_health(
        self,
        account_id: str,
        patch: SyncHealthPatch,
        *,
        expected_version: int,
    ) -> bool:
        """Apply a post-run health patch as one compare-and-set update.

        Returns:
            True when the patch was applied, False when another run changed
            the account first (its update wins).
        """
        values: dict[str, object] = {
            "sync_status": patch.sync_status.value,
            "consecutive_failures": patch.consecutive_failures,
            "last_sync_error": patch.last_sync_error,
            "sync_started_at": None,
            "version": LinkedAccountRow.version + 1,
            "updated_at": datetime.now(UTC),
        }
        if patch.last_synced_at is not None:
            values["last_synced_at"] = patch.last_synced_at

        with self.session() as session:  # type: Session
            result = session.execute(
                update(LinkedAccountRow)
                .where(
                    LinkedAccountRow.account_id == account_id,
                    LinkedAccountRow.version == expected_version,
                )
                .values(**values)
            )
            return result.rowcount > 0

    # -------- Transactions --------

    def get_transaction(self, transaction_id: str) -> LedgerTransaction | None:
        with self.session() as session:  # type: Session
            row = session.get(LedgerTransactionRow, transaction_id)
            return _transaction_from_row(row) if row else None

    def upsert_transaction(self, txn: LedgerTransaction) -> UpsertAction:
        """Insert a transaction or refresh the upstream-owned fields of an existing one.

        Category fields are only written on insert. Existing rows keep their
        categorization, whether it came from the classifier or from the user.
        """
        try:
            with self.session() as session:  # type: Session
                row = session.get(LedgerTransactionRow, txn.id)
                if row is None:
                    session.add(
                        LedgerTransactionRow(
                            id=txn.id,
                            account_id=txn.account_id,
                            user_id=txn.user_id,
                            platform=txn.platform.value,
                            platform_transaction_id=txn.platform_transaction_id,
                            amount_cents=txn.amount_cents,
                            type=txn.type,
                            transaction_date=txn.transaction_date,
                            description=txn.description,
                            counterparty=txn.counterparty,
                            category_id=txn.category_id,
                            auto_categorized=txn.auto_categorized,
                            categorization_confidence=txn.categorization_confidence,
                            needs_review=txn.needs_review,
                        )
                    )
                    session.flush()
                    return "inserted"
                return self._refresh_upstream_fields(row, txn)
        except IntegrityError:
            # A concurrent run inserted the same upstream record first.
            with self.session() as session:  # type: Session
                row = session.get(LedgerTransactionRow, txn.id)
                if row is None:
                    raise
                return self._refresh_upstream_fields(row, txn)

    @staticmethod
    def _refresh_upstream_fields(
        row: LedgerTransactionRow, txn: LedgerTransaction
    ) -> UpsertAction:
        changed = False
        for key in (
            "amount_cents",
            "type",
            "transaction_date",
            "description",
            "counterparty",
        ):
            value = getattr(txn, key)
            if getattr(row, key) != value:
                setattr(row, key, value)
                changed = True
        if not changed:
            return "unchanged"
        row.updated_at = datetime.now(UTC)
        return "updated"

    def find_similar_transactions(
        self,
        user_id: str,
        narration: str,
        limit: int = 20,
    ) -> list[LedgerTransaction]:
        """Return categorized transactions whose description shares a word.

        Results are ordered newest first; the classifier does the actual
        similarity scoring.
        """
        tokens = sorted(
            set(_TOKEN.findall(narration.lower())), key=lambda t: (-len(t), t)
        )
        if not tokens:
            return []

        with self.session() as session:  # type: Session
            stmt = (
                select(LedgerTransactionRow)
                .where(
                    LedgerTransactionRow.user_id == user_id,
                    LedgerTransactionRow.category_id.is_not(None),
                    LedgerTransactionRow.category_id != "uncategorized",
                    or_(
                        *[
                            LedgerTransactionRow.description.ilike(f"%{tok}%")
                            for tok in tokens[:5]
                        ]
                    ),
                )
                .order_by(
                    LedgerTransactionRow.transaction_date.desc(),
                    LedgerTransactionRow.id,
                )
                .limit(limit)
            )
            return [_transaction_from_row(r) for r in session.scalars(stmt)]

    def apply_category_feedback(
        self, transaction_id: str, category_id: str
    ) -> LedgerTransaction:
        """Record the user's category choice. Feedback is never overwritten by sync.

        Raises:
            ValueError: If the transaction does not exist
        """
        with self.session() as session:  # type: Session
            row = session.get(LedgerTransactionRow, transaction_id)
            if row is None:
                raise ValueError(f"Transaction {transaction_id} not found")
            row.category_id = category_id
            row.auto_categorized = False
            row.categorization_confidence = None
            row.needs_review = False
            row.updated_at = datetime.now(UTC)
            session.flush()
            return _transaction_from_row(row)

    def list_transactions(self, account_id: str) -> list[LedgerTransaction]:
        with self.session() as session:  # type: Session
            stmt = (
                select(LedgerTransactionRow)
                .where(LedgerTransactionRow.account_id == account_id)
                .order_by(
                    LedgerTransactionRow.transaction_date, LedgerTransactionRow.id
                )
            )
            return [_transaction_from_row(r) for r in session.scalars(stmt)]

    # -------- Net worth --------

    def compute_net_worth(self, user_id: str) -> NetWorthSnapshot:
        """Aggregate balances of the user's active accounts.

        Balance = opening balance + income - expenses. Positive balances
        count as assets, negative balances as liabilities.
        """
        signed = case(
            (LedgerTransactionRow.type == "income", LedgerTransactionRow.amount_cents),
            else_=-LedgerTransactionRow.amount_cents,
        )
        with self.session() as session:  # type: Session
            stmt = (
                select(
                    LinkedAccountRow.account_id,
                    LinkedAccountRow.opening_balance_cents,
                    func.coalesce(func.sum(signed), 0),
                )
                .outerjoin(
                    LedgerTransactionRow,
                    LedgerTransactionRow.account_id == LinkedAccountRow.account_id,
                )
                .where(
                    LinkedAccountRow.user_id == user_id,
                    LinkedAccountRow.is_active.is_(True),
                )
                .group_by(
                    LinkedAccountRow.account_id, LinkedAccountRow.opening_balance_cents
                )
            )
            assets = 0
            liabilities = 0
            for _account_id, opening, movement in session.execute(stmt):
                balance = int(opening) + int(movement)
                if balance >= 0:
                    assets += balance
                else:
                    liabilities += -balance
        return NetWorthSnapshot(
            user_id=user_id,
            total_assets_cents=assets,
            total_liabilities_cents=liabilities,
        )

    # -------- Audit log and notifications --------

    def record_sync_report(self, report: SyncReport) -> int:
        """Write one audit row per account outcome. Returns rows written."""
        outcomes = report.all_outcomes()
        if not outcomes:
            return 0
        with self.session() as session:  # type: Session
            for outcome in outcomes:
                session.add(
                    SyncLogEntry(
                        run_started_at=report.started_at,
                        account_id=outcome.account_id,
                        user_id=outcome.user_id,
                        platform=outcome.platform.value,
                        status=outcome.status.value,
                        transactions_synced=outcome.transactions_synced,
                        new_transactions=outcome.new_transactions,
                        updated_transactions=outcome.updated_transactions,
                        duration_seconds=outcome.duration_seconds,
                        error_detail=outcome.error_detail,
                    )
                )
        return len(outcomes)

    def list_sync_log(self, account_id: str) -> list[SyncLogEntry]:
        with self.session() as session:  # type: Session
            stmt = (
                select(SyncLogEntry)
                .where(SyncLogEntry.account_id == account_id)
                .order_by(SyncLogEntry.sync_log_id)
            )
            entries = list(session.scalars(stmt))
            for entry in entries:
                session.expunge(entry)
            return entries

    def record_notification(
        self,
        *,
        user_id: str,
        account_id: str | None,
        platform: Platform,
        kind: str,
        title: str,
        body: str,
        deep_link: str | None = None,
        transaction_count: int | None = None,
    ) -> int:
        with self.session() as session:  # type: Session
            row = NotificationRow(
                user_id=user_id,
                account_id=account_id,
                platform=platform.value,
                kind=kind,
                title=title,
                body=body,
                deep_link=deep_link,
                transaction_count=transaction_count,
                delivery_status="pending",
            )
            session.add(row)
            session.flush()
            return row.notification_id

    def list_notifications(self, user_id: str | None = None) -> list[NotificationRow]:
        with self.session() as session:  # type: Session
            stmt = select(NotificationRow).order_by(NotificationRow.notification_id)
            if user_id is not None:
                stmt = stmt.where(NotificationRow.user_id == user_id)
            rows = list(session.scalars(stmt))
            for row in rows:
                session.expunge(row)
            return rows
