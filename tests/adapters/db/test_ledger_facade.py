from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from ledgersync.adapters.db.facade import DB, SyncHealthPatch
from ledgersync.models.sync import (
    AccountOutcome,
    LedgerTransaction,
    LinkedAccount,
    OutcomeStatus,
    Platform,
    SyncReport,
    SyncStatus,
)

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)

# Helper functions


def create_db() -> DB:
    """Create in-memory database instance."""
    db = DB("sqlite:///:memory:")
    db.create_schema()
    return db


def link(
    db: DB,
    account_id: str = "acc_1",
    *,
    user_id: str = "user_1",
    opening_balance_cents: int = 0,
) -> LinkedAccount:
    return db.link_account(
        user_id=user_id,
        platform=Platform.BANK,
        account_name="GCB Current",
        reference_id="ref_secret_123",
        opening_balance_cents=opening_balance_cents,
        account_id=account_id,
    )


def create_txn(
    txn_id: str,
    *,
    account_id: str = "acc_1",
    user_id: str = "user_1",
    amount_cents: int = 1000,
    type_: str = "expense",
    description: str = "Test transaction",
    category_id: str | None = None,
    transaction_date: date = date(2025, 3, 1),
) -> LedgerTransaction:
    return LedgerTransaction(
        id=txn_id,
        account_id=account_id,
        user_id=user_id,
        platform=Platform.BANK,
        platform_transaction_id=f"up_{txn_id}",
        amount_cents=amount_cents,
        type=type_,  # type: ignore[arg-type]
        transaction_date=transaction_date,
        description=description,
        category_id=category_id,
        auto_categorized=category_id is not None,
    )


# Accounts


def test_link_account_starts_active() -> None:
    db = create_db()

    account = link(db)

    assert account.sync_status is SyncStatus.ACTIVE
    assert account.consecutive_failures == 0
    assert account.version == 0
    assert account.is_active
    assert "ref_secret_123" not in repr(account)


def test_relink_resets_sync_health_and_bumps_version() -> None:
    # helper setup
    db = create_db()
    account = link(db)
    db.update_account_sync_health(
        "acc_1",
        SyncHealthPatch(
            sync_status=SyncStatus.AUTH_REQUIRED,
            consecutive_failures=3,
            last_sync_error="token expired",
        ),
        expected_version=account.version,
    )

    # act
    relinked = db.link_account(
        user_id="user_1",
        platform=Platform.BANK,
        account_name="GCB Current",
        reference_id="ref_new",
        account_id="acc_1",
    )

    # assert
    assert relinked.sync_status is SyncStatus.ACTIVE
    assert relinked.consecutive_failures == 0
    assert relinked.reference_id == "ref_new"
    assert relinked.version == 2


def test_deactivated_accounts_are_not_loaded() -> None:
    db = create_db()
    link(db, "acc_1")
    link(db, "acc_2")

    assert db.deactivate_account("acc_1") is True
    assert db.deactivate_account("missing") is False
    assert [a.account_id for a in db.load_active_accounts()] == ["acc_2"]
    assert len(db.list_accounts("user_1")) == 2


def test_claim_is_compare_and_set_on_version() -> None:
    db = create_db()
    account = link(db)

    claimed = db.claim_account_for_sync(
        "acc_1", expected_version=account.version, now=NOW
    )
    again = db.claim_account_for_sync(
        "acc_1", expected_version=account.version, now=NOW
    )

    assert claimed is not None
    assert claimed.sync_status is SyncStatus.IN_PROGRESS
    assert claimed.sync_started_at == NOW
    assert claimed.last_sync_attempt_at == NOW
    assert claimed.version == account.version + 1
    assert again is None


def test_claim_skips_deactivated_account() -> None:
    db = create_db()
    link(db)
    db.deactivate_account("acc_1")
    current = db.get_account("acc_1")
    assert current is not None

    claimed = db.claim_account_for_sync(
        "acc_1", expected_version=current.version, now=NOW
    )

    assert claimed is None


def test_health_update_is_compare_and_set_on_version() -> None:
    # helper setup
    db = create_db()
    account = link(db)
    claimed = db.claim_account_for_sync(
        "acc_1", expected_version=account.version, now=NOW
    )
    assert claimed is not None
    patch = SyncHealthPatch(
        sync_status=SyncStatus.ACTIVE, consecutive_failures=0, last_synced_at=NOW
    )

    # act
    stale = db.update_account_sync_health(
        "acc_1", patch, expected_version=account.version
    )
    applied = db.update_account_sync_health(
        "acc_1", patch, expected_version=claimed.version
    )

    # assert
    stored = db.get_account("acc_1")
    assert stale is False
    assert applied is True
    assert stored is not None
    assert stored.sync_status is SyncStatus.ACTIVE
    assert stored.last_synced_at == NOW
    assert stored.sync_started_at is None


def test_health_update_without_sync_time_keeps_previous_value() -> None:
    db = create_db()
    account = link(db)
    db.update_account_sync_health(
        "acc_1",
        SyncHealthPatch(
            sync_status=SyncStatus.ACTIVE, consecutive_failures=0, last_synced_at=NOW
        ),
        expected_version=account.version,
    )

    db.update_account_sync_health(
        "acc_1",
        SyncHealthPatch(sync_status=SyncStatus.ERROR, consecutive_failures=1),
        expected_version=account.version + 1,
    )

    stored = db.get_account("acc_1")
    assert stored is not None
    assert stored.sync_status is SyncStatus.ERROR
    assert stored.last_synced_at == NOW


# Transactions


def test_upsert_reports_inserted_unchanged_and_updated() -> None:
    # helper setup
    db = create_db()
    link(db)
    original = create_txn("t1", description="KFC Osu", category_id="food_dining")

    # act
    first = db.upsert_transaction(original)
    second = db.upsert_transaction(original)
    corrected = create_txn(
        "t1", amount_cents=1200, description="KFC Osu", category_id="shopping"
    )
    third = db.upsert_transaction(corrected)

    # assert
    stored = db.get_transaction("t1")
    assert (first, second, third) == ("inserted", "unchanged", "updated")
    assert stored is not None
    assert stored.amount_cents == 1200
    assert stored.category_id == "food_dining"


def test_category_feedback_is_kept() -> None:
    db = create_db()
    link(db)
    db.upsert_transaction(create_txn("t1", category_id="food_dining"))

    updated = db.apply_category_feedback("t1", "entertainment")

    assert updated.category_id == "entertainment"
    assert updated.auto_categorized is False
    assert updated.needs_review is False
    assert updated.categorization_confidence is None


def test_category_feedback_on_missing_transaction_raises() -> None:
    db = create_db()

    with pytest.raises(ValueError, match="not found"):
        db.apply_category_feedback("missing", "shopping")


def test_find_similar_transactions_filters_and_orders() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_1", user_id="user_1")
    link(db, "acc_2", user_id="user_2")
    for txn in (
        create_txn(
            "old",
            description="Melcom Accra Mall",
            category_id="shopping",
            transaction_date=date(2025, 1, 1),
        ),
        create_txn(
            "new",
            description="MELCOM Kumasi",
            category_id="shopping",
            transaction_date=date(2025, 2, 1),
        ),
        create_txn("uncat", description="Melcom refund", category_id="uncategorized"),
        create_txn("other", description="Bolt ride", category_id="transportation"),
        create_txn(
            "foreign",
            account_id="acc_2",
            user_id="user_2",
            description="Melcom Tema",
            category_id="shopping",
        ),
    ):
        db.upsert_transaction(txn)

    # act
    similar = db.find_similar_transactions("user_1", "Melcom purchase")

    # assert
    assert [t.id for t in similar] == ["new", "old"]
    assert db.find_similar_transactions("user_1", "!!") == []


def test_list_transactions_is_scoped_to_account() -> None:
    db = create_db()
    link(db, "acc_1")
    link(db, "acc_2")
    db.upsert_transaction(create_txn("t1", account_id="acc_1"))
    db.upsert_transaction(create_txn("t2", account_id="acc_2"))

    assert [t.id for t in db.list_transactions("acc_1")] == ["t1"]


# Net worth


def test_compute_net_worth_splits_assets_and_liabilities() -> None:
    # helper setup
    db = create_db()
    link(db, "acc_savings", opening_balance_cents=10_000)
    link(db, "acc_card")
    link(db, "acc_closed", opening_balance_cents=99_999)
    db.deactivate_account("acc_closed")
    for txn in (
        create_txn("t1", account_id="acc_savings", amount_cents=5_000, type_="income"),
        create_txn("t2", account_id="acc_savings", amount_cents=2_000),
        create_txn("t3", account_id="acc_card", amount_cents=3_000),
    ):
        db.upsert_transaction(txn)

    # act
    snapshot = db.compute_net_worth("user_1")

    # assert
    assert snapshot.total_assets_cents == 13_000
    assert snapshot.total_liabilities_cents == 3_000
    assert snapshot.net_worth_cents == 10_000


def test_compute_net_worth_for_unknown_user_is_zero() -> None:
    snapshot = create_db().compute_net_worth("nobody")

    assert snapshot.net_worth_cents == 0


# Audit log and notifications


def test_record_sync_report_writes_one_row_per_outcome() -> None:
    # input
    report = SyncReport(started_at=NOW)
    report.add(
        AccountOutcome(
            account_id="acc_1",
            user_id="user_1",
            platform=Platform.BANK,
            status=OutcomeStatus.SUCCESS,
            transactions_synced=4,
            new_transactions=3,
            updated_transactions=1,
        )
    )
    report.add(
        AccountOutcome(
            account_id="acc_2",
            user_id="user_1",
            platform=Platform.MOBILE_MONEY,
            status=OutcomeStatus.AUTH_ERROR,
            error_detail="token expired",
        )
    )

    # helper setup
    db = create_db()

    # act
    written = db.record_sync_report(report)

    # assert
    entries = db.list_sync_log("acc_2")
    assert written == 2
    assert db.record_sync_report(SyncReport(started_at=NOW)) == 0
    assert len(db.list_sync_log("acc_1")) == 1
    assert [(e.status, e.error_detail) for e in entries] == [
        ("auth_error", "token expired")
    ]


def test_notifications_are_listed_per_user() -> None:
    db = create_db()
    first = db.record_notification(
        user_id="user_1",
        account_id="acc_1",
        platform=Platform.BANK,
        kind="reauth_required",
        title="Re-authentication Required",
        body="Please re-link",
    )
    db.record_notification(
        user_id="user_2",
        account_id=None,
        platform=Platform.MOBILE_MONEY,
        kind="sync_completed",
        title="Synced",
        body="2 new transactions",
        transaction_count=2,
    )

    rows = db.list_notifications("user_1")

    assert [r.notification_id for r in rows] == [first]
    assert rows[0].delivery_status == "pending"
    assert len(db.list_notifications()) == 2
