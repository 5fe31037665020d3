"""Notification triggers emitted by the sync orchestrator.

Only the trigger side lives here. ``StoredNotificationTrigger`` writes to the
notifications outbox table; whatever delivers push messages reads from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB
from ledgersync.models.sync import Platform

KIND_REAUTH_REQUIRED = "reauth_required"
KIND_SYNC_COMPLETED = "sync_completed"


class NotificationTrigger(Protocol):
    async def notify_reauth_required(
        self,
        user_id: str,
        account_name: str,
        account_id: str,
        platform: Platform,
    ) -> None: ...

    async def notify_sync_completed(
        self,
        user_id: str,
        account_name: str,
        transaction_count: int,
        platform: Platform,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class PlatformCopy:
    reauth_title: str
    reauth_label: str
    reauth_deep_link: str
    synced_title: str
    synced_prefix: str


PLATFORM_COPY: dict[Platform, PlatformCopy] = {
    Platform.BANK: PlatformCopy(
        reauth_title="Bank Account Re-authentication Required",
        reauth_label="bank account",
        reauth_deep_link="/settings/bank-accounts",
        synced_title="Bank Transactions Synced",
        synced_prefix="Bank",
    ),
    Platform.MOBILE_MONEY: PlatformCopy(
        reauth_title="Mobile Money Re-authentication Required",
        reauth_label="mobile money account",
        reauth_deep_link="/settings/mobile-money",
        synced_title="Mobile Money Transactions Synced",
        synced_prefix="Mobile Money",
    ),
}

SYNCED_DEEP_LINK = "/transactions"


def reauth_message(account_name: str, platform: Platform) -> tuple[str, str]:
    copy = PLATFORM_COPY[platform]
    body = (
        f'Your {copy.reauth_label} "{account_name}" needs to be re-linked '
        "for automatic transaction syncing."
    )
    return copy.reauth_title, body


def sync_completed_message(
    account_name: str, transaction_count: int, platform: Platform
) -> tuple[str, str]:
    copy = PLATFORM_COPY[platform]
    plural = "s" if transaction_count != 1 else ""
    body = (
        f"{copy.synced_prefix}: {transaction_count} new transaction{plural} "
        f"synced from {account_name}."
    )
    return copy.synced_title, body


class LogNotificationTrigger:
    """Notification trigger that only writes log records."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    async def notify_reauth_required(
        self,
        user_id: str,
        account_name: str,
        account_id: str,
        platform: Platform,
    ) -> None:
        title, _ = reauth_message(account_name, platform)
        self._logger.bind(
            user_id=user_id, account_id=account_id, platform=platform.value
        ).info("{} for account {}", title, account_id)

    async def notify_sync_completed(
        self,
        user_id: str,
        account_name: str,
        transaction_count: int,
        platform: Platform,
    ) -> None:
        _, body = sync_completed_message(account_name, transaction_count, platform)
        self._logger.bind(user_id=user_id, platform=platform.value).info(body)


class StoredNotificationTrigger:
    """Writes notifications into the outbox table."""

    def __init__(self, db: DB) -> None:
        self._db = db

    async def notify_reauth_required(
        self,
        user_id: str,
        account_name: str,
        account_id: str,
        platform: Platform,
    ) -> None:
        title, body = reauth_message(account_name, platform)
        self._db.record_notification(
            user_id=user_id,
            account_id=account_id,
            platform=platform,
            kind=KIND_REAUTH_REQUIRED,
            title=title,
            body=body,
            deep_link=PLATFORM_COPY[platform].reauth_deep_link,
        )

    async def notify_sync_completed(
        self,
        user_id: str,
        account_name: str,
        transaction_count: int,
        platform: Platform,
    ) -> None:
        if transaction_count <= 0:
            return
        title, body = sync_completed_message(account_name, transaction_count, platform)
        self._db.record_notification(
            user_id=user_id,
            account_id=None,
            platform=platform,
            kind=KIND_SYNC_COMPLETED,
            title=title,
            body=body,
            deep_link=SYNCED_DEEP_LINK,
            transaction_count=transaction_count,
        )
