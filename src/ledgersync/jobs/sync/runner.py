"""Sync job runner: wires the store, clients and workers into one orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from loguru import logger

from ledgersync.adapters.cache.net_worth_cache import NetWorthCache
from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import SyncSettings
from ledgersync.infra.clients.base import PlatformClient
from ledgersync.infra.clients.mono import MonoClient
from ledgersync.infra.clients.mtn_momo import MtnMomoClient
from ledgersync.models.sync import Platform, SyncOptions, SyncReport
from ledgersync.services.alerts import AlertTrigger
from ledgersync.services.notifications import (
    NotificationTrigger,
    StoredNotificationTrigger,
)
from ledgersync.tools.categorize.classifier import CategoryClassifier
from ledgersync.tools.sync.currency import CurrencyNormalizer
from ledgersync.tools.sync.errors import PlatformClientError
from ledgersync.tools.sync.orchestrator import SyncOrchestrator
from ledgersync.tools.sync.worker import PlatformSyncWorker, worker_for


def clients_from_env() -> dict[Platform, PlatformClient]:
    """Build every platform client whose environment is configured.

    A platform without credentials is left out; its accounts then fail
    individually instead of blocking the other platform.
    """
    clients: dict[Platform, PlatformClient] = {}
    for platform, factory in (
        (Platform.BANK, MonoClient.from_env),
        (Platform.MOBILE_MONEY, MtnMomoClient.from_env),
    ):
        try:
            clients[platform] = factory()
        except PlatformClientError as e:
            logger.bind(platform=platform.value).warning(
                "{} client not configured: {}", platform.value, e
            )
    return clients


class SyncRunner:
    """Runs the sync orchestrator with process-level collaborators."""

    def __init__(
        self,
        db: DB,
        settings: SyncSettings,
        *,
        clients: Mapping[Platform, PlatformClient] | None = None,
        notifier: NotificationTrigger | None = None,
        alert_trigger: AlertTrigger | None = None,
        net_worth_cache: NetWorthCache | None = None,
        classifier: CategoryClassifier | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            db: Ledger store
            settings: Process configuration
            clients: Platform clients keyed by platform. If None, they are
                built from the environment on first run.
            notifier: Notification trigger. Defaults to the outbox table.
            alert_trigger: Optional debounced budget-alert trigger
            net_worth_cache: Optional process-wide cache to invalidate
            classifier: Optional classifier; defaults to the bundled taxonomy
        """
        self._db = db
        self._settings = settings
        self._clients = dict(clients) if clients is not None else None
        self._notifier = notifier or StoredNotificationTrigger(db)
        self._alert_trigger = alert_trigger
        self._net_worth_cache = net_worth_cache
        self._classifier = classifier or CategoryClassifier()
        self._normalizer = CurrencyNormalizer(
            settings.ledger_currency, settings.fx_rates
        )

    def build_workers(self) -> dict[Platform, PlatformSyncWorker]:
        if self._clients is None:
            self._clients = clients_from_env()
        return {
            platform: worker_for(
                client,
                self._db,
                self._classifier,
                self._normalizer,
                default_lookback_days=self._settings.default_lookback_days,
            )
            for platform, client in self._clients.items()
        }

    def build_orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(
            self._db,
            self.build_workers(),
            self._notifier,
            alert_trigger=self._alert_trigger,
            net_worth_cache=self._net_worth_cache,
            failure_threshold=self._settings.failure_threshold,
        )

    async def run(self, options: SyncOptions | None = None) -> SyncReport:
        options = options or self._settings.sync_options()
        return await self.build_orchestrator().run(options)


def run_sync(
    options: SyncOptions,
    settings: SyncSettings,
    *,
    db: DB | None = None,
    **runner_kwargs: object,
) -> SyncReport:
    """Trigger entrypoint for schedulers and manual force-sync.

    Raises:
        AccountLoadError: If the linked accounts cannot be loaded
    """
    db = db or DB(settings.database_url)
    runner = SyncRunner(db, settings, **runner_kwargs)  # type: ignore[arg-type]
    return asyncio.run(runner.run(options))
