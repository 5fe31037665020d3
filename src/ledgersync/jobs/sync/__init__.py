"""Background sync job for linked bank and mobile-money accounts."""

from __future__ import annotations

from ledgersync.jobs.sync.runner import SyncRunner, clients_from_env, run_sync

__all__ = ["SyncRunner", "clients_from_env", "run_sync"]
