"""Budget-alert trigger fed by the sync orchestrator."""

from __future__ import annotations

from typing import Protocol

import loguru
from loguru import logger

from ledgersync.services.debounce import Debouncer

DEFAULT_ALERT_DEBOUNCE_SECONDS = 5.0


class AlertSink(Protocol):
    """Downstream budget-alert evaluation for one user."""

    def evaluate_budget_alerts(self, user_id: str) -> None: ...


class LoggingAlertSink:
    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def evaluate_budget_alerts(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).info(
            "Budget alert evaluation requested for user {}", user_id
        )


class AlertTrigger:
    """Coalesces expense-change signals into one evaluation per user.

    Calls for the same user inside the debounce window collapse into a
    single ``evaluate_budget_alerts`` call, whether they come from several
    accounts in one run or from overlapping runs.
    """

    def __init__(
        self,
        sink: AlertSink,
        *,
        debounce_seconds: float = DEFAULT_ALERT_DEBOUNCE_SECONDS,
    ) -> None:
        self._debouncer = Debouncer(
            debounce_seconds, sink.evaluate_budget_alerts, name="budget-alerts"
        )

    def on_expense_transactions_changed(self, user_id: str) -> None:
        self._debouncer.trigger(user_id)

    def pending_users(self) -> set[str]:
        return self._debouncer.pending()

    def flush(self) -> list[str]:
        """Evaluate all pending users immediately. Used before process exit."""
        return self._debouncer.flush()

    def close(self) -> None:
        self._debouncer.cancel_all()
