from __future__ import annotations

from collections.abc import Callable
import threading

import loguru
from loguru import logger


class Debouncer:
    """Per-key delayed execution with cancel-and-replace semantics.

    Each ``trigger(key)`` (re)starts the key's timer; the callback runs once,
    ``delay_seconds`` after the last trigger for that key. Callback failures
    are logged and never propagate to callers of ``trigger``.
    """

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[str], None],
        *,
        name: str = "debounce",
        logger_instance: loguru.Logger = logger,
    ) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        self._delay = delay_seconds
        self._callback = callback
        self._name = name
        self._logger = logger_instance
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}

    def trigger(self, key: str) -> None:
        timer = threading.Timer(self._delay, self._fire, args=(key,))
        timer.daemon = True
        timer.name = f"{self._name}:{key}"
        with self._lock:
            previous = self._timers.get(key)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
            timer.start()

    def pending(self) -> set[str]:
        with self._lock:
            return set(self._timers)

    def flush(self) -> list[str]:
        """Run every pending callback now, on the calling thread."""
        with self._lock:
            keys = sorted(self._timers)
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        for key in keys:
            self._run(key)
        return keys

    def cancel_all(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def _fire(self, key: str) -> None:
        with self._lock:
            # A replaced or flushed timer may still fire; only the current one runs.
            if self._timers.get(key) is not threading.current_thread():
                return
            del self._timers[key]
        self._run(key)

    def _run(self, key: str) -> None:
        try:
            self._callback(key)
        except Exception:  # noqa: BLE001
            self._logger.bind(debouncer=self._name, key=key).exception(
                "Debounced callback failed for {}", key
            )
