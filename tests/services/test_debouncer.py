from __future__ import annotations

import threading

import pytest

from ledgersync.services.debounce import Debouncer


class RecordingCallback:
    def __init__(self, *, fail_on: str | None = None) -> None:
        self._fail_on = fail_on
        self.calls: list[str] = []
        self.called = threading.Event()

    def __call__(self, key: str) -> None:
        self.calls.append(key)
        self.called.set()
        if key == self._fail_on:
            raise RuntimeError(f"callback failed for {key}")


def test_repeated_triggers_collapse_into_one_call() -> None:
    callback = RecordingCallback()
    debouncer = Debouncer(0.05, callback)

    for _ in range(5):
        debouncer.trigger("user_1")

    assert callback.called.wait(timeout=2)
    # Give any replaced timer a chance to (wrongly) fire.
    threading.Event().wait(0.1)
    assert callback.calls == ["user_1"]
    assert debouncer.pending() == set()


def test_keys_are_debounced_independently() -> None:
    callback = RecordingCallback()
    debouncer = Debouncer(60, callback)

    debouncer.trigger("user_1")
    debouncer.trigger("user_2")
    debouncer.trigger("user_1")

    try:
        assert debouncer.pending() == {"user_1", "user_2"}
        assert debouncer.flush() == ["user_1", "user_2"]
    finally:
        debouncer.cancel_all()
    assert sorted(callback.calls) == ["user_1", "user_2"]


def test_flush_runs_pending_callbacks_once() -> None:
    callback = RecordingCallback()
    debouncer = Debouncer(60, callback)
    debouncer.trigger("user_1")

    first = debouncer.flush()
    second = debouncer.flush()

    assert first == ["user_1"]
    assert second == []
    assert callback.calls == ["user_1"]


def test_cancel_all_drops_pending_callbacks() -> None:
    callback = RecordingCallback()
    debouncer = Debouncer(60, callback)
    debouncer.trigger("user_1")

    debouncer.cancel_all()

    assert debouncer.pending() == set()
    assert debouncer.flush() == []
    assert callback.calls == []


def test_callback_failure_does_not_propagate() -> None:
    callback = RecordingCallback(fail_on="user_1")
    debouncer = Debouncer(60, callback)
    debouncer.trigger("user_1")
    debouncer.trigger("user_2")

    flushed = debouncer.flush()

    assert flushed == ["user_1", "user_2"]
    assert callback.calls == ["user_1", "user_2"]


def test_negative_delay_is_rejected() -> None:
    with pytest.raises(ValueError):
        Debouncer(-1, RecordingCallback())
