from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from nimbus_controller.src.constants import DEFAULT_REPORTER


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class ReadWriteLock:
    """Lock admitting many concurrent readers or a single writer.

    Waiting writers block new readers so a steady stream of status requests
    cannot starve the reconciler.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class DiagnosticsSnapshot:
    last_event: datetime
    reporter: str

    def to_dict(self) -> dict[str, Any]:
        # The reporter identity is internal and not exposed on the status page.
        return {"last_event": format_rfc3339(self.last_event)}


class Diagnostics:
    """Process-wide record of the last reconciliation, read by the status server."""

    def __init__(
        self,
        reporter: str = DEFAULT_REPORTER,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._now_fn = now_fn
        self._lock = ReadWriteLock()
        self._state = DiagnosticsSnapshot(last_event=now_fn(), reporter=reporter)

    def touch(self) -> None:
        """Record that a reconciliation has just started."""
        now = self._now_fn()
        with self._lock.write():
            self._state = replace(self._state, last_event=now)

    def snapshot(self) -> DiagnosticsSnapshot:
        with self._lock.read():
            return self._state

    @property
    def reporter(self) -> str:
        return self.snapshot().reporter
