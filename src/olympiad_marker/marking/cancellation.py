"""Cooperative stop tokens handed to every worker run."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


class StopToken:
    """One-shot, thread-safe cancellation flag that remembers why it was set."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def set(self, reason: str) -> bool:
        """Raise the flag; returns False if it was already raised."""

        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"StopToken(name={self.name!r}, set={self.is_set()}, reason={self.reason!r})"


@dataclass(slots=True)
class RunTokens:
    """The two independent stop signals of one scheduler run.

    ``user_stop`` is raised by an explicit stop request. ``global_stop`` is
    raised by the first worker that hits the oracle rate limit and also
    suppresses new dispatch.
    """

    user_stop: StopToken = field(default_factory=lambda: StopToken("user_stop"))
    global_stop: StopToken = field(default_factory=lambda: StopToken("global_stop"))

    def any_set(self) -> bool:
        return self.user_stop.is_set() or self.global_stop.is_set()
