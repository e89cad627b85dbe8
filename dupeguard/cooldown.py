"""Per-actor cooldown gate for inventory audits."""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

DEFAULT_WINDOW_SECONDS = 5.0


class CooldownGate:
    """Lets at most one full audit per actor through per cooldown window.

    Entries are ordered by last accepted check so the oldest can be evicted
    cheaply. An entry whose window has elapsed behaves exactly like an absent
    one, which is what makes :meth:`sweep` and the size cap safe.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._last_check: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def window(self) -> float:
        return self._window

    def should_run(self, actor_id: object, now: Optional[float] = None) -> bool:
        """Return ``True`` and record ``now`` if the actor is off cooldown.

        A ``False`` result leaves the stored timestamp untouched.
        """

        key = str(actor_id)
        current = self._clock() if now is None else now
        with self._lock:
            last = self._last_check.get(key)
            if last is not None and current - last < self._window:
                return False
            self._last_check[key] = current
            self._last_check.move_to_end(key)
            while len(self._last_check) > self._max_entries:
                self._last_check.popitem(last=False)
        return True

    def forget(self, actor_id: object) -> bool:
        """Drop the actor's entry, typically when they leave the session."""

        with self._lock:
            return self._last_check.pop(str(actor_id), None) is not None

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove entries whose cooldown has already expired."""

        current = self._clock() if now is None else now
        cutoff = current - self._window
        removed = 0
        with self._lock:
            while self._last_check:
                key, ts = next(iter(self._last_check.items()))
                if ts > cutoff:
                    break
                self._last_check.popitem(last=False)
                removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._last_check)


__all__ = ["CooldownGate", "DEFAULT_WINDOW_SECONDS"]
