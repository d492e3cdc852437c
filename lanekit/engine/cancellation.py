from __future__ import annotations

import threading
import time

CANCELLED = "cancelled"
TIMED_OUT = "timed out"


class CancellationToken:
    """Thread-safe cancel flag with an optional deadline and parents.

    A child observes its parents' cancellation and deadlines, never the other way round,
    so a run token can stop every lane while a lane token only stops its own lane.
    """

    def __init__(
        self,
        *,
        parent: "CancellationToken | None" = None,
        timeout_seconds: float | None = None,
        linked: "CancellationToken | None" = None,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0 when provided")
        self._event = threading.Event()
        self._parents = tuple(token for token in (parent, linked) if token is not None)
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def child(
        self,
        *,
        timeout_seconds: float | None = None,
        linked: "CancellationToken | None" = None,
    ) -> "CancellationToken":
        """Derive a token that also stops when ``linked`` (e.g. a per-lane handle) stops."""
        return CancellationToken(parent=self, timeout_seconds=timeout_seconds, linked=linked)

    def cancel(self) -> None:
        self._event.set()

    def expired(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return any(parent.expired() for parent in self._parents)

    def cancelled_externally(self) -> bool:
        if self._event.is_set():
            return True
        return any(parent.cancelled_externally() for parent in self._parents)

    def is_cancelled(self) -> bool:
        return self.cancelled_externally() or self.expired()

    def reason(self) -> str | None:
        if self.cancelled_externally():
            return CANCELLED
        if self.expired():
            return TIMED_OUT
        return None

    def remaining(self) -> float | None:
        candidates = [parent.remaining() for parent in self._parents]
        if self._deadline is not None:
            candidates.append(max(0.0, self._deadline - time.monotonic()))
        known = [value for value in candidates if value is not None]
        return min(known) if known else None
