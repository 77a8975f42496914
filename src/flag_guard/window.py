"""Server-side report window keyed by client address."""

from __future__ import annotations
import hashlib
from threading import Lock
from time import time
from typing import Callable, Dict, Optional, Tuple

from .tokens import CleanReports


class RateWindowStore:
    """A thread-safe in-memory store of per-address report counts.

    Each entry expires a fixed time after it was created. Incrementing an
    existing entry never pushes its expiry forward, so a persistent client
    cannot keep its window alive forever.
    """

    def __init__(
        self,
        namespace: str,
        window: int,
        max_entries: int = 10000,
        clock: Callable[[], float] = time,
    ):
        """Initializes the RateWindowStore.

        Args:
            namespace: Prefix hashed together with the client address.
            window: Default entry lifetime in seconds.
            max_entries: Size above which expired entries are purged.
            clock: Returns the current time in seconds.
        """
        self.namespace = namespace
        self.window = window
        self.max_entries = max_entries
        self.clock = clock
        self.entries: Dict[str, Tuple[float, CleanReports]] = {}
        self.lock = Lock()

    def key_for(self, client_address: str) -> str:
        """Derives the store key for a client address."""
        material = f"{self.namespace}{client_address or ''}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[CleanReports]:
        """Returns a copy of the live entry for ``key``, or None."""
        with self.lock:
            now = self.clock()
            entry = self.entries.get(key)
            if entry is None:
                return None
            expires_at, reports = entry
            if now >= expires_at:
                del self.entries[key]
                return None
            return dict(reports)

    def expires_at(self, key: str) -> Optional[float]:
        with self.lock:
            entry = self.entries.get(key)
            if entry is None or self.clock() >= entry[0]:
                return None
            return entry[0]

    def increment(self, key: str, content_id: int, ttl: Optional[int] = None) -> int:
        """Counts one report of ``content_id`` under ``key``.

        Args:
            key: Store key from ``key_for``.
            content_id: The reported content.
            ttl: Lifetime in seconds for a newly created entry. Defaults to
                the store window. Ignored for live entries.

        Returns:
            The count for ``content_id`` after the increment.
        """
        with self.lock:
            now = self.clock()
            entry = self.entries.get(key)
            if entry is None or now >= entry[0]:
                lifetime = self.window if ttl is None else ttl
                self.entries[key] = (now + lifetime, {content_id: 1})
                # Purge expired entries to keep memory bounded
                if len(self.entries) > self.max_entries:
                    self._cleanup_expired(now)
                return 1
            reports = entry[1]
            reports[content_id] = reports.get(content_id, 0) + 1
            return reports[content_id]

    def _cleanup_expired(self, now: float):
        """Remove entries whose window has closed.

        Args:
            now: Current timestamp for cleanup calculation.
        """
        to_remove = [
            key for key, (expires_at, _) in self.entries.items() if now >= expires_at
        ]
        for key in to_remove:
            del self.entries[key]
