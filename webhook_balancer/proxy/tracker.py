"""Delivery tracking for best-effort de-duplication of webhook redeliveries."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class DeliveryKey:
    """Identity of one webhook delivery: (signature, timestamp, retry-count)."""
    signature: str
    timestamp: str
    retry_num: str = "0"

    @classmethod
    def from_values(
        cls,
        signature: Optional[str],
        timestamp: Optional[str],
        retry_num: Optional[str] = None,
    ) -> Optional["DeliveryKey"]:
        """Build a key, or None when signature or timestamp is missing."""
        if not signature or not timestamp:
            return None
        return cls(signature=signature, timestamp=timestamp, retry_num=retry_num or "0")


class DeliveryTracker:
    """Remember recently forwarded deliveries.

    This is not an exactly-once guarantee: entries expire after
    ``window_seconds`` and, once more than ``max_entries`` are held, only the
    newest half is kept.
    """

    def __init__(self, max_entries: int = 1000, window_seconds: float = 60.0):
        self.max_entries = max_entries
        self.window_seconds = window_seconds
        self._seen: dict[DeliveryKey, float] = {}
        self._lock = asyncio.Lock()
        self.duplicates = 0

    def __len__(self) -> int:
        return len(self._seen)

    async def check_and_record(self, key: DeliveryKey, now: Optional[float] = None) -> bool:
        """Return True if ``key`` was already seen inside the window.

        Otherwise records it and returns False. Check and insert happen
        under one lock so concurrent identical deliveries forward once.
        """
        now = time.monotonic() if now is None else now
        async with self._lock:
            seen_at = self._seen.get(key)
            if seen_at is not None and now - seen_at < self.window_seconds:
                self.duplicates += 1
                return True
            self._seen[key] = now
            if len(self._seen) > self.max_entries:
                self._evict()
            return False

    async def forget(self, key: DeliveryKey):
        """Drop ``key`` so an identical resend is forwarded again."""
        async with self._lock:
            self._seen.pop(key, None)

    def _evict(self):
        keep = self.max_entries // 2
        items = sorted(self._seen.items(), key=lambda kv: kv[1])
        self._seen = dict(items[-keep:]) if keep else {}

    def get_status(self) -> dict[str, Any]:
        return {
            "tracked": len(self._seen),
            "max_entries": self.max_entries,
            "window_seconds": self.window_seconds,
            "duplicates": self.duplicates,
        }
