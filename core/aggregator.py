from __future__ import annotations

import logging
import threading
from collections import deque
from decimal import Decimal
from enum import Enum
from typing import Deque, Dict, Set, Tuple

from core.models import BurnEvent, Chain, ChainStats, FeedSnapshot, format_amount

logger = logging.getLogger(__name__)


class IngestResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class EventAggregator:
    """Single owner of per-chain stats and the recent-events window.

    All mutation goes through ingest(). Watchers on other threads may call it
    concurrently; a lock serializes writers and snapshot() copies under it.
    """

    def __init__(self, window_size: int = 50, dedupe_size: int = 50000):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self._lock = threading.Lock()
        self._window: Deque[BurnEvent] = deque(maxlen=window_size)
        self._stats: Dict[Chain, ChainStats] = {c: ChainStats() for c in Chain}

        # Remembers keys long after they leave the window, so a late replay of
        # an evicted event still counts once.
        self._seen: Set[Tuple[str, str]] = set()
        self._seen_q: Deque[Tuple[str, str]] = deque(maxlen=max(dedupe_size, window_size))

        self.summary = {
            "received": 0,
            "accepted": 0,
            "dedupe": 0,
        }

    def _remember(self, key: Tuple[str, str]) -> bool:
        if key in self._seen:
            return False
        if len(self._seen_q) == self._seen_q.maxlen:
            self._seen.discard(self._seen_q[0])
        self._seen.add(key)
        self._seen_q.append(key)
        return True

    def ingest(self, event: BurnEvent) -> IngestResult:
        with self._lock:
            self.summary["received"] += 1
            if not self._remember(event.key):
                self.summary["dedupe"] += 1
                return IngestResult.DUPLICATE

            self._window.append(event)

            cur = self._stats[event.chain]
            cur_total = Decimal(cur.total_burned)
            new_total = event.total_burned_value
            if new_total < cur_total:
                logger.debug(
                    "%s %s reports older total %s < %s; keeping max",
                    event.chain.value, event.tx_hash, event.total_burned, cur.total_burned,
                )
            self._stats[event.chain] = ChainStats(
                total_burned=format_amount(max(cur_total, new_total)),
                buyback_count=cur.buyback_count + 1,
            )
            self.summary["accepted"] += 1
            return IngestResult.ACCEPTED

    def snapshot(self, limit: int = 0) -> FeedSnapshot:
        with self._lock:
            events = tuple(reversed(self._window))
            stats = dict(self._stats)
        if limit and limit > 0:
            events = events[:limit]
        return FeedSnapshot(recent_events=events, stats=stats)

    def stats(self) -> Dict[Chain, ChainStats]:
        with self._lock:
            return dict(self._stats)
