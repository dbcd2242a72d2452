"""
Feed client: rehydrates from the REST snapshot, then follows the live push feed.

Disconnected -> Connecting -> Connected -> Disconnected -> ... -> Closed

Every (re)connect re-fetches the snapshot instead of trusting local state,
since any number of events may have been missed while disconnected. Local
stats only move for (chain, txHash) pairs this client has not seen before.

Usage:
    python -m core.feed_client
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

import requests
import websockets

from core.config import FeedClientSettings, load_feed_client_settings
from core.errors import DataError, TransientError
from core.models import (
    BurnEvent,
    Chain,
    ChainStats,
    Rejected,
    format_amount,
    parse_message,
    stats_from_payload,
)
from core.rpc import make_session

logger = logging.getLogger(__name__)


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class FeedView:
    """The client's local picture: newest-first events, per-chain stats, seen keys."""

    def __init__(self, max_events: int = 50, seen_size: int = 5000):
        self.max_events = max_events
        self.events: List[BurnEvent] = []
        self.stats: Dict[Chain, ChainStats] = {c: ChainStats() for c in Chain}
        self._seen: Set[Tuple[str, str]] = set()
        self._seen_q: Deque[Tuple[str, str]] = deque(maxlen=max(seen_size, max_events))

    def _remember(self, key: Tuple[str, str]) -> bool:
        if key in self._seen:
            return False
        if len(self._seen_q) == self._seen_q.maxlen:
            self._seen.discard(self._seen_q[0])
        self._seen.add(key)
        self._seen_q.append(key)
        return True

    def has_seen(self, event: BurnEvent) -> bool:
        return event.key in self._seen

    def apply_snapshot(self, events: List[BurnEvent], stats: Optional[Dict[Chain, ChainStats]]) -> None:
        """Replace local state with the server's. Server stats are authoritative."""
        self.events = list(events)[: self.max_events]
        for e in self.events:
            self._remember(e.key)
        if stats:
            merged = {}
            for chain in Chain:
                local = self.stats.get(chain) or ChainStats()
                remote = stats.get(chain) or ChainStats()
                # never let a stale snapshot roll totals backward
                merged[chain] = ChainStats(
                    total_burned=format_amount(max(Decimal(local.total_burned), Decimal(remote.total_burned))),
                    buyback_count=max(local.buyback_count, remote.buyback_count),
                )
            self.stats = merged

    def apply_event(self, event: BurnEvent) -> bool:
        """Prepend a live event. Returns False for duplicates, which change nothing."""
        if not self._remember(event.key):
            return False
        self.events = [event] + self.events[: self.max_events - 1]
        cur = self.stats.get(event.chain) or ChainStats()
        self.stats[event.chain] = ChainStats(
            total_burned=format_amount(max(Decimal(cur.total_burned), event.total_burned_value)),
            buyback_count=cur.buyback_count + 1,
        )
        return True


class FeedClient:
    def __init__(
        self,
        settings: FeedClientSettings,
        on_event: Optional[Callable[[BurnEvent], Any]] = None,
        on_state: Optional[Callable[[FeedState], Any]] = None,
        connect: Callable[..., Any] = websockets.connect,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.view = FeedView(max_events=settings.snapshot_limit)
        self.on_event = on_event
        self.on_state = on_state
        self._connect = connect
        self._session = session or make_session(retries=1)

        self._state = FeedState.DISCONNECTED
        self._state_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._ws = None
        self._stopping = False

    @property
    def state(self) -> FeedState:
        return self._state

    async def _set_state(self, state: FeedState) -> None:
        if self._state == state:
            return
        self._state = state
        logger.info("Feed client %s", state.value)
        if self.on_state:
            try:
                result = self.on_state(state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("on_state callback error: %s", e)

    # ------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------

    async def start(self) -> None:
        async with self._state_lock:
            if self._stopping:
                raise RuntimeError("FeedClient was stopped; create a new one")
            if self._task and not self._task.done():
                return
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the socket and cancel any pending reconnect. Safe in any state."""
        async with self._state_lock:
            self._stopping = True
            task, self._task = self._task, None
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            ws, self._ws = self._ws, None
            if ws is not None:
                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("Feed socket close error: %s", e)
            self._state = FeedState.CLOSED

    async def _run(self) -> None:
        while not self._stopping:
            await self._set_state(FeedState.CONNECTING)
            try:
                await self.rehydrate()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Snapshot rehydrate crashed, connecting anyway: %s", e)
            try:
                async with self._connect(
                    self.settings.ws_url,
                    open_timeout=self.settings.timeout,
                    ping_interval=20,
                ) as ws:
                    self._ws = ws
                    await self._set_state(FeedState.CONNECTED)
                    async for raw in ws:
                        await self.handle_raw(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Feed connection lost: %s", e)
            finally:
                self._ws = None

            if self._stopping:
                break
            await self._set_state(FeedState.DISCONNECTED)
            logger.info("Reconnecting in %.1fs", self.settings.reconnect_seconds)
            await asyncio.sleep(self.settings.reconnect_seconds)

    # ------------------------------------------------------------
    # snapshot
    # ------------------------------------------------------------

    def fetch_snapshot(self) -> Tuple[List[BurnEvent], Dict[Chain, ChainStats]]:
        base = self.settings.api_url
        try:
            r = self._session.get(
                f"{base}/api/buybacks/recent",
                params={"limit": self.settings.snapshot_limit},
                timeout=self.settings.timeout,
            )
            r.raise_for_status()
            events_payload = r.json()
            r = self._session.get(f"{base}/api/buybacks/stats", timeout=self.settings.timeout)
            r.raise_for_status()
            stats_payload = r.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientError(f"snapshot fetch failed: {e}") from e

        if not isinstance(events_payload, dict):
            raise DataError(f"recent events body is {type(events_payload).__name__}, not an object")
        items = events_payload.get("events") or []
        if not isinstance(items, list):
            raise DataError(f"recent events field is {type(items).__name__}, not a list")

        events: List[BurnEvent] = []
        for item in items:
            result = parse_message(item)
            if isinstance(result, Rejected):
                logger.warning("Skipping malformed snapshot event %s: %s", result.tx_hash, result.reason)
                continue
            events.append(result)
        return events, stats_from_payload(stats_payload)

    async def rehydrate(self) -> bool:
        """Fetch and apply the snapshot. A failure leaves local state as it was."""
        try:
            events, stats = await asyncio.to_thread(self.fetch_snapshot)
        except (TransientError, DataError) as e:
            logger.warning("Snapshot unavailable, continuing with local state: %s", e)
            return False
        self.view.apply_snapshot(events, stats)
        return True

    # ------------------------------------------------------------
    # push messages
    # ------------------------------------------------------------

    async def handle_raw(self, raw: Any) -> Optional[BurnEvent]:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Failed to parse feed message")
            return None
        if not isinstance(data, dict):
            return None

        typ = data.get("type")
        if typ == "snapshot":
            self._apply_pushed_snapshot(data)
            return None
        if typ != "buyback":
            return None

        result = parse_message(data)
        if isinstance(result, Rejected):
            logger.warning("Dropping malformed buyback %s: %s", result.tx_hash, result.reason)
            return None
        if not self.view.apply_event(result):
            return None

        if self.on_event:
            try:
                out = self.on_event(result)
                if asyncio.iscoroutine(out):
                    await out
            except Exception as e:
                logger.error("on_event callback error: %s", e)
        return result

    def _apply_pushed_snapshot(self, data: Dict[str, Any]) -> None:
        events = []
        for item in data.get("events") or []:
            result = parse_message(item)
            if isinstance(result, BurnEvent):
                events.append(result)
        try:
            stats = stats_from_payload(data.get("stats") or {})
        except DataError as e:
            logger.warning("Ignoring bad snapshot stats: %s", e)
            stats = None
        self.view.apply_snapshot(events, stats)


async def _main() -> None:
    from links import explorer_tx_link

    def show(event: BurnEvent) -> None:
        logger.info(
            "🔥 %s burned %s %s for %s %s (total %s) %s",
            event.chain.value, event.burned_amount, event.output_token,
            event.input_amount, event.input_token, event.total_burned,
            explorer_tx_link(event.chain.value, event.tx_hash),
        )

    client = FeedClient(load_feed_client_settings(), on_event=show)
    await client.start()
    try:
        await asyncio.Event().wait()
    finally:
        await client.stop()


if __name__ == "__main__":
    import os

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass
