# app.py
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Query, WebSocket

from chains.evm_rpc import EthereumWatcher
from chains.solana_rpc import SolanaWatcher
from chains.watcher import ChainWatcher
from core.aggregator import EventAggregator, IngestResult
from core.config import FeedSettings, load_feed_settings
from core.models import FeedSnapshot
from core.publisher import FeedPublisher

logger = logging.getLogger("app")

DEFAULT_RECENT_LIMIT = 20

# ============================================================
# WATCHERS
# ============================================================

def build_watchers(settings: FeedSettings) -> List[ChainWatcher]:
    watchers: List[ChainWatcher] = []
    if settings.solana:
        watchers.append(SolanaWatcher(settings.solana))
    if settings.ethereum:
        watchers.append(EthereumWatcher(settings.ethereum))
    if not watchers:
        logger.warning("No chain watcher configured; the feed will only serve empty snapshots")
    return watchers


async def pump(watcher: ChainWatcher, publisher: FeedPublisher) -> None:
    """Forward one watcher's events into the publisher until cancelled."""
    async for event in watcher.events():
        try:
            result = await publisher.publish(event)
        except Exception as e:
            # the watcher keeps running
            logger.error("Publishing %s failed: %s", event.tx_hash, e)
            continue
        if result is IngestResult.ACCEPTED:
            logger.info(
                "🔥 %s buyback %s: burned %s %s (total %s)",
                event.chain.value, event.tx_hash, event.burned_amount, event.output_token, event.total_burned,
            )

# ============================================================
# FASTAPI APP
# ============================================================

def create_app(settings: Optional[FeedSettings] = None, watchers: Optional[List[ChainWatcher]] = None) -> FastAPI:
    settings = settings or FeedSettings()
    aggregator = EventAggregator(window_size=settings.window_size)
    publisher = FeedPublisher(aggregator, queue_size=settings.queue_size)
    if watchers is None:
        watchers = build_watchers(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tasks = [asyncio.create_task(pump(w, publisher)) for w in watchers]
        logger.info("Feed service started with %d watcher(s)", len(tasks))
        try:
            yield
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await publisher.close()

    app = FastAPI(lifespan=lifespan)
    app.state.aggregator = aggregator
    app.state.publisher = publisher
    app.state.watchers = watchers

    @app.get("/health")
    def health():
        return {"ok": True, "subscribers": publisher.subscriber_count}

    @app.get("/api/buybacks/recent")
    def recent(limit: int = Query(DEFAULT_RECENT_LIMIT, ge=1)):
        snap = aggregator.snapshot(limit=min(limit, settings.window_size))
        return {"events": [e.to_message() for e in snap.recent_events]}

    @app.get("/api/buybacks/stats")
    def stats():
        return FeedSnapshot(recent_events=(), stats=aggregator.stats()).stats_payload()

    @app.websocket("/ws")
    async def feed(websocket: WebSocket):
        await publisher.serve(websocket)

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for noisy in ("urllib3", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    feed_settings = load_feed_settings()
    uvicorn.run(create_app(feed_settings), host=feed_settings.host, port=feed_settings.port)
