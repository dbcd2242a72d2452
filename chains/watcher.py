from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from core.backoff import Backoff
from core.errors import BuybackError, TransientError
from core.models import BurnEvent, Chain, ParseResult, Rejected

logger = logging.getLogger(__name__)


class ChainWatcher:
    """Turns a chain's buyback/burn transactions into an endless BurnEvent stream.

    Subclasses implement poll(), a blocking call that returns everything new
    since the last successful poll and advances its own cursor. events() runs
    poll() off the event loop, backs off on RPC trouble and skips rejects.
    Cursor state lives on the instance, so iterating events() again resumes.
    """

    chain: Chain

    def __init__(self, poll_seconds: float = 15.0, backoff: Optional[Backoff] = None):
        self.poll_seconds = float(poll_seconds)
        self.backoff = backoff or Backoff(base=1.0, cap=60.0)
        self.summary = {
            "polls": 0,
            "events": 0,
            "rejected": 0,
            "errors": 0,
        }

    def poll(self) -> List[ParseResult]:
        raise NotImplementedError

    async def events(self) -> AsyncIterator[BurnEvent]:
        while True:
            try:
                results = await asyncio.to_thread(self.poll)
            except TransientError as e:
                self.summary["errors"] += 1
                delay = self.backoff.next()
                logger.warning("%s poll failed (%s); retrying in %.1fs", self.chain.value, e, delay)
                await asyncio.sleep(delay)
                continue
            except BuybackError as e:
                self.summary["errors"] += 1
                delay = self.backoff.next()
                logger.error("%s poll error: %s; retrying in %.1fs", self.chain.value, e, delay)
                await asyncio.sleep(delay)
                continue
            except Exception as e:
                self.summary["errors"] += 1
                delay = self.backoff.next()
                logger.exception("%s poll crashed: %s; retrying in %.1fs", self.chain.value, e, delay)
                await asyncio.sleep(delay)
                continue

            self.backoff.reset()
            self.summary["polls"] += 1
            for r in results:
                if isinstance(r, Rejected):
                    self.summary["rejected"] += 1
                    self._log_rejected(r)
                    continue
                self.summary["events"] += 1
                yield r

            await asyncio.sleep(self.poll_seconds)

    def _log_rejected(self, r: Rejected) -> None:
        if r.kind == "malformed":
            logger.warning("%s skipped malformed tx %s: %s", self.chain.value, r.tx_hash, r.reason)
        else:
            logger.debug("%s ignored tx %s (%s): %s", self.chain.value, r.tx_hash, r.kind, r.reason)
