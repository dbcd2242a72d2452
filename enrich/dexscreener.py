from __future__ import annotations

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import requests

from core.rpc import make_session

logger = logging.getLogger(__name__)


def _liquidity_usd(pair: Dict[str, Any]) -> float:
    try:
        return float((pair.get("liquidity") or {}).get("usd") or 0.0)
    except (TypeError, ValueError):
        return 0.0


class DexscreenerClient:
    """
    Token price lookup for reports.
      - GET https://api.dexscreener.com/token-pairs/v1/{chainId}/{tokenAddress}
      - pairs endpoints allow 300 req/min; a 429 reads as "no price"
    """
    BASE = "https://api.dexscreener.com"

    def __init__(self, ttl_seconds: float = 45.0, session: Optional[requests.Session] = None, clock=time.monotonic):
        self.ttl = float(ttl_seconds)
        self.session = session or make_session(retries=1)
        self._clock = clock
        self._prices: Dict[Tuple[str, str], Tuple[float, Optional[Decimal]]] = {}

    def _pairs(self, chain_id: str, token_address: str) -> List[Dict[str, Any]]:
        r = self.session.get(f"{self.BASE}/token-pairs/v1/{chain_id}/{token_address}", timeout=20)
        if r.status_code == 429:
            logger.debug("Dexscreener rate limited")
            return []
        r.raise_for_status()
        data = r.json() or []
        return [p for p in data if isinstance(p, dict)]

    def price_usd(self, chain_id: str, token_address: str) -> Optional[Decimal]:
        """USD price from the deepest pool, or None when unknown."""
        token_address = token_address.strip()
        if not token_address:
            return None

        key = (chain_id, token_address)
        hit = self._prices.get(key)
        if hit is not None and self._clock() - hit[0] <= self.ttl:
            return hit[1]

        try:
            pairs = self._pairs(chain_id, token_address)
        except (requests.RequestException, ValueError) as e:
            logger.debug("Dexscreener lookup failed for %s: %s", token_address, e)
            return None

        price = None
        if pairs:
            best = max(pairs, key=_liquidity_usd)
            try:
                price = Decimal(str(best.get("priceUsd")))
            except (InvalidOperation, ValueError):
                price = None
            if price is not None and not price.is_finite():
                price = None
        self._prices[key] = (self._clock(), price)
        return price
