from decimal import Decimal

import requests

from enrich.dexscreener import DexscreenerClient

MINT = "So11111111111111111111111111111111111111112"


class PairsResponse:
    def __init__(self, pairs, status=200):
        self.pairs = pairs
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(str(self.status_code))

    def json(self):
        return self.pairs


class PairsSession:
    def __init__(self, response):
        self.response = response
        self.calls = 0

    def get(self, url, timeout=None):
        self.calls += 1
        return self.response


def test_price_comes_from_deepest_pool_and_is_cached():
    session = PairsSession(PairsResponse([
        {"priceUsd": "0.010", "liquidity": {"usd": 100}},
        {"priceUsd": "0.012", "liquidity": {"usd": 5000}},
    ]))
    client = DexscreenerClient(session=session, clock=lambda: 0.0)
    assert client.price_usd("solana", MINT) == Decimal("0.012")
    assert client.price_usd("solana", MINT) == Decimal("0.012")
    assert session.calls == 1


def test_price_unknown_on_rate_limit_or_error():
    assert DexscreenerClient(session=PairsSession(PairsResponse([], 429))).price_usd("solana", MINT) is None
    assert DexscreenerClient(session=PairsSession(PairsResponse([], 500))).price_usd("solana", MINT) is None

