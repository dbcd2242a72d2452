"""Shared fixtures: event factories and a repo-root import path."""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from core.models import BurnEvent, Chain


def make_event(
    tx_hash: str = "sig1",
    chain: Chain = Chain.SOLANA,
    burned: str = "100",
    total: str = "1000",
    timestamp: int = 1_700_000_000_000,
) -> BurnEvent:
    return BurnEvent(
        chain=chain,
        tx_hash=tx_hash,
        input_token="SOL" if chain is Chain.SOLANA else "WETH",
        input_amount="0.5",
        output_token="TOKEN",
        burned_amount=burned,
        total_burned=total,
        timestamp=timestamp,
    )


@pytest.fixture
def event_factory():
    return make_event
