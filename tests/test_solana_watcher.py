import asyncio
from decimal import Decimal

import pytest

from chains import solana_rpc
from chains.solana_rpc import WSOL_MINT, SolanaBurn, SolanaWatcher, extract_burn
from core.backoff import Backoff
from core.config import SolanaWatchSettings
from core.errors import TransientError
from core.models import BurnEvent, Chain, Rejected, SolanaDetails

TREASURY = "TreasuryWa11et1111111111111111111111111111"
MINT = "BurnMint11111111111111111111111111111111111"


def burn_tx(sig, amount, *, inner=False, err=None, authority=TREASURY, mint=MINT,
            block_time=1_700_000_000, wsol=None):
    ix = {
        "program": "spl-token-2022",
        "programId": "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb",
        "parsed": {
            "type": "burnChecked",
            "info": {
                "account": "TokenAcct",
                "mint": mint,
                "authority": authority,
                "tokenAmount": {"amount": str(amount), "decimals": 0},
            },
        },
    }
    meta = {
        "err": err,
        "fee": 5000,
        "preBalances": [2_000_000_000, 0],
        "postBalances": [1_499_995_000, 0],
        "preTokenBalances": [],
        "postTokenBalances": [],
        "innerInstructions": [{"index": 0, "instructions": [ix]}] if inner else [],
    }
    if wsol:
        pre, post = wsol
        meta["preTokenBalances"] = [{"mint": WSOL_MINT, "owner": TREASURY, "uiTokenAmount": {"amount": str(pre)}}]
        meta["postTokenBalances"] = [{"mint": WSOL_MINT, "owner": TREASURY, "uiTokenAmount": {"amount": str(post)}}]
    return {
        "slot": 250_000_000,
        "blockTime": block_time,
        "transaction": {
            "signatures": [sig],
            "message": {
                "accountKeys": [{"pubkey": TREASURY, "signer": True, "writable": True}, "JupiterProgram"],
                "instructions": [] if inner else [ix],
            },
        },
        "meta": meta,
    }


class FakeSolanaRpc:
    def __init__(self, pages, txs, supply=0):
        self.pages = list(pages)
        self.txs = dict(txs)
        self.supply = supply
        self.listed = []
        self.befores = []

    def get_signatures_for_address(self, address, until=None, limit=1000, before=None):
        self.listed.append((address, until, limit))
        self.befores.append(before)
        return self.pages.pop(0) if self.pages else []

    def get_transaction(self, sig):
        tx = self.txs.get(sig)
        if isinstance(tx, Exception):
            raise tx
        return tx

    def get_token_supply(self, mint):
        return self.supply


def sigs(*names):
    return [{"signature": n, "err": None} for n in names]


def settings(**kw):
    base = dict(rpc_url="http://rpc", watch_address=TREASURY, token_mint=MINT, token_decimals=0, token_symbol="BURN")
    base.update(kw)
    return SolanaWatchSettings(**base)


def test_extract_burn_reads_amounts_and_native_input():
    r = extract_burn(burn_tx("s1", 1_000_000), TREASURY, MINT)
    assert isinstance(r, SolanaBurn)
    assert r.burned_raw == 1_000_000
    assert r.input_lamports == 500_000_000
    assert r.block_time == 1_700_000_000
    assert r.signer == TREASURY


def test_extract_burn_counts_inner_instructions():
    r = extract_burn(burn_tx("s1", 42, inner=True), TREASURY, MINT)
    assert isinstance(r, SolanaBurn)
    assert r.burned_raw == 42


def test_extract_burn_prefers_wrapped_sol_decrease():
    r = extract_burn(burn_tx("s1", 1, wsol=(700_000_000, 0)), TREASURY, MINT)
    assert r.input_lamports == 700_000_000


@pytest.mark.parametrize(
    "tx, kind",
    [
        (burn_tx("s1", 5, err={"InstructionError": [0, "Custom"]}), "failed"),
        (burn_tx("s1", 5, authority="SomeoneElse"), "not_burn"),
        (burn_tx("s1", 5, mint="OtherMint"), "not_burn"),
        (burn_tx("s1", 5, block_time=None), "malformed"),
        ({"transaction": {}}, "malformed"),
        ("junk", "malformed"),
    ],
)
def test_extract_burn_rejects(tx, kind):
    r = extract_burn(tx, TREASURY, MINT)
    assert isinstance(r, Rejected)
    assert r.kind == kind


def test_poll_walks_oldest_first_with_chain_totals():
    rpc = FakeSolanaRpc(
        pages=[sigs("s2", "s1")],
        txs={"s1": burn_tx("s1", 100, block_time=10), "s2": burn_tx("s2", 50, block_time=20)},
        supply=9_000,
    )
    w = SolanaWatcher(settings(initial_supply=10_000, backfill=20), rpc=rpc)
    events = w.poll()

    assert [e.tx_hash for e in events] == ["s1", "s2"]
    assert [e.total_burned for e in events] == ["950", "1000"]
    assert events[0].burned_amount == "100"
    assert events[0].timestamp == 10_000
    assert events[0].chain is Chain.SOLANA
    assert Decimal(events[0].input_amount) == Decimal("0.5")
    assert events[0].extra == SolanaDetails(slot=250_000_000, signer=TREASURY)
    assert w.cursor == "s2"
    assert rpc.listed[0] == (TREASURY, None, 20)

    assert w.poll() == []
    assert rpc.listed[1][1] == "s2"


def test_poll_without_initial_supply_sums_observed_burns():
    rpc = FakeSolanaRpc(
        pages=[sigs("s2", "s1"), sigs("s3")],
        txs={"s1": burn_tx("s1", 100), "s2": burn_tx("s2", 50), "s3": burn_tx("s3", 1)},
    )
    w = SolanaWatcher(settings(), rpc=rpc)
    assert [e.total_burned for e in w.poll()] == ["100", "150"]
    assert [e.total_burned for e in w.poll()] == ["151"]


def test_poll_keeps_rejects_and_advances_past_them():
    rpc = FakeSolanaRpc(
        pages=[[{"signature": "s2", "err": {"x": 1}}, {"signature": "s1", "err": None}]],
        txs={"s1": burn_tx("s1", 5, authority="SomeoneElse")},
    )
    w = SolanaWatcher(settings(), rpc=rpc)
    results = w.poll()
    assert all(isinstance(r, Rejected) for r in results)
    assert [r.kind for r in results] == ["not_burn", "failed"]
    assert w.cursor == "s2"


def test_unavailable_transaction_ends_batch_and_resumes():
    rpc = FakeSolanaRpc(
        pages=[sigs("s3", "s2", "s1"), sigs("s3", "s2")],
        txs={"s1": burn_tx("s1", 1), "s2": None, "s3": burn_tx("s3", 3)},
    )
    w = SolanaWatcher(settings(), rpc=rpc)
    assert [e.tx_hash for e in w.poll()] == ["s1"]
    assert w.cursor == "s1"

    rpc.txs["s2"] = burn_tx("s2", 2)
    assert [e.tx_hash for e in w.poll()] == ["s2", "s3"]
    assert rpc.listed[1][1] == "s1"
    assert w.cursor == "s3"


def test_transient_failure_mid_batch_returns_partial_results():
    rpc = FakeSolanaRpc(
        pages=[sigs("s2", "s1")],
        txs={"s1": burn_tx("s1", 1), "s2": TransientError("timeout")},
    )
    w = SolanaWatcher(settings(), rpc=rpc)
    results = w.poll()
    assert [e.tx_hash for e in results] == ["s1"]
    assert isinstance(results[0], BurnEvent)
    assert w.cursor == "s1"


def test_transient_failure_on_first_tx_raises_without_moving_cursor():
    rpc = FakeSolanaRpc(pages=[sigs("s1")], txs={"s1": TransientError("timeout")})
    w = SolanaWatcher(settings(), rpc=rpc)
    with pytest.raises(TransientError):
        w.poll()
    assert w.cursor is None


def broken_inner_tx(sig):
    tx = burn_tx(sig, 5, inner=True)
    tx["meta"]["innerInstructions"] = [None]
    return tx


@pytest.mark.parametrize("mangle", [
    lambda tx: tx["meta"].update(innerInstructions=[None]),
    lambda tx: tx["transaction"]["message"].update(instructions=[None]),
    lambda tx: tx["meta"].update(preTokenBalances=["junk"]),
    lambda tx: tx["transaction"].update(message=["junk"]),
])
def test_extract_burn_rejects_odd_json_nodes(mangle):
    tx = burn_tx("s1", 5)
    mangle(tx)
    r = extract_burn(tx, TREASURY, MINT)
    assert isinstance(r, Rejected)
    assert r.kind == "malformed"
    assert r.tx_hash == "s1"


@pytest.mark.asyncio
async def test_malformed_transaction_is_skipped_by_event_loop():
    rpc = FakeSolanaRpc(
        pages=[sigs("s2", "s1")],
        txs={"s1": broken_inner_tx("s1"), "s2": burn_tx("s2", 7)},
    )
    w = SolanaWatcher(settings(poll_seconds=0), rpc=rpc, backoff=Backoff(base=0, cap=0))

    stream = w.events()
    event = await asyncio.wait_for(stream.__anext__(), timeout=2)
    await stream.aclose()

    assert event.tx_hash == "s2"
    assert w.summary["rejected"] == 1
    assert w.summary["errors"] == 0
    assert w.cursor == "s2"


def test_backlog_larger_than_a_page_is_paged(monkeypatch):
    monkeypatch.setattr(solana_rpc, "SIGNATURE_PAGE", 2)
    rpc = FakeSolanaRpc(
        pages=[sigs("s1"), sigs("s5", "s4"), sigs("s3", "s2"), []],
        txs={n: burn_tx(n, 1) for n in ("s1", "s2", "s3", "s4", "s5")},
    )
    w = SolanaWatcher(settings(), rpc=rpc)
    w.poll()
    assert [e.tx_hash for e in w.poll()] == ["s2", "s3", "s4", "s5"]
    assert rpc.befores == [None, None, "s4", "s2"]
    assert all(until == "s1" for _, until, _ in rpc.listed[1:])
    assert w.cursor == "s5"


def test_first_poll_paging_stops_at_backfill(monkeypatch):
    monkeypatch.setattr(solana_rpc, "SIGNATURE_PAGE", 2)
    rpc = FakeSolanaRpc(
        pages=[sigs("s5", "s4"), sigs("s3")],
        txs={n: burn_tx(n, 1) for n in ("s3", "s4", "s5")},
    )
    w = SolanaWatcher(settings(backfill=3), rpc=rpc)
    assert [e.tx_hash for e in w.poll()] == ["s3", "s4", "s5"]
    assert [limit for _, _, limit in rpc.listed] == [2, 1]


def test_cut_short_batch_defers_burns_when_totals_come_from_supply():
    rpc = FakeSolanaRpc(
        pages=[sigs("s3", "s2", "s1"), sigs("s3", "s2")],
        txs={"s1": burn_tx("s1", 5, authority="SomeoneElse"), "s2": burn_tx("s2", 50), "s3": None},
        supply=9_000,
    )
    w = SolanaWatcher(settings(initial_supply=10_000), rpc=rpc)

    first = w.poll()
    assert [(r.kind, r.tx_hash) for r in first] == [("not_burn", "s1")]
    assert w.cursor == "s1"

    rpc.txs["s3"] = burn_tx("s3", 30)
    events = w.poll()
    assert [e.tx_hash for e in events] == ["s2", "s3"]
    assert [e.total_burned for e in events] == ["970", "1000"]
    assert rpc.listed[1][1] == "s1"


def test_cut_short_batch_with_only_burns_keeps_cursor():
    rpc = FakeSolanaRpc(
        pages=[sigs("s2", "s1")],
        txs={"s1": burn_tx("s1", 5), "s2": TransientError("timeout")},
        supply=0,
    )
    w = SolanaWatcher(settings(initial_supply=100), rpc=rpc)
    assert w.poll() == []
    assert w.cursor is None
