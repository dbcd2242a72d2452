from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from chains.watcher import ChainWatcher
from core.config import SolanaWatchSettings
from core.errors import DataError, RpcError, TransientError
from core.models import (
    BurnEvent,
    Chain,
    ParseResult,
    Rejected,
    SolanaDetails,
    raw_to_decimal,
)
from core.rpc import JsonRpcClient

logger = logging.getLogger(__name__)

SOL_SYMBOL = "SOL"
SOL_DECIMALS = 9
WSOL_MINT = "So11111111111111111111111111111111111111112"
TOKEN_PROGRAMS = {"spl-token", "spl-token-2022"}
BURN_TYPES = {"burn", "burnChecked"}
SIGNATURE_PAGE = 1000


# ============================================================
# RPC
# ============================================================

class SolanaRpc(JsonRpcClient):
    """The handful of Solana JSON-RPC methods the watcher and the agent use."""

    def get_signatures_for_address(
        self,
        address: str,
        until: Optional[str] = None,
        limit: int = 1000,
        before: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Newest first, stopping at `until` (exclusive) and starting below `before`."""
        opts: Dict[str, Any] = {"limit": int(limit), "commitment": "confirmed"}
        if until:
            opts["until"] = until
        if before:
            opts["before"] = before
        return self.call("getSignaturesForAddress", [address, opts]) or []

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
        )

    def get_token_supply(self, mint: str) -> int:
        res = self.call("getTokenSupply", [mint])
        return int(((res or {}).get("value") or {}).get("amount") or 0)

    def get_balance(self, address: str) -> int:
        res = self.call("getBalance", [address, {"commitment": "confirmed"}])
        return int((res or {}).get("value") or 0)

    def get_token_account_balance(self, address: str) -> Optional[int]:
        """Raw token amount, or None when the account does not exist."""
        try:
            res = self.call("getTokenAccountBalance", [address, {"commitment": "confirmed"}])
        except RpcError as e:
            if e.code == -32602:
                return None
            raise
        return int(((res or {}).get("value") or {}).get("amount") or 0)

    def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        res = self.call("getAccountInfo", [address, {"encoding": "base64", "commitment": "confirmed"}])
        return (res or {}).get("value")

    def get_account_data(self, address: str) -> Optional[bytes]:
        info = self.get_account_info(address)
        if not info:
            return None
        data = info.get("data") or ["", "base64"]
        return base64.b64decode(data[0])

    def get_latest_blockhash(self) -> str:
        res = self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        return res["value"]["blockhash"]

    def send_transaction(self, raw: bytes, skip_preflight: bool = False) -> str:
        return self.call(
            "sendTransaction",
            [
                base64.b64encode(raw).decode(),
                {
                    "encoding": "base64",
                    "skipPreflight": skip_preflight,
                    "preflightCommitment": "confirmed",
                    "maxRetries": 0,
                },
            ],
        )

    def get_signature_statuses(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        res = self.call("getSignatureStatuses", [signatures, {"searchTransactionHistory": True}])
        return list((res or {}).get("value") or [])


# ============================================================
# PARSING
# ============================================================

@dataclass(frozen=True)
class SolanaBurn:
    """Raw facts pulled from one transaction, before amounts get a running total."""
    signature: str
    slot: int
    block_time: int             # unix seconds
    signer: str
    burned_raw: int
    input_lamports: int


def _account_keys(message: Dict[str, Any]) -> List[str]:
    out = []
    for k in message.get("accountKeys") or []:
        if isinstance(k, dict):
            out.append(k.get("pubkey") or "")
        else:
            out.append(str(k))
    return out


def _iter_instructions(tx: Dict[str, Any]):
    message = ((tx.get("transaction") or {}).get("message")) or {}
    for ix in message.get("instructions") or []:
        yield ix
    for inner in ((tx.get("meta") or {}).get("innerInstructions")) or []:
        if not isinstance(inner, dict):
            raise DataError(f"inner instruction group is {type(inner).__name__}")
        for ix in inner.get("instructions") or []:
            yield ix


def _burn_amount(ix: Dict[str, Any], mint: str, authority: str) -> Optional[int]:
    if not isinstance(ix, dict):
        raise DataError(f"instruction is {type(ix).__name__}")
    if ix.get("program") not in TOKEN_PROGRAMS:
        return None
    parsed = ix.get("parsed")
    if not isinstance(parsed, dict) or parsed.get("type") not in BURN_TYPES:
        return None
    info = parsed.get("info") or {}
    if info.get("mint") != mint:
        return None
    if (info.get("authority") or info.get("multisigAuthority")) != authority:
        return None
    amount = info.get("amount")
    if amount is None:
        amount = (info.get("tokenAmount") or {}).get("amount")
    return int(amount)


def _wsol_decrease(meta: Dict[str, Any], owner: str) -> int:
    """Net wrapped-SOL outflow from owner's token accounts, in lamports."""
    net = 0
    for b in meta.get("preTokenBalances") or []:
        if b.get("mint") == WSOL_MINT and b.get("owner") == owner:
            net += int(((b.get("uiTokenAmount") or {}).get("amount")) or 0)
    for b in meta.get("postTokenBalances") or []:
        if b.get("mint") == WSOL_MINT and b.get("owner") == owner:
            net -= int(((b.get("uiTokenAmount") or {}).get("amount")) or 0)
    return max(0, net)


def _native_decrease(meta: Dict[str, Any], keys: List[str], owner: str) -> int:
    if owner not in keys:
        return 0
    i = keys.index(owner)
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    if i >= len(pre) or i >= len(post):
        return 0
    spent = int(pre[i]) - int(post[i])
    if i == 0:
        spent -= int(meta.get("fee") or 0)
    return max(0, spent)


def extract_burn(tx: Any, watch_address: str, mint: str) -> Union[SolanaBurn, Rejected]:
    """
    Pull a buyback-and-burn out of a jsonParsed getTransaction result.
    Anything that is not a successful burn of `mint` by `watch_address` is Rejected.
    """
    if not isinstance(tx, dict):
        return Rejected(kind="malformed", reason="transaction is not an object")

    try:
        transaction = tx["transaction"]
        sig = transaction["signatures"][0]
        message = transaction["message"]
        meta = tx["meta"]
    except (KeyError, IndexError, TypeError):
        return Rejected(kind="malformed", reason="missing transaction/meta")

    if not isinstance(meta, dict):
        return Rejected(kind="malformed", reason="meta is not an object", tx_hash=sig)
    if meta.get("err") is not None:
        return Rejected(kind="failed", reason=f"tx error {meta.get('err')}", tx_hash=sig)

    try:
        burned = 0
        for ix in _iter_instructions(tx):
            amt = _burn_amount(ix, mint, watch_address)
            if amt:
                burned += amt
        keys = _account_keys(message)
        input_lamports = _wsol_decrease(meta, watch_address) or _native_decrease(meta, keys, watch_address)
    except (AttributeError, TypeError, ValueError, DataError) as e:
        return Rejected(kind="malformed", reason=f"unreadable transaction: {e}", tx_hash=sig)

    if burned <= 0:
        return Rejected(kind="not_burn", reason="no burn of tracked mint", tx_hash=sig)

    block_time = tx.get("blockTime")
    if not isinstance(block_time, int):
        return Rejected(kind="malformed", reason="missing blockTime", tx_hash=sig)

    return SolanaBurn(
        signature=sig,
        slot=int(tx.get("slot") or 0),
        block_time=block_time,
        signer=keys[0] if keys else "",
        burned_raw=burned,
        input_lamports=input_lamports,
    )


def to_event(burn: SolanaBurn, total_burned_raw: int, decimals: int, symbol: str) -> BurnEvent:
    return BurnEvent(
        chain=Chain.SOLANA,
        tx_hash=burn.signature,
        input_token=SOL_SYMBOL,
        input_amount=raw_to_decimal(burn.input_lamports, SOL_DECIMALS),
        output_token=symbol,
        burned_amount=raw_to_decimal(burn.burned_raw, decimals),
        total_burned=raw_to_decimal(max(0, total_burned_raw), decimals),
        timestamp=burn.block_time * 1000,
        extra=SolanaDetails(slot=burn.slot, signer=burn.signer),
    )


# ============================================================
# WATCHER
# ============================================================

class SolanaWatcher(ChainWatcher):
    chain = Chain.SOLANA

    def __init__(self, settings: SolanaWatchSettings, rpc: Optional[SolanaRpc] = None, **kwargs):
        super().__init__(poll_seconds=settings.poll_seconds, **kwargs)
        self.settings = settings
        self.rpc = rpc or SolanaRpc(settings.rpc_url, timeout=settings.rpc_timeout)
        self._cursor: Optional[str] = None       # newest signature already handled
        self._observed_raw = 0                   # fallback running total
        if settings.initial_supply is None:
            logger.warning("SOLANA_INITIAL_SUPPLY unset; totalBurned counts only burns seen since start")

    @property
    def cursor(self) -> Optional[str]:
        return self._cursor

    def _list_new(self) -> List[Dict[str, Any]]:
        """Every signature newer than the cursor, newest first.

        Pages backwards with `before` so a backlog larger than one page is not
        skipped. The first poll stops after `backfill` signatures.
        """
        s = self.settings
        cap = s.backfill if self._cursor is None else None
        out: List[Dict[str, Any]] = []
        before = None
        while True:
            limit = SIGNATURE_PAGE if cap is None else min(SIGNATURE_PAGE, cap - len(out))
            page = self.rpc.get_signatures_for_address(s.watch_address, until=self._cursor, limit=limit, before=before)
            out.extend(page)
            if len(page) < limit or (cap is not None and len(out) >= cap):
                return out
            before = page[-1].get("signature")
            if not before:
                return out
            logger.debug("Solana backlog: %d signatures listed, paging before %s", len(out), before)

    def poll(self) -> List[ParseResult]:
        s = self.settings
        sigs = self._list_new()
        if not sigs:
            return []
        start_cursor = self._cursor

        chain_total = None
        if s.initial_supply is not None:
            chain_total = s.initial_supply - self.rpc.get_token_supply(s.token_mint)

        results: List[Union[SolanaBurn, Rejected]] = []
        complete = True
        for item in reversed(sigs):
            sig = item.get("signature")
            if not sig:
                continue
            if item.get("err") is not None:
                results.append(Rejected(kind="failed", reason="signature reported an error", tx_hash=sig))
                self._cursor = sig
                continue
            try:
                tx = self.rpc.get_transaction(sig)
            except TransientError:
                if not results:
                    raise
                logger.info("Solana batch cut short at %s; resuming next poll", sig)
                complete = False
                break
            except RpcError as e:
                results.append(Rejected(kind="malformed", reason=str(e), tx_hash=sig))
                self._cursor = sig
                continue
            if tx is None:
                logger.debug("Solana tx %s not available yet", sig)
                complete = False
                break
            r = extract_burn(tx, s.watch_address, s.token_mint)
            if isinstance(r, Rejected) and not r.tx_hash:
                r = Rejected(kind=r.kind, reason=r.reason, tx_hash=sig)
            results.append(r)
            self._cursor = sig

        if chain_total is not None and not complete:
            results = self._defer_burns(results, start_cursor)
        return self._with_totals(results, chain_total)

    def _defer_burns(self, results: List[Union[SolanaBurn, Rejected]], start_cursor: Optional[str]) -> List[Union[SolanaBurn, Rejected]]:
        """Hold back burns from a cut-short batch.

        The supply was read after listing, so it includes burns this batch did
        not reach; walking back from it would overstate totalBurned. Keep the
        leading rejects and rewind the cursor to just before the first burn.
        """
        for i, r in enumerate(results):
            if isinstance(r, SolanaBurn):
                self._cursor = results[i - 1].tx_hash if i else start_cursor
                logger.debug("Solana deferring %d result(s) until the batch completes", len(results) - i)
                return results[:i]
        return results

    def _with_totals(self, results: List[Union[SolanaBurn, Rejected]], chain_total: Optional[int]) -> List[ParseResult]:
        s = self.settings
        burns = [r for r in results if isinstance(r, SolanaBurn)]
        totals: Dict[str, int] = {}
        if chain_total is not None:
            # supply was read after listing, so it already includes every burn
            # in this batch; walk back from the newest
            running = chain_total
            for b in reversed(burns):
                totals[b.signature] = running
                running -= b.burned_raw
        else:
            for b in burns:
                self._observed_raw += b.burned_raw
                totals[b.signature] = self._observed_raw

        out: List[ParseResult] = []
        for r in results:
            if isinstance(r, SolanaBurn):
                out.append(to_event(r, totals[r.signature], s.token_decimals, s.token_symbol))
            else:
                out.append(r)
        return out
