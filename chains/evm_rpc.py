from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from chains.watcher import ChainWatcher
from core.config import EthereumWatchSettings
from core.errors import DataError
from core.models import (
    BurnEvent,
    Chain,
    EthereumDetails,
    ParseResult,
    Rejected,
    raw_to_decimal,
)
from core.rpc import JsonRpcClient

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEAD_ADDRESS = "0x000000000000000000000000000000000000dead"
BURN_ADDRESSES = {ZERO_ADDRESS, DEAD_ADDRESS}

BALANCE_OF = "0x70a08231"
TOTAL_SUPPLY = "0x18160ddd"

NATIVE_SYMBOL = "ETH"


def _lower(s: Any) -> str:
    return (s or "").lower() if isinstance(s, str) else ""


def _hex_int(v: Any) -> int:
    if isinstance(v, int) and not isinstance(v, bool):
        return v
    if not isinstance(v, str) or not v.startswith("0x"):
        raise ValueError(f"not a hex quantity: {v!r}")
    return int(v, 16) if len(v) > 2 else 0


def _topic(address: str) -> str:
    return "0x" + address[2:].lower().rjust(64, "0")


def _topic_address(topic: Any) -> str:
    if not isinstance(topic, str) or len(topic) < 42:
        raise ValueError(f"bad address topic: {topic!r}")
    return "0x" + topic[-40:].lower()


# ============================================================
# RPC
# ============================================================

class EvmRpc(JsonRpcClient):
    def block_number(self) -> int:
        return _hex_int(self.call("eth_blockNumber", []))

    def get_logs(self, address: str, from_block: int, to_block: int, topics: List[Any]) -> List[Dict[str, Any]]:
        return self.call(
            "eth_getLogs",
            [{"address": address, "fromBlock": hex(from_block), "toBlock": hex(to_block), "topics": topics}],
        ) or []

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.call("eth_getTransactionReceipt", [tx_hash])

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.call("eth_getTransactionByHash", [tx_hash])

    def get_block_timestamp(self, number: int) -> int:
        block = self.call("eth_getBlockByNumber", [hex(number), False])
        if not block:
            raise DataError(f"block {number} not found")
        return _hex_int(block.get("timestamp"))

    def eth_call(self, to: str, data: str, block: Any = "latest") -> int:
        tag = hex(block) if isinstance(block, int) else block
        return _hex_int(self.call("eth_call", [{"to": to, "data": data}, tag]) or "0x0")

    def balance_of(self, token: str, holder: str, block: Any = "latest") -> int:
        return self.eth_call(token, BALANCE_OF + holder[2:].lower().rjust(64, "0"), block)

    def total_supply(self, token: str, block: Any = "latest") -> int:
        return self.eth_call(token, TOTAL_SUPPLY, block)


# ============================================================
# PARSING
# ============================================================

def group_burn_logs(logs: List[Dict[str, Any]], token: str) -> Dict[str, Dict[str, Any]]:
    """
    Group Transfer-to-burn-address logs by tx hash.
    Returns {tx_hash: {"block": int, "burned": int}} in log order.
    """
    token = _lower(token)
    by_hash: Dict[str, Dict[str, Any]] = {}
    for log in logs:
        if _lower(log.get("address")) != token or log.get("removed"):
            continue
        topics = log.get("topics") or []
        if len(topics) < 3 or _lower(topics[0]) != TRANSFER_TOPIC:
            continue
        try:
            to = _topic_address(topics[2])
            amount = _hex_int(log.get("data") or "0x0")
            block = _hex_int(log.get("blockNumber"))
        except ValueError as e:
            logger.warning("Skipping unreadable log in %s: %s", log.get("transactionHash"), e)
            continue
        if to not in BURN_ADDRESSES:
            continue
        h = _lower(log.get("transactionHash"))
        if not h:
            continue
        item = by_hash.setdefault(h, {"block": block, "burned": 0})
        item["burned"] += amount
    return by_hash


def input_from_receipt(receipt: Dict[str, Any], input_token: str, sender: str) -> int:
    """Sum of input_token Transfer logs sent by `sender` in this receipt."""
    if not input_token:
        return 0
    total = 0
    for log in receipt.get("logs") or []:
        if _lower(log.get("address")) != input_token:
            continue
        topics = log.get("topics") or []
        if len(topics) < 3 or _lower(topics[0]) != TRANSFER_TOPIC:
            continue
        if _topic_address(topics[1]) != sender:
            continue
        total += _hex_int(log.get("data") or "0x0")
    return total


class EthereumWatcher(ChainWatcher):
    chain = Chain.ETHEREUM

    def __init__(self, settings: EthereumWatchSettings, rpc: Optional[EvmRpc] = None, **kwargs):
        super().__init__(poll_seconds=settings.poll_seconds, **kwargs)
        self.settings = settings
        self.rpc = rpc or EvmRpc(settings.rpc_url, timeout=settings.rpc_timeout)
        self._next_block: Optional[int] = None
        self._observed_raw = 0
        if settings.initial_supply is None:
            logger.warning("ETH_INITIAL_SUPPLY unset; totalBurned counts only burns seen since start")

    @property
    def next_block(self) -> Optional[int]:
        return self._next_block

    def _range(self) -> Optional[Tuple[int, int]]:
        s = self.settings
        safe_head = self.rpc.block_number() - s.confirmations
        if safe_head < 0:
            return None
        start = self._next_block
        if start is None:
            start = max(0, safe_head - s.backfill_blocks + 1)
        if start > safe_head:
            return None
        return start, min(safe_head, start + s.max_block_range - 1)

    def poll(self) -> List[ParseResult]:
        s = self.settings
        rng = self._range()
        if rng is None:
            return []
        start, end = rng

        logs = self.rpc.get_logs(
            s.token_address,
            start,
            end,
            [TRANSFER_TOPIC, None, [_topic(ZERO_ADDRESS), _topic(DEAD_ADDRESS)]],
        )
        grouped = group_burn_logs(logs, s.token_address)

        # (tx_hash, block, burned, receipt-or-Rejected)
        checked: List[Tuple[str, int, int, Any]] = []
        for tx_hash, item in grouped.items():
            checked.append((tx_hash, item["block"], item["burned"], self._check_receipt(tx_hash)))

        results = self._with_totals(checked, end)
        self._next_block = end + 1
        return results

    def _check_receipt(self, tx_hash: str) -> Any:
        receipt = self.rpc.get_receipt(tx_hash)
        if not receipt:
            return Rejected(kind="malformed", reason="receipt not found", tx_hash=tx_hash)
        try:
            status = _hex_int(receipt.get("status"))
        except ValueError:
            return Rejected(kind="malformed", reason="receipt has no status", tx_hash=tx_hash)
        if status != 1:
            return Rejected(kind="failed", reason="reverted", tx_hash=tx_hash)
        sender = _lower(receipt.get("from"))
        if self.settings.buyback_address and sender != self.settings.buyback_address:
            return Rejected(kind="filtered", reason=f"sender {sender} is not the buyback address", tx_hash=tx_hash)
        return receipt

    def _chain_total(self, block: int) -> Optional[int]:
        s = self.settings
        if s.initial_supply is None:
            return None
        dead = self.rpc.balance_of(s.token_address, DEAD_ADDRESS, block)
        supply = self.rpc.total_supply(s.token_address, block)
        return dead + (s.initial_supply - supply)

    def _with_totals(self, checked: List[Tuple[str, int, int, Any]], end: int) -> List[ParseResult]:
        s = self.settings
        totals: Dict[str, int] = {}

        chain_total = self._chain_total(end) if any(not isinstance(c[3], Rejected) for c in checked) else None
        if chain_total is not None:
            # state at `end` includes every burn in the range; walk back from the newest
            running = chain_total
            for tx_hash, _, burned, receipt in reversed(checked):
                if isinstance(receipt, Rejected) and receipt.kind == "failed":
                    continue
                totals[tx_hash] = running
                running -= burned

        timestamps: Dict[int, int] = {}
        out: List[ParseResult] = []
        for tx_hash, block, burned, receipt in checked:
            if isinstance(receipt, Rejected):
                out.append(receipt)
                continue
            try:
                event = self._to_event(tx_hash, block, burned, receipt, timestamps)
            except (ValueError, DataError) as e:
                out.append(Rejected(kind="malformed", reason=str(e), tx_hash=tx_hash))
                continue
            if tx_hash in totals:
                total_raw = totals[tx_hash]
            else:
                self._observed_raw += burned
                total_raw = self._observed_raw
            out.append(replace(event, total_burned=raw_to_decimal(max(0, total_raw), s.token_decimals)))
        return out

    def _to_event(self, tx_hash: str, block: int, burned: int, receipt: Dict[str, Any], timestamps: Dict[int, int]) -> BurnEvent:
        s = self.settings
        sender = _lower(receipt.get("from"))

        input_symbol, input_amount = s.input_symbol, "0"
        spent = input_from_receipt(receipt, s.input_token_address, sender)
        if spent:
            input_amount = raw_to_decimal(spent, s.input_decimals)
        else:
            tx = self.rpc.get_transaction(tx_hash) or {}
            value = _hex_int(tx.get("value") or "0x0")
            input_symbol, input_amount = NATIVE_SYMBOL, raw_to_decimal(value, 18)

        if block not in timestamps:
            timestamps[block] = self.rpc.get_block_timestamp(block)

        return BurnEvent(
            chain=Chain.ETHEREUM,
            tx_hash=tx_hash,
            input_token=input_symbol,
            input_amount=input_amount,
            output_token=s.token_symbol,
            burned_amount=raw_to_decimal(burned, s.token_decimals),
            total_burned="0",
            timestamp=timestamps[block] * 1000,
            extra=EthereumDetails(block_number=block, sender=sender),
        )
