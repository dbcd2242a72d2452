from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from core.errors import DataError


class Chain(str, Enum):
    SOLANA = "solana"
    ETHEREUM = "ethereum"


@dataclass(frozen=True)
class SolanaDetails:
    slot: int
    signer: str                 # fee payer / treasury that signed the buyback


@dataclass(frozen=True)
class EthereumDetails:
    block_number: int
    sender: str                 # tx "from"


def parse_amount(value: Any, name: str = "amount") -> Decimal:
    """Parse a decimal token amount. Floats are refused: they already lost precision."""
    if isinstance(value, (bool, float)):
        raise ValueError(f"{name} must be a decimal string, got {type(value).__name__}")
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{name} is not a decimal: {value!r}") from e
    if not d.is_finite() or d < 0:
        raise ValueError(f"{name} must be finite and non-negative: {value!r}")
    return d


def format_amount(value: Decimal) -> str:
    return format(value, "f")


def raw_to_decimal(raw: int, decimals: int) -> str:
    """Raw smallest-unit integer -> decimal string, exact."""
    return format_amount(Decimal(int(raw)).scaleb(-int(decimals)))


@dataclass(frozen=True)
class BurnEvent:
    """One confirmed buyback-and-burn transaction. Identity is (chain, tx_hash)."""
    chain: Chain
    tx_hash: str
    input_token: str            # "SOL", "WETH", ...
    input_amount: str           # decimal string, UI units
    output_token: str           # project token symbol
    burned_amount: str          # decimal string, UI units
    total_burned: str           # chain-reported running total, decimal string
    timestamp: int              # unix milliseconds, when the tx happened
    extra: Optional[Union[SolanaDetails, EthereumDetails]] = field(default=None, compare=False)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.chain.value, self.tx_hash)

    @property
    def total_burned_value(self) -> Decimal:
        return Decimal(self.total_burned)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "buyback",
            "chain": self.chain.value,
            "txHash": self.tx_hash,
            "inputToken": self.input_token,
            "inputAmount": self.input_amount,
            "burnedAmount": self.burned_amount,
            "outputToken": self.output_token,
            "totalBurned": self.total_burned,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_message(cls, data: Any) -> "BurnEvent":
        if not isinstance(data, dict):
            raise DataError(f"expected object, got {type(data).__name__}")
        try:
            chain = Chain(data.get("chain"))
        except ValueError as e:
            raise DataError(f"unknown chain {data.get('chain')!r}") from e

        tx_hash = data.get("txHash")
        if not isinstance(tx_hash, str) or not tx_hash.strip():
            raise DataError("missing txHash")

        ts = data.get("timestamp")
        if isinstance(ts, bool) or not isinstance(ts, int):
            raise DataError(f"timestamp must be an integer, got {ts!r}")

        try:
            amounts = {
                k: format_amount(parse_amount(data.get(k), k))
                for k in ("inputAmount", "burnedAmount", "totalBurned")
            }
        except ValueError as e:
            raise DataError(str(e)) from e

        return cls(
            chain=chain,
            tx_hash=tx_hash.strip(),
            input_token=str(data.get("inputToken") or ""),
            input_amount=amounts["inputAmount"],
            output_token=str(data.get("outputToken") or ""),
            burned_amount=amounts["burnedAmount"],
            total_burned=amounts["totalBurned"],
            timestamp=ts,
        )


@dataclass(frozen=True)
class Rejected:
    """Why an input did not become a BurnEvent."""
    kind: str                   # "malformed" | "failed" | "not_burn" | "filtered"
    reason: str
    tx_hash: str = ""


ParseResult = Union[BurnEvent, Rejected]


def parse_message(data: Any) -> ParseResult:
    try:
        return BurnEvent.from_message(data)
    except DataError as e:
        tx = data.get("txHash", "") if isinstance(data, dict) else ""
        return Rejected(kind="malformed", reason=str(e), tx_hash=str(tx or ""))


@dataclass(frozen=True)
class ChainStats:
    total_burned: str = "0"     # max observed chain total, never decreases
    buyback_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"totalBurned": self.total_burned, "buybackCount": self.buyback_count}


@dataclass(frozen=True)
class FeedSnapshot:
    recent_events: Tuple[BurnEvent, ...]        # newest first
    stats: Mapping[Chain, ChainStats]

    def stats_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"chains": {}}
        for chain in Chain:
            s = self.stats.get(chain) or ChainStats()
            out["chains"][chain.value] = s.to_dict()
            out[f"{chain.value}TotalBurned"] = s.total_burned
            out[f"{chain.value}BuybackCount"] = s.buyback_count
        return out

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "snapshot",
            "events": [e.to_message() for e in self.recent_events],
            "stats": self.stats_payload(),
        }


def stats_from_payload(payload: Any) -> Dict[Chain, ChainStats]:
    """Accepts either the nested "chains" form or the flat dashboard keys."""
    if not isinstance(payload, dict):
        raise DataError("stats payload must be an object")
    nested = payload.get("chains") if isinstance(payload.get("chains"), dict) else {}
    out: Dict[Chain, ChainStats] = {}
    for chain in Chain:
        item = nested.get(chain.value) or {}
        if not isinstance(item, dict):
            raise DataError(f"stats for {chain.value} must be an object")
        total = item.get("totalBurned", payload.get(f"{chain.value}TotalBurned", "0"))
        count = item.get("buybackCount", payload.get(f"{chain.value}BuybackCount", 0))
        try:
            out[chain] = ChainStats(
                total_burned=format_amount(parse_amount(total, "totalBurned")),
                buyback_count=int(count),
            )
        except (TypeError, ValueError) as e:
            raise DataError(f"bad stats for {chain.value}: {e}") from e
    return out


@dataclass(frozen=True)
class TreasuryState:
    """Recomputed from live RPC queries every agent cycle. Integers are smallest units."""
    sol_balance_lamports: int
    token_balance: int
    threshold_lamports: int
    buyback_ratio: float
    fee_reserve_lamports: int
