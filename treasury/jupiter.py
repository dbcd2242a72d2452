from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import requests
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from core.config import DEFAULT_JUPITER_API
from core.errors import DataError, ExecutionError, TransientError
from core.rpc import TRANSIENT_HTTP_STATUS, make_session

logger = logging.getLogger(__name__)

# address lookup table account header; addresses follow as 32-byte keys
LOOKUP_TABLE_META_SIZE = 56


@dataclass(frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    min_out_amount: int         # otherAmountThreshold: out_amount after slippage
    price_impact_pct: str
    raw: Dict[str, Any]         # untouched quoteResponse, echoed back to /swap-instructions

    @property
    def price_impact_percent(self) -> Optional[Decimal]:
        """priceImpactPct is a fraction (0.012 means 1.2%). None when unreadable."""
        try:
            value = Decimal(self.price_impact_pct)
        except (InvalidOperation, ValueError):
            return None
        return abs(value) * 100 if value.is_finite() else None


@dataclass(frozen=True)
class SwapInstructions:
    compute_budget: List[Instruction]
    setup: List[Instruction]
    swap: Instruction
    cleanup: Optional[Instruction]
    lookup_tables: List[str]

    def ordered(self) -> List[Instruction]:
        out = list(self.compute_budget) + list(self.setup) + [self.swap]
        if self.cleanup is not None:
            out.append(self.cleanup)
        return out


def instruction_from_json(data: Dict[str, Any]) -> Instruction:
    try:
        return Instruction(
            Pubkey.from_string(data["programId"]),
            base64.b64decode(data.get("data") or ""),
            [
                AccountMeta(Pubkey.from_string(a["pubkey"]), bool(a.get("isSigner")), bool(a.get("isWritable")))
                for a in data.get("accounts") or []
            ],
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DataError(f"bad instruction from Jupiter: {e}") from e


def decode_lookup_table(address: str, data: bytes) -> AddressLookupTableAccount:
    body = data[LOOKUP_TABLE_META_SIZE:]
    if len(data) < LOOKUP_TABLE_META_SIZE or len(body) % 32:
        raise DataError(f"lookup table {address} has unexpected size {len(data)}")
    addresses = [Pubkey.from_bytes(body[i:i + 32]) for i in range(0, len(body), 32)]
    return AddressLookupTableAccount(key=Pubkey.from_string(address), addresses=addresses)


class JupiterClient:
    def __init__(self, base_url: str = DEFAULT_JUPITER_API, timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or make_session()

    def _handle(self, r: requests.Response, what: str) -> Dict[str, Any]:
        if r.status_code in TRANSIENT_HTTP_STATUS:
            raise TransientError(f"{what} failed: HTTP {r.status_code}")
        if r.status_code >= 400:
            raise ExecutionError(f"{what} failed: HTTP {r.status_code} {r.text[:200]}")
        try:
            data = r.json()
        except ValueError as e:
            raise TransientError(f"{what} returned non-JSON") from e
        if not isinstance(data, dict):
            raise ExecutionError(f"{what} returned {type(data).__name__}")
        if data.get("error"):
            raise ExecutionError(f"{what} error: {data['error']}")
        return data

    def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> SwapQuote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": int(slippage_bps),
            "swapMode": "ExactIn",
        }
        try:
            r = self.session.get(f"{self.base_url}/quote", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientError(f"quote request failed: {e}") from e
        data = self._handle(r, "quote")
        try:
            return SwapQuote(
                input_mint=input_mint,
                output_mint=output_mint,
                in_amount=int(data["inAmount"]),
                out_amount=int(data["outAmount"]),
                min_out_amount=int(data.get("otherAmountThreshold") or data["outAmount"]),
                price_impact_pct=str(data.get("priceImpactPct") or "0"),
                raw=data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataError(f"unexpected quote shape: {e}") from e

    def swap_instructions(self, quote: SwapQuote, user_public_key: str, priority_fee_lamports: int = 0) -> SwapInstructions:
        payload: Dict[str, Any] = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            # SOL is wrapped by the agent beforehand
            "wrapAndUnwrapSol": False,
            "dynamicComputeUnitLimit": True,
        }
        if priority_fee_lamports:
            payload["prioritizationFeeLamports"] = int(priority_fee_lamports)
        try:
            r = self.session.post(f"{self.base_url}/swap-instructions", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientError(f"swap-instructions request failed: {e}") from e
        data = self._handle(r, "swap-instructions")

        if not data.get("swapInstruction"):
            raise DataError("swap-instructions response has no swapInstruction")
        cleanup = data.get("cleanupInstruction")
        return SwapInstructions(
            compute_budget=[instruction_from_json(i) for i in data.get("computeBudgetInstructions") or []],
            setup=[instruction_from_json(i) for i in data.get("setupInstructions") or []],
            swap=instruction_from_json(data["swapInstruction"]),
            cleanup=instruction_from_json(cleanup) if cleanup else None,
            lookup_tables=list(data.get("addressLookupTableAddresses") or []),
        )
