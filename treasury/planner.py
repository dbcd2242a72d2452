from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction

from core.models import TreasuryState, raw_to_decimal


@dataclass(frozen=True)
class BuybackDecision:
    eligible: bool
    available_lamports: int     # balance above the fee reserve
    buyback_lamports: int       # what the cycle spends; 0 when not eligible
    shortfall_lamports: int     # how far below the threshold; 0 when eligible

    @property
    def buyback_sol(self) -> str:
        return lamports_to_sol(self.buyback_lamports)

    @property
    def shortfall_sol(self) -> str:
        return lamports_to_sol(self.shortfall_lamports)


def lamports_to_sol(lamports: int) -> str:
    return raw_to_decimal(lamports, 9)


def evaluate(state: TreasuryState) -> BuybackDecision:
    """
    Eligible when the native balance reaches the threshold. The amount is
    floor((balance - reserve) * ratio) in integer lamports; the ratio is taken
    at its exact binary value, so 0.70 of 990_000_000 is 692_999_999.
    """
    balance = int(state.sol_balance_lamports)
    available = max(0, balance - int(state.fee_reserve_lamports))

    if balance < state.threshold_lamports:
        return BuybackDecision(
            eligible=False,
            available_lamports=available,
            buyback_lamports=0,
            shortfall_lamports=int(state.threshold_lamports) - balance,
        )

    ratio = Fraction(state.buyback_ratio)
    amount = (available * ratio.numerator) // ratio.denominator
    return BuybackDecision(
        eligible=True,
        available_lamports=available,
        buyback_lamports=int(amount),
        shortfall_lamports=0,
    )
