from core.models import TreasuryState
from treasury.planner import evaluate, lamports_to_sol


def state(balance, threshold=500_000_000, ratio=0.70, reserve=10_000_000):
    return TreasuryState(
        sol_balance_lamports=balance,
        token_balance=0,
        threshold_lamports=threshold,
        buyback_ratio=ratio,
        fee_reserve_lamports=reserve,
    )


def test_buyback_amount_is_floored_integer_lamports():
    d = evaluate(state(1_000_000_000))
    assert d.eligible
    assert d.available_lamports == 990_000_000
    assert d.buyback_lamports == 692_999_999
    assert d.shortfall_lamports == 0


def test_below_threshold_reports_shortfall():
    d = evaluate(state(100_000_000))
    assert not d.eligible
    assert d.buyback_lamports == 0
    assert d.shortfall_lamports == 400_000_000
    assert d.shortfall_sol == "0.400000000"


def test_balance_equal_to_threshold_is_eligible():
    assert evaluate(state(500_000_000)).eligible


def test_reserve_larger_than_balance_spends_nothing():
    d = evaluate(state(5_000_000, threshold=0))
    assert d.eligible
    assert d.buyback_lamports == 0


def test_full_ratio_spends_everything_above_reserve():
    assert evaluate(state(2_000_000_000, ratio=1.0)).buyback_lamports == 1_990_000_000


def test_lamports_to_sol_is_exact():
    assert lamports_to_sol(692_999_999) == "0.692999999"
