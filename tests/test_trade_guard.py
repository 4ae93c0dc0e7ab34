import threading

import pytest

from orvex.errors import (
    ImpactTooHighError,
    InsufficientBalanceError,
    SlippageOutOfBoundsError,
    TradeInProgressError,
)
from orvex.services.trade_guard import ExecutionLeases, RiskGate

from conftest import make_quote

SOL = 1_000_000_000


def test_passes_within_limits():
    RiskGate().check(make_quote(price_impact=0.05), 1500, sol_balance=SOL, sol_required=SOL // 2)


def test_impact_ceiling():
    with pytest.raises(ImpactTooHighError):
        RiskGate().check(make_quote(price_impact=0.31), 1500, sol_balance=SOL, sol_required=1)


def test_impact_is_checked_before_balance():
    with pytest.raises(ImpactTooHighError):
        RiskGate().check(make_quote(price_impact=0.5), 1500, sol_balance=0, sol_required=SOL)


def test_sol_balance_must_cover_amount_and_fee():
    gate = RiskGate()
    gate.check(make_quote(), 1500, sol_balance=SOL, sol_required=SOL)

    with pytest.raises(InsufficientBalanceError) as exc:
        gate.check(make_quote(), 1500, sol_balance=SOL, sol_required=SOL + 1)
    assert exc.value.details["required_lamports"] == SOL + 1


def test_token_balance_for_sells():
    with pytest.raises(InsufficientBalanceError):
        RiskGate().check(make_quote(), 1500, SOL, 5_000, token_balance=10, token_required=11)


@pytest.mark.parametrize("bps", [9, 5001])
def test_slippage_bounds(bps):
    with pytest.raises(SlippageOutOfBoundsError):
        RiskGate().check(make_quote(), bps, sol_balance=SOL, sol_required=1)


def test_custom_bounds():
    gate = RiskGate(max_price_impact=0.01, min_slippage_bps=50, max_slippage_bps=100)

    with pytest.raises(ImpactTooHighError):
        gate.check(make_quote(price_impact=0.02), 75, SOL, 1)
    with pytest.raises(SlippageOutOfBoundsError):
        gate.check(make_quote(price_impact=0.0), 1500, SOL, 1)


def test_lease_rejects_second_holder():
    leases = ExecutionLeases()

    with leases.hold("1"):
        assert leases.is_held("1")
        with pytest.raises(TradeInProgressError):
            with leases.hold("1"):
                pass
        with leases.hold("2"):
            pass

    assert not leases.is_held("1")


def test_lease_released_after_error():
    leases = ExecutionLeases()

    with pytest.raises(RuntimeError):
        with leases.hold("1"):
            raise RuntimeError("boom")

    with leases.hold("1"):
        pass


def test_lease_across_threads():
    leases = ExecutionLeases()
    entered, release = threading.Event(), threading.Event()
    errors = []

    def holder():
        with leases.hold("1"):
            entered.set()
            release.wait(timeout=5)

    t = threading.Thread(target=holder)
    t.start()
    entered.wait(timeout=5)
    try:
        with leases.hold("1"):
            pass
    except TradeInProgressError as e:
        errors.append(e)
    release.set()
    t.join()

    assert len(errors) == 1
