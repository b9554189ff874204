import pytest

from conftest import snap
from dumphedge.config import StrategyConfig
from dumphedge.hedge import HedgeCalculator
from dumphedge.models import LegInfo, Side


def _leg(side=Side.UP, price=0.40, shares=100):
    return LegInfo(order_id="o1", side=side, shares=shares, entry_price=price,
                   total_cost=price * shares, filled_at=0.0)


def test_hedge_profit_breakdown():
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95, fee_rate=0.002))
    result = calc.calculate_hedge(_leg(Side.UP, 0.40, 100), snap(0, 0.40, 0.50))

    assert result.should_hedge is True
    assert result.current_sum == pytest.approx(0.90)
    assert result.opposite_price == 0.50

    profit = calc.guaranteed_profit(0.40, 0.50, 100)
    assert profit.gross == pytest.approx(10.0)
    assert profit.fees == pytest.approx(0.36)
    assert profit.net == pytest.approx(9.64)
    assert result.potential_profit == pytest.approx(9.64)


def test_no_hedge_above_target():
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95))
    result = calc.calculate_hedge(_leg(Side.UP, 0.50), snap(0, 0.50, 0.50))
    assert result.should_hedge is False


def test_reads_opposite_side_for_down_leg():
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95))
    result = calc.calculate_hedge(_leg(Side.DOWN, 0.30), snap(0, 0.60, 0.30))
    assert result.opposite_price == 0.60
    assert result.should_hedge is True


@pytest.mark.parametrize("a,b,expected", [
    (0.25, 0.70, True),
    (0.70, 0.25, True),
    (0.50, 0.46, False),
    (0.0, 0.95, True),
    (1.0, 0.0, False),
])
def test_should_hedge_boundary(a, b, expected):
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95))
    assert calc.should_hedge(a, b) is (a + b <= 0.95)
    assert calc.should_hedge(a, b) is expected


def test_max_leg2_price():
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95))
    assert calc.max_leg2_price(0.40) == pytest.approx(0.55)


def test_negative_gross_is_not_clamped():
    calc = HedgeCalculator(StrategyConfig(fee_rate=0.0))
    profit = calc.guaranteed_profit(0.60, 0.55, 10)
    assert profit.gross == pytest.approx(-1.5)
    assert profit.net == pytest.approx(-1.5)


def test_empty_opposite_book_never_hedges():
    calc = HedgeCalculator(StrategyConfig())
    result = calc.calculate_hedge(_leg(Side.UP, 0.30), snap(0, 0.30, 0.0))
    assert result.should_hedge is False
    assert result.potential_profit == 0.0


def test_apply_config_swaps_target():
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95))
    calc.apply_config(StrategyConfig(sum_target=0.90))
    assert calc.should_hedge(0.45, 0.47) is False


def test_break_even_sum_nets_to_zero():
    calc = HedgeCalculator(StrategyConfig(fee_rate=0.005))
    total = calc.break_even_sum()
    assert total == pytest.approx(1 / 1.01)
    assert calc.guaranteed_profit(total / 2, total / 2, 100).net == pytest.approx(0.0, abs=1e-9)


def test_describe_reports_verdict():
    calc = HedgeCalculator(StrategyConfig(sum_target=0.95))
    text = calc.describe(calc.calculate_hedge(_leg(Side.UP, 0.40), snap(0, 0.40, 0.50)))
    assert text.startswith("HEDGE")
    assert "opposite 0.5000" in text
