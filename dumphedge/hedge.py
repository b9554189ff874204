# dumphedge/hedge.py
from .config import StrategyConfig
from .models import HedgeCalculation, LegInfo, PriceSnapshot, ProfitBreakdown


class HedgeCalculator:
    """
    Pure pricing math for the second leg. Holds no state besides the config snapshot.
    """
    def __init__(self, config: StrategyConfig):
        self.cfg = config

    def apply_config(self, config: StrategyConfig):
        self.cfg = config

    def should_hedge(self, leg1_price: float, opposite_price: float) -> bool:
        return leg1_price + opposite_price <= self.cfg.sum_target

    def max_leg2_price(self, leg1_price: float) -> float:
        return self.cfg.sum_target - leg1_price

    def guaranteed_profit(self, leg1_price: float, leg2_price: float, shares: float) -> ProfitBreakdown:
        """
        One side settles at 1.0, so the payout is `shares` whichever way the round resolves.
        Fees charge fee_rate on both legs and the result is reported as-is, even if negative.
        """
        total_cost = (leg1_price + leg2_price) * shares
        gross = shares * (1 - leg1_price - leg2_price)
        fees = total_cost * self.cfg.fee_rate * 2
        return ProfitBreakdown(gross=gross, fees=fees, net=gross - fees)

    def break_even_sum(self) -> float:
        """Largest combined price at which net profit is still >= 0."""
        return 1 / (1 + 2 * self.cfg.fee_rate)

    def calculate_hedge(self, leg1: LegInfo, snapshot: PriceSnapshot) -> HedgeCalculation:
        opposite_price = snapshot.ask(leg1.side.opposite)
        current_sum = leg1.entry_price + opposite_price

        # Empty opposite book
        if opposite_price <= 0:
            return HedgeCalculation(
                should_hedge=False,
                current_sum=current_sum,
                target_sum=self.cfg.sum_target,
                opposite_price=opposite_price,
                potential_profit=0.0,
            )

        profit = self.guaranteed_profit(leg1.entry_price, opposite_price, leg1.shares)
        return HedgeCalculation(
            should_hedge=self.should_hedge(leg1.entry_price, opposite_price),
            current_sum=current_sum,
            target_sum=self.cfg.sum_target,
            opposite_price=opposite_price,
            potential_profit=profit.net,
        )

    def describe(self, calc: HedgeCalculation) -> str:
        verdict = "HEDGE" if calc.should_hedge else "WAIT"
        return (
            f"{verdict} | sum {calc.current_sum:.4f} vs target {calc.target_sum:.4f} | "
            f"opposite {calc.opposite_price:.4f} | est. net ${calc.potential_profit:.4f}"
        )
