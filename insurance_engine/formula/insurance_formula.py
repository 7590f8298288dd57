"""
Default insurance formula.

Pure functions of the contract inputs and the open price: no I/O, no clock
reads (callers pass `now`). All outputs are quantized so they survive a
round trip through the store unchanged.
"""
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import List, Tuple

from insurance_engine.constants import (
    DEFAULT_DAY_CHANGE_RATIO,
    MAX_HEDGE_MARGIN_PER_Q_COVER,
    MAX_LEVERAGE,
    MAX_PERIOD_DAYS,
    MAX_Q_COVER,
    MIN_HEDGE_MARGIN_PER_Q_COVER,
    MIN_MARGIN,
    MIN_P_CLAIM_DISTANCE,
    MIN_PERIOD,
    MIN_Q_COVER,
    REFUND_DISTANCE_RATIO,
)
from insurance_engine.domain.models import DerivedParameters, PeriodUnit, Side, side_for
from insurance_engine.exceptions import (
    InvalidClaimPrice,
    InvalidMargin,
    InvalidPeriod,
    InvalidQuantity,
)

PRICE_PLACES = Decimal("0.00000001")
LEVERAGE_PLACES = Decimal("0.01")
HOURS_PER_DAY = Decimal("24")


def _q(value: Decimal, places: Decimal = PRICE_PLACES) -> Decimal:
    return value.quantize(places, rounding=ROUND_HALF_UP)


class InsuranceFormula:
    """
    Default FormulaAdapter.

    hedge is margin per unit of cover. The claim payout scales with how many
    expected moves (period_change_ratio) the claim price sits from the open
    price; hourly contracts scale the day ratio by sqrt(hours / 24).
    """

    def calculate_hedge(self, numerator: Decimal, denominator: Decimal) -> Decimal:
        if denominator <= 0:
            raise InvalidQuantity("Hedge denominator must be positive")
        return numerator / denominator

    def ratio_predict(self, p_open: Decimal, p_claim: Decimal) -> Decimal:
        """Relative distance from open to claim price."""
        return abs(p_claim - p_open) / p_open

    def effective_change(self, period: int, period_unit: PeriodUnit, period_change_ratio: Decimal) -> Decimal:
        if period_unit == PeriodUnit.HOUR:
            return period_change_ratio * (Decimal(period) / HOURS_PER_DAY).sqrt()
        return period_change_ratio

    def expiry(self, now: datetime, period: int, period_unit: PeriodUnit) -> datetime:
        if period_unit == PeriodUnit.HOUR:
            return now + timedelta(hours=period)
        return now + timedelta(days=period)

    def derive_parameters(
        self,
        margin: Decimal,
        q_covered: Decimal,
        p_open: Decimal,
        p_claim: Decimal,
        period: int,
        period_unit: PeriodUnit,
        period_change_ratio: Decimal,
        now: datetime,
    ) -> DerivedParameters:
        if p_open <= 0:
            raise InvalidClaimPrice(f"Open price must be positive, got {p_open}")

        side = side_for(p_claim, p_open)
        sign = Decimal(1) if side == Side.BULL else Decimal(-1)

        hedge = self.calculate_hedge(margin, q_covered)
        ratio = self.ratio_predict(p_open, p_claim)
        change = self.effective_change(period, period_unit, period_change_ratio) or DEFAULT_DAY_CHANGE_RATIO

        p_liquidation = p_open * (1 - sign * hedge)
        q_claim = min(q_covered, margin * (1 + ratio / change))
        p_refund = p_open + (p_claim - p_open) * REFUND_DISTANCE_RATIO
        leverage = min(MAX_LEVERAGE, 1 / ratio) if ratio > 0 else MAX_LEVERAGE

        return DerivedParameters(
            expired_at=self.expiry(now, period, period_unit),
            hedge=_q(hedge),
            p_liquidation=_q(p_liquidation),
            q_claim=_q(q_claim),
            system_capital=_q(q_claim - margin),
            p_refund=_q(p_refund),
            leverage=leverage.quantize(LEVERAGE_PLACES, rounding=ROUND_DOWN),
            p_cancel=_q((p_claim + p_refund) / 2),
        )

    def claim_price_bounds(
        self,
        p_open: Decimal,
        p_claim: Decimal,
        day_change_ratios: List[Decimal],
    ) -> Tuple[Decimal, Decimal]:
        """
        (min, max) accepted claim price on the side p_claim falls on.

        The near bound is MIN_P_CLAIM_DISTANCE away from p_open; the far bound
        is the expected move over the longest allowed period.
        """
        horizon = min(len(day_change_ratios), MAX_PERIOD_DAYS)
        max_distance = day_change_ratios[horizon - 1] if horizon else DEFAULT_DAY_CHANGE_RATIO
        max_distance = max(max_distance, MIN_P_CLAIM_DISTANCE)

        if side_for(p_claim, p_open) == Side.BULL:
            return p_open * (1 + MIN_P_CLAIM_DISTANCE), p_open * (1 + max_distance)
        return max(p_open * (1 - max_distance), Decimal("0")), p_open * (1 - MIN_P_CLAIM_DISTANCE)

    def max_period(self, claim_distance: Decimal, day_change_ratios: List[Decimal]) -> int:
        """Longest DAY period whose expected move does not exceed the claim distance."""
        days = 0
        for ratio in day_change_ratios[:MAX_PERIOD_DAYS]:
            if ratio > claim_distance:
                break
            days += 1
        return max(days, MIN_PERIOD)

    def validate(
        self,
        margin: Decimal,
        q_covered: Decimal,
        p_open: Decimal,
        p_claim: Decimal,
        period: int,
        period_unit: PeriodUnit,
        day_change_ratios: List[Decimal],
    ) -> None:
        """
        Creation-time checks, in order: quantity, claim price, margin, period.

        Raises:
            InvalidQuantity, InvalidClaimPrice, InvalidMargin, InvalidPeriod
        """
        if margin < MIN_MARGIN or q_covered < MIN_Q_COVER or q_covered > MAX_Q_COVER:
            raise InvalidQuantity(
                f"margin >= {MIN_MARGIN} and {MIN_Q_COVER} <= q_covered <= {MAX_Q_COVER} required"
            )

        claim_min, claim_max = self.claim_price_bounds(p_open, p_claim, day_change_ratios)
        if p_claim <= 0 or p_claim < claim_min or p_claim > claim_max:
            raise InvalidClaimPrice(f"p_claim {p_claim} outside [{_q(claim_min)}, {_q(claim_max)}]")

        hedge = self.calculate_hedge(margin, q_covered)
        if hedge < MIN_HEDGE_MARGIN_PER_Q_COVER or hedge > MAX_HEDGE_MARGIN_PER_Q_COVER:
            raise InvalidMargin(
                f"margin/q_covered {_q(hedge)} outside "
                f"[{MIN_HEDGE_MARGIN_PER_Q_COVER}, {MAX_HEDGE_MARGIN_PER_Q_COVER}]"
            )

        if period < MIN_PERIOD:
            raise InvalidPeriod(f"period must be >= {MIN_PERIOD}")
        if period_unit == PeriodUnit.DAY:
            max_period = self.max_period(self.ratio_predict(p_open, p_claim), day_change_ratios)
            if period > max_period:
                raise InvalidPeriod(f"period {period} exceeds max {max_period} days for this claim price")
