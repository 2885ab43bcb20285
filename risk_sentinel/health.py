"""
Position health calculations.

Every function here is total and side-effect free: bad inputs (NaN, negative
figures, zero debt) map to well-defined sentinels instead of raising.
"""
import math
from typing import Optional

from .config import HealthTierThresholds
from .models import PositionSnapshot, HealthMetrics, HealthTier

DEFAULT_LIQUIDATION_THRESHOLD = 0.8
DEFAULT_HEALTH_CHANGE_PER_HOUR = -0.01


def _clean(value: float) -> float:
    """Treat NaN as zero so arithmetic below stays total"""
    if value is None or value != value:
        return 0.0
    return float(value)


def health_factor(collateral: float, debt: float, threshold: float = DEFAULT_LIQUIDATION_THRESHOLD) -> float:
    """Risk-adjusted collateral over debt; +inf when there is no debt"""
    collateral, debt, threshold = _clean(collateral), _clean(debt), _clean(threshold)
    if debt <= 0:
        return math.inf
    if collateral <= 0:
        return 0.0
    return collateral * threshold / debt


def margin_ratio(collateral: float, debt: float) -> float:
    collateral, debt = _clean(collateral), _clean(debt)
    if collateral <= 0:
        return 0.0
    return min(1.0, max(0.0, (collateral - debt) / collateral))


def leverage(collateral: float, debt: float) -> float:
    """Total position value over net equity; +inf when underwater"""
    collateral, debt = _clean(collateral), _clean(debt)
    equity = collateral - debt
    if equity <= 0:
        return math.inf
    return collateral / equity


def tier(hf: float, thresholds: Optional[HealthTierThresholds] = None) -> HealthTier:
    thresholds = thresholds or HealthTierThresholds()
    hf = _clean(hf)
    if hf >= thresholds.safe:
        return HealthTier.SAFE
    if hf >= thresholds.caution:
        return HealthTier.CAUTION
    if hf >= thresholds.danger:
        return HealthTier.DANGER
    return HealthTier.CRITICAL


def distance_to_liquidation_pct(hf: float) -> float:
    """How far (in percent of current health) the position is from hf == 1"""
    hf = _clean(hf)
    if math.isinf(hf):
        return 100.0
    if hf <= 1.0:
        return 0.0
    return max(0.0, (hf - 1.0) / hf * 100.0)


def liquidation_price(collateral_amount: float, debt: float, threshold: float = DEFAULT_LIQUIDATION_THRESHOLD) -> float:
    """Collateral unit price at which the health factor reaches exactly 1"""
    collateral_amount, debt, threshold = _clean(collateral_amount), _clean(debt), _clean(threshold)
    if collateral_amount <= 0 or threshold <= 0 or debt <= 0:
        return 0.0
    return debt / (collateral_amount * threshold)


def estimate_time_to_liquidation(hf: float, hf_change_per_hour: float = DEFAULT_HEALTH_CHANGE_PER_HOUR) -> float:
    """
    Hours until the health factor decays to 1 at a constant hourly drift.

    Returns +inf when the position is not deteriorating and 0 when it is
    already liquidatable.
    """
    hf, hf_change_per_hour = _clean(hf), _clean(hf_change_per_hour)
    if hf <= 1.0:
        return 0.0
    if hf_change_per_hour >= 0 or math.isinf(hf):
        return math.inf
    return (hf - 1.0) / abs(hf_change_per_hour)


class HealthCalculator:
    """Derives HealthMetrics from position snapshots using a configured tier table"""

    def __init__(self, thresholds: Optional[HealthTierThresholds] = None):
        self.thresholds = thresholds or HealthTierThresholds()

    def tier(self, hf: float) -> HealthTier:
        return tier(hf, self.thresholds)

    def calculate(self, snapshot: PositionSnapshot) -> HealthMetrics:
        """Metrics for a snapshot; a health factor already on the snapshot is kept as reported"""
        if snapshot.health_factor is not None:
            hf = snapshot.health_factor
        else:
            hf = health_factor(
                snapshot.collateral_value,
                snapshot.debt_value,
                snapshot.liquidation_threshold
            )
        return HealthMetrics(
            health_factor=hf,
            margin_ratio=margin_ratio(snapshot.collateral_value, snapshot.debt_value),
            leverage=leverage(snapshot.collateral_value, snapshot.debt_value),
            tier=self.tier(hf),
            distance_to_liquidation_pct=distance_to_liquidation_pct(hf),
            is_at_risk=hf < self.thresholds.safe
        )
