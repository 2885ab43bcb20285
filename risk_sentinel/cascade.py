"""
Cascade risk scoring.

Combines per-account health risk, market-wide volatility risk and contagion
risk derived from the whole batch of accounts into a 0-100 score.
"""
import math
from typing import List, Optional, Sequence
import numpy as np
import structlog

from .config import RiskScoringConfig
from .health import health_factor as compute_health_factor
from .models import (
    PositionSnapshot, VolatilityResult, CascadeIndicators, CascadeRiskScore,
    RiskComponents, RecommendedAction
)

logger = structlog.get_logger()


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class CascadeRiskScorer:
    """Stateless scorer; safe to call concurrently for independent batches"""

    def __init__(self, config: Optional[RiskScoringConfig] = None):
        self.config = config or RiskScoringConfig()

    @staticmethod
    def _health_factor(account: PositionSnapshot) -> float:
        if account.health_factor is not None:
            return account.health_factor
        return compute_health_factor(account.collateral_value, account.debt_value, account.liquidation_threshold)

    def identify_indicators(self, accounts: Sequence[PositionSnapshot]) -> CascadeIndicators:
        if not accounts:
            return CascadeIndicators()

        health_factors = [self._health_factor(a) for a in accounts]
        in_danger = [
            a for a, hf in zip(accounts, health_factors)
            if hf < self.config.danger_zone_health_threshold
        ]

        finite_hf = [hf for hf in health_factors if math.isfinite(hf)]
        avg_health = sum(finite_hf) / len(finite_hf) if finite_hf else 1.0

        return CascadeIndicators(
            danger_zone_count=len(in_danger),
            total_accounts_analyzed=len(accounts),
            avg_health_factor=avg_health,
            position_correlation=self.position_correlation(accounts),
            total_value_at_risk=sum(a.collateral_value for a in in_danger)
        )

    @staticmethod
    def position_correlation(accounts: Sequence[PositionSnapshot]) -> float:
        """1 - normalized spread of leverage; similar leverage reads as correlated exposure"""
        leverages = np.array([a.leverage for a in accounts if math.isfinite(a.leverage)], dtype=float)
        if leverages.size < 2:
            return 0.0

        mean = float(leverages.mean())
        if mean <= 0:
            return 0.0

        coefficient_of_variation = float(leverages.std()) / mean
        return max(0.0, 1.0 - min(coefficient_of_variation, 1.0))

    def health_risk(self, hf: float) -> float:
        for bound, value in self.config.health_risk_steps:
            if hf < bound:
                return value
        return 0.0

    def volatility_risk(self, volatility_value: float) -> float:
        return _clamp((volatility_value - 1.0) * self.config.volatility_multiplier, 0.0, self.config.volatility_risk_max)

    def cascade_risk(self, indicators: CascadeIndicators) -> float:
        population = max(self.config.cascade_min_population, indicators.total_accounts_analyzed)
        base = indicators.danger_zone_count / population * self.config.cascade_risk_max
        amplified = base * (1.0 + self.config.correlation_weight * indicators.position_correlation)
        return _clamp(amplified, 0.0, self.config.cascade_risk_max)

    def time_to_liquidation(self, hf: float) -> float:
        for bound, hours in self.config.time_to_liquidation_steps:
            if hf < bound:
                return hours
        return 0.0

    def recommended_action(self, risk_score: float) -> RecommendedAction:
        if risk_score >= self.config.protect_threshold:
            return RecommendedAction.PROTECT
        if risk_score >= self.config.monitor_threshold:
            return RecommendedAction.MONITOR
        return RecommendedAction.SAFE

    def score_account(self, account: PositionSnapshot, volatility: VolatilityResult,
                      indicators: CascadeIndicators) -> CascadeRiskScore:
        hf = self._health_factor(account)
        components = RiskComponents(
            health_factor_risk=self.health_risk(hf),
            volatility_risk=self.volatility_risk(volatility.value),
            cascade_risk=self.cascade_risk(indicators)
        )
        risk_score = min(
            self.config.max_score,
            components.health_factor_risk + components.volatility_risk + components.cascade_risk
        )

        estimated_losses = (
            account.debt_value * self.config.liquidation_penalty_rate
            + account.collateral_value * (risk_score / 100.0) * self.config.extraction_rate
        )

        return CascadeRiskScore(
            account_id=account.account_id,
            risk_score=risk_score,
            volatility_value=volatility.value,
            cascade_probability=(risk_score / 100.0) ** 2,
            time_to_liquidation_hours=self.time_to_liquidation(hf),
            estimated_losses_usd=estimated_losses,
            recommended_action=self.recommended_action(risk_score),
            components=components
        )

    def score(self, accounts: Sequence[PositionSnapshot], volatility: VolatilityResult) -> List[CascadeRiskScore]:
        """Score every account against one batch of indicators, highest risk first"""
        indicators = self.identify_indicators(accounts)
        scores = [self.score_account(account, volatility, indicators) for account in accounts]
        scores.sort(key=lambda s: s.risk_score, reverse=True)

        if indicators.danger_zone_count:
            logger.info("Danger zone accounts detected",
                        danger_zone_count=indicators.danger_zone_count,
                        total_accounts=indicators.total_accounts_analyzed,
                        position_correlation=round(indicators.position_correlation, 3))
        return scores

