import math
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .config import VolatilityConfig
from .models import VolatilityComponent, VolatilityLevel, VolatilityResult


class VolatilityIndexCalculator:
    """Composite historical volatility index over several trailing windows"""

    def __init__(self, config: Optional[VolatilityConfig] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.config = config or VolatilityConfig()
        self.clock = clock

    def _window_steps(self, window_minutes: int) -> int:
        return max(1, int(round(window_minutes / self.config.sample_interval_minutes)))

    def level_for(self, value: float) -> VolatilityLevel:
        if value >= self.config.extreme_threshold:
            return VolatilityLevel.EXTREME
        if value >= self.config.high_threshold:
            return VolatilityLevel.HIGH
        if value >= self.config.medium_threshold:
            return VolatilityLevel.MEDIUM
        return VolatilityLevel.LOW

    def baseline(self) -> VolatilityResult:
        value = self.config.baseline_value
        return VolatilityResult(value=value, level=self.level_for(value), components=[], timestamp=self.clock())

    def calculate(self, price_history: Sequence[float]) -> VolatilityResult:
        """
        Weighted root-mean-square of absolute percentage moves over each window.

        Window i contributes pct_change² × 1/(i+1) when the history reaches
        back far enough; the index is sqrt(Σcontribution / Σweight) × 100.
        """
        history = list(price_history)
        if len(history) < 2:
            return self.baseline()

        latest = history[-1]
        components: List[VolatilityComponent] = []
        total_contribution = 0.0
        total_weight = 0.0

        for index, window in enumerate(self.config.windows_minutes):
            steps = self._window_steps(window)
            if len(history) <= steps:
                continue

            prior = history[-(steps + 1)]
            if prior <= 0:
                continue

            pct_change = abs(latest - prior) / prior
            weight = 1.0 / (index + 1)
            contribution = pct_change ** 2 * weight

            components.append(VolatilityComponent(
                window_minutes=window,
                pct_change=pct_change,
                weight=weight,
                contribution=contribution
            ))
            total_contribution += contribution
            total_weight += weight

        if total_weight == 0:
            return self.baseline()

        value = math.sqrt(total_contribution / total_weight) * 100
        return VolatilityResult(
            value=value,
            level=self.level_for(value),
            components=components,
            timestamp=self.clock()
        )

    def is_cascade_risk(self, value: float) -> bool:
        """Volatility alone is enough to suspect cascading liquidations"""
        return value >= self.config.medium_threshold

    def calculate_rolling(self, price_history: Sequence[float], periods: int = 5,
                          period_length: int = 60) -> List[float]:
        """Index values for the last `periods` slices, oldest first"""
        history = list(price_history)
        values = []
        for period in range(periods - 1, -1, -1):
            end = len(history) - period * period_length
            if end < 2:
                continue
            values.append(self.calculate(history[:end]).value)
        return values

    @staticmethod
    def detect_spike(current: float, historical: Sequence[float], threshold: float = 1.5) -> bool:
        if not historical:
            return False
        average = sum(historical) / len(historical)
        return current > average * threshold

    @staticmethod
    def trend(values: Sequence[float]) -> str:
        """Compare the mean of the last three values against the first three"""
        if len(values) < 3:
            return "stable"
        first = sum(values[:3]) / 3
        last = sum(values[-3:]) / 3
        if first == 0:
            return "stable"
        change = (last - first) / first
        if change > 0.1:
            return "increasing"
        if change < -0.1:
            return "decreasing"
        return "stable"
