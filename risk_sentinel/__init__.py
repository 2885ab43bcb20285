"""
Risk Sentinel - Liquidation Risk Prediction & Alerting Pipeline

This package continuously estimates how close a set of leveraged positions
are to forced liquidation, predicts cascading risk from correlated positions
under market stress, and raises deduplicated alerts.

Key Features:
- Rolling per-asset price series with fresh/stale cached lookups
- Multi-window historical volatility index (60/240/720 minutes)
- Pure health factor, margin, leverage and tier calculations
- Composite 0-100 cascade risk score with cross-account indicators
- Deduplicating alert lifecycle with per-account cooldown
- Fixed-interval monitoring cycle with reentrancy guard and graceful stop
- Push-feed account monitor with reconnect and resubscription
- MongoDB persistence and Redis event publication

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import Settings
from .bootstrap import build_orchestrator

__all__ = ["Settings", "build_orchestrator"]
