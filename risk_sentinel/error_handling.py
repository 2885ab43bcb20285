"""
Error taxonomy, retry policies and error collection for the monitoring pipeline
"""
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Type
import structlog

from tenacity import (
    AsyncRetrying, stop_after_attempt, wait_exponential,
    retry_if_exception_type, before_sleep_log
)

logger = structlog.get_logger()


# Transient I/O failures
class PriceSourceError(Exception):
    """Raised when the external price source cannot deliver a quote"""
    pass


class FeedConnectionError(Exception):
    """Raised when the push feed connection drops or cannot be established"""
    pass


class PersistenceError(Exception):
    """Raised when a storage read or write fails"""
    pass


# Data-shape failures
class PositionDataError(Exception):
    """Raised when position data for an account is missing or unparseable"""

    def __init__(self, account_id: str, message: str):
        super().__init__(f"{account_id}: {message}")
        self.account_id = account_id


# Invariant violations
class AlertInvariantError(Exception):
    """Raised when alert state would break the one-active-alert-per-account rule"""
    pass


class InvalidAlertTransition(Exception):
    """Raised when an alert is moved out of a terminal status"""
    pass


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,)
) -> AsyncRetrying:
    """Build an async retry controller with bounded exponential backoff"""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


class ErrorCollector:
    """Collects recent errors with context for observability"""

    def __init__(self, max_errors: int = 1000):
        self.errors: deque = deque(maxlen=max_errors)
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        self.errors.append({
            "timestamp": datetime.utcnow(),
            "type": error_type,
            "message": str(error),
            "context": context or {}
        })
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.error(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context
        )

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)
        recent_errors = [error for error in self.errors if error["timestamp"] > cutoff_time]

        error_types: Dict[str, Dict] = {}
        for error in recent_errors:
            entry = error_types.setdefault(error["type"], {"count": 0, "examples": []})
            entry["count"] += 1
            if len(entry["examples"]) < 3:
                entry["examples"].append({
                    "message": error["message"],
                    "timestamp": error["timestamp"].isoformat(),
                    "context": error["context"]
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
            "most_common_errors": sorted(
                error_types.items(),
                key=lambda x: x[1]["count"],
                reverse=True
            )[:5]
        }
