from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
import structlog

from .config import AlertPolicy, EventType, RiskSeverity
from .error_handling import AlertInvariantError, InvalidAlertTransition
from .events import EventBus
from .models import (
    Alert, AlertStatus, AlertStats, AlertGenerationResult, CascadeRiskScore
)

logger = structlog.get_logger()

TERMINAL_STATUSES = (AlertStatus.RESOLVED, AlertStatus.EXPIRED)


def severity_for(risk_score: float) -> str:
    if risk_score >= 80:
        return RiskSeverity.CRITICAL
    if risk_score >= 60:
        return RiskSeverity.HIGH
    if risk_score >= 40:
        return RiskSeverity.MEDIUM
    return RiskSeverity.LOW


class AlertManager:
    """
    Owns alert identity and lifecycle.

    Each account holds at most one open alert (ACTIVE or ACKNOWLEDGED). New
    alerts are rate limited per account by a cooldown measured from the last
    alert created for that account. Every state change is published on the
    event bus, which is the only way other components observe alerts.
    """

    def __init__(self, events: EventBus, policy: Optional[AlertPolicy] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.events = events
        self.policy = policy or AlertPolicy()
        self.clock = clock

        self.alerts: "OrderedDict[str, Alert]" = OrderedDict()
        self.open_by_account: Dict[str, str] = {}
        self.last_alert_time: Dict[str, datetime] = {}
        self._counter = 0

    def _next_id(self, now: datetime) -> str:
        self._counter += 1
        return f"alert_{self._counter}_{int(now.timestamp() * 1000)}"

    def qualifies(self, score: CascadeRiskScore) -> bool:
        return (score.risk_score > self.policy.risk_threshold
                or score.cascade_probability > self.policy.cascade_probability_threshold)

    def in_cooldown(self, account_id: str, now: Optional[datetime] = None) -> bool:
        last = self.last_alert_time.get(account_id)
        if last is None:
            return False
        now = now or self.clock()
        return (now - last).total_seconds() < self.policy.cooldown_seconds

    def generate(self, risk_scores: Iterable[CascadeRiskScore]) -> AlertGenerationResult:
        """Create or refresh alerts for every qualifying score"""
        now = self.clock()
        new_alerts: List[Alert] = []
        updated_alerts: List[Alert] = []

        for score in risk_scores:
            if not self.qualifies(score):
                continue

            existing = self.get_alert_for_account(score.account_id)
            if existing is not None:
                self._refresh(existing, score, now)
                updated_alerts.append(existing)
                continue

            if self.in_cooldown(score.account_id, now):
                logger.debug("Alert suppressed by cooldown", account_id=score.account_id)
                continue

            alert = self._create(score, now)
            new_alerts.append(alert)

        return AlertGenerationResult(
            new_alerts=new_alerts,
            updated_alerts=updated_alerts,
            total_active=len(self.get_active_alerts())
        )

    def _refresh(self, alert: Alert, score: CascadeRiskScore, now: datetime):
        alert.risk_score = score.risk_score
        alert.cascade_probability = score.cascade_probability
        alert.time_to_liquidation_hours = score.time_to_liquidation_hours
        alert.estimated_losses_usd = score.estimated_losses_usd
        alert.recommended_action = score.recommended_action
        alert.severity = severity_for(score.risk_score)
        alert.updated_at = now

    def _create(self, score: CascadeRiskScore, now: datetime) -> Alert:
        if score.account_id in self.open_by_account:
            raise AlertInvariantError(
                f"Account {score.account_id} already holds open alert {self.open_by_account[score.account_id]}"
            )

        alert = Alert(
            id=self._next_id(now),
            account_id=score.account_id,
            risk_score=score.risk_score,
            cascade_probability=score.cascade_probability,
            time_to_liquidation_hours=score.time_to_liquidation_hours,
            estimated_losses_usd=score.estimated_losses_usd,
            recommended_action=score.recommended_action,
            severity=severity_for(score.risk_score),
            status=AlertStatus.ACTIVE,
            created_at=now,
            updated_at=now
        )

        self.alerts[alert.id] = alert
        self.open_by_account[alert.account_id] = alert.id
        self.last_alert_time[alert.account_id] = now
        self._check_single_active(alert.account_id)
        self._trim_history()

        logger.info("Alert created",
                    alert_id=alert.id,
                    account_id=alert.account_id,
                    risk_score=round(alert.risk_score, 2),
                    severity=alert.severity)
        self.events.publish(EventType.ALERT_NEW, alert.dict())
        return alert

    def _check_single_active(self, account_id: str):
        active = [a.id for a in self.alerts.values()
                  if a.account_id == account_id and a.status == AlertStatus.ACTIVE]
        if len(active) > 1:
            raise AlertInvariantError(f"Account {account_id} has multiple ACTIVE alerts: {active}")

    def _trim_history(self):
        """Drop the oldest closed alerts once the history limit is exceeded"""
        overflow = len(self.alerts) - self.policy.history_limit
        if overflow <= 0:
            return
        for alert_id in [a.id for a in self.alerts.values() if a.status in TERMINAL_STATUSES][:overflow]:
            del self.alerts[alert_id]

    def _close(self, alert: Alert, status: AlertStatus, now: datetime):
        alert.status = status
        alert.updated_at = now
        if self.open_by_account.get(alert.account_id) == alert.id:
            del self.open_by_account[alert.account_id]

    def acknowledge(self, alert_id: str) -> Optional[Alert]:
        alert = self.alerts.get(alert_id)
        if alert is None:
            return None
        if alert.status in TERMINAL_STATUSES:
            raise InvalidAlertTransition(f"Cannot acknowledge {alert.status.value} alert {alert_id}")
        if alert.status == AlertStatus.ACKNOWLEDGED:
            return alert

        now = self.clock()
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_at = now
        alert.updated_at = now

        logger.info("Alert acknowledged", alert_id=alert_id, account_id=alert.account_id)
        self.events.publish(EventType.ALERT_ACKNOWLEDGED, alert.dict())
        return alert

    def resolve(self, alert_id: str) -> Optional[Alert]:
        alert = self.alerts.get(alert_id)
        if alert is None:
            return None
        if alert.status in TERMINAL_STATUSES:
            raise InvalidAlertTransition(f"Cannot resolve {alert.status.value} alert {alert_id}")

        now = self.clock()
        self._close(alert, AlertStatus.RESOLVED, now)
        alert.resolved_at = now
        if self.policy.cooldown_reset_on_resolve:
            self.last_alert_time.pop(alert.account_id, None)

        logger.info("Alert resolved", alert_id=alert_id, account_id=alert.account_id)
        self.events.publish(EventType.ALERT_RESOLVED, alert.dict())
        return alert

    def clear_by_account(self, account_id: str) -> Optional[Alert]:
        """Resolve whatever alert is open for the account"""
        alert_id = self.open_by_account.get(account_id)
        if alert_id is None:
            return None
        return self.resolve(alert_id)

    def expire_old(self, max_age_hours: Optional[float] = None) -> List[Alert]:
        """Move open alerts older than the ceiling to EXPIRED"""
        max_age = max_age_hours if max_age_hours is not None else self.policy.expiry_hours
        now = self.clock()
        cutoff = now - timedelta(hours=max_age)

        expired = []
        for alert in list(self.alerts.values()):
            if alert.is_open and alert.created_at < cutoff:
                self._close(alert, AlertStatus.EXPIRED, now)
                expired.append(alert)
                self.events.publish(EventType.ALERT_EXPIRED, alert.dict())

        if expired:
            logger.info("Expired stale alerts", count=len(expired), max_age_hours=max_age)
        return expired

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self.alerts.get(alert_id)

    def get_alert_for_account(self, account_id: str) -> Optional[Alert]:
        alert_id = self.open_by_account.get(account_id)
        return self.alerts.get(alert_id) if alert_id else None

    def get_active_alerts(self) -> List[Alert]:
        return [a for a in self.alerts.values() if a.status == AlertStatus.ACTIVE]

    def get_history(self, limit: int = 100) -> List[Alert]:
        """Most recent alerts first"""
        return list(reversed(self.alerts.values()))[:limit]

    def get_stats(self) -> AlertStats:
        counts = {status: 0 for status in AlertStatus}
        for alert in self.alerts.values():
            counts[alert.status] += 1

        active = self.get_active_alerts()
        avg_risk = sum(a.risk_score for a in active) / len(active) if active else 0.0

        return AlertStats(
            total_active=counts[AlertStatus.ACTIVE],
            total_acknowledged=counts[AlertStatus.ACKNOWLEDGED],
            total_resolved=counts[AlertStatus.RESOLVED],
            total_expired=counts[AlertStatus.EXPIRED],
            avg_risk_score=avg_risk
        )
