import structlog

from .models import Alert, ProtectionPlan, ProtectionStatus

logger = structlog.get_logger()


class ProtectionCapability:
    """
    Plans a protective action for a critical alert.

    Implementations only describe intent; executing anything is left to
    whoever consumes the critical alert event. The base capability reports
    NOT_IMPLEMENTED so a missing integration is visible in every event.
    """

    name = "none"

    async def plan(self, alert: Alert) -> ProtectionPlan:
        return ProtectionPlan(
            account_id=alert.account_id,
            status=ProtectionStatus.NOT_IMPLEMENTED,
            risk_score=alert.risk_score,
            detail=f"No protection integration configured ({self.name})"
        )


async def plan_protection(capability: ProtectionCapability, alert: Alert) -> ProtectionPlan:
    """Ask the capability for a plan, turning failures into a FAILED plan"""
    try:
        return await capability.plan(alert)
    except Exception as e:
        logger.error("Protection planning failed", account_id=alert.account_id, error=str(e))
        return ProtectionPlan(
            account_id=alert.account_id,
            status=ProtectionStatus.FAILED,
            risk_score=alert.risk_score,
            detail=str(e)
        )
