from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class HealthTier(str, Enum):
    SAFE = "SAFE"
    CAUTION = "CAUTION"
    DANGER = "DANGER"
    CRITICAL = "CRITICAL"


class VolatilityLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


class RecommendedAction(str, Enum):
    SAFE = "SAFE"
    MONITOR = "MONITOR"
    PROTECT = "PROTECT"


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"


class ProtectionStatus(str, Enum):
    PLANNED = "PLANNED"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    FAILED = "FAILED"


# Price Models
class PriceQuote(BaseModel):
    price: float
    confidence: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class PriceSample(BaseModel):
    asset: str
    price: float
    timestamp: datetime
    confidence: Optional[float] = None
    source: str = "unknown"

    class Config:
        frozen = True


class PriceLookup(BaseModel):
    asset: str
    sample: Optional[PriceSample] = None
    is_fresh: bool = False
    is_stale: bool = True
    age_seconds: Optional[float] = None

    @property
    def is_miss(self) -> bool:
        return self.sample is None

    @property
    def price(self) -> Optional[float]:
        return self.sample.price if self.sample else None


# Volatility Models
class VolatilityComponent(BaseModel):
    window_minutes: int
    pct_change: float  # fraction, 0.10 == 10%
    weight: float
    contribution: float


class VolatilityResult(BaseModel):
    value: float
    level: VolatilityLevel
    components: List[VolatilityComponent] = []
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# Position Models
class PositionSnapshot(BaseModel):
    account_id: str
    collateral_value: float
    debt_value: float
    leverage: float = 1.0
    liquidation_price: float = 0.0
    oracle_price: float = 0.0
    liquidation_threshold: float = 0.8
    health_factor: Optional[float] = None

    @validator('account_id')
    def validate_account_id(cls, v):
        if not v or not v.strip():
            raise ValueError('Account id must be non-empty')
        return v

    @validator('collateral_value', 'debt_value')
    def validate_non_negative(cls, v):
        if v != v:
            raise ValueError('Position values must be numbers')
        if v < 0:
            raise ValueError('Position values must be non-negative')
        return v


class RawAccountUpdate(BaseModel):
    account_id: str
    data: str  # base64 encoded account blob
    lamports: int = 0
    owner: Optional[str] = None
    slot: int = 0
    received_at: datetime = Field(default_factory=datetime.utcnow)


class HealthMetrics(BaseModel):
    health_factor: float
    margin_ratio: float
    leverage: float
    tier: HealthTier
    distance_to_liquidation_pct: float
    is_at_risk: bool


class StoredSnapshot(BaseModel):
    account_id: str
    health_factor: float
    collateral_value: float
    debt_value: float
    leverage: float
    liquidation_price: float = 0.0
    oracle_price: float = 0.0
    liquidation_threshold: Optional[float] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def to_position(self) -> PositionSnapshot:
        return PositionSnapshot(
            account_id=self.account_id,
            collateral_value=self.collateral_value,
            debt_value=self.debt_value,
            leverage=self.leverage,
            liquidation_price=self.liquidation_price,
            oracle_price=self.oracle_price,
            liquidation_threshold=0.8 if self.liquidation_threshold is None else self.liquidation_threshold,
            health_factor=self.health_factor
        )


class MonitoredAccount(BaseModel):
    account_id: str
    is_active: bool = True
    latest_snapshot: Optional[StoredSnapshot] = None


# Risk Models
class CascadeIndicators(BaseModel):
    danger_zone_count: int = 0
    total_accounts_analyzed: int = 0
    avg_health_factor: float = 1.0
    position_correlation: float = 0.0
    total_value_at_risk: float = 0.0


class RiskComponents(BaseModel):
    health_factor_risk: float
    volatility_risk: float
    cascade_risk: float


class CascadeRiskScore(BaseModel):
    account_id: str
    risk_score: float
    volatility_value: float
    cascade_probability: float
    time_to_liquidation_hours: float
    estimated_losses_usd: float
    recommended_action: RecommendedAction
    components: RiskComponents


# Alert Models
class Alert(BaseModel):
    id: str
    account_id: str
    risk_score: float
    cascade_probability: float
    time_to_liquidation_hours: float
    estimated_losses_usd: float
    recommended_action: RecommendedAction
    severity: str
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class AlertGenerationResult(BaseModel):
    new_alerts: List[Alert] = []
    updated_alerts: List[Alert] = []
    total_active: int = 0


class AlertStats(BaseModel):
    total_active: int = 0
    total_acknowledged: int = 0
    total_resolved: int = 0
    total_expired: int = 0
    avg_risk_score: float = 0.0


# Persistence Models
class SnapshotRecord(BaseModel):
    cycle_id: str
    account_id: str

    # Health metrics
    health_factor: float
    margin_ratio: float
    leverage: float
    tier: HealthTier
    distance_to_liquidation_pct: float
    is_at_risk: bool

    # Position figures
    collateral_value: float
    debt_value: float
    liquidation_price: float
    oracle_price: float
    liquidation_threshold: float = 0.8

    # Cascade risk
    risk_score: float
    volatility_value: float
    cascade_probability: float
    time_to_liquidation_hours: float
    estimated_losses_usd: float
    recommended_action: RecommendedAction
    health_factor_risk: float
    volatility_risk: float
    cascade_risk: float

    created_at: datetime = Field(default_factory=datetime.utcnow)


# Monitoring Models
class MonitoringCycleResult(BaseModel):
    cycle_id: str
    accounts_processed: int = 0
    accounts_skipped: int = 0
    new_alerts: int = 0
    updated_alerts: int = 0
    expired_alerts: int = 0
    volatility_value: float = 1.0
    volatility_level: VolatilityLevel = VolatilityLevel.LOW
    duration_ms: float = 0.0
    price_is_stale: bool = False
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def aborted(self) -> bool:
        return self.error is not None


class MonitoringEvent(BaseModel):
    event_type: str
    payload: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class MonitoringState(BaseModel):
    is_running: bool
    last_cycle_at: Optional[datetime] = None
    last_cycle: Optional[MonitoringCycleResult] = None
    accounts_monitored: int = 0
    active_alerts: int = 0
    current_volatility: Optional[VolatilityResult] = None
    skipped_ticks: int = 0


class ProtectionPlan(BaseModel):
    account_id: str
    status: ProtectionStatus
    risk_score: float
    detail: str = ""
