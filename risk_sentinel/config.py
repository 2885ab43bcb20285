from pydantic import BaseModel, validator
from pydantic_settings import BaseSettings
from typing import List, Optional, Tuple


class HealthTierThresholds(BaseModel):
    """Lower bounds of each health tier; anything below `danger` is CRITICAL"""
    safe: float = 1.0
    caution: float = 0.5
    danger: float = 0.25

    @validator('danger')
    def validate_ordering(cls, v, values):
        caution = values.get('caution')
        safe = values.get('safe')
        if caution is not None and safe is not None and not (v <= caution <= safe):
            raise ValueError('Health tiers must satisfy danger <= caution <= safe')
        return v


class VolatilityConfig(BaseModel):
    windows_minutes: List[int] = [60, 240, 720]
    sample_interval_minutes: float = 1.0
    baseline_value: float = 1.0
    medium_threshold: float = 1.5
    high_threshold: float = 2.5
    extreme_threshold: float = 3.5

    @validator('windows_minutes')
    def validate_windows(cls, v):
        if not v or any(w <= 0 for w in v):
            raise ValueError('Volatility windows must be positive')
        return v

    @validator('sample_interval_minutes')
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError('Sample interval must be positive')
        return v


class RiskScoringConfig(BaseModel):
    # (upper health factor bound, value) pairs, checked in order
    health_risk_steps: List[Tuple[float, float]] = [(1.1, 40.0), (1.3, 32.0), (1.5, 24.0), (2.0, 16.0)]
    time_to_liquidation_steps: List[Tuple[float, float]] = [(1.1, 6.0), (1.3, 12.0), (1.5, 24.0), (2.0, 48.0)]

    danger_zone_health_threshold: float = 1.0
    volatility_multiplier: float = 15.0
    volatility_risk_max: float = 30.0
    cascade_risk_max: float = 30.0
    cascade_min_population: int = 10
    correlation_weight: float = 0.0

    liquidation_penalty_rate: float = 0.03
    extraction_rate: float = 0.01

    protect_threshold: float = 70.0
    monitor_threshold: float = 40.0
    max_score: float = 100.0

    @property
    def health_risk_max(self) -> float:
        return max((value for _, value in self.health_risk_steps), default=0.0)


class AlertPolicy(BaseModel):
    risk_threshold: float = 60.0
    cascade_probability_threshold: float = 0.6
    cooldown_seconds: float = 300.0
    expiry_hours: float = 24.0
    cooldown_reset_on_resolve: bool = False
    history_limit: int = 1000


class PriceTrackerConfig(BaseModel):
    assets: List[str] = ["SOL"]
    freshness_window_seconds: float = 5.0
    staleness_window_seconds: float = 10.0
    history_capacity: int = 720
    history_sample_interval_seconds: float = 60.0
    fetch_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 5.0
    fetch_timeout_seconds: float = 5.0
    refresh_interval_seconds: float = 60.0

    @validator('staleness_window_seconds')
    def validate_staleness(cls, v, values):
        freshness = values.get('freshness_window_seconds')
        if freshness is not None and v < freshness:
            raise ValueError('Staleness window cannot be shorter than freshness window')
        return v


class FeedConfig(BaseModel):
    url: Optional[str] = None
    commitment: str = "confirmed"
    encoding: str = "base64"
    reconnect_base_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 60.0
    reconnect_jitter_seconds: float = 1.0
    reconnect_stable_seconds: float = 30.0
    snapshot_max_age_seconds: float = 120.0


class OrchestratorConfig(BaseModel):
    interval_seconds: float = 30.0
    stop_grace_seconds: float = 10.0
    primary_asset: str = "SOL"
    auto_protection_enabled: bool = False
    auto_protection_threshold: float = 80.0
    alert_expiry_hours: float = 24.0


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # MongoDB Configuration
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "risk_sentinel"

    # Redis Configuration
    ENABLE_REDIS: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_EVENT_CHANNEL: str = "risk_sentinel:events"

    # Price Source
    PRICE_API_URL: str = "https://api.jup.ag"
    PRICE_API_KEY: Optional[str] = None
    PRICE_ASSETS: List[str] = ["SOL"]
    PRICE_FRESHNESS_SECONDS: float = 5.0
    PRICE_STALENESS_SECONDS: float = 10.0
    PRICE_HISTORY_CAPACITY: int = 720
    PRICE_HISTORY_SAMPLE_SECONDS: float = 60.0
    PRICE_FETCH_ATTEMPTS: int = 3
    PRICE_RETRY_BASE_DELAY_SECONDS: float = 0.5
    PRICE_FETCH_TIMEOUT_SECONDS: float = 5.0
    PRICE_REFRESH_INTERVAL_SECONDS: float = 60.0

    # Account Feed
    FEED_WS_URL: Optional[str] = None
    FEED_COMMITMENT: str = "confirmed"
    FEED_RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    FEED_RECONNECT_MAX_DELAY_SECONDS: float = 60.0
    FEED_RECONNECT_JITTER_SECONDS: float = 1.0
    FEED_RECONNECT_STABLE_SECONDS: float = 30.0
    FEED_SNAPSHOT_MAX_AGE_SECONDS: float = 120.0

    # Volatility Index
    VOLATILITY_WINDOWS_MINUTES: List[int] = [60, 240, 720]
    VOLATILITY_SAMPLE_INTERVAL_MINUTES: float = 1.0
    VOLATILITY_MEDIUM: float = 1.5
    VOLATILITY_HIGH: float = 2.5
    VOLATILITY_EXTREME: float = 3.5

    # Health Tiers
    HEALTH_SAFE: float = 1.0
    HEALTH_CAUTION: float = 0.5
    HEALTH_DANGER: float = 0.25

    # Risk Scoring
    DANGER_ZONE_HEALTH_THRESHOLD: float = 1.0
    CORRELATION_WEIGHT: float = 0.0
    RISK_PROTECT_THRESHOLD: float = 70.0
    RISK_MONITOR_THRESHOLD: float = 40.0

    # Alerts
    ALERT_RISK_THRESHOLD: float = 60.0
    ALERT_CASCADE_THRESHOLD: float = 0.6
    ALERT_COOLDOWN_SECONDS: float = 300.0
    ALERT_EXPIRY_HOURS: float = 24.0
    ALERT_COOLDOWN_RESET_ON_RESOLVE: bool = False

    # Monitoring
    MONITORING_INTERVAL_SECONDS: float = 30.0
    MONITORING_STOP_GRACE_SECONDS: float = 10.0
    AUTO_PROTECTION_ENABLED: bool = False
    AUTO_PROTECTION_THRESHOLD: float = 80.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

    def health_tiers(self) -> HealthTierThresholds:
        return HealthTierThresholds(
            safe=self.HEALTH_SAFE,
            caution=self.HEALTH_CAUTION,
            danger=self.HEALTH_DANGER
        )

    def volatility(self) -> VolatilityConfig:
        return VolatilityConfig(
            windows_minutes=self.VOLATILITY_WINDOWS_MINUTES,
            sample_interval_minutes=self.VOLATILITY_SAMPLE_INTERVAL_MINUTES,
            medium_threshold=self.VOLATILITY_MEDIUM,
            high_threshold=self.VOLATILITY_HIGH,
            extreme_threshold=self.VOLATILITY_EXTREME
        )

    def risk_scoring(self) -> RiskScoringConfig:
        return RiskScoringConfig(
            danger_zone_health_threshold=self.DANGER_ZONE_HEALTH_THRESHOLD,
            correlation_weight=self.CORRELATION_WEIGHT,
            protect_threshold=self.RISK_PROTECT_THRESHOLD,
            monitor_threshold=self.RISK_MONITOR_THRESHOLD
        )

    def alert_policy(self) -> AlertPolicy:
        return AlertPolicy(
            risk_threshold=self.ALERT_RISK_THRESHOLD,
            cascade_probability_threshold=self.ALERT_CASCADE_THRESHOLD,
            cooldown_seconds=self.ALERT_COOLDOWN_SECONDS,
            expiry_hours=self.ALERT_EXPIRY_HOURS,
            cooldown_reset_on_resolve=self.ALERT_COOLDOWN_RESET_ON_RESOLVE
        )

    def price_tracker(self) -> PriceTrackerConfig:
        return PriceTrackerConfig(
            assets=self.PRICE_ASSETS,
            freshness_window_seconds=self.PRICE_FRESHNESS_SECONDS,
            staleness_window_seconds=self.PRICE_STALENESS_SECONDS,
            history_capacity=self.PRICE_HISTORY_CAPACITY,
            history_sample_interval_seconds=self.PRICE_HISTORY_SAMPLE_SECONDS,
            fetch_attempts=self.PRICE_FETCH_ATTEMPTS,
            retry_base_delay_seconds=self.PRICE_RETRY_BASE_DELAY_SECONDS,
            fetch_timeout_seconds=self.PRICE_FETCH_TIMEOUT_SECONDS,
            refresh_interval_seconds=self.PRICE_REFRESH_INTERVAL_SECONDS
        )

    def feed(self) -> FeedConfig:
        return FeedConfig(
            url=self.FEED_WS_URL,
            commitment=self.FEED_COMMITMENT,
            reconnect_base_delay_seconds=self.FEED_RECONNECT_BASE_DELAY_SECONDS,
            reconnect_max_delay_seconds=self.FEED_RECONNECT_MAX_DELAY_SECONDS,
            reconnect_jitter_seconds=self.FEED_RECONNECT_JITTER_SECONDS,
            reconnect_stable_seconds=self.FEED_RECONNECT_STABLE_SECONDS,
            snapshot_max_age_seconds=self.FEED_SNAPSHOT_MAX_AGE_SECONDS
        )

    def orchestrator(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            interval_seconds=self.MONITORING_INTERVAL_SECONDS,
            stop_grace_seconds=self.MONITORING_STOP_GRACE_SECONDS,
            primary_asset=self.PRICE_ASSETS[0] if self.PRICE_ASSETS else "SOL",
            auto_protection_enabled=self.AUTO_PROTECTION_ENABLED,
            auto_protection_threshold=self.AUTO_PROTECTION_THRESHOLD,
            alert_expiry_hours=self.ALERT_EXPIRY_HOURS
        )


# MongoDB Collection Names
class Collections:
    ACCOUNTS = "monitored_accounts"
    SNAPSHOTS = "risk_snapshots"
    ALERTS = "risk_alerts"


# Alert Severity Levels
class RiskSeverity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Outbound event names
class EventType:
    ACCOUNT_UPDATE = "accountUpdate"
    ALERT_NEW = "alert:new"
    ALERT_ACKNOWLEDGED = "alert:acknowledged"
    ALERT_RESOLVED = "alert:resolved"
    ALERT_EXPIRED = "alert:expired"
    ALERT_CRITICAL = "alert:critical"
    CYCLE_COMPLETE = "monitoringCycleComplete"
    MONITORING_ERROR = "monitoring:error"
