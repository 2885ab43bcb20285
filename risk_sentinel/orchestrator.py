import asyncio
import time
from datetime import datetime
from typing import Callable, List, Optional, Set, Tuple
import structlog

from .alerts import AlertManager
from .cascade import CascadeRiskScorer
from .config import EventType, OrchestratorConfig
from .database import RiskStore
from .error_handling import ErrorCollector, PositionDataError
from .events import EventBus
from .feed import AccountFeedMonitor
from .health import HealthCalculator
from .metrics import MetricsCollector
from .models import (
    Alert, CascadeIndicators, CascadeRiskScore, HealthMetrics, MonitoredAccount, MonitoringCycleResult,
    MonitoringState, PositionSnapshot, SnapshotRecord, VolatilityResult
)
from .price_tracker import PriceTracker
from .protection import ProtectionCapability, plan_protection
from .volatility import VolatilityIndexCalculator

logger = structlog.get_logger()


class MonitoringOrchestrator:
    """Runs the risk monitoring cycle on a fixed interval"""

    def __init__(self, store: RiskStore, price_tracker: PriceTracker,
                 volatility: VolatilityIndexCalculator, health: HealthCalculator,
                 scorer: CascadeRiskScorer, alerts: AlertManager, events: EventBus,
                 config: Optional[OrchestratorConfig] = None,
                 feed: Optional[AccountFeedMonitor] = None,
                 protection: Optional[ProtectionCapability] = None,
                 metrics: Optional[MetricsCollector] = None,
                 error_collector: Optional[ErrorCollector] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.store = store
        self.price_tracker = price_tracker
        self.volatility = volatility
        self.health = health
        self.scorer = scorer
        self.alerts = alerts
        self.events = events
        self.config = config or OrchestratorConfig()
        self.feed = feed
        self.protection = protection or ProtectionCapability()
        self.metrics = metrics or MetricsCollector()
        self.error_collector = error_collector or ErrorCollector()
        self.clock = clock

        self.is_running = False
        self.skipped_ticks = 0
        self.accounts_monitored = 0
        self.last_cycle: Optional[MonitoringCycleResult] = None
        self.current_volatility: Optional[VolatilityResult] = None

        self._cycle_lock = asyncio.Lock()
        self._cycle_counter = 0
        self._scheduler_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._critical_signalled: Set[str] = set()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    async def start(self):
        """Start price refresh, the account feed and the cycle scheduler"""
        if self.is_running:
            logger.warning("Monitoring already running")
            return

        self.is_running = True
        logger.info("Starting risk monitoring", interval_seconds=self.config.interval_seconds)

        await self.price_tracker.start()

        if self.feed is not None:
            try:
                for account in await self.store.get_active_accounts():
                    await self.feed.add_account(account.account_id)
            except Exception as e:
                self.error_collector.record_error(e, {"operation": "feed_bootstrap"})
            await self.feed.start()

        self._scheduler_task = asyncio.create_task(self._monitoring_loop())

    async def stop(self, grace_seconds: Optional[float] = None):
        """Stop scheduling, let an in-flight cycle finish within the grace period, release resources"""
        if not self.is_running:
            return

        logger.info("Stopping risk monitoring")
        self.is_running = False
        grace = self.config.stop_grace_seconds if grace_seconds is None else grace_seconds

        if self._scheduler_task:
            self._scheduler_task.cancel()
            await asyncio.gather(self._scheduler_task, return_exceptions=True)
            self._scheduler_task = None

        if self._cycle_task and not self._cycle_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._cycle_task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("In-flight cycle abandoned after grace period", grace_seconds=grace)
                self._cycle_task.cancel()
                await asyncio.gather(self._cycle_task, return_exceptions=True)
            except Exception as e:
                logger.error("In-flight cycle failed during shutdown", error=str(e))
        self._cycle_task = None

        await self.price_tracker.stop()
        if self.feed is not None:
            await self.feed.stop()
        await self.events.drain()

        logger.info("Risk monitoring stopped")

    async def _monitoring_loop(self):
        while self.is_running:
            self.tick()
            await asyncio.sleep(self.config.interval_seconds)

    def tick(self) -> bool:
        """Launch a cycle unless one is still running; returns whether one was launched"""
        if self.cycle_in_progress:
            self.skipped_ticks += 1
            self.metrics.increment("monitoring.skipped_ticks")
            logger.warning("Previous cycle still running, skipping tick", skipped_ticks=self.skipped_ticks)
            return False

        self._cycle_task = asyncio.create_task(self._scheduled_cycle())
        return True

    async def _scheduled_cycle(self):
        try:
            await self.run_cycle()
        except Exception as e:
            self.error_collector.record_error(e, {"operation": "monitoring_cycle"})
            self.events.publish(EventType.MONITORING_ERROR, {"error": str(e), "stage": "cycle"})

    async def run_cycle(self) -> MonitoringCycleResult:
        async with self._cycle_lock:
            return await self._execute_cycle()

    def _next_cycle_id(self, now: datetime) -> str:
        self._cycle_counter += 1
        return f"cycle_{self._cycle_counter}_{int(now.timestamp() * 1000)}"

    async def _execute_cycle(self) -> MonitoringCycleResult:
        started_at = self.clock()
        start_time = time.perf_counter()
        cycle_id = self._next_cycle_id(started_at)
        logger.info("Starting risk monitoring cycle", cycle_id=cycle_id)

        try:
            accounts = [a for a in await self.store.get_active_accounts() if a.is_active]
        except Exception as e:
            self.error_collector.record_error(e, {"operation": "load_accounts", "cycle_id": cycle_id})
            self.metrics.increment("monitoring.cycle_errors")
            self.events.publish(EventType.MONITORING_ERROR, {
                "cycle_id": cycle_id,
                "stage": "load_accounts",
                "error": str(e)
            })
            result = MonitoringCycleResult(
                cycle_id=cycle_id,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                error=str(e),
                started_at=started_at
            )
            self.last_cycle = result
            return result

        self.accounts_monitored = len(accounts)

        # One price/volatility view shared by every account in this cycle
        lookups = await self.price_tracker.refresh_all()
        primary = lookups.get(self.config.primary_asset)
        price_is_stale = primary is None or primary.is_stale
        if price_is_stale:
            logger.warning("Primary asset price is stale or missing", asset=self.config.primary_asset)

        volatility = self.volatility.calculate(self.price_tracker.get_history(self.config.primary_asset))
        self.current_volatility = volatility
        self.metrics.set_gauge("volatility.value", volatility.value)

        if not accounts:
            result = MonitoringCycleResult(
                cycle_id=cycle_id,
                volatility_value=volatility.value,
                volatility_level=volatility.level,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                price_is_stale=price_is_stale,
                started_at=started_at
            )
            self._complete_cycle(result, CascadeIndicators(), len(self.alerts.get_active_alerts()))
            return result

        resolved = await self._resolve_positions(accounts, cycle_id)
        positions = [position for position, _ in resolved]

        scores = self.scorer.score(positions, volatility) if positions else []
        indicators = self.scorer.identify_indicators(positions)
        generation = self.alerts.generate(scores)
        expired = self.alerts.expire_old(self.config.alert_expiry_hours)
        for alert in expired:
            self._critical_signalled.discard(alert.id)

        records = self._build_records(cycle_id, resolved, scores, volatility)
        await self._persist(records, generation.new_alerts, expired)

        scores_by_account = {score.account_id: score for score in scores}
        for position, health in resolved:
            score = scores_by_account[position.account_id]
            self.events.publish(EventType.ACCOUNT_UPDATE, {
                "account_id": position.account_id,
                "health": health.dict(),
                "risk": score.dict()
            })

        if self.config.auto_protection_enabled:
            await self._signal_critical(generation.new_alerts + generation.updated_alerts)

        result = MonitoringCycleResult(
            cycle_id=cycle_id,
            accounts_processed=len(positions),
            accounts_skipped=len(accounts) - len(positions),
            new_alerts=len(generation.new_alerts),
            updated_alerts=len(generation.updated_alerts),
            expired_alerts=len(expired),
            volatility_value=volatility.value,
            volatility_level=volatility.level,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            price_is_stale=price_is_stale,
            started_at=started_at
        )
        self._complete_cycle(result, indicators, generation.total_active)
        return result

    def _complete_cycle(self, result: MonitoringCycleResult, indicators: CascadeIndicators, total_active: int):
        self.last_cycle = result

        self.metrics.increment("monitoring.cycles")
        self.metrics.increment("alerts.new", result.new_alerts)
        self.metrics.record_histogram("monitoring.cycle_duration_ms", result.duration_ms)
        self.metrics.set_gauge("monitoring.accounts_processed", result.accounts_processed)

        self.events.publish(EventType.CYCLE_COMPLETE, {
            **result.dict(),
            "indicators": indicators.dict(),
            "total_active_alerts": total_active
        })

        logger.info("Risk monitoring cycle completed",
                    cycle_id=result.cycle_id,
                    accounts_processed=result.accounts_processed,
                    accounts_skipped=result.accounts_skipped,
                    new_alerts=result.new_alerts,
                    volatility=round(result.volatility_value, 3),
                    duration_ms=round(result.duration_ms, 1))

    async def _resolve_positions(self, accounts: List[MonitoredAccount],
                                 cycle_id: str) -> List[Tuple[PositionSnapshot, HealthMetrics]]:
        """Fetch or reuse each account's position concurrently; failing accounts are skipped"""
        results = await asyncio.gather(
            *(self._resolve_position(account) for account in accounts),
            return_exceptions=True
        )

        resolved = []
        for account, result in zip(accounts, results):
            if isinstance(result, Exception):
                self.error_collector.record_error(result, {
                    "operation": "resolve_position",
                    "account_id": account.account_id,
                    "cycle_id": cycle_id
                })
                continue
            resolved.append(result)
        return resolved

    async def _resolve_position(self, account: MonitoredAccount) -> Tuple[PositionSnapshot, HealthMetrics]:
        snapshot = self.feed.get_snapshot(account.account_id) if self.feed is not None else None

        if snapshot is None:
            stored = account.latest_snapshot or await self.store.get_latest_snapshot(account.account_id)
            if stored is None:
                raise PositionDataError(account.account_id, "no position data available")
            snapshot = stored.to_position()

        health = self.health.calculate(snapshot)
        return snapshot.copy(update={"health_factor": health.health_factor}), health

    def _build_records(self, cycle_id: str, resolved: List[Tuple[PositionSnapshot, HealthMetrics]],
                       scores: List[CascadeRiskScore], volatility: VolatilityResult) -> List[SnapshotRecord]:
        scores_by_account = {score.account_id: score for score in scores}
        now = self.clock()
        records = []
        for position, health in resolved:
            score = scores_by_account[position.account_id]
            records.append(SnapshotRecord(
                cycle_id=cycle_id,
                account_id=position.account_id,
                health_factor=health.health_factor,
                margin_ratio=health.margin_ratio,
                leverage=health.leverage,
                tier=health.tier,
                distance_to_liquidation_pct=health.distance_to_liquidation_pct,
                is_at_risk=health.is_at_risk,
                collateral_value=position.collateral_value,
                debt_value=position.debt_value,
                liquidation_price=position.liquidation_price,
                oracle_price=position.oracle_price,
                liquidation_threshold=position.liquidation_threshold,
                risk_score=score.risk_score,
                volatility_value=volatility.value,
                cascade_probability=score.cascade_probability,
                time_to_liquidation_hours=score.time_to_liquidation_hours,
                estimated_losses_usd=score.estimated_losses_usd,
                recommended_action=score.recommended_action,
                health_factor_risk=score.components.health_factor_risk,
                volatility_risk=score.components.volatility_risk,
                cascade_risk=score.components.cascade_risk,
                created_at=now
            ))
        return records

    async def _persist(self, records: List[SnapshotRecord], new_alerts: List[Alert], expired: List[Alert]):
        """Write snapshots and alert changes concurrently; failures are logged, never raised"""
        operations = []
        if records:
            operations.append(("save_snapshots", self.store.save_snapshots(records)))
        for alert in new_alerts:
            operations.append(("save_alert", self.store.save_alert(alert)))
        for alert in expired:
            operations.append(("update_alert_status", self.store.update_alert_status(alert)))

        if not operations:
            return

        results = await asyncio.gather(*(op for _, op in operations), return_exceptions=True)
        for (name, _), result in zip(operations, results):
            if isinstance(result, Exception):
                self.metrics.increment("persistence.errors", tags={"operation": name})
                self.error_collector.record_error(result, {"operation": name})

    async def _signal_critical(self, alerts: List[Alert]):
        for alert in alerts:
            if alert.risk_score < self.config.auto_protection_threshold or alert.id in self._critical_signalled:
                continue
            self._critical_signalled.add(alert.id)
            plan = await plan_protection(self.protection, alert)
            logger.warning("Critical risk detected",
                           account_id=alert.account_id,
                           risk_score=round(alert.risk_score, 2),
                           protection=plan.status.value)
            self.events.publish(EventType.ALERT_CRITICAL, {
                "alert": alert.dict(),
                "protection": plan.dict()
            })

    async def acknowledge_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self.alerts.acknowledge(alert_id)
        if alert is not None:
            await self._persist_status(alert)
        return alert

    async def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self.alerts.resolve(alert_id)
        if alert is not None:
            self._critical_signalled.discard(alert.id)
            await self._persist_status(alert)
        return alert

    async def _persist_status(self, alert: Alert):
        try:
            await self.store.update_alert_status(alert)
        except Exception as e:
            self.error_collector.record_error(e, {"operation": "update_alert_status", "alert_id": alert.id})

    async def add_account(self, account_id: str):
        await self.store.add_account(account_id)
        if self.feed is not None:
            await self.feed.add_account(account_id)
        logger.info("Account added to monitoring", account_id=account_id)

    async def remove_account(self, account_id: str):
        await self.store.remove_account(account_id)
        if self.feed is not None:
            await self.feed.remove_account(account_id)

        cleared = self.alerts.clear_by_account(account_id)
        if cleared is not None:
            self._critical_signalled.discard(cleared.id)
            await self._persist_status(cleared)
        logger.info("Account removed from monitoring", account_id=account_id)

    def get_state(self) -> MonitoringState:
        return MonitoringState(
            is_running=self.is_running,
            last_cycle_at=self.last_cycle.started_at if self.last_cycle else None,
            last_cycle=self.last_cycle,
            accounts_monitored=self.accounts_monitored,
            active_alerts=len(self.alerts.get_active_alerts()),
            current_volatility=self.current_volatility,
            skipped_ticks=self.skipped_ticks
        )
