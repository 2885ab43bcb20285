"""
Composition root: builds every component once and wires them together
"""
import asyncio
import logging
import sys
from typing import Optional
import structlog

from .alerts import AlertManager
from .cascade import CascadeRiskScorer
from .config import Settings
from .database import MongoRiskStore, RiskStore
from .error_handling import ErrorCollector
from .events import EventBus, RedisEventPublisher
from .feed import AccountFeedMonitor, PositionParser, WebSocketFeedConnection
from .health import HealthCalculator
from .metrics import MetricsCollector
from .orchestrator import MonitoringOrchestrator
from .price_tracker import HttpPriceSource, PriceSource, PriceTracker
from .protection import ProtectionCapability
from .volatility import VolatilityIndexCalculator

logger = structlog.get_logger()


def configure_logging(settings: Settings):
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_orchestrator(
    settings: Optional[Settings] = None,
    store: Optional[RiskStore] = None,
    price_source: Optional[PriceSource] = None,
    position_parser: Optional[PositionParser] = None,
    protection: Optional[ProtectionCapability] = None,
    events: Optional[EventBus] = None,
    event_publisher: Optional[RedisEventPublisher] = None
) -> MonitoringOrchestrator:
    """
    Build the monitoring pipeline from settings.

    The push feed is only wired when both FEED_WS_URL and a position parser
    are available; without it every account falls back to stored snapshots.
    Redis publication is attached to the event bus when ENABLE_REDIS is set.
    """
    settings = settings or Settings()
    error_collector = ErrorCollector()
    events = events or EventBus()

    store = store or MongoRiskStore(uri=settings.MONGODB_URI, database_name=settings.MONGO_DB_NAME)
    price_source = price_source or HttpPriceSource(
        settings.PRICE_API_URL,
        api_key=settings.PRICE_API_KEY,
        timeout=settings.PRICE_FETCH_TIMEOUT_SECONDS
    )

    feed = None
    feed_config = settings.feed()
    if feed_config.url and position_parser is not None:
        feed = AccountFeedMonitor(
            connection_factory=lambda: WebSocketFeedConnection(feed_config.url),
            parser=position_parser,
            config=feed_config,
            error_collector=error_collector
        )
    elif feed_config.url:
        logger.warning("FEED_WS_URL set without a position parser; account feed disabled")

    if settings.ENABLE_REDIS:
        publisher = event_publisher or RedisEventPublisher.from_url(settings.REDIS_URL, settings.REDIS_EVENT_CHANNEL)
        publisher.attach(events)
        logger.info("Publishing events to Redis", channel=settings.REDIS_EVENT_CHANNEL)

    orchestrator = MonitoringOrchestrator(
        store=store,
        price_tracker=PriceTracker(price_source, settings.price_tracker(), error_collector=error_collector),
        volatility=VolatilityIndexCalculator(settings.volatility()),
        health=HealthCalculator(settings.health_tiers()),
        scorer=CascadeRiskScorer(settings.risk_scoring()),
        alerts=AlertManager(events, settings.alert_policy()),
        events=events,
        config=settings.orchestrator(),
        feed=feed,
        protection=protection,
        metrics=MetricsCollector(),
        error_collector=error_collector
    )

    logger.info("Risk monitoring pipeline built",
                environment=settings.ENV,
                feed_enabled=feed is not None,
                redis_enabled=settings.ENABLE_REDIS)
    return orchestrator


async def serve(settings: Optional[Settings] = None,
                position_parser: Optional[PositionParser] = None,
                stop_event: Optional[asyncio.Event] = None):
    """Connect storage, run monitoring until `stop_event` is set, then shut down cleanly"""
    settings = settings or Settings()
    configure_logging(settings)
    stop_event = stop_event or asyncio.Event()

    store = MongoRiskStore(uri=settings.MONGODB_URI, database_name=settings.MONGO_DB_NAME)
    publisher = None
    if settings.ENABLE_REDIS:
        publisher = RedisEventPublisher.from_url(settings.REDIS_URL, settings.REDIS_EVENT_CHANNEL)
    orchestrator = build_orchestrator(settings, store=store, position_parser=position_parser,
                                      event_publisher=publisher)

    await store.connect()
    try:
        await orchestrator.start()
        logger.info("Risk monitoring ready")
        await stop_event.wait()
    finally:
        await orchestrator.stop()
        await orchestrator.price_tracker.source.close()
        await store.disconnect()
        if publisher is not None:
            await publisher.close()
        logger.info("Risk monitoring shutdown complete")
