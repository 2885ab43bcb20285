import asyncio
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, List, Optional
import httpx
import structlog

from .config import PriceTrackerConfig
from .error_handling import PriceSourceError, ErrorCollector, retry_with_backoff
from .models import PriceQuote, PriceSample, PriceLookup

logger = structlog.get_logger()


class PriceSource:
    """External price source contract"""

    name = "base"

    async def get_price(self, asset: str) -> PriceQuote:
        raise NotImplementedError

    async def close(self):
        pass


class HttpPriceSource(PriceSource):
    """Jupiter-style HTTP price API client"""

    name = "jupiter"

    # Mint ids for the assets tracked by default; unknown symbols are sent verbatim
    ASSET_IDS = {
        "SOL": "So11111111111111111111111111111111111111112",
        "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    }

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20)
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def get_price(self, asset: str) -> PriceQuote:
        asset_id = self.ASSET_IDS.get(asset, asset)
        try:
            response = await self.client.get("/price/v3", params={"ids": asset_id})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} fetching price",
                         asset=asset, status_code=e.response.status_code)
            raise PriceSourceError(f"Price request failed: {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error("Request error fetching price", asset=asset, error=str(e))
            raise PriceSourceError(f"Network error: {str(e)}")
        except ValueError as e:
            raise PriceSourceError(f"Invalid price payload: {str(e)}")

        entry = data.get(asset_id) if isinstance(data, dict) else None
        if not entry or entry.get("usdPrice") is None:
            raise PriceSourceError(f"No price returned for {asset}")

        price = float(entry["usdPrice"])
        if price <= 0:
            raise PriceSourceError(f"Non-positive price returned for {asset}")

        return PriceQuote(price=price, confidence=entry.get("confidence"), timestamp=datetime.utcnow())

    async def close(self):
        await self.client.aclose()


class PriceTracker:
    """Rolling per-asset price series with fresh/stale cached lookups"""

    def __init__(self, source: PriceSource, config: Optional[PriceTrackerConfig] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 error_collector: Optional[ErrorCollector] = None):
        self.source = source
        self.config = config or PriceTrackerConfig()
        self.clock = clock
        self.error_collector = error_collector or ErrorCollector()

        self.cache: Dict[str, PriceSample] = {}
        self.history: Dict[str, Deque[PriceSample]] = {}
        self.is_running = False
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def assets(self) -> List[str]:
        return list(self.config.assets)

    def _age_seconds(self, sample: PriceSample) -> float:
        return (self.clock() - sample.timestamp).total_seconds()

    def is_fresh(self, sample: PriceSample) -> bool:
        return self._age_seconds(sample) < self.config.freshness_window_seconds

    def is_stale(self, sample: PriceSample) -> bool:
        return self._age_seconds(sample) > self.config.staleness_window_seconds

    def _lookup(self, asset: str) -> PriceLookup:
        sample = self.cache.get(asset)
        if sample is None:
            return PriceLookup(asset=asset)
        return PriceLookup(
            asset=asset,
            sample=sample,
            is_fresh=self.is_fresh(sample),
            is_stale=self.is_stale(sample),
            age_seconds=self._age_seconds(sample)
        )

    def get_cached_price(self, asset: str) -> PriceLookup:
        """Cached value only, never touches the price source"""
        return self._lookup(asset)

    async def get_price(self, asset: str) -> PriceLookup:
        """Cached price when fresh, otherwise a fetch with retry and stale fallback"""
        cached = self._lookup(asset)
        if cached.is_fresh:
            return cached
        return await self._fetch(asset)

    async def _fetch(self, asset: str) -> PriceLookup:
        try:
            async for attempt in retry_with_backoff(
                max_attempts=self.config.fetch_attempts,
                base_delay=self.config.retry_base_delay_seconds,
                max_delay=self.config.retry_max_delay_seconds,
                exceptions=(PriceSourceError, asyncio.TimeoutError)
            ):
                with attempt:
                    quote = await asyncio.wait_for(
                        self.source.get_price(asset),
                        timeout=self.config.fetch_timeout_seconds
                    )
        except (PriceSourceError, asyncio.TimeoutError) as e:
            self.error_collector.record_error(e, {"operation": "price_fetch", "asset": asset})
            fallback = self._lookup(asset)
            logger.warning("Price fetch exhausted retries, serving cached value",
                           asset=asset,
                           has_cached=not fallback.is_miss,
                           is_stale=fallback.is_stale)
            return fallback

        self.record_price(asset, quote.price, confidence=quote.confidence)
        return self._lookup(asset)

    def record_price(self, asset: str, price: float, timestamp: Optional[datetime] = None,
                     confidence: Optional[float] = None) -> PriceSample:
        """Update the cache and append to history, coalescing closely spaced samples"""
        sample = PriceSample(
            asset=asset,
            price=price,
            timestamp=timestamp or self.clock(),
            confidence=confidence,
            source=self.source.name
        )
        self.cache[asset] = sample

        series = self.history.get(asset)
        if series is None:
            series = deque(maxlen=self.config.history_capacity)
            self.history[asset] = series

        if series:
            spacing = (sample.timestamp - series[-1].timestamp).total_seconds()
            if spacing < self.config.history_sample_interval_seconds:
                return sample

        series.append(sample)
        return sample

    async def refresh_all(self, assets: Optional[Iterable[str]] = None) -> Dict[str, PriceLookup]:
        """Fetch every tracked asset concurrently; one failing asset never fails the rest"""
        targets = list(assets) if assets is not None else self.assets
        if not targets:
            return {}

        results = await asyncio.gather(
            *(self._fetch(asset) for asset in targets),
            return_exceptions=True
        )

        lookups: Dict[str, PriceLookup] = {}
        for asset, result in zip(targets, results):
            if isinstance(result, Exception):
                self.error_collector.record_error(result, {"operation": "price_refresh", "asset": asset})
                lookups[asset] = self._lookup(asset)
            else:
                lookups[asset] = result
        return lookups

    def get_history(self, asset: str, minutes: Optional[float] = None) -> List[float]:
        """Prices oldest to newest; always a new list"""
        return [sample.price for sample in self.get_history_with_timestamps(asset, minutes)]

    def get_history_with_timestamps(self, asset: str, minutes: Optional[float] = None) -> List[PriceSample]:
        series = list(self.history.get(asset, ()))
        if minutes is None:
            return series
        now = self.clock()
        return [s for s in series if (now - s.timestamp).total_seconds() <= minutes * 60]

    def get_usd_value(self, asset: str, amount: float) -> Optional[float]:
        sample = self.cache.get(asset)
        if sample is None:
            return None
        return amount * sample.price

    async def start(self):
        """Start the periodic refresh timer"""
        if self.is_running:
            logger.warning("Price tracker already running")
            return

        self.is_running = True
        await self.refresh_all()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info("Price tracker started",
                    assets=self.assets,
                    interval_seconds=self.config.refresh_interval_seconds)

    async def stop(self):
        if not self.is_running:
            return

        self.is_running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            await asyncio.gather(self._refresh_task, return_exceptions=True)
            self._refresh_task = None
        logger.info("Price tracker stopped")

    async def _refresh_loop(self):
        while self.is_running:
            await asyncio.sleep(self.config.refresh_interval_seconds)
            try:
                await self.refresh_all()
            except Exception as e:
                logger.error("Error in price refresh loop", error=str(e))
