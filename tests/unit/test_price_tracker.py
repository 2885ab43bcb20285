import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from risk_sentinel.config import PriceTrackerConfig
from risk_sentinel.error_handling import PriceSourceError
from risk_sentinel.price_tracker import HttpPriceSource, PriceTracker


@pytest.fixture
def tracker(price_source, tracker_config, clock):
    return PriceTracker(price_source, tracker_config, clock=clock)


class TestPriceLookups:

    @pytest.mark.asyncio
    async def test_first_lookup_fetches(self, tracker, price_source):
        lookup = await tracker.get_price("SOL")

        assert lookup.price == 100.0
        assert lookup.is_fresh is True
        assert lookup.is_stale is False
        assert price_source.calls == ["SOL"]

    @pytest.mark.asyncio
    async def test_fresh_cache_is_served_without_fetch(self, tracker, price_source, clock):
        await tracker.get_price("SOL")
        clock.advance(seconds=4)
        price_source.prices["SOL"] = 120.0

        lookup = await tracker.get_price("SOL")

        assert lookup.price == 100.0
        assert price_source.calls == ["SOL"]

    @pytest.mark.asyncio
    async def test_expired_cache_refetches(self, tracker, price_source, clock):
        await tracker.get_price("SOL")
        clock.advance(seconds=6)
        price_source.prices["SOL"] = 120.0

        lookup = await tracker.get_price("SOL")

        assert lookup.price == 120.0
        assert len(price_source.calls) == 2

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, tracker, price_source):
        price_source.fail_next("SOL", PriceSourceError("boom"), times=2)

        lookup = await tracker.get_price("SOL")

        assert lookup.price == 100.0
        assert len(price_source.calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_stale_cache(self, tracker, price_source, clock):
        await tracker.get_price("SOL")
        clock.advance(seconds=30)
        price_source.fail_next("SOL", PriceSourceError("down"), times=3)

        lookup = await tracker.get_price("SOL")

        assert lookup.price == 100.0
        assert lookup.is_stale is True
        assert lookup.age_seconds == pytest.approx(30)
        assert len(price_source.calls) == 4

    @pytest.mark.asyncio
    async def test_exhausted_retries_without_cache_is_a_miss(self, tracker, price_source):
        price_source.fail_next("SOL", PriceSourceError("down"), times=3)

        lookup = await tracker.get_price("SOL")

        assert lookup.is_miss
        assert lookup.is_stale is True
        assert tracker.error_collector.error_counts["PriceSourceError"] == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, price_source, clock):
        config = PriceTrackerConfig(
            fetch_attempts=2,
            retry_base_delay_seconds=0,
            retry_max_delay_seconds=0,
            fetch_timeout_seconds=0.01
        )

        async def slow_price(asset):
            await asyncio.sleep(1)

        price_source.get_price = slow_price
        tracker = PriceTracker(price_source, config, clock=clock)

        lookup = await tracker.get_price("SOL")
        assert lookup.is_miss

    def test_window_boundaries(self, tracker, clock):
        sample = tracker.record_price("SOL", 100.0)

        clock.advance(seconds=5)
        assert tracker.is_fresh(sample) is False
        assert tracker.is_stale(sample) is False

        clock.advance(seconds=5.5)
        assert tracker.is_stale(sample) is True

    def test_cached_lookup_never_fetches(self, tracker, price_source):
        assert tracker.get_cached_price("SOL").is_miss
        tracker.record_price("SOL", 101.0)
        assert tracker.get_cached_price("SOL").price == 101.0
        assert price_source.calls == []

    def test_usd_value(self, tracker):
        assert tracker.get_usd_value("SOL", 2) is None
        tracker.record_price("SOL", 150.0)
        assert tracker.get_usd_value("SOL", 2) == 300.0


class TestRefreshAll:

    @pytest.mark.asyncio
    async def test_one_failing_asset_does_not_fail_others(self, price_source, tracker_config, clock):
        tracker = PriceTracker(price_source, tracker_config, clock=clock)
        price_source.fail_next("USDC", PriceSourceError("down"), times=3)

        lookups = await tracker.refresh_all(["SOL", "USDC"])

        assert lookups["SOL"].price == 100.0
        assert lookups["USDC"].is_miss

    @pytest.mark.asyncio
    async def test_defaults_to_configured_assets(self, tracker, price_source):
        lookups = await tracker.refresh_all()
        assert list(lookups) == ["SOL"]
        assert price_source.calls == ["SOL"]

    @pytest.mark.asyncio
    async def test_refresh_appends_history(self, tracker, clock):
        for _ in range(3):
            await tracker.refresh_all()
            clock.advance(seconds=60)

        assert tracker.get_history("SOL") == [100.0, 100.0, 100.0]


class TestHistory:

    def test_ring_buffer_evicts_oldest(self, price_source, clock):
        tracker = PriceTracker(price_source, PriceTrackerConfig(history_capacity=3, history_sample_interval_seconds=0),
                               clock=clock)
        for price in [1.0, 2.0, 3.0, 4.0, 5.0]:
            tracker.record_price("SOL", price)
            clock.advance(seconds=1)

        assert tracker.get_history("SOL") == [3.0, 4.0, 5.0]

    def test_history_is_a_fresh_list(self, tracker):
        tracker.record_price("SOL", 1.0)
        history = tracker.get_history("SOL")
        history.append(999.0)
        assert tracker.get_history("SOL") == [1.0]

    def test_closely_spaced_samples_are_coalesced(self, price_source, clock):
        tracker = PriceTracker(price_source, PriceTrackerConfig(history_sample_interval_seconds=60), clock=clock)
        tracker.record_price("SOL", 100.0)
        clock.advance(seconds=10)
        tracker.record_price("SOL", 101.0)
        clock.advance(seconds=50)
        tracker.record_price("SOL", 102.0)

        assert tracker.get_history("SOL") == [100.0, 102.0]
        assert tracker.get_cached_price("SOL").price == 102.0

    def test_history_window_in_minutes(self, tracker, clock):
        for price in [1.0, 2.0, 3.0]:
            tracker.record_price("SOL", price)
            clock.advance(minutes=10)

        assert tracker.get_history("SOL", minutes=15) == [3.0]
        assert [s.price for s in tracker.get_history_with_timestamps("SOL", minutes=25)] == [2.0, 3.0]

    def test_unknown_asset_history_is_empty(self, tracker):
        assert tracker.get_history("BTC") == []


class TestRefreshTimer:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, price_source, clock):
        tracker = PriceTracker(price_source, PriceTrackerConfig(refresh_interval_seconds=0.01), clock=clock)

        await tracker.start()
        await asyncio.sleep(0.05)
        await tracker.stop()

        assert tracker.is_running is False
        assert len(price_source.calls) >= 2

        calls = len(price_source.calls)
        await asyncio.sleep(0.03)
        assert len(price_source.calls) == calls


class TestHttpPriceSource:

    def _client(self, response):
        client = MagicMock()
        client.get = AsyncMock(return_value=response)
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_parses_quote(self):
        request = httpx.Request("GET", "https://api.jup.ag/price/v3")
        mint = HttpPriceSource.ASSET_IDS["SOL"]
        response = httpx.Response(200, json={mint: {"usdPrice": 142.5, "confidence": 0.98}}, request=request)
        source = HttpPriceSource("https://api.jup.ag", client=self._client(response))

        quote = await source.get_price("SOL")

        assert quote.price == 142.5
        assert quote.confidence == 0.98
        source.client.get.assert_awaited_once_with("/price/v3", params={"ids": mint})

    @pytest.mark.asyncio
    async def test_http_error_becomes_price_source_error(self):
        request = httpx.Request("GET", "https://api.jup.ag/price/v3")
        response = httpx.Response(503, json={}, request=request)
        source = HttpPriceSource("https://api.jup.ag", client=self._client(response))

        with pytest.raises(PriceSourceError):
            await source.get_price("SOL")

    @pytest.mark.asyncio
    async def test_missing_asset_becomes_price_source_error(self):
        request = httpx.Request("GET", "https://api.jup.ag/price/v3")
        response = httpx.Response(200, json={}, request=request)
        source = HttpPriceSource("https://api.jup.ag", client=self._client(response))

        with pytest.raises(PriceSourceError):
            await source.get_price("SOL")

    @pytest.mark.asyncio
    async def test_network_error_becomes_price_source_error(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        source = HttpPriceSource("https://api.jup.ag", client=client)

        with pytest.raises(PriceSourceError):
            await source.get_price("SOL")
