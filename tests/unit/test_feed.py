import asyncio
from typing import Any, Dict, List

import pytest

from risk_sentinel.config import FeedConfig
from risk_sentinel.error_handling import FeedConnectionError
from risk_sentinel.feed import AccountFeedMonitor, FeedConnection
from risk_sentinel.models import PositionSnapshot, RawAccountUpdate


class FakeFeedConnection(FeedConnection):
    """In-memory feed; push None to end the message stream"""

    def __init__(self, fail_connect: bool = False):
        self.fail_connect = fail_connect
        self.sent: List[Dict[str, Any]] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def connect(self):
        if self.fail_connect:
            raise FeedConnectionError("refused")

    async def send(self, message):
        self.sent.append(message)

    async def messages(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                return
            yield message

    async def close(self):
        self.closed = True


def parse_position(update: RawAccountUpdate) -> PositionSnapshot:
    if update.data == "corrupt":
        raise ValueError("unexpected account layout")
    return PositionSnapshot(account_id=update.account_id, collateral_value=1000.0, debt_value=500.0)


def notification(subscription: int, data: str = "AAAA", pubkey: str = None, slot: int = 42):
    value = {"account": {"data": [data, "base64"], "lamports": 5000, "owner": "Prog1111"}}
    if pubkey:
        value["pubkey"] = pubkey
    return {
        "jsonrpc": "2.0",
        "method": "accountNotification",
        "params": {"subscription": subscription, "result": {"context": {"slot": slot}, "value": value}}
    }


async def wait_for(condition, timeout: float = 1.0):
    for _ in range(int(timeout / 0.01)):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def connections():
    return []


@pytest.fixture
def monitor(connections, clock):
    def factory():
        connection = FakeFeedConnection()
        connections.append(connection)
        return connection

    config = FeedConfig(url="wss://feed.test", reconnect_base_delay_seconds=0, reconnect_max_delay_seconds=0)
    return AccountFeedMonitor(factory, parse_position, config=config, clock=clock)


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_connect_subscribes_every_account(self, monitor, connections):
        monitor.accounts.update({"acct-b", "acct-a"})

        await monitor._connect()

        sent = connections[0].sent
        assert [m["method"] for m in sent] == ["accountSubscribe", "accountSubscribe"]
        assert [m["params"][0] for m in sent] == ["acct-a", "acct-b"]
        assert sent[0]["params"][1] == {"encoding": "base64", "commitment": "confirmed"}
        assert monitor.is_connected

    @pytest.mark.asyncio
    async def test_confirmation_maps_subscription(self, monitor, connections):
        monitor.accounts.add("acct-a")
        await monitor._connect()
        request_id = connections[0].sent[0]["id"]

        monitor.handle_message({"jsonrpc": "2.0", "id": request_id, "result": 77})

        assert monitor.subscriptions == {"acct-a": 77}
        assert monitor.subscription_accounts == {77: "acct-a"}

    @pytest.mark.asyncio
    async def test_error_response_drops_pending_request(self, monitor, connections):
        monitor.accounts.add("acct-a")
        await monitor._connect()
        request_id = connections[0].sent[0]["id"]

        monitor.handle_message({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32602}})

        assert monitor.pending_requests == {}
        assert monitor.subscriptions == {}

    @pytest.mark.asyncio
    async def test_add_account_while_connected(self, monitor, connections):
        await monitor._connect()

        await monitor.add_account("acct-new")
        await monitor.add_account("acct-new")

        assert [m["params"][0] for m in connections[0].sent] == ["acct-new"]

    @pytest.mark.asyncio
    async def test_add_account_while_disconnected_waits_for_connect(self, monitor, connections):
        await monitor.add_account("acct-a")
        assert connections == []
        assert "acct-a" in monitor.accounts

    @pytest.mark.asyncio
    async def test_remove_account_unsubscribes(self, monitor, connections):
        monitor.accounts.add("acct-a")
        await monitor._connect()
        monitor.handle_message({"id": connections[0].sent[0]["id"], "result": 77})
        monitor.handle_message(notification(77))

        await monitor.remove_account("acct-a")

        last = connections[0].sent[-1]
        assert last["method"] == "accountUnsubscribe"
        assert last["params"] == [77]
        assert monitor.get_snapshot("acct-a") is None
        assert monitor.subscription_accounts == {}


class TestNotifications:

    @pytest.fixture
    def subscribed(self, monitor):
        """acct-a confirmed as subscription 77"""
        monitor.accounts.add("acct-a")
        monitor.pending_requests[1] = "acct-a"
        monitor.handle_message({"id": 1, "result": 77})
        return monitor

    @pytest.mark.asyncio
    async def test_notification_is_parsed_and_cached(self, subscribed):
        subscribed.handle_message(notification(77))

        snapshot = subscribed.get_snapshot("acct-a")
        assert snapshot.account_id == "acct-a"
        assert snapshot.collateral_value == 1000.0

    @pytest.mark.asyncio
    async def test_pubkey_takes_precedence(self, subscribed):
        subscribed.accounts.add("acct-b")
        subscribed.handle_message(notification(77, pubkey="acct-b"))
        assert subscribed.get_snapshot("acct-b") is not None
        assert subscribed.get_snapshot("acct-a") is None

    @pytest.mark.asyncio
    async def test_unknown_subscription_is_ignored(self, subscribed):
        subscribed.handle_message(notification(999))
        assert subscribed.snapshots == {}

    @pytest.mark.asyncio
    async def test_parse_failure_is_recorded_and_dropped(self, subscribed):
        subscribed.handle_message(notification(77))
        subscribed.handle_message(notification(77, data="corrupt"))

        assert subscribed.get_snapshot("acct-a") is not None
        assert subscribed.error_collector.error_counts["ValueError"] == 1

    @pytest.mark.asyncio
    async def test_old_snapshot_is_not_trusted(self, subscribed, clock):
        subscribed.handle_message(notification(77))

        clock.advance(seconds=120)
        assert subscribed.get_snapshot("acct-a") is not None

        clock.advance(seconds=1)
        assert subscribed.get_snapshot("acct-a") is None


class TestConnectionLifecycle:

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes(self, monitor, connections):
        monitor.accounts.update({"acct-a", "acct-b"})

        await monitor.start()
        await wait_for(lambda: len(connections) == 1 and len(connections[0].sent) == 2)

        connections[0].inbox.put_nowait(None)
        await wait_for(lambda: len(connections) == 2 and len(connections[1].sent) == 2)

        assert monitor.reconnect_count == 1
        assert connections[0].closed
        assert [m["params"][0] for m in connections[1].sent] == ["acct-a", "acct-b"]

        await monitor.stop()
        assert connections[1].closed
        assert monitor.is_running is False

    @pytest.mark.asyncio
    async def test_connect_retries_until_feed_accepts(self, clock):
        attempts = []

        def factory():
            connection = FakeFeedConnection(fail_connect=len(attempts) < 2)
            attempts.append(connection)
            return connection

        config = FeedConfig(reconnect_base_delay_seconds=0, reconnect_max_delay_seconds=0)
        monitor = AccountFeedMonitor(factory, parse_position, config=config, clock=clock)

        await monitor._connect()

        assert len(attempts) == 3
        assert monitor.connection is attempts[-1]


class TestReconnectBackoff:

    def test_delay_doubles_up_to_cap(self, clock):
        config = FeedConfig(reconnect_base_delay_seconds=1.0, reconnect_max_delay_seconds=60.0,
                            reconnect_jitter_seconds=0)
        monitor = AccountFeedMonitor(FakeFeedConnection, parse_position, config=config, clock=clock)

        delays = [monitor.reconnect_delay(failures) for failures in range(1, 9)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]

    def test_jitter_stays_within_bounds(self, clock):
        config = FeedConfig(reconnect_base_delay_seconds=1.0, reconnect_max_delay_seconds=60.0,
                            reconnect_jitter_seconds=0.5)
        monitor = AccountFeedMonitor(FakeFeedConnection, parse_position, config=config, clock=clock)

        for _ in range(20):
            assert 4.0 <= monitor.reconnect_delay(3) <= 4.5

    def test_stable_session_resets_failures(self, monitor, clock):
        monitor.consecutive_failures = 5

        connected_at = clock()
        clock.advance(seconds=monitor.config.reconnect_stable_seconds + 1)
        monitor._backoff_after_disconnect(connected_at)
        assert monitor.consecutive_failures == 1

        connected_at = clock()
        clock.advance(seconds=5)
        monitor._backoff_after_disconnect(connected_at)
        assert monitor.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_dropped_sessions_back_off(self, clock):
        connections = []

        def factory():
            connection = FakeFeedConnection()
            connection.inbox.put_nowait(None)
            connections.append(connection)
            return connection

        config = FeedConfig(reconnect_base_delay_seconds=0.001, reconnect_max_delay_seconds=0.004,
                            reconnect_jitter_seconds=0)
        monitor = AccountFeedMonitor(factory, parse_position, config=config, clock=clock)

        delays = []
        backoff = monitor._backoff_after_disconnect

        def recording_backoff(connected_at):
            delay = backoff(connected_at)
            delays.append(delay)
            return delay

        monitor._backoff_after_disconnect = recording_backoff

        await monitor.start()
        await wait_for(lambda: len(delays) >= 4)
        await monitor.stop()

        assert delays[:4] == [0.001, 0.002, 0.004, 0.004]
        assert monitor.consecutive_failures >= 4
        assert len(connections) >= 4
