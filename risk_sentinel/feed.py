"""
Push feed of account changes.

The monitor keeps a JSON-RPC subscription per tracked account open over a
FeedConnection, reconnects with jittered exponential backoff, re-subscribes
every tracked account before consuming again, and caches the latest parsed
PositionSnapshot per account. Blob parsing is delegated to an injected parser.
"""
import asyncio
import json
import random
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set, Tuple
import structlog
import websockets
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential_jitter

from .config import FeedConfig
from .error_handling import ErrorCollector, FeedConnectionError
from .models import PositionSnapshot, RawAccountUpdate

logger = structlog.get_logger()

PositionParser = Callable[[RawAccountUpdate], PositionSnapshot]


class FeedConnection:
    """Bidirectional JSON message channel to the account feed"""

    async def connect(self):
        raise NotImplementedError

    async def send(self, message: Dict[str, Any]):
        raise NotImplementedError

    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class WebSocketFeedConnection(FeedConnection):
    def __init__(self, url: str, ping_interval: float = 20.0):
        self.url = url
        self.ping_interval = ping_interval
        self.ws = None

    async def connect(self):
        try:
            self.ws = await websockets.connect(
                self.url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_interval
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise FeedConnectionError(f"Failed to connect to {self.url}: {str(e)}") from e

    async def send(self, message: Dict[str, Any]):
        if self.ws is None:
            raise FeedConnectionError("Feed not connected")
        try:
            await self.ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise FeedConnectionError(f"Feed closed while sending: {str(e)}") from e

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        if self.ws is None:
            raise FeedConnectionError("Feed not connected")
        try:
            async for raw in self.ws:
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from account feed", message=str(raw)[:100])
        except websockets.exceptions.ConnectionClosed as e:
            raise FeedConnectionError(f"Feed connection closed: {str(e)}") from e

    async def close(self):
        if self.ws is not None:
            await self.ws.close()
            self.ws = None


class AccountFeedMonitor:
    """Tracks accounts over the push feed and serves their latest parsed snapshots"""

    def __init__(self, connection_factory: Callable[[], FeedConnection], parser: PositionParser,
                 config: Optional[FeedConfig] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 error_collector: Optional[ErrorCollector] = None):
        self.connection_factory = connection_factory
        self.parser = parser
        self.config = config or FeedConfig()
        self.clock = clock
        self.error_collector = error_collector or ErrorCollector()

        self.accounts: Set[str] = set()
        self.snapshots: Dict[str, Tuple[PositionSnapshot, datetime]] = {}
        self.subscriptions: Dict[str, int] = {}
        self.subscription_accounts: Dict[int, str] = {}
        self.pending_requests: Dict[int, str] = {}

        self.connection: Optional[FeedConnection] = None
        self.is_running = False
        self.is_connected = False
        self.reconnect_count = 0
        self.consecutive_failures = 0
        self._request_id = 0
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self.is_running:
            logger.warning("Account feed monitor already running")
            return
        self.is_running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Account feed monitor started", accounts=len(self.accounts))

    async def stop(self):
        if not self.is_running:
            return
        self.is_running = False

        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        await self._close_connection()
        logger.info("Account feed monitor stopped")

    async def _run(self):
        while self.is_running:
            connected_at = None
            try:
                await self._connect()
                connected_at = self.clock()
                await self._consume()
            except FeedConnectionError as e:
                self.error_collector.record_error(e, {"operation": "account_feed"})
            except Exception as e:
                logger.error("Error in account feed loop", error=str(e))
            finally:
                self.is_connected = False

            if self.is_running:
                self.reconnect_count += 1
                delay = self._backoff_after_disconnect(connected_at)
                await self._close_connection()
                logger.warning("Account feed disconnected, reconnecting",
                               reconnects=self.reconnect_count,
                               consecutive_failures=self.consecutive_failures,
                               delay_seconds=round(delay, 2))
                await asyncio.sleep(delay)

    def _backoff_after_disconnect(self, connected_at: Optional[datetime]) -> float:
        """Count the dropped session and return the delay before redialing"""
        if connected_at is not None:
            uptime = (self.clock() - connected_at).total_seconds()
            if uptime >= self.config.reconnect_stable_seconds:
                self.consecutive_failures = 0
        self.consecutive_failures += 1
        return self.reconnect_delay(self.consecutive_failures)

    def reconnect_delay(self, failures: int) -> float:
        """Exponential delay for the n-th consecutive failure, jittered and capped"""
        exponent = min(max(failures - 1, 0), 32)
        delay = self.config.reconnect_base_delay_seconds * 2 ** exponent
        delay += random.uniform(0, self.config.reconnect_jitter_seconds)
        return min(delay, self.config.reconnect_max_delay_seconds)

    async def _connect(self):
        """Open a connection with backoff, then restore every subscription"""
        async for attempt in AsyncRetrying(
            wait=wait_exponential_jitter(
                initial=self.config.reconnect_base_delay_seconds,
                max=self.config.reconnect_max_delay_seconds
            ),
            retry=retry_if_exception_type(FeedConnectionError),
            before_sleep=lambda state: logger.info(
                "Feed reconnection attempt failed",
                attempt=state.attempt_number,
                next_delay_seconds=round(state.next_action.sleep, 2) if state.next_action else None
            ),
            reraise=True
        ):
            with attempt:
                connection = self.connection_factory()
                await connection.connect()

        self.connection = connection
        self.subscriptions.clear()
        self.subscription_accounts.clear()
        self.pending_requests.clear()

        for account_id in sorted(self.accounts):
            await self._subscribe(account_id)

        self.is_connected = True
        logger.info("Connected to account feed", subscriptions=len(self.accounts))

    async def _consume(self):
        async for message in self.connection.messages():
            self.handle_message(message)
        if self.is_running:
            raise FeedConnectionError("Account feed stream ended")

    async def _close_connection(self):
        if self.connection is None:
            return
        try:
            await self.connection.close()
        except Exception as e:
            logger.warning("Error closing account feed connection", error=str(e))
        self.connection = None

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _subscribe(self, account_id: str):
        request_id = self._next_request_id()
        self.pending_requests[request_id] = account_id
        await self.connection.send({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "accountSubscribe",
            "params": [
                account_id,
                {"encoding": self.config.encoding, "commitment": self.config.commitment}
            ]
        })

    async def add_account(self, account_id: str):
        if account_id in self.accounts:
            return
        self.accounts.add(account_id)
        if self.is_connected and self.connection is not None:
            try:
                await self._subscribe(account_id)
            except FeedConnectionError as e:
                # The reconnect path re-subscribes every tracked account
                self.error_collector.record_error(e, {"operation": "feed_subscribe", "account_id": account_id})
        logger.info("Account added to feed", account_id=account_id)

    async def remove_account(self, account_id: str):
        if account_id not in self.accounts:
            return
        self.accounts.discard(account_id)
        self.snapshots.pop(account_id, None)

        subscription_id = self.subscriptions.pop(account_id, None)
        if subscription_id is not None:
            self.subscription_accounts.pop(subscription_id, None)
            if self.is_connected and self.connection is not None:
                try:
                    await self.connection.send({
                        "jsonrpc": "2.0",
                        "id": self._next_request_id(),
                        "method": "accountUnsubscribe",
                        "params": [subscription_id]
                    })
                except FeedConnectionError as e:
                    self.error_collector.record_error(e, {"operation": "feed_unsubscribe", "account_id": account_id})
        logger.info("Account removed from feed", account_id=account_id)

    def handle_message(self, message: Dict[str, Any]):
        if "error" in message:
            logger.warning("Account feed returned an error", error=message.get("error"), request_id=message.get("id"))
            self.pending_requests.pop(message.get("id"), None)
            return

        if message.get("id") is not None and "result" in message:
            account_id = self.pending_requests.pop(message["id"], None)
            if account_id is not None and account_id in self.accounts:
                self.subscriptions[account_id] = message["result"]
                self.subscription_accounts[message["result"]] = account_id
            return

        if message.get("method") == "accountNotification":
            self._handle_account_notification(message.get("params") or {})

    def _handle_account_notification(self, params: Dict[str, Any]):
        result = params.get("result") or {}
        value = result.get("value") or {}
        account_id = value.get("pubkey") or self.subscription_accounts.get(params.get("subscription"))
        if account_id is None or account_id not in self.accounts:
            return

        account = value.get("account", value)
        data = account.get("data")
        if isinstance(data, list):
            data = data[0] if data else ""

        try:
            update = RawAccountUpdate(
                account_id=account_id,
                data=data or "",
                lamports=account.get("lamports", 0),
                owner=account.get("owner"),
                slot=(result.get("context") or {}).get("slot", 0),
                received_at=self.clock()
            )
            snapshot = self.parser(update)
        except Exception as e:
            self.error_collector.record_error(e, {"operation": "feed_parse", "account_id": account_id})
            return

        self.snapshots[account_id] = (snapshot, self.clock())
        logger.debug("Account update", account_id=account_id, slot=update.slot)

    def get_snapshot(self, account_id: str) -> Optional[PositionSnapshot]:
        """Latest parsed snapshot, or None when absent or too old to trust"""
        entry = self.snapshots.get(account_id)
        if entry is None:
            return None
        snapshot, received_at = entry
        if (self.clock() - received_at).total_seconds() > self.config.snapshot_max_age_seconds:
            return None
        return snapshot
