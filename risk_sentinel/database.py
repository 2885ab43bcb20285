import math
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
import structlog

from .config import Collections
from .error_handling import PersistenceError
from .models import Alert, MonitoredAccount, SnapshotRecord, StoredSnapshot

logger = structlog.get_logger()

# Stored in place of non-finite figures, which BSON consumers handle poorly
INFINITE_SENTINEL = 999.0


def sanitize_number(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        if math.isnan(value):
            return 0.0
        if math.isinf(value):
            return INFINITE_SENTINEL if value > 0 else -INFINITE_SENTINEL
    return value


def sanitize_document(document: Dict[str, Any]) -> Dict[str, Any]:
    return {key: sanitize_number(value) for key, value in document.items()}


class RiskStore:
    """Durable storage contract consulted and written by the monitoring cycle"""

    async def get_active_accounts(self) -> List[MonitoredAccount]:
        raise NotImplementedError

    async def get_latest_snapshot(self, account_id: str) -> Optional[StoredSnapshot]:
        raise NotImplementedError

    async def save_snapshots(self, records: List[SnapshotRecord]):
        raise NotImplementedError

    async def save_alert(self, alert: Alert):
        raise NotImplementedError

    async def update_alert_status(self, alert: Alert):
        raise NotImplementedError

    async def add_account(self, account_id: str):
        raise NotImplementedError

    async def remove_account(self, account_id: str):
        raise NotImplementedError


class MongoRiskStore(RiskStore):
    def __init__(self, uri: Optional[str] = None, database_name: str = "risk_sentinel",
                 database: Optional[AsyncIOMotorDatabase] = None):
        self.uri = uri
        self.database_name = database_name
        self.mongo_client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = database

    async def connect(self):
        """Initialize the MongoDB connection and indexes"""
        try:
            self.mongo_client = AsyncIOMotorClient(
                self.uri,
                maxPoolSize=20,
                minPoolSize=2,
                maxIdleTimeMS=30000,
                serverSelectionTimeoutMS=5000,
                socketTimeoutMS=20000
            )
            self.database = self.mongo_client[self.database_name]

            await self.mongo_client.admin.command('ping')
            logger.info("Connected to MongoDB", database=self.database_name)

            await self._create_indexes()
        except Exception as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    async def disconnect(self):
        if self.mongo_client:
            self.mongo_client.close()
            self.mongo_client = None
            logger.info("Disconnected from MongoDB")

    async def _create_indexes(self):
        try:
            await self.database[Collections.ACCOUNTS].create_indexes([
                IndexModel([("account_id", ASCENDING)], unique=True),
                IndexModel([("is_active", ASCENDING)]),
            ])
            await self.database[Collections.SNAPSHOTS].create_indexes([
                IndexModel([("account_id", ASCENDING), ("created_at", DESCENDING)]),
                IndexModel([("cycle_id", ASCENDING)]),
                IndexModel([("risk_score", DESCENDING)]),
            ])
            await self.database[Collections.ALERTS].create_indexes([
                IndexModel([("id", ASCENDING)], unique=True),
                IndexModel([("account_id", ASCENDING), ("status", ASCENDING)]),
                IndexModel([("created_at", DESCENDING)]),
            ])
            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    def get_collection(self, collection_name: str):
        if self.database is None:
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def health_check(self) -> dict:
        health = {"status": "disconnected", "latency_ms": None}
        if not self.mongo_client:
            return health
        try:
            start_time = time.time()
            await self.mongo_client.admin.command('ping')
            latency = (time.time() - start_time) * 1000
            health = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["error"] = str(e)
        return health

    async def get_active_accounts(self) -> List[MonitoredAccount]:
        try:
            cursor = self.get_collection(Collections.ACCOUNTS).find({"is_active": True}, {"_id": 0})
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load monitored accounts: {str(e)}") from e
        return [MonitoredAccount(account_id=doc["account_id"], is_active=doc.get("is_active", True))
                for doc in documents]

    async def get_latest_snapshot(self, account_id: str) -> Optional[StoredSnapshot]:
        try:
            document = await self.get_collection(Collections.SNAPSHOTS).find_one(
                {"account_id": account_id},
                {"_id": 0},
                sort=[("created_at", DESCENDING)]
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load snapshot for {account_id}: {str(e)}") from e

        if not document:
            return None
        return StoredSnapshot(
            account_id=document["account_id"],
            health_factor=document["health_factor"],
            collateral_value=document["collateral_value"],
            debt_value=document["debt_value"],
            leverage=document["leverage"],
            liquidation_price=document.get("liquidation_price", 0.0),
            oracle_price=document.get("oracle_price", 0.0),
            liquidation_threshold=document.get("liquidation_threshold"),
            created_at=document.get("created_at", datetime.utcnow())
        )

    async def save_snapshots(self, records: List[SnapshotRecord]):
        if not records:
            return
        documents = [sanitize_document(record.dict()) for record in records]
        try:
            await self.get_collection(Collections.SNAPSHOTS).insert_many(documents, ordered=False)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to store {len(documents)} snapshots: {str(e)}") from e

    async def save_alert(self, alert: Alert):
        try:
            await self.get_collection(Collections.ALERTS).insert_one(sanitize_document(alert.dict()))
        except PyMongoError as e:
            raise PersistenceError(f"Failed to store alert {alert.id}: {str(e)}") from e

    async def update_alert_status(self, alert: Alert):
        update = {
            "status": alert.status.value,
            "updated_at": alert.updated_at,
            "acknowledged_at": alert.acknowledged_at,
            "resolved_at": alert.resolved_at
        }
        try:
            await self.get_collection(Collections.ALERTS).update_one({"id": alert.id}, {"$set": update})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to update alert {alert.id}: {str(e)}") from e

    async def add_account(self, account_id: str):
        now = datetime.utcnow()
        try:
            await self.get_collection(Collections.ACCOUNTS).update_one(
                {"account_id": account_id},
                {"$set": {"is_active": True, "updated_at": now}, "$setOnInsert": {"created_at": now}},
                upsert=True
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to add account {account_id}: {str(e)}") from e

    async def remove_account(self, account_id: str):
        try:
            await self.get_collection(Collections.ACCOUNTS).update_one(
                {"account_id": account_id},
                {"$set": {"is_active": False, "updated_at": datetime.utcnow()}}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to remove account {account_id}: {str(e)}") from e
