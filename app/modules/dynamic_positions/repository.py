"""
Position State Store

MongoDB persistence for managed positions, the fill journal, the audit
trail and the monitoring state singleton. Every write accepts an optional
session so callers can group writes into one transaction.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from bson import Decimal128
from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from app.modules.dynamic_positions.models import (
    TERMINAL_PHASES,
    ActionAudit,
    MonitoringError,
    MonitoringSettings,
    MonitoringState,
    OrderFillEvent,
    PositionState,
    utc_now,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)

POSITIONS_COLLECTION = "position_states"
AUDIT_COLLECTION = "action_audit"
FILLS_COLLECTION = "order_fill_events"
MONITORING_COLLECTION = "monitoring_state"

MONITORING_STATE_ID = "monitoring_state"
MAX_BUFFERED_ERRORS = 100


class DuplicateFillEventError(Exception):
    """A fill for this order id is already journaled."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Fill already recorded for order {order_id}")


# ==================== BSON CONVERSION ====================

def to_bson(value: Any) -> Any:
    """Decimal to Decimal128 and enums to their values, recursively."""
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(v) for v in value]
    return value


def from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: from_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_bson(v) for v in value]
    return value


# ==================== COLLECTION REPOSITORY ====================

class CollectionRepository:
    """
    Thin session-aware wrapper over one collection.

    Provides the CRUD operations the store composes.
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str):
        """
        Initialize repository.

        Args:
            db: MongoDB database instance
            collection_name: Name of the collection
        """
        self.db = db
        self.collection_name = collection_name
        self.collection = db[collection_name]

    async def find_one(
        self,
        filter: Dict[str, Any],
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> Optional[Dict[str, Any]]:
        document = await self.collection.find_one(filter, session=session)
        return from_bson(document) if document else None

    async def find(
        self,
        filter: Dict[str, Any],
        sort: Optional[List[tuple]] = None,
        limit: int = 0,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> List[Dict[str, Any]]:
        """
        Find multiple documents.

        Args:
            filter: MongoDB filter dictionary
            sort: List of (field, direction) tuples for sorting
            limit: Maximum number of documents to return (0 = all)
            session: Optional client session

        Returns:
            List of decoded document dicts
        """
        cursor = self.collection.find(filter, session=session)
        if sort:
            cursor = cursor.sort(sort)
        if limit > 0:
            cursor = cursor.limit(limit)
        documents = await cursor.to_list(length=limit if limit > 0 else None)
        return [from_bson(d) for d in documents]

    async def count_documents(
        self,
        filter: Dict[str, Any],
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> int:
        return await self.collection.count_documents(filter, session=session)

    async def insert_one(
        self,
        document: Dict[str, Any],
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> Any:
        result = await self.collection.insert_one(to_bson(document), session=session)
        return result.inserted_id

    async def update_one(
        self,
        filter: Dict[str, Any],
        update: Dict[str, Any],
        upsert: bool = False,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> bool:
        """
        Update a single document.

        Returns:
            True if a document matched or was created
        """
        result = await self.collection.update_one(
            filter, to_bson(update), upsert=upsert, session=session
        )
        return result.matched_count > 0 or result.upserted_id is not None


# ==================== POSITION STATE STORE ====================

class PositionStateStore:
    """
    Persistence for the dynamic position system.

    Usage:
        store = PositionStateStore(db, use_transactions=True)
        await store.ensure_indexes()

        async with store.transaction() as session:
            await store.insert_position(position, session=session)
            await store.append_audit(audit, session=session)
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        use_transactions: bool = True,
        default_settings: Optional[MonitoringSettings] = None,
    ):
        self.db = db
        self.use_transactions = use_transactions
        self.default_settings = default_settings or MonitoringSettings()

        self.positions = CollectionRepository(db, POSITIONS_COLLECTION)
        self.audit = CollectionRepository(db, AUDIT_COLLECTION)
        self.fills = CollectionRepository(db, FILLS_COLLECTION)
        self.monitoring = CollectionRepository(db, MONITORING_COLLECTION)

        logger.info(f"PositionStateStore initialized (transactions={use_transactions})")

    async def ensure_indexes(self) -> None:
        await self.positions.collection.create_index([("phase", ASCENDING)])
        await self.positions.collection.create_index([("contract", ASCENDING)])
        await self.audit.collection.create_index(
            [("position_id", ASCENDING), ("timestamp", DESCENDING)]
        )
        await self.fills.collection.create_index(
            [("processed", ASCENDING), ("fill_time", ASCENDING)]
        )
        logger.info("Dynamic position indexes ensured")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """
        Multi-document transaction scope.

        Yields the session to pass to each write, or None when transactions
        are disabled (standalone servers) and writes run sequentially.
        """
        if not self.use_transactions:
            yield None
            return

        async with await self.db.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # ==================== POSITIONS ====================

    @staticmethod
    def _position_from_document(document: Dict[str, Any]) -> PositionState:
        document = dict(document)
        document["id"] = document.pop("_id")
        return PositionState.model_validate(document)

    async def insert_position(
        self,
        position: PositionState,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> None:
        document = position.model_dump()
        document["_id"] = document.pop("id")
        await self.positions.insert_one(document, session=session)

    async def get_position(
        self,
        position_id: str,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> Optional[PositionState]:
        document = await self.positions.find_one({"_id": position_id}, session=session)
        return self._position_from_document(document) if document else None

    async def list_active_positions(self) -> List[PositionState]:
        documents = await self.positions.find(
            {"phase": {"$nin": [p.value for p in TERMINAL_PHASES]}},
            sort=[("created_at", ASCENDING)],
        )
        return [self._position_from_document(d) for d in documents]

    async def count_active_positions(self) -> int:
        return await self.positions.count_documents(
            {"phase": {"$nin": [p.value for p in TERMINAL_PHASES]}}
        )

    async def count_terminal_positions(self) -> int:
        return await self.positions.count_documents(
            {"phase": {"$in": [p.value for p in TERMINAL_PHASES]}}
        )

    async def update_position(
        self,
        position_id: str,
        fields: Dict[str, Any],
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> bool:
        update = dict(fields)
        update["updated_at"] = utc_now()
        return await self.positions.update_one(
            {"_id": position_id}, {"$set": update}, session=session
        )

    # ==================== FILL JOURNAL ====================

    @staticmethod
    def _fill_from_document(document: Dict[str, Any]) -> OrderFillEvent:
        document = dict(document)
        document["order_id"] = document.pop("_id")
        return OrderFillEvent.model_validate(document)

    async def get_fill_event(
        self,
        order_id: str,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> Optional[OrderFillEvent]:
        document = await self.fills.find_one({"_id": order_id}, session=session)
        return self._fill_from_document(document) if document else None

    async def insert_fill_event(
        self,
        event: OrderFillEvent,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> None:
        """
        Journal a fill.

        Raises:
            DuplicateFillEventError: The order id is already journaled
        """
        document = event.model_dump()
        document["_id"] = document.pop("order_id")
        try:
            await self.fills.insert_one(document, session=session)
        except DuplicateKeyError:
            raise DuplicateFillEventError(event.order_id)

    async def list_unprocessed_fills(self, limit: int = 0) -> List[OrderFillEvent]:
        documents = await self.fills.find(
            {"processed": False},
            sort=[("fill_time", ASCENDING), ("recorded_at", ASCENDING)],
            limit=limit,
        )
        return [self._fill_from_document(d) for d in documents]

    async def count_unprocessed_fills(self) -> int:
        return await self.fills.count_documents({"processed": False})

    async def has_unprocessed_fills(self, position_id: str) -> bool:
        count = await self.fills.count_documents(
            {"position_id": position_id, "processed": False}
        )
        return count > 0

    async def mark_fill_processed(
        self,
        order_id: str,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> bool:
        return await self.fills.update_one(
            {"_id": order_id},
            {"$set": {"processed": True, "processed_at": utc_now()}},
            session=session,
        )

    # ==================== AUDIT ====================

    async def append_audit(
        self,
        audit: ActionAudit,
        session: Optional[AsyncIOMotorClientSession] = None
    ) -> None:
        document = audit.model_dump()
        document["_id"] = document.pop("id")
        await self.audit.insert_one(document, session=session)

    async def list_audit(self, position_id: str, limit: int = 100) -> List[ActionAudit]:
        documents = await self.audit.find(
            {"position_id": position_id},
            sort=[("timestamp", ASCENDING)],
            limit=limit,
        )
        audits = []
        for document in documents:
            document["id"] = document.pop("_id")
            audits.append(ActionAudit.model_validate(document))
        return audits

    # ==================== MONITORING STATE ====================

    async def get_monitoring_state(self) -> MonitoringState:
        """Load the singleton, creating it with default tunables on first use."""
        document = await self.monitoring.find_one({"_id": MONITORING_STATE_ID})
        if document is None:
            state = MonitoringState(settings=self.default_settings)
            seed = state.model_dump()
            seed["_id"] = MONITORING_STATE_ID
            try:
                await self.monitoring.insert_one(seed)
            except DuplicateKeyError:
                document = await self.monitoring.find_one({"_id": MONITORING_STATE_ID})
                return MonitoringState.model_validate(document)
            return state
        return MonitoringState.model_validate(document)

    async def update_monitoring_state(self, **fields: Any) -> None:
        await self.get_monitoring_state()
        await self.monitoring.update_one(
            {"_id": MONITORING_STATE_ID}, {"$set": fields}
        )

    async def set_monitoring_active(self, is_active: bool) -> None:
        await self.update_monitoring_state(is_active=is_active)

    async def record_check(self, tracked_position_ids: List[str], at: Optional[datetime] = None) -> None:
        await self.update_monitoring_state(
            last_check=at or utc_now(),
            tracked_position_ids=tracked_position_ids,
        )

    async def push_error(self, error: MonitoringError) -> None:
        """Append to the rolling error buffer, keeping the newest entries."""
        await self.get_monitoring_state()
        await self.monitoring.update_one(
            {"_id": MONITORING_STATE_ID},
            {
                "$push": {
                    "errors": {
                        "$each": [error.model_dump()],
                        "$slice": -MAX_BUFFERED_ERRORS,
                    }
                }
            },
        )

    async def recent_errors(self, limit: int = 20) -> List[MonitoringError]:
        state = await self.get_monitoring_state()
        return state.errors[-limit:] if limit > 0 else list(state.errors)
