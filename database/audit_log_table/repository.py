from typing import List

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from models.schemas import AuditEvent
from utils.logger import get_logger

logger = get_logger(__name__)


class AuditLogTableRepository:
    """Append-only store for audit events."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("space_id", 1), ("timestamp", -1)])

    async def append(self, event: AuditEvent) -> None:
        try:
            await self.collection.insert_one(event.to_document())
        except PyMongoError as exc:
            logger.error("Error appending audit event: %s", exc)
            raise

    async def recent(self, space_id: str, limit: int = 100) -> List[AuditEvent]:
        try:
            cursor = self.collection.find({"space_id": space_id}, {"_id": 0}).sort("timestamp", -1).limit(limit)
            documents = await cursor.to_list(length=limit)
            return [AuditEvent(**document) for document in documents]
        except PyMongoError as exc:
            logger.error("Error reading audit log for space %s: %s", space_id, exc)
            raise
