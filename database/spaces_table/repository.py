from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from models.schemas import Space
from utils.logger import get_logger

logger = get_logger(__name__)


class SpacesTableRepository:
    """Data access layer for the spaces collection."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.collection.create_index("name")

    async def insert(self, space: Space) -> Space:
        try:
            await self.collection.insert_one(space.to_document())
            logger.info("Created space %s (%s)", space.id, space.name)
            return space
        except PyMongoError as exc:
            logger.error("Error creating space: %s", exc)
            raise

    async def get(self, space_id: str) -> Optional[Space]:
        """Return a live (not soft-deleted) space."""
        try:
            document = await self.collection.find_one({"_id": space_id, "deleted": False})
            return Space.from_document(document) if document else None
        except PyMongoError as exc:
            logger.error("Error fetching space %s: %s", space_id, exc)
            raise

    async def exists_by_name(self, name: str) -> bool:
        try:
            document = await self.collection.find_one({"name": name, "deleted": False}, {"_id": 1})
            return document is not None
        except PyMongoError as exc:
            logger.error("Error checking space name: %s", exc)
            raise

    async def list_live(self) -> List[Space]:
        try:
            cursor = self.collection.find({"deleted": False}).sort("created_at", 1)
            documents = await cursor.to_list(length=None)
            return [Space.from_document(document) for document in documents]
        except PyMongoError as exc:
            logger.error("Error listing spaces: %s", exc)
            raise

    async def update_fields(self, space_id: str, fields: Dict[str, Any]) -> bool:
        try:
            fields = dict(fields, updated_at=datetime.now(timezone.utc))
            result = await self.collection.update_one(
                {"_id": space_id, "deleted": False},
                {"$set": fields},
            )
            return result.matched_count > 0
        except PyMongoError as exc:
            logger.error("Error updating space %s: %s", space_id, exc)
            raise
