from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError, PyMongoError

from models.errors import DuplicateError
from models.schemas import ActivationState, BlockedExtension
from utils.logger import get_logger

logger = get_logger(__name__)


class BlockedExtensionsTableRepository:
    """Data access layer for the per-space blocked extension rows."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("space_id", 1), ("extension", 1)], unique=True)

    async def insert(self, row: BlockedExtension) -> BlockedExtension:
        try:
            await self.collection.insert_one(row.to_document())
            return row
        except DuplicateKeyError as exc:
            raise DuplicateError(f"Extension already registered: {row.extension}") from exc
        except PyMongoError as exc:
            logger.error("Error inserting blocked extension: %s", exc)
            raise

    async def insert_many(self, rows: List[BlockedExtension]) -> int:
        if not rows:
            return 0
        try:
            result = await self.collection.insert_many([row.to_document() for row in rows])
            return len(result.inserted_ids)
        except PyMongoError as exc:
            logger.error("Error seeding blocked extensions: %s", exc)
            raise

    async def get(self, blocked_id: str) -> Optional[BlockedExtension]:
        try:
            document = await self.collection.find_one({"_id": blocked_id})
            return BlockedExtension.from_document(document) if document else None
        except PyMongoError as exc:
            logger.error("Error fetching blocked extension %s: %s", blocked_id, exc)
            raise

    async def find(
        self,
        space_id: str,
        extension: str,
        fixed: Optional[bool] = None,
    ) -> Optional[BlockedExtension]:
        query: Dict[str, Any] = {"space_id": space_id, "extension": extension}
        if fixed is not None:
            query["fixed"] = fixed
        try:
            document = await self.collection.find_one(query)
            return BlockedExtension.from_document(document) if document else None
        except PyMongoError as exc:
            logger.error("Error looking up extension %s in space %s: %s", extension, space_id, exc)
            raise

    async def list_by_space(
        self,
        space_id: str,
        fixed: Optional[bool] = None,
        state: Optional[ActivationState] = None,
    ) -> List[BlockedExtension]:
        query: Dict[str, Any] = {"space_id": space_id}
        if fixed is not None:
            query["fixed"] = fixed
        if state is not None:
            query["state"] = state.value
        try:
            cursor = self.collection.find(query).sort("extension", 1)
            documents = await cursor.to_list(length=None)
            return [BlockedExtension.from_document(document) for document in documents]
        except PyMongoError as exc:
            logger.error("Error listing blocked extensions for space %s: %s", space_id, exc)
            raise

    async def count_custom(self, space_id: str) -> int:
        try:
            return await self.collection.count_documents({"space_id": space_id, "fixed": False})
        except PyMongoError as exc:
            logger.error("Error counting custom extensions for space %s: %s", space_id, exc)
            raise

    async def set_state(self, blocked_id: str, state: ActivationState, actor_id: Optional[str]) -> bool:
        try:
            result = await self.collection.update_one(
                {"_id": blocked_id},
                {
                    "$set": {
                        "state": state.value,
                        "updated_by": actor_id,
                        "updated_at": datetime.now(timezone.utc),
                    }
                },
            )
            return result.matched_count > 0
        except PyMongoError as exc:
            logger.error("Error updating state of %s: %s", blocked_id, exc)
            raise

    async def delete(self, blocked_id: str) -> bool:
        try:
            result = await self.collection.delete_one({"_id": blocked_id})
            return result.deleted_count > 0
        except PyMongoError as exc:
            logger.error("Error deleting blocked extension %s: %s", blocked_id, exc)
            raise
