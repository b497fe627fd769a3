from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from models.schemas import UploadedFile
from utils.logger import get_logger

logger = get_logger(__name__)


class UploadedFilesTableRepository:
    """Data access layer for uploaded file metadata."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.collection.create_index("stored_name", unique=True)
        await self.collection.create_index("space_id")

    async def insert(self, record: UploadedFile) -> UploadedFile:
        try:
            await self.collection.insert_one(record.to_document())
            logger.info("Stored metadata for file %s in space %s", record.id, record.space_id)
            return record
        except PyMongoError as exc:
            logger.error("Error storing file metadata: %s", exc)
            raise

    async def get(self, file_id: str) -> Optional[UploadedFile]:
        try:
            document = await self.collection.find_one({"_id": file_id})
            return UploadedFile.from_document(document) if document else None
        except PyMongoError as exc:
            logger.error("Error fetching file %s: %s", file_id, exc)
            raise

    async def list_by_space(self, space_id: str) -> List[UploadedFile]:
        try:
            cursor = self.collection.find({"space_id": space_id}).sort("created_at", -1)
            documents = await cursor.to_list(length=None)
            return [UploadedFile.from_document(document) for document in documents]
        except PyMongoError as exc:
            logger.error("Error listing files for space %s: %s", space_id, exc)
            raise

    async def count_by_space(self, space_id: str) -> int:
        try:
            return await self.collection.count_documents({"space_id": space_id})
        except PyMongoError as exc:
            logger.error("Error counting files for space %s: %s", space_id, exc)
            raise

    async def delete(self, file_id: str) -> bool:
        try:
            result = await self.collection.delete_one({"_id": file_id})
            return result.deleted_count > 0
        except PyMongoError as exc:
            logger.error("Error deleting file metadata %s: %s", file_id, exc)
            raise
