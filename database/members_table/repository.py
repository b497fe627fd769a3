from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError, PyMongoError

from models.errors import DuplicateError
from models.schemas import Member
from utils.logger import get_logger

logger = get_logger(__name__)


class MembersTableRepository:
    """Data access layer for the members collection."""

    def __init__(self, collection: AsyncIOMotorCollection) -> None:
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("space_id", 1), ("username", 1)], unique=True)

    async def insert(self, member: Member) -> Member:
        try:
            await self.collection.insert_one(member.to_document())
            logger.info("Created member %s in space %s as %s", member.username, member.space_id, member.role.value)
            return member
        except DuplicateKeyError as exc:
            raise DuplicateError(f"Username already exists in this space: {member.username}") from exc
        except PyMongoError as exc:
            logger.error("Error creating member: %s", exc)
            raise

    async def get(self, member_id: str) -> Optional[Member]:
        try:
            document = await self.collection.find_one({"_id": member_id})
            return Member.from_document(document) if document else None
        except PyMongoError as exc:
            logger.error("Error fetching member %s: %s", member_id, exc)
            raise

    async def exists_by_username(self, space_id: str, username: str) -> bool:
        try:
            document = await self.collection.find_one({"space_id": space_id, "username": username}, {"_id": 1})
            return document is not None
        except PyMongoError as exc:
            logger.error("Error checking username: %s", exc)
            raise

    async def list_by_space(self, space_id: str) -> List[Member]:
        try:
            documents = await self.collection.find({"space_id": space_id}).to_list(length=None)
            return [Member.from_document(document) for document in documents]
        except PyMongoError as exc:
            logger.error("Error listing members for space %s: %s", space_id, exc)
            raise
