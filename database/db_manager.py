from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from config.settings import settings
from database.audit_log_table import AuditLogTableRepository
from database.blocked_extensions_table import BlockedExtensionsTableRepository
from database.members_table import MembersTableRepository
from database.spaces_table import SpacesTableRepository
from database.uploaded_files_table import UploadedFilesTableRepository
from utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    def __init__(self, client: Optional[Any] = None) -> None:
        """
        Args:
            client: Optional Motor-compatible client. When omitted a new
                ``AsyncIOMotorClient`` is opened from ``settings.MONGODB_URL``.
        """
        self.client: Optional[Any] = client
        self._owns_client = client is None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self.spaces: SpacesTableRepository
        self.members: MembersTableRepository
        self.blocked_extensions: BlockedExtensionsTableRepository
        self.uploaded_files: UploadedFilesTableRepository
        self.audit_log: AuditLogTableRepository
        self._connect()

    def _connect(self) -> None:
        """Initialize MongoDB connection and repositories."""
        try:
            if self.client is None:
                self.client = AsyncIOMotorClient(settings.MONGODB_URL)
            self.db = self.client[settings.MONGODB_DB_NAME]

            self.spaces = SpacesTableRepository(self.db[settings.MONGODB_SPACES_COLLECTION])
            self.members = MembersTableRepository(self.db[settings.MONGODB_MEMBERS_COLLECTION])
            self.blocked_extensions = BlockedExtensionsTableRepository(
                self.db[settings.MONGODB_BLOCKED_EXTENSIONS_COLLECTION]
            )
            self.uploaded_files = UploadedFilesTableRepository(
                self.db[settings.MONGODB_UPLOADED_FILES_COLLECTION]
            )
            self.audit_log = AuditLogTableRepository(self.db[settings.MONGODB_AUDIT_LOG_COLLECTION])

            logger.info("Connected to MongoDB: %s", settings.MONGODB_DB_NAME)
        except PyMongoError as exc:
            logger.error("Failed to connect to MongoDB: %s", exc)
            raise

    async def ensure_indexes(self) -> None:
        for repository in (
            self.spaces,
            self.members,
            self.blocked_extensions,
            self.uploaded_files,
            self.audit_log,
        ):
            await repository.ensure_indexes()
        logger.info("MongoDB indexes ensured")

    async def close(self) -> None:
        # an injected client belongs to the caller
        if self.client is not None and self._owns_client:
            self.client.close()
            logger.info("MongoDB connection closed")
