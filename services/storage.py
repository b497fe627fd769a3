import asyncio
import hashlib
import os
import re
import tempfile
from pathlib import Path
from typing import IO, List, Optional, Tuple
from uuid import uuid4

from pymongo.errors import PyMongoError

from config.settings import settings
from database.uploaded_files_table import UploadedFilesTableRepository
from models.errors import NotFoundError, StorageError
from models.schemas import AuditAction, AuditOutcome, UploadedFile
from services.audit import AuditEmitter
from utils.logger import get_logger

logger = get_logger(__name__)

_SAFE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class StorageCommitter:
    """
    Persists validated uploads to local disk under ``<root>/<space_id>/``.

    Blobs are written to a temporary file in the target directory, chmod-ed to
    the configured mode (never executable) and renamed into place. The blob
    and its metadata row are one unit: if either step fails or the caller is
    cancelled, whatever was written is removed again.
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(
        self,
        repository: UploadedFilesTableRepository,
        audit: AuditEmitter,
        *,
        upload_directory: Optional[str] = None,
        permission_mode: Optional[int] = None,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.root = Path(upload_directory or settings.UPLOAD_DIRECTORY).resolve()
        self.permission_mode = permission_mode if permission_mode is not None else settings.FILE_PERMISSION_MODE
        if self.permission_mode & 0o111:
            raise ValueError(f"Permission mode {oct(self.permission_mode)} grants an execute bit")

    # -- Paths ---------------------------------------------------------------

    def _space_directory(self, space_id: str) -> Path:
        if not _SAFE_SEGMENT_RE.match(space_id):
            raise StorageError(f"Space id cannot be used as a storage path: {space_id!r}")
        return self.root / space_id

    def _resolve(self, record: UploadedFile) -> Path:
        path = (self.root / record.storage_path).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Stored path escapes the upload root: {record.storage_path}")
        return path

    # -- Blocking helpers (run in a worker thread) ---------------------------

    def _write_blob(self, stream: IO[bytes], target: Path) -> Tuple[int, str]:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, partial = tempfile.mkstemp(dir=target.parent, prefix=".partial-")
        digest = hashlib.sha256()
        size = 0
        try:
            stream.seek(0)
            with os.fdopen(fd, "wb") as out:
                while True:
                    chunk = stream.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
                out.flush()
                os.fsync(out.fileno())
            os.chmod(partial, self.permission_mode)
            os.replace(partial, target)
        except BaseException:
            self._remove_blob(Path(partial))
            raise
        return size, digest.hexdigest()

    @staticmethod
    def _remove_blob(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def _rollback(self, write_task: "asyncio.Future", target: Path, record_id: Optional[str]) -> None:
        if not write_task.done():
            try:
                await write_task
            except Exception as exc:
                logger.debug("Blob write for %s ended with %s during rollback", target.name, exc)

        removed = await asyncio.to_thread(self._remove_blob, target)
        if removed:
            logger.info("Rolled back blob %s", target)

        if record_id is not None:
            try:
                await self.repository.delete(record_id)
            except PyMongoError as exc:
                logger.error("Failed to roll back metadata %s: %s", record_id, exc)

    # -- Operations ----------------------------------------------------------

    async def commit(
        self,
        space_id: str,
        uploader_id: str,
        original_name: str,
        stream: IO[bytes],
        *,
        extension: str = "",
        declared_content_type: Optional[str] = None,
        sniffed_content_type: Optional[str] = None,
    ) -> UploadedFile:
        stored_name = uuid4().hex
        target = self._space_directory(space_id) / stored_name
        write_task = asyncio.ensure_future(asyncio.to_thread(self._write_blob, stream, target))
        record_id: Optional[str] = None

        try:
            size, sha256 = await asyncio.shield(write_task)
            record = UploadedFile(
                space_id=space_id,
                uploader_id=uploader_id,
                original_name=original_name,
                stored_name=stored_name,
                extension=extension,
                declared_content_type=declared_content_type,
                sniffed_content_type=sniffed_content_type,
                size=size,
                sha256=sha256,
                storage_path=f"{space_id}/{stored_name}",
            )
            record_id = record.id
            await self.repository.insert(record)
        except asyncio.CancelledError:
            logger.warning("Commit of %s cancelled, rolling back", original_name)
            await self._rollback(write_task, target, record_id)
            raise
        except (OSError, PyMongoError) as exc:
            logger.error("Failed to store %s for space %s: %s", original_name, space_id, exc)
            await self._rollback(write_task, target, record_id)
            raise StorageError(f"Failed to store file: {exc}") from exc

        logger.info(
            "Stored %s as %s | space: %s | size: %d | mode: %s",
            original_name,
            record.storage_path,
            space_id,
            record.size,
            oct(self.permission_mode),
        )
        return record

    async def get(self, file_id: str) -> UploadedFile:
        record = await self.repository.get(file_id)
        if record is None:
            raise NotFoundError(f"File not found: {file_id}")
        return record

    async def list_files(self, space_id: str) -> List[UploadedFile]:
        return await self.repository.list_by_space(space_id)

    async def count_files(self, space_id: str) -> int:
        return await self.repository.count_by_space(space_id)

    async def open_for_download(self, file_id: str, actor_id: Optional[str] = None) -> Tuple[UploadedFile, Path]:
        """Return the record and the blob path; the bytes are served verbatim."""
        record = await self.get(file_id)
        path = self._resolve(record)
        if not path.is_file():
            logger.error("Blob missing for file %s at %s", file_id, path)
            raise NotFoundError(f"Stored content missing for file: {file_id}")

        await self.audit.emit(
            AuditAction.DOWNLOAD,
            AuditOutcome.ALLOWED,
            space_id=record.space_id,
            actor_id=actor_id,
            file_name=record.original_name,
            extension=record.extension,
        )
        return record, path

    async def delete(self, file_id: str, actor_id: Optional[str] = None) -> None:
        """Drop the metadata row, then the blob; a row never outlives its blob."""
        record = await self.get(file_id)
        path = self._resolve(record)

        try:
            deleted = await self.repository.delete(file_id)
        except PyMongoError as exc:
            raise StorageError(f"Failed to delete file metadata: {exc}") from exc
        if not deleted:
            raise NotFoundError(f"File not found: {file_id}")

        try:
            if not await asyncio.to_thread(self._remove_blob, path):
                logger.warning("Blob for file %s was already gone: %s", file_id, path)
        except OSError as exc:
            logger.error("Orphaned blob %s left behind for deleted file %s: %s", path, file_id, exc)

        logger.info("Deleted file %s (%s) from space %s", file_id, record.original_name, record.space_id)
        await self.audit.emit(
            AuditAction.DELETE,
            AuditOutcome.ALLOWED,
            space_id=record.space_id,
            actor_id=actor_id,
            file_name=record.original_name,
            extension=record.extension,
        )
