import asyncio
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, AsyncIterator, FrozenSet, List, Optional

from config.settings import settings
from models.errors import (
    BlockedExtensionError,
    FileTooLargeError,
    GatewayError,
    InvalidUploadError,
    StorageError,
    UploadAbortedError,
)
from models.schemas import AuditAction, AuditOutcome, UploadedFile
from processors.archive_processor import ArchiveInspector, ArchiveVerdict
from services.audit import AuditEmitter
from services.extension_policy import ExtensionPolicyService
from services.mime_sniffing import ContentSniffer, SniffResult, extract_extension
from services.storage import StorageCommitter
from utils.logger import get_logger

logger = get_logger(__name__)


class UploadState(str, Enum):
    RECEIVED = "received"
    EXTENSION_CHECKED = "extension_checked"
    CONTENT_SNIFFED = "content_sniffed"
    ARCHIVE_INSPECTED = "archive_inspected"
    STORED = "stored"
    REJECTED = "rejected"


@dataclass
class UploadRun:
    """Everything one pass through the pipeline learns about an upload."""

    space_id: str
    uploader_id: str
    filename: str
    declared_content_type: Optional[str]
    stream: IO[bytes]
    state: UploadState = UploadState.RECEIVED
    history: List[UploadState] = field(default_factory=lambda: [UploadState.RECEIVED])
    size: int = 0
    extension: str = ""
    blocked_extensions: FrozenSet[str] = frozenset()
    sniff: Optional[SniffResult] = None
    verdict: Optional[ArchiveVerdict] = None
    record: Optional[UploadedFile] = None
    rejection: Optional[GatewayError] = None

    def advance(self, state: UploadState) -> None:
        self.state = state
        self.history.append(state)

    def reject(self, error: GatewayError) -> None:
        self.rejection = error
        self.advance(UploadState.REJECTED)

    @property
    def stored(self) -> bool:
        return self.state is UploadState.STORED


class UploadValidationPipeline:
    """
    Runs an upload through extension check, content sniffing and (for
    containers) archive inspection, then hands it to the storage committer.

    The first failing stage rejects the upload and nothing after it runs. The
    space's blocked extensions are resolved once when the run starts and that
    snapshot is used by every later stage.
    """

    def __init__(
        self,
        policy: ExtensionPolicyService,
        sniffer: ContentSniffer,
        inspector: ArchiveInspector,
        committer: StorageCommitter,
        audit: AuditEmitter,
        max_upload_size: Optional[int] = None,
    ) -> None:
        self.policy = policy
        self.sniffer = sniffer
        self.inspector = inspector
        self.committer = committer
        self.audit = audit
        self.max_upload_size = max_upload_size if max_upload_size is not None else settings.MAX_UPLOAD_SIZE

    async def upload(
        self,
        space_id: str,
        uploader_id: str,
        filename: str,
        declared_content_type: Optional[str],
        stream: IO[bytes],
    ) -> UploadedFile:
        """Validate and store one file, raising the rejection on failure."""
        run = await self.process(space_id, uploader_id, filename, declared_content_type, stream)
        if run.rejection is not None:
            raise run.rejection
        return run.record

    async def process(
        self,
        space_id: str,
        uploader_id: str,
        filename: str,
        declared_content_type: Optional[str],
        stream: IO[bytes],
    ) -> UploadRun:
        run = UploadRun(
            space_id=space_id,
            uploader_id=uploader_id,
            filename=(filename or "").strip(),
            declared_content_type=declared_content_type,
            stream=stream,
        )

        try:
            await self._receive(run)
            await self._check_extension(run)
            await self._sniff_content(run)
            if run.sniff.is_container:
                await self._inspect_archive(run)
            else:
                logger.debug("Skipping archive inspection for %s (%s)", run.filename, run.sniff.detected_label)
            await self._store(run)
        except GatewayError as exc:
            run.reject(exc)
            logger.warning(
                "Upload rejected | space: %s | file: %s | %s: %s",
                space_id,
                run.filename,
                exc.code,
                exc.message,
            )

        return run

    # -- Stage plumbing ------------------------------------------------------

    async def _emit(self, run: UploadRun, action: AuditAction, outcome: AuditOutcome, detail: Optional[str] = None) -> None:
        await self.audit.emit(
            action,
            outcome,
            space_id=run.space_id,
            actor_id=run.uploader_id,
            file_name=run.filename,
            extension=run.extension or None,
            detail=detail,
        )

    @asynccontextmanager
    async def _stage(self, run: UploadRun, action: AuditAction) -> AsyncIterator[None]:
        """Audit one stage: blocked on a rejection, error on a broken stream, allowed otherwise."""
        try:
            yield
        except GatewayError as exc:
            await self._emit(run, action, AuditOutcome.BLOCKED, f"{exc.code}: {exc.message}")
            raise
        except OSError as exc:
            logger.error("Stream failure during %s for %s: %s", action.value, run.filename, exc)
            await self._emit(run, action, AuditOutcome.ERROR, str(exc))
            raise UploadAbortedError(action.value) from exc
        await self._emit(run, action, AuditOutcome.ALLOWED)

    def _spool(self, stream: IO[bytes]) -> IO[bytes]:
        limit = self.max_upload_size + 1
        spool = tempfile.SpooledTemporaryFile(max_size=1024 * 1024)
        copied = 0
        while copied < limit:
            chunk = stream.read(min(64 * 1024, limit - copied))
            if not chunk:
                break
            spool.write(chunk)
            copied += len(chunk)
        spool.seek(0)
        return spool

    def _measure(self, stream: IO[bytes]) -> int:
        stream.seek(0, 2)
        size = stream.tell()
        stream.seek(0)
        return size

    def _read_header(self, stream: IO[bytes]) -> bytes:
        stream.seek(0)
        header = stream.read(self.sniffer.window)
        stream.seek(0)
        return header

    # -- Stages --------------------------------------------------------------

    async def _receive(self, run: UploadRun) -> None:
        async with self._stage(run, AuditAction.RECEIVE):
            if not run.filename:
                raise InvalidUploadError("A file name is required")

            seekable = getattr(run.stream, "seekable", None)
            if seekable is None or not seekable():
                run.stream = await asyncio.to_thread(self._spool, run.stream)

            run.size = await asyncio.to_thread(self._measure, run.stream)
            if run.size == 0:
                raise InvalidUploadError("Uploaded file is empty")

        logger.info("Upload received | space: %s | file: %s | size: %d", run.space_id, run.filename, run.size)

    async def _check_extension(self, run: UploadRun) -> None:
        async with self._stage(run, AuditAction.EXTENSION_CHECK):
            run.blocked_extensions = await self.policy.resolve(run.space_id)
            run.extension = extract_extension(run.filename)

            if run.extension and run.extension in run.blocked_extensions:
                raise BlockedExtensionError(run.extension)
            if run.size > self.max_upload_size:
                raise FileTooLargeError(f"File exceeds the {self.max_upload_size} byte upload limit")

        run.advance(UploadState.EXTENSION_CHECKED)

    async def _sniff_content(self, run: UploadRun) -> None:
        async with self._stage(run, AuditAction.CONTENT_SNIFF):
            header = await asyncio.to_thread(self._read_header, run.stream)
            run.sniff = self.sniffer.sniff(
                run.filename,
                run.declared_content_type,
                header,
                run.blocked_extensions,
            )
            self.sniffer.enforce(run.sniff)

        run.advance(UploadState.CONTENT_SNIFFED)

    async def _inspect_archive(self, run: UploadRun) -> None:
        async with self._stage(run, AuditAction.ARCHIVE_INSPECTION):
            run.verdict = await asyncio.to_thread(
                self.inspector.inspect,
                run.stream,
                run.blocked_extensions,
                run.filename,
                run.sniff.detected_signature,
            )
            run.verdict.raise_for_violation()

        run.advance(UploadState.ARCHIVE_INSPECTED)

    async def _store(self, run: UploadRun) -> None:
        try:
            run.record = await self.committer.commit(
                run.space_id,
                run.uploader_id,
                run.filename,
                run.stream,
                extension=run.extension,
                declared_content_type=run.declared_content_type,
                sniffed_content_type=run.sniff.content_type,
            )
        except StorageError as exc:
            await self._emit(run, AuditAction.UPLOAD, AuditOutcome.ERROR, exc.message)
            raise

        run.advance(UploadState.STORED)
        await self._emit(run, AuditAction.UPLOAD, AuditOutcome.ALLOWED, f"stored as {run.record.id}")
