import io
import struct

import pytest
from pymongo.errors import PyMongoError

from models.errors import (
    ArchiveRule,
    ArchiveViolationError,
    BlockedExtensionError,
    DisguisedFileError,
    FileTooLargeError,
    InvalidUploadError,
    StorageError,
    UploadAbortedError,
)
from models.schemas import AuditAction, AuditOutcome
from tests.factories import MB, PDF_BYTES, PNG_BYTES, SHELL_BYTES, make_zip
from workflows.upload_validation import UploadState, UploadValidationPipeline


class UnseekableStream:
    def __init__(self, data: bytes) -> None:
        self._buffer = io.BytesIO(data)

    def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)

    def seekable(self) -> bool:
        return False


class DroppedConnection(io.BytesIO):
    def read(self, *args):
        raise OSError("client disconnected")


def actions(events):
    return [(event.action, event.outcome) for event in events]


def stored_files(root):
    return [path for path in root.rglob("*") if path.is_file()] if root.exists() else []


async def test_clean_file_is_stored_and_round_trips(pipeline, storage, space, audit_events):
    created, admin = space

    run = await pipeline.process(created.id, admin.id, "report.pdf", "application/pdf", io.BytesIO(PDF_BYTES))

    assert run.stored
    assert run.history == [
        UploadState.RECEIVED,
        UploadState.EXTENSION_CHECKED,
        UploadState.CONTENT_SNIFFED,
        UploadState.STORED,
    ]
    assert run.record.sniffed_content_type == "application/pdf"

    _, path = await storage.open_for_download(run.record.id)
    assert path.read_bytes() == PDF_BYTES
    assert (AuditAction.UPLOAD, AuditOutcome.ALLOWED) in actions(audit_events)


async def test_blocked_extension_fails_fast(pipeline, policy, space, audit_events, upload_dir, monkeypatch):
    created, admin = space
    await policy.toggle_fixed(created.id, "bat", admin.id)
    audit_events.clear()

    def sniff_must_not_run(*args, **kwargs):
        raise AssertionError("content sniffing ran after a stage 1 rejection")

    monkeypatch.setattr(pipeline.sniffer, "sniff", sniff_must_not_run)

    with pytest.raises(BlockedExtensionError) as exc_info:
        await pipeline.upload(created.id, admin.id, "cleanup.bat", "text/plain", io.BytesIO(b"just some text\n"))

    assert exc_info.value.extension == "bat"
    assert actions(audit_events) == [
        (AuditAction.RECEIVE, AuditOutcome.ALLOWED),
        (AuditAction.EXTENSION_CHECK, AuditOutcome.BLOCKED),
    ]
    assert stored_files(upload_dir) == []


async def test_inactive_fixed_extension_is_not_blocked(pipeline, space):
    created, admin = space

    record = await pipeline.upload(created.id, admin.id, "cleanup.bat", "text/plain", io.BytesIO(b"just some text\n"))

    assert record.extension == "bat"


async def test_custom_extension_is_blocked(pipeline, policy, space):
    created, admin = space
    await policy.add_custom(created.id, "sh", admin.id)

    with pytest.raises(BlockedExtensionError):
        await pipeline.upload(created.id, admin.id, "deploy.SH", None, io.BytesIO(b"echo hi\n"))


async def test_shell_script_named_txt_is_rejected_at_sniffing(pipeline, space, audit_events, upload_dir):
    created, admin = space

    run = await pipeline.process(created.id, admin.id, "shell.txt", "text/plain", io.BytesIO(SHELL_BYTES))

    assert run.state is UploadState.REJECTED
    assert isinstance(run.rejection, DisguisedFileError)
    assert run.history[-2] is UploadState.EXTENSION_CHECKED
    assert (AuditAction.CONTENT_SNIFF, AuditOutcome.BLOCKED) in actions(audit_events)
    assert AuditAction.ARCHIVE_INSPECTION not in [event.action for event in audit_events]
    assert stored_files(upload_dir) == []


async def test_zip_bomb_is_rejected(pipeline, space, upload_dir):
    created, admin = space
    data = make_zip({"payload.bin": b"\x00" * 1024})
    start = data.index(b"PK\x01\x02") + 24
    bomb = data[:start] + struct.pack("<I", 1024 * MB) + data[start + 4:]

    with pytest.raises(ArchiveViolationError) as exc_info:
        await pipeline.upload(created.id, admin.id, "photos.zip", "application/zip", io.BytesIO(bomb))

    assert exc_info.value.rule is ArchiveRule.SIZE_EXCEEDED
    assert stored_files(upload_dir) == []


async def test_archive_with_blocked_entry_is_rejected(pipeline, policy, space):
    created, admin = space
    await policy.toggle_fixed(created.id, "exe", admin.id)
    data = make_zip({"readme.txt": b"hi", "bin/setup.exe": b"not really a binary"})

    with pytest.raises(ArchiveViolationError) as exc_info:
        await pipeline.upload(created.id, admin.id, "bundle.zip", "application/zip", io.BytesIO(data))

    assert exc_info.value.rule is ArchiveRule.ENTRY_BLOCKED
    assert exc_info.value.entry_name == "bin/setup.exe"


async def test_clean_archive_goes_through_inspection(pipeline, space, audit_events):
    created, admin = space
    data = make_zip({"docs/report.pdf": PDF_BYTES, "logo.png": PNG_BYTES})

    run = await pipeline.process(created.id, admin.id, "bundle.zip", "application/zip", io.BytesIO(data))

    assert run.stored
    assert UploadState.ARCHIVE_INSPECTED in run.history
    assert run.verdict.entries_checked == 2
    assert (AuditAction.ARCHIVE_INSPECTION, AuditOutcome.ALLOWED) in actions(audit_events)


async def test_empty_and_nameless_uploads(pipeline, space):
    created, admin = space

    with pytest.raises(InvalidUploadError):
        await pipeline.upload(created.id, admin.id, "empty.txt", "text/plain", io.BytesIO(b""))
    with pytest.raises(InvalidUploadError):
        await pipeline.upload(created.id, admin.id, "  ", "text/plain", io.BytesIO(b"data"))


async def test_size_limit_is_checked_after_extension(policy, sniffer, inspector, storage, audit, space):
    created, admin = space
    small = UploadValidationPipeline(policy, sniffer, inspector, storage, audit, max_upload_size=16)
    await policy.add_custom(created.id, "sh", admin.id)
    oversized = b"x" * 64

    with pytest.raises(BlockedExtensionError):
        await small.upload(created.id, admin.id, "big.sh", None, io.BytesIO(oversized))
    with pytest.raises(FileTooLargeError):
        await small.upload(created.id, admin.id, "big.txt", None, io.BytesIO(oversized))


async def test_policy_snapshot_is_used_for_the_whole_run(pipeline, policy, space, monkeypatch):
    created, admin = space
    original = pipeline._sniff_content

    async def admin_edits_mid_upload(run):
        await policy.add_custom(created.id, "pdf", admin.id)
        await original(run)

    monkeypatch.setattr(pipeline, "_sniff_content", admin_edits_mid_upload)

    run = await pipeline.process(created.id, admin.id, "report.pdf", "application/pdf", io.BytesIO(PDF_BYTES))

    assert run.stored
    assert "pdf" not in run.blocked_extensions
    assert "pdf" in await policy.resolve(created.id)


async def test_unseekable_stream_is_spooled(pipeline, space, storage):
    created, admin = space

    record = await pipeline.upload(created.id, admin.id, "report.pdf", None, UnseekableStream(PDF_BYTES))

    _, path = await storage.open_for_download(record.id)
    assert path.read_bytes() == PDF_BYTES


async def test_dropped_stream_aborts_without_storing(pipeline, space, upload_dir, monkeypatch):
    created, admin = space

    async def commit_must_not_run(*args, **kwargs):
        raise AssertionError("storage was invoked for an aborted upload")

    monkeypatch.setattr(pipeline.committer, "commit", commit_must_not_run)

    with pytest.raises(UploadAbortedError) as exc_info:
        await pipeline.upload(created.id, admin.id, "report.pdf", None, DroppedConnection(PDF_BYTES))

    assert exc_info.value.stage == AuditAction.CONTENT_SNIFF.value
    assert stored_files(upload_dir) == []


async def test_storage_failure_is_reported_without_orphans(pipeline, storage, space, audit_events, upload_dir, monkeypatch):
    created, admin = space

    async def broken_insert(record):
        raise PyMongoError("write concern timeout")

    monkeypatch.setattr(storage.repository, "insert", broken_insert)

    run = await pipeline.process(created.id, admin.id, "report.pdf", "application/pdf", io.BytesIO(PDF_BYTES))

    assert run.state is UploadState.REJECTED
    assert isinstance(run.rejection, StorageError)
    assert audit_events[-1].action is AuditAction.UPLOAD
    assert audit_events[-1].outcome is AuditOutcome.ERROR
    assert stored_files(upload_dir) == []


async def test_audit_events_are_persisted(pipeline, db_manager, space):
    created, admin = space

    await pipeline.upload(created.id, admin.id, "report.pdf", "application/pdf", io.BytesIO(PDF_BYTES))

    recent = await db_manager.audit_log.recent(created.id, limit=10)
    assert {event.action for event in recent} >= {
        AuditAction.EXTENSION_CHECK,
        AuditAction.CONTENT_SNIFF,
        AuditAction.UPLOAD,
    }
