from typing import List

import pytest
from mongomock_motor import AsyncMongoMockClient

from database.db_manager import DatabaseManager
from models.schemas import AuditEvent
from processors.archive_processor import ArchiveInspector, InspectionLimits
from services.audit import AuditEmitter
from services.extension_policy import ExtensionPolicyService
from services.mime_sniffing import ContentSniffer
from services.space_service import SpaceService
from services.storage import StorageCommitter
from tests.factories import MB
from workflows.upload_validation import UploadValidationPipeline


@pytest.fixture
def db_manager():
    return DatabaseManager(client=AsyncMongoMockClient())


@pytest.fixture
def audit_events() -> List[AuditEvent]:
    return []


@pytest.fixture
def audit(db_manager, audit_events):
    emitter = AuditEmitter(db_manager.audit_log)
    emitter.subscribe(audit_events.append)
    return emitter


@pytest.fixture
def policy(db_manager, audit):
    return ExtensionPolicyService(db_manager.blocked_extensions, audit)


@pytest.fixture
def spaces(db_manager, policy):
    return SpaceService(db_manager.spaces, db_manager.members, policy)


@pytest.fixture
def sniffer():
    return ContentSniffer()


@pytest.fixture
def limits():
    return InspectionLimits(max_decompressed_bytes=10 * MB, max_depth=2, max_entries=1000)


@pytest.fixture
def inspector(sniffer, limits):
    return ArchiveInspector(sniffer, limits)


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def storage(db_manager, audit, upload_dir):
    return StorageCommitter(db_manager.uploaded_files, audit, upload_directory=str(upload_dir))


@pytest.fixture
def pipeline(policy, sniffer, inspector, storage, audit):
    return UploadValidationPipeline(policy, sniffer, inspector, storage, audit)


@pytest.fixture
async def space(db_manager, spaces):
    await db_manager.ensure_indexes()
    created, admin, _ = await spaces.create_space_with_admin("Research", "shared drive", "alice")
    return created, admin
