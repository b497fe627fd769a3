from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Replace enum members with their values so BSON sees plain strings."""
    return {key: value.value if isinstance(value, Enum) else value for key, value in payload.items()}


class MemberRole(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class ActivationState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

    def toggled(self) -> "ActivationState":
        return ActivationState.INACTIVE if self is ActivationState.ACTIVE else ActivationState.ACTIVE


class AuditAction(str, Enum):
    RECEIVE = "upload.receive"
    EXTENSION_CHECK = "upload.extension_check"
    CONTENT_SNIFF = "upload.content_sniff"
    ARCHIVE_INSPECTION = "upload.archive_inspection"
    UPLOAD = "upload.store"
    DOWNLOAD = "file.download"
    DELETE = "file.delete"
    POLICY_SEEDED = "policy.seeded"
    POLICY_FIXED_TOGGLED = "policy.fixed_toggled"
    POLICY_CUSTOM_ADDED = "policy.custom_added"
    POLICY_CUSTOM_REMOVED = "policy.custom_removed"


class AuditOutcome(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    ERROR = "error"


class Document(BaseModel):
    """Base for records persisted in MongoDB; ``id`` maps to ``_id``."""

    id: str = Field(default_factory=_new_id)

    def to_document(self) -> Dict[str, Any]:
        payload = _plain(self.model_dump(mode="python"))
        payload["_id"] = payload.pop("id")
        return payload

    @classmethod
    def from_document(cls, document: Dict[str, Any]):
        payload = dict(document)
        payload["id"] = payload.pop("_id")
        return cls(**payload)


class Space(Document):
    name: str
    description: Optional[str] = None
    deleted: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Member(Document):
    space_id: str
    username: str
    role: MemberRole = MemberRole.MEMBER
    created_at: datetime = Field(default_factory=_utcnow)


class BlockedExtension(Document):
    space_id: str
    extension: str
    fixed: bool
    state: ActivationState
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def active(self) -> bool:
        return self.state is ActivationState.ACTIVE


class UploadedFile(Document):
    space_id: str
    uploader_id: str
    original_name: str
    stored_name: str
    extension: str
    declared_content_type: Optional[str] = None
    sniffed_content_type: Optional[str] = None
    size: int
    sha256: str
    storage_path: str
    created_at: datetime = Field(default_factory=_utcnow)


class AuditEvent(BaseModel):
    space_id: Optional[str] = None
    actor_id: Optional[str] = None
    action: AuditAction
    outcome: AuditOutcome
    file_name: Optional[str] = None
    extension: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_document(self) -> Dict[str, Any]:
        return _plain(self.model_dump(mode="python"))


# -- API payloads -------------------------------------------------------------

class SpaceCreationRequest(BaseModel):
    name: str
    description: Optional[str] = None
    admin_username: str


class SpaceCreationResponse(BaseModel):
    space: Space
    admin: Member
    fixed_extensions_count: int


class SpaceUpdateRequest(BaseModel):
    actor_id: str
    name: Optional[str] = None
    description: Optional[str] = None


class MemberCreationRequest(BaseModel):
    actor_id: str
    username: str
    role: MemberRole = MemberRole.MEMBER


class FixedToggleRequest(BaseModel):
    space_id: str
    extension: str
    actor_id: str


class CustomExtensionRequest(BaseModel):
    space_id: str
    extension: str
    actor_id: str


class ActiveExtensionsResponse(BaseModel):
    space_id: str
    extensions: List[str]


class CountResponse(BaseModel):
    space_id: str
    count: int


class ExtensionCheckResponse(BaseModel):
    space_id: str
    extension: str
    blocked: bool


class UsernameCheckResponse(BaseModel):
    space_id: str
    username: str
    exists: bool
