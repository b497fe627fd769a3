from enum import Enum
from typing import Any, Dict, Optional


class ArchiveRule(str, Enum):
    SIZE_EXCEEDED = "size_exceeded"
    DEPTH_EXCEEDED = "depth_exceeded"
    ENTRY_BLOCKED = "entry_blocked"
    PATH_TRAVERSAL = "path_traversal"
    ENTRY_COUNT_EXCEEDED = "entry_count_exceeded"
    ENCRYPTED_ENTRY = "encrypted_entry"
    MALFORMED = "malformed"
    UNSUPPORTED_FORMAT = "unsupported_format"


class GatewayError(Exception):
    """Base class for every error the gateway reports to its callers."""

    code = "GATEWAY_ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        payload.update(self.details())
        return payload


# -- Upload pipeline rejections ---------------------------------------------

class InvalidUploadError(GatewayError):
    code = "INVALID_UPLOAD"


class FileTooLargeError(InvalidUploadError):
    code = "FILE_TOO_LARGE"
    status_code = 413


class BlockedExtensionError(GatewayError):
    code = "BLOCKED_EXTENSION"
    status_code = 422

    def __init__(self, extension: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Files with extension '{extension}' are blocked in this space")
        self.extension = extension

    def details(self) -> Dict[str, Any]:
        return {"extension": self.extension}


class DisguisedFileError(GatewayError):
    code = "DISGUISED_FILE"
    status_code = 422

    def __init__(self, declared: str, detected: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"File content does not match its name (declared: {declared}, detected: {detected})"
        )
        self.declared = declared
        self.detected = detected

    def details(self) -> Dict[str, Any]:
        return {"declared": self.declared, "detected": self.detected}


class ArchiveViolationError(GatewayError):
    code = "ARCHIVE_VIOLATION"
    status_code = 422

    def __init__(self, rule: ArchiveRule, entry_name: Optional[str] = None, message: Optional[str] = None) -> None:
        text = message or f"Archive rejected: {rule.value}"
        if entry_name and not message:
            text = f"{text} ({entry_name})"
        super().__init__(text)
        self.rule = rule
        self.entry_name = entry_name

    def details(self) -> Dict[str, Any]:
        return {"rule": self.rule.value, "entry_name": self.entry_name}


class UploadAbortedError(GatewayError):
    code = "UPLOAD_ABORTED"

    def __init__(self, stage: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Upload stream aborted during {stage}")
        self.stage = stage

    def details(self) -> Dict[str, Any]:
        return {"stage": self.stage}


class StorageError(GatewayError):
    code = "STORAGE_ERROR"
    status_code = 500


# -- Policy / management errors ---------------------------------------------

class NotFoundError(GatewayError):
    code = "NOT_FOUND"
    status_code = 404


class DuplicateError(GatewayError):
    code = "DUPLICATE"
    status_code = 409


class LimitExceededError(GatewayError):
    code = "LIMIT_EXCEEDED"
    status_code = 400


class InvalidOperationError(GatewayError):
    code = "INVALID_OPERATION"
    status_code = 400


class InvalidExtensionError(GatewayError):
    code = "INVALID_EXTENSION"
    status_code = 400


class PermissionDeniedError(GatewayError):
    code = "PERMISSION_DENIED"
    status_code = 403
