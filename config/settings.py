from typing import ClassVar, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB Configuration
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB_NAME: str = "upload_gateway"
    MONGODB_SPACES_COLLECTION: str = "spaces"
    MONGODB_MEMBERS_COLLECTION: str = "members"
    MONGODB_BLOCKED_EXTENSIONS_COLLECTION: str = "blocked_extensions"
    MONGODB_UPLOADED_FILES_COLLECTION: str = "uploaded_files"
    MONGODB_AUDIT_LOG_COLLECTION: str = "audit_log"

    # Storage Configuration
    UPLOAD_DIRECTORY: str = "./uploads"
    FILE_PERMISSION_MODE: int = 0o644
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024

    # Archive Inspection
    MAX_DECOMPRESSED_SIZE: int = 10 * 1024 * 1024
    MAX_NESTING_DEPTH: int = 2
    MAX_ARCHIVE_ENTRIES: int = 1000
    MAX_COMPRESSION_RATIO: Optional[int] = 100
    SNIFF_WINDOW: int = 512
    SIGNATURE_TABLE_PATH: Optional[str] = None

    # Extension Policy
    MAX_CUSTOM_EXTENSIONS: int = 200
    MAX_EXTENSION_LENGTH: int = 20
    FIXED_EXTENSIONS: List[str] = ["bat", "cmd", "com", "cpl", "exe", "js", "scr"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config: ClassVar = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore"
    }

    @field_validator("FILE_PERMISSION_MODE")
    @classmethod
    def _no_execute_bits(cls, value: int) -> int:
        if value & 0o111:
            raise ValueError(f"FILE_PERMISSION_MODE {oct(value)} grants an execute bit")
        return value

    @field_validator("MAX_NESTING_DEPTH", "MAX_DECOMPRESSED_SIZE", "MAX_ARCHIVE_ENTRIES", "SNIFF_WINDOW")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("archive inspection limits must be positive")
        return value


settings = Settings()
