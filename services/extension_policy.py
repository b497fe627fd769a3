"""
Extension Policy Service

Owns the per-space blocked extension rows: the fixed catalog seeded when a
space is created (inactive until an admin enables each entry) and the custom
entries admins add themselves.

Readers get an immutable snapshot from ``resolve``; mutations are serialized
per space with an ``asyncio.Lock`` so a toggle never interleaves with another
mutation of the same space.
"""

import asyncio
import re
from typing import Dict, FrozenSet, Iterable, List, Optional

from config.settings import settings
from database.blocked_extensions_table import BlockedExtensionsTableRepository
from models.errors import (
    DuplicateError,
    InvalidExtensionError,
    InvalidOperationError,
    LimitExceededError,
    NotFoundError,
)
from models.schemas import ActivationState, AuditAction, AuditOutcome, BlockedExtension
from services.audit import AuditEmitter
from utils.logger import get_logger

logger = get_logger(__name__)

_EXTENSION_RE = re.compile(r"^[a-z0-9_+\-]+$")


def normalize_extension(raw: Optional[str], max_length: int = 20) -> str:
    """
    Normalize a caller-supplied extension: trim, strip leading dots, lowercase.

    Raises:
        InvalidExtensionError: when the result is empty, longer than
            ``max_length`` or contains characters other than letters, digits,
            ``_``, ``+`` and ``-``. Nothing is silently truncated.
    """
    if raw is None:
        raise InvalidExtensionError("Extension is required")

    value = raw.strip().lstrip(".").strip().lower()
    if not value:
        raise InvalidExtensionError("Extension must not be empty")
    if len(value) > max_length:
        raise InvalidExtensionError(f"Extension '{value}' exceeds {max_length} characters")
    if not _EXTENSION_RE.match(value):
        raise InvalidExtensionError(f"Extension '{value}' contains invalid characters")
    return value


class ExtensionPolicyService:
    def __init__(
        self,
        repository: BlockedExtensionsTableRepository,
        audit: AuditEmitter,
        *,
        fixed_catalog: Optional[Iterable[str]] = None,
        max_custom: Optional[int] = None,
        max_length: Optional[int] = None,
    ) -> None:
        self.repository = repository
        self.audit = audit
        self.max_custom = max_custom if max_custom is not None else settings.MAX_CUSTOM_EXTENSIONS
        self.max_length = max_length if max_length is not None else settings.MAX_EXTENSION_LENGTH

        catalog = fixed_catalog if fixed_catalog is not None else settings.FIXED_EXTENSIONS
        # dict keeps catalog order while dropping duplicates
        self.fixed_catalog: List[str] = list(
            dict.fromkeys(normalize_extension(ext, self.max_length) for ext in catalog)
        )

        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, space_id: str) -> asyncio.Lock:
        return self._locks.setdefault(space_id, asyncio.Lock())

    # -- Reads ---------------------------------------------------------------

    async def resolve(self, space_id: str) -> FrozenSet[str]:
        """Active fixed + active custom extensions for the space, as a snapshot."""
        rows = await self.repository.list_by_space(space_id, state=ActivationState.ACTIVE)
        return frozenset(row.extension.lower() for row in rows)

    async def is_blocked(self, space_id: str, extension: str) -> bool:
        normalized = extension.strip().lstrip(".").lower()
        if not normalized:
            return False
        return normalized in await self.resolve(space_id)

    async def list_extensions(self, space_id: str, fixed: Optional[bool] = None) -> List[BlockedExtension]:
        return await self.repository.list_by_space(space_id, fixed=fixed)

    async def get_extension(self, blocked_id: str) -> BlockedExtension:
        row = await self.repository.get(blocked_id)
        if row is None:
            raise NotFoundError(f"Blocked extension not found: {blocked_id}")
        return row

    async def count_custom(self, space_id: str) -> int:
        return await self.repository.count_custom(space_id)

    # -- Mutations -----------------------------------------------------------

    async def seed_fixed_catalog(self, space_id: str, actor_id: Optional[str] = None) -> int:
        """Copy the fixed catalog into the space; every seeded row starts inactive."""
        async with self._lock_for(space_id):
            existing = {row.extension for row in await self.repository.list_by_space(space_id, fixed=True)}
            rows = [
                BlockedExtension(
                    space_id=space_id,
                    extension=extension,
                    fixed=True,
                    state=ActivationState.INACTIVE,
                    created_by=actor_id,
                    updated_by=actor_id,
                )
                for extension in self.fixed_catalog
                if extension not in existing
            ]
            inserted = await self.repository.insert_many(rows)

        logger.info("Seeded %d fixed extensions for space %s", inserted, space_id)
        await self.audit.emit(
            AuditAction.POLICY_SEEDED,
            AuditOutcome.ALLOWED,
            space_id=space_id,
            actor_id=actor_id,
            detail=f"{inserted} fixed extensions seeded inactive",
        )
        return inserted

    async def toggle_fixed(self, space_id: str, extension: str, actor_id: Optional[str] = None) -> BlockedExtension:
        normalized = normalize_extension(extension, self.max_length)

        async with self._lock_for(space_id):
            row = await self.repository.find(space_id, normalized, fixed=True)
            if row is None:
                raise NotFoundError(f"Fixed extension not found: {normalized}")

            new_state = row.state.toggled()
            await self.repository.set_state(row.id, new_state, actor_id)
            row = row.model_copy(update={"state": new_state, "updated_by": actor_id})

        logger.info("Fixed extension %s in space %s is now %s", normalized, space_id, new_state.value)
        await self.audit.emit(
            AuditAction.POLICY_FIXED_TOGGLED,
            AuditOutcome.ALLOWED,
            space_id=space_id,
            actor_id=actor_id,
            extension=normalized,
            detail=new_state.value,
        )
        return row

    async def add_custom(self, space_id: str, extension: str, actor_id: Optional[str] = None) -> BlockedExtension:
        normalized = normalize_extension(extension, self.max_length)

        async with self._lock_for(space_id):
            if await self.repository.find(space_id, normalized) is not None:
                raise DuplicateError(f"Extension already registered in this space: {normalized}")

            count = await self.repository.count_custom(space_id)
            if count >= self.max_custom:
                raise LimitExceededError(f"A space can hold at most {self.max_custom} custom extensions")

            row = await self.repository.insert(
                BlockedExtension(
                    space_id=space_id,
                    extension=normalized,
                    fixed=False,
                    state=ActivationState.ACTIVE,
                    created_by=actor_id,
                    updated_by=actor_id,
                )
            )

        logger.info("Custom extension %s added to space %s (%d/%d)", normalized, space_id, count + 1, self.max_custom)
        await self.audit.emit(
            AuditAction.POLICY_CUSTOM_ADDED,
            AuditOutcome.ALLOWED,
            space_id=space_id,
            actor_id=actor_id,
            extension=normalized,
        )
        return row

    async def remove_custom(
        self,
        blocked_id: str,
        actor_id: Optional[str] = None,
        space_id: Optional[str] = None,
    ) -> None:
        """
        Hard-delete a custom entry. When ``space_id`` is given the row must
        belong to that space, otherwise it is reported as missing.
        """
        if space_id is None:
            located = await self.repository.get(blocked_id)
            if located is None:
                raise NotFoundError(f"Blocked extension not found: {blocked_id}")
            space_id = located.space_id

        async with self._lock_for(space_id):
            row = await self.repository.get(blocked_id)
            if row is None or row.space_id != space_id:
                raise NotFoundError(f"Blocked extension not found: {blocked_id}")
            if row.fixed:
                raise InvalidOperationError("Fixed extensions can only be toggled, not deleted")
            if not await self.repository.delete(blocked_id):
                raise NotFoundError(f"Blocked extension not found: {blocked_id}")

        logger.info("Custom extension %s removed from space %s", row.extension, row.space_id)
        await self.audit.emit(
            AuditAction.POLICY_CUSTOM_REMOVED,
            AuditOutcome.ALLOWED,
            space_id=row.space_id,
            actor_id=actor_id,
            extension=row.extension,
        )
