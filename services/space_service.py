import asyncio
from typing import Dict, List, Optional, Tuple

from database.members_table import MembersTableRepository
from database.spaces_table import SpacesTableRepository
from models.errors import DuplicateError, InvalidOperationError, NotFoundError, PermissionDeniedError
from models.schemas import Member, MemberRole, Space
from services.extension_policy import ExtensionPolicyService
from utils.logger import get_logger

logger = get_logger(__name__)


class SpaceService:
    """Spaces, their members and the role checks the HTTP layer relies on."""

    def __init__(
        self,
        spaces: SpacesTableRepository,
        members: MembersTableRepository,
        policy: ExtensionPolicyService,
    ) -> None:
        self.spaces = spaces
        self.members = members
        self.policy = policy
        self._create_lock = asyncio.Lock()

    @staticmethod
    def _clean_name(name: Optional[str], what: str) -> str:
        value = (name or "").strip()
        if not value:
            raise InvalidOperationError(f"{what} must not be blank")
        return value

    async def create_space_with_admin(
        self,
        name: str,
        description: Optional[str],
        admin_username: str,
    ) -> Tuple[Space, Member, int]:
        """
        Create a space, its first ADMIN member and the fixed extension rows.

        Returns the space, the admin and how many fixed extensions were seeded
        (all of them start inactive).
        """
        space_name = self._clean_name(name, "Space name")
        username = self._clean_name(admin_username, "Admin username")

        async with self._create_lock:
            if await self.spaces.exists_by_name(space_name):
                raise DuplicateError(f"Space name already exists: {space_name}")
            space = await self.spaces.insert(Space(name=space_name, description=description))

        admin = await self.members.insert(Member(space_id=space.id, username=username, role=MemberRole.ADMIN))
        seeded = await self.policy.seed_fixed_catalog(space.id, actor_id=admin.id)

        logger.info("Space %s created with admin %s and %d fixed extensions", space.name, username, seeded)
        return space, admin, seeded

    async def list_spaces(self) -> List[Space]:
        return await self.spaces.list_live()

    async def get_space(self, space_id: str) -> Space:
        space = await self.spaces.get(space_id)
        if space is None:
            raise NotFoundError(f"Space not found: {space_id}")
        return space

    async def rename_space(self, space_id: str, name: str) -> Space:
        space = await self.get_space(space_id)
        new_name = self._clean_name(name, "Space name")
        if new_name == space.name:
            return space

        async with self._create_lock:
            if await self.spaces.exists_by_name(new_name):
                raise DuplicateError(f"Space name already exists: {new_name}")
            await self.spaces.update_fields(space_id, {"name": new_name})

        logger.info("Space %s renamed from %s to %s", space_id, space.name, new_name)
        return await self.get_space(space_id)

    async def describe_space(self, space_id: str, description: Optional[str]) -> Space:
        await self.get_space(space_id)
        await self.spaces.update_fields(space_id, {"description": description})
        return await self.get_space(space_id)

    async def update_space(self, space_id: str, fields: Dict[str, Optional[str]]) -> Space:
        space = await self.get_space(space_id)
        if fields.get("name") is not None:
            space = await self.rename_space(space_id, fields["name"])
        if "description" in fields:
            space = await self.describe_space(space_id, fields["description"])
        return space

    async def soft_delete_space(self, space_id: str) -> None:
        if not await self.spaces.update_fields(space_id, {"deleted": True}):
            raise NotFoundError(f"Space not found: {space_id}")
        logger.info("Space %s soft deleted", space_id)

    # -- Members -------------------------------------------------------------

    async def add_member(self, space_id: str, username: str, role: MemberRole = MemberRole.MEMBER) -> Member:
        await self.get_space(space_id)
        username = self._clean_name(username, "Username")
        if await self.username_taken(space_id, username):
            raise DuplicateError(f"Username already exists in this space: {username}")
        return await self.members.insert(Member(space_id=space_id, username=username, role=role))

    async def list_members(self, space_id: str) -> List[Member]:
        await self.get_space(space_id)
        return await self.members.list_by_space(space_id)

    async def username_taken(self, space_id: str, username: str) -> bool:
        return await self.members.exists_by_username(space_id, username.strip())

    async def get_member(self, member_id: str, space_id: Optional[str] = None) -> Member:
        member = await self.members.get(member_id)
        if member is None or (space_id is not None and member.space_id != space_id):
            raise NotFoundError(f"Member not found: {member_id}")
        return member

    async def require_member(self, space_id: str, member_id: str) -> Member:
        await self.get_space(space_id)
        member = await self.members.get(member_id)
        if member is None or member.space_id != space_id:
            raise PermissionDeniedError("Only members of this space may do that")
        return member

    async def require_admin(self, space_id: str, member_id: str) -> Member:
        member = await self.require_member(space_id, member_id)
        if member.role is not MemberRole.ADMIN:
            raise PermissionDeniedError("Only space admins may change the extension policy")
        return member
