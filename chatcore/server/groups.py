import uuid
from typing import Callable, Iterable, List, Optional

from .coordinator import MutationCoordinator
from .errors import Forbidden, NotFound, ValidationFailed
from .hub import EventRouter
from .lifecycle import ConnectionManager
from .models import Group, OwnerRef
from .repo import GroupsRepo, UsersRepo, now_ms
from .. import wire
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.groups')

ROLES = ("admin", "deputy", "member")


class GroupService:
    """Group creation, membership and role administration.

    Metadata changes take the same per-group lock as message mutations, so a
    role change and a message append on one group never overwrite each
    other. Membership changes leave a system message in the group and emit a
    groupUpdate event to the room.
    """

    def __init__(self, groups: GroupsRepo, users: UsersRepo, coordinator: MutationCoordinator,
                 router: EventRouter, connections: Optional[ConnectionManager] = None):
        self.groups = groups
        self.users = users
        self.coordinator = coordinator
        self.router = router
        self.connections = connections

    async def _mutate(self, group_id: str, change: Callable[[Group], None]) -> Group:
        async with self.coordinator.locks(OwnerRef.group(group_id).lock_key):
            group = await self.groups.require(group_id)
            change(group)
            return await self.groups.save_meta(group)

    @staticmethod
    def _require_admin(group: Group, actor_id: str):
        if not group.is_admin(actor_id):
            raise Forbidden("Only group admins can do this")

    @staticmethod
    def _require_member(group: Group, user_id: str):
        if not group.is_member(user_id):
            raise ValidationFailed(f"User {user_id} is not a member of this group")

    async def _notify(self, group: Group, change: str, extra_users: Iterable[str] = ()):
        payload = {"type": change, "group": group.summary()}
        try:
            await self.router.emit_to_room(group.group_id, wire.GROUP_UPDATE, payload)
            await self.router.emit_to_users(extra_users, wire.GROUP_UPDATE, payload)
        except Exception:
            logger.exception(f"Failed to broadcast {change} for group {group.group_id}")

    async def _display_name(self, user_id: str) -> str:
        user = await self.users.get(user_id)
        return user.display_name if user else user_id

    def _evict(self, user_id: str, group_id: str):
        if self.connections is not None:
            self.connections.evict_from_room(user_id, group_id)

    async def create(self, creator_id: str, name: str, member_ids: Iterable[str] = (),
                     avatar: Optional[str] = None) -> Group:
        """Create a new chat group.

        Args:
            creator_id (str): User creating the group; becomes member and admin
            name (str): Group name
            member_ids (Iterable[str]): Initial members besides the creator
            avatar (str, optional): Avatar URL

        Returns:
            Group: The stored group

        Raises:
            ValidationFailed: If the name is empty
            NotFound: If the creator or an initial member does not exist
        """
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Group name is required")
        await self.users.require(creator_id)
        members = {creator_id}
        for member_id in member_ids:
            await self.users.require(member_id)
            members.add(member_id)

        group = Group(group_id=uuid.uuid4().hex, name=name, creator_id=creator_id,
                      member_ids=members, admin_ids={creator_id}, created_ts=now_ms())
        if avatar:
            group.avatar = avatar
        group = await self.groups.create(group)
        await self._notify(group, "created", members)
        return group

    async def list_for_user(self, user_id: str) -> List[Group]:
        return await self.groups.get_user_groups(user_id)

    async def members(self, actor_id: str, group_id: str) -> List[dict]:
        group = await self.groups.require(group_id)
        if not group.is_member(actor_id):
            raise Forbidden("You are not a member of this group")
        result = []
        for member_id in sorted(group.member_ids):
            user = await self.users.get(member_id)
            if user is None:
                logger.warning(f"Group {group_id} lists unknown member {member_id}")
                continue
            entry = user.public()
            entry["role"] = group.role_of(member_id)
            result.append(entry)
        return result

    async def add_members(self, actor_id: str, group_id: str, member_ids: Iterable[str]) -> Group:
        """Add users to a group.

        Admins can always add members; other members only when the group
        allows member invites.
        """
        candidates = [m for m in member_ids if isinstance(m, str) and m]
        if not candidates:
            raise ValidationFailed("No valid member IDs provided")
        for member_id in candidates:
            await self.users.require(member_id)

        added: List[str] = []

        def change(group: Group):
            if not group.is_member(actor_id):
                raise Forbidden("You are not a member of this group")
            if not group.is_admin(actor_id) and not group.allow_member_invite:
                raise Forbidden("You are not allowed to add members to this group")
            for member_id in candidates:
                if member_id not in group.member_ids:
                    group.member_ids.add(member_id)
                    added.append(member_id)

        group = await self._mutate(group_id, change)
        for member_id in added:
            await self.coordinator.append_system(group_id, "join", await self._display_name(member_id))
        logger.info(f"Added {added} to group {group_id} (by {actor_id})")
        await self._notify(group, "membersAdded", added)
        return group

    async def remove_member(self, actor_id: str, group_id: str, member_id: str) -> Group:
        """Remove a member; never the creator or another admin."""
        def change(group: Group):
            self._require_admin(group, actor_id)
            self._require_member(group, member_id)
            if member_id == group.creator_id:
                raise Forbidden("Cannot remove the group creator")
            if group.is_admin(member_id):
                raise Forbidden("Cannot remove another admin")
            group.member_ids.discard(member_id)
            group.deputy_ids.discard(member_id)

        group = await self._mutate(group_id, change)
        self._evict(member_id, group_id)
        await self.coordinator.append_system(group_id, "remove", await self._display_name(member_id))
        logger.info(f"Removed {member_id} from group {group_id} (by {actor_id})")
        await self._notify(group, "memberRemoved", [member_id])
        return group

    async def leave(self, user_id: str, group_id: str) -> Optional[Group]:
        """Leave a group.

        A leaving admin who was the last admin hands admin to the creator if
        still present, else to a deputy, else to the remaining member with the
        lowest id. A leaving creator passes creatorship to the new first admin.
        The group is deleted once its last member leaves.

        Returns:
            Group | None: The updated group, or None if it was deleted
        """
        def change(group: Group):
            if not group.is_member(user_id):
                raise Forbidden("You are not a member of this group")
            group.member_ids.discard(user_id)
            group.deputy_ids.discard(user_id)
            group.admin_ids.discard(user_id)
            if group.member_ids and not group.admin_ids:
                if group.creator_id in group.member_ids:
                    heir = group.creator_id
                elif group.deputy_ids:
                    heir = sorted(group.deputy_ids)[0]
                else:
                    heir = sorted(group.member_ids)[0]
                group.admin_ids.add(heir)
                group.deputy_ids.discard(heir)
                logger.info(f"Admin of group {group.group_id} handed to {heir}")
            if group.creator_id == user_id and group.member_ids:
                group.creator_id = sorted(group.admin_ids)[0]

        group = await self._mutate(group_id, change)
        self._evict(user_id, group_id)
        if not group.member_ids:
            await self.groups.delete(group_id)
            logger.info(f"Group {group_id} deleted after its last member left")
            return None
        await self.coordinator.append_system(group_id, "leave", await self._display_name(user_id))
        await self._notify(group, "memberLeft", [user_id])
        return group

    async def add_admin(self, actor_id: str, group_id: str, member_id: str) -> Group:
        """Grant admin to a member, keeping the existing admins."""
        def change(group: Group):
            self._require_admin(group, actor_id)
            self._require_member(group, member_id)
            group.admin_ids.add(member_id)
            group.deputy_ids.discard(member_id)

        group = await self._mutate(group_id, change)
        await self._notify(group, "roleChanged")
        return group

    async def remove_admin(self, actor_id: str, group_id: str, member_id: str) -> Group:
        def change(group: Group):
            self._require_admin(group, actor_id)
            if member_id == group.creator_id:
                raise Forbidden("Cannot remove admin rights from the group creator")
            if member_id not in group.admin_ids:
                raise ValidationFailed(f"User {member_id} is not an admin")
            if len(group.admin_ids) == 1:
                raise ValidationFailed("A group needs at least one admin")
            group.admin_ids.discard(member_id)

        group = await self._mutate(group_id, change)
        await self._notify(group, "roleChanged")
        return group

    async def transfer_sole_admin(self, actor_id: str, group_id: str, member_id: str) -> Group:
        """Make one member the only admin, demoting every other admin."""
        def change(group: Group):
            self._require_admin(group, actor_id)
            self._require_member(group, member_id)
            group.admin_ids = {member_id}
            group.deputy_ids.discard(member_id)

        group = await self._mutate(group_id, change)
        logger.info(f"Group {group_id} admin transferred from {actor_id} to {member_id}")
        await self._notify(group, "roleChanged")
        return group

    async def add_deputy(self, actor_id: str, group_id: str, member_id: str) -> Group:
        def change(group: Group):
            self._require_admin(group, actor_id)
            self._require_member(group, member_id)
            if group.is_admin(member_id):
                raise ValidationFailed("This member is already an admin")
            group.deputy_ids.add(member_id)

        group = await self._mutate(group_id, change)
        await self._notify(group, "roleChanged")
        return group

    async def remove_deputy(self, actor_id: str, group_id: str, member_id: str) -> Group:
        def change(group: Group):
            self._require_admin(group, actor_id)
            group.deputy_ids.discard(member_id)

        group = await self._mutate(group_id, change)
        await self._notify(group, "roleChanged")
        return group

    async def set_member_role(self, actor_id: str, group_id: str, member_id: str, role: str) -> Group:
        """Set a member's role to admin, deputy or plain member."""
        if role not in ROLES:
            raise ValidationFailed(f"Invalid role '{role}'")

        def change(group: Group):
            self._require_admin(group, actor_id)
            self._require_member(group, member_id)
            if member_id == group.creator_id:
                raise Forbidden("Cannot change the role of the group creator")
            if role != "admin" and group.admin_ids == {member_id}:
                raise ValidationFailed("A group needs at least one admin")
            if role == "admin":
                group.admin_ids.add(member_id)
                group.deputy_ids.discard(member_id)
            elif role == "deputy":
                group.admin_ids.discard(member_id)
                group.deputy_ids.add(member_id)
            else:
                group.admin_ids.discard(member_id)
                group.deputy_ids.discard(member_id)

        group = await self._mutate(group_id, change)
        await self._notify(group, "roleChanged")
        return group

    async def toggle_member_invite(self, actor_id: str, group_id: str,
                                   allow: Optional[bool] = None) -> Group:
        """Set (or flip when allow is None) whether members may add members."""
        def change(group: Group):
            self._require_admin(group, actor_id)
            group.allow_member_invite = (not group.allow_member_invite) if allow is None else bool(allow)

        group = await self._mutate(group_id, change)
        await self._notify(group, "settingsChanged")
        return group

    async def update_info(self, actor_id: str, group_id: str, name: Optional[str] = None,
                          avatar: Optional[str] = None) -> Group:
        if name is not None and not name.strip():
            raise ValidationFailed("Group name cannot be empty")

        def change(group: Group):
            self._require_admin(group, actor_id)
            if name is not None:
                group.name = name.strip()
            if avatar is not None:
                group.avatar = avatar

        group = await self._mutate(group_id, change)
        await self._notify(group, "infoChanged")
        return group

    async def delete(self, actor_id: str, group_id: str) -> bool:
        async with self.coordinator.locks(OwnerRef.group(group_id).lock_key):
            group = await self.groups.get(group_id)
            if group is None:
                raise NotFound(f"Group {group_id} not found")
            if actor_id != group.creator_id and not group.is_admin(actor_id):
                raise Forbidden("Only the creator or an admin can delete the group")
            await self.groups.delete(group_id)
        await self._notify(group, "deleted")
        for member_id in group.member_ids:
            self._evict(member_id, group_id)
        logger.info(f"Group {group_id} deleted by {actor_id}")
        return True
