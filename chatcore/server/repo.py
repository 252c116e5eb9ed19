import time
import uuid
from typing import List, Optional, Tuple

from .errors import AlreadyExists, NotFound, ValidationFailed
from .models import DEFAULT_AVATAR, Conversation, Group, Message, User
from .store import Store
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.repo')


def now_ms() -> int:
    return int(time.time() * 1000)


class UsersRepo:
    """Repository for user records (profile, friends and friend requests)."""

    TABLE = "users"

    def __init__(self, store: Store):
        self.store = store

    async def create(self, email: str, display_name: str, avatar: Optional[str] = None) -> User:
        """Register a new user.

        Args:
            email (str): Login email, unique across users (case insensitive)
            display_name (str): Name shown to other users
            avatar (str, optional): Avatar URL

        Returns:
            User: The stored user

        Raises:
            ValidationFailed: If email or display name is empty
            AlreadyExists: If the email is already registered
        """
        email = (email or "").strip().lower()
        display_name = (display_name or "").strip()
        if not email or "@" not in email:
            raise ValidationFailed("A valid email is required")
        if not display_name:
            raise ValidationFailed("Display name is required")
        if await self.find_by_email(email):
            logger.warning(f"Registration refused, email already used: {email}")
            raise AlreadyExists(f"User {email} already exists")

        user = User(user_id=uuid.uuid4().hex[:12], email=email,
                    display_name=display_name, created_ts=now_ms())
        if avatar:
            user.avatar = avatar
        rec = await self.store.put(self.TABLE, user.user_id, user.to_record())
        logger.info(f"New user registered: {display_name} (ID: {user.user_id})")
        return User.from_record(rec)

    async def get(self, user_id: str) -> Optional[User]:
        rec = await self.store.get(self.TABLE, user_id)
        return User.from_record(rec) if rec else None

    async def require(self, user_id: str) -> User:
        user = await self.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        email = (email or "").strip().lower()
        rows = await self.store.scan(self.TABLE, lambda r: r.get("email") == email)
        return User.from_record(rows[0]) if rows else None

    async def require_by_email(self, email: str) -> User:
        user = await self.find_by_email(email)
        if user is None:
            raise NotFound(f"User {email} not found")
        return user

    async def search(self, query: str) -> List[User]:
        """Case-insensitive substring search on display name and email."""
        q = (query or "").lower()
        rows = await self.store.scan(
            self.TABLE,
            lambda r: q in r.get("display_name", "").lower() or q in r.get("email", ""))
        return [User.from_record(r) for r in rows]

    async def save_social_pair(self, first: User, second: User) -> Tuple[User, User]:
        """Write back friends and friend request lists of two users in one store commit.

        Each record is guarded by its read version. Either both records are
        updated or neither is, so a friendship or a pending request is never
        recorded on one side only.
        """
        updates = []
        for user in (first, second):
            rec = user.to_record()
            changes = {k: rec[k] for k in ("friends", "requests_sent", "requests_received")}
            updates.append((user.user_id, changes, user.version))
        stored = await self.store.update_many(self.TABLE, updates)
        return User.from_record(stored[0]), User.from_record(stored[1])

    async def update_profile(self, user_id: str, display_name: Optional[str] = None,
                             avatar: Optional[str] = None) -> User:
        """Change display name and/or avatar; fields left as None are kept.

        Raises:
            ValidationFailed: If display_name is given but blank
            NotFound: If the user does not exist
        """
        changes = {}
        if display_name is not None:
            display_name = display_name.strip()
            if not display_name:
                raise ValidationFailed("Display name cannot be empty")
            changes["display_name"] = display_name
        if avatar is not None:
            changes["avatar"] = avatar or DEFAULT_AVATAR
        user = await self.require(user_id)
        if not changes:
            return user
        stored = await self.store.update(self.TABLE, user_id, changes, expected_version=user.version)
        logger.info(f"Profile of user {user_id} updated: {sorted(changes)}")
        return User.from_record(stored)


class ConversationsRepo:
    """Repository for 1:1 conversations keyed by the sorted participant pair."""

    TABLE = "conversations"

    def __init__(self, store: Store):
        self.store = store

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        rec = await self.store.get(self.TABLE, conversation_id)
        return Conversation.from_record(rec) if rec else None

    async def append(self, conversation_id: str, participants: Tuple[str, str],
                     message: Message) -> Conversation:
        """Append one message, creating the conversation on first use.

        Uses the store's atomic append primitive, so two first messages racing
        on a fresh pair end up in the same record.
        """
        rec = await self.store.append_to_list(
            self.TABLE, conversation_id, "messages", [message.to_record()],
            defaults={"conversation_id": conversation_id, "participants": sorted(participants)})
        logger.info(f"New direct message saved: {message.message_id} in {conversation_id}")
        return Conversation.from_record(rec)

    async def replace_messages(self, conversation: Conversation, messages: List[Message]) -> Conversation:
        rec = await self.store.update(
            self.TABLE, conversation.conversation_id,
            {"messages": [m.to_record() for m in messages]},
            expected_version=conversation.version)
        return Conversation.from_record(rec)

    async def find_containing(self, message_id: str) -> Optional[Conversation]:
        rows = await self.store.scan(
            self.TABLE, lambda r: any(m["message_id"] == message_id for m in r.get("messages", [])))
        return Conversation.from_record(rows[0]) if rows else None

    async def for_user(self, user_id: str) -> List[Conversation]:
        rows = await self.store.scan(self.TABLE, lambda r: user_id in r.get("participants", []))
        return [Conversation.from_record(r) for r in rows]


class GroupsRepo:
    """Repository for chat groups, their memberships and message lists."""

    TABLE = "groups"
    META_FIELDS = ("name", "creator_id", "member_ids", "admin_ids", "deputy_ids",
                   "avatar", "allow_member_invite")

    def __init__(self, store: Store):
        self.store = store

    async def create(self, group: Group) -> Group:
        rec = await self.store.put(self.TABLE, group.group_id, group.to_record())
        logger.info(f"New group created: {group.name} ({group.group_id}) by user {group.creator_id}")
        return Group.from_record(rec)

    async def get(self, group_id: str) -> Optional[Group]:
        rec = await self.store.get(self.TABLE, group_id)
        return Group.from_record(rec) if rec else None

    async def require(self, group_id: str) -> Group:
        group = await self.get(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

    async def save_meta(self, group: Group) -> Group:
        """Write back membership, roles and profile fields of a fetched group."""
        summary = group.summary()
        rec = await self.store.update(self.TABLE, group.group_id,
                                      {k: summary[k] for k in self.META_FIELDS},
                                      expected_version=group.version)
        logger.debug(f"Updated group {group.group_id} metadata")
        return Group.from_record(rec)

    async def replace_messages(self, group: Group, messages: List[Message],
                               last_message: Optional[dict] = None) -> Group:
        changes = {"messages": [m.to_record() for m in messages]}
        if last_message is not None:
            changes["last_message"] = last_message
        rec = await self.store.update(self.TABLE, group.group_id, changes,
                                      expected_version=group.version)
        return Group.from_record(rec)

    async def delete(self, group_id: str) -> bool:
        return await self.store.delete(self.TABLE, group_id)

    async def get_user_groups(self, user_id: str) -> List[Group]:
        rows = await self.store.scan(self.TABLE, lambda r: user_id in r.get("member_ids", []))
        return [Group.from_record(r) for r in rows]

    async def find_containing(self, message_id: str) -> Optional[Group]:
        rows = await self.store.scan(
            self.TABLE, lambda r: any(m["message_id"] == message_id for m in r.get("messages", [])))
        return Group.from_record(rows[0]) if rows else None
