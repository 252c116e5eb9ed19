import asyncio
import enum
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Set, Tuple, Union

from .errors import ValidationFailed

DEFAULT_AVATAR = "default-avatar.png"
RECALLED_PLACEHOLDER = "This message was recalled"
STATUS_SENT = "sent"
STATUS_READ = "read"


@dataclass(frozen=True)
class TextContent:
    text: str
    kind: ClassVar[str] = "text"


@dataclass(frozen=True)
class FileContent:
    """Uploaded file attached to a message.

    Attributes:
        url (str): Public URL returned by the blob store
        mime_type (str): Content type given at upload
        size (int): Size in bytes
        name (str): Original file name shown to readers
    """
    url: str
    mime_type: str
    size: int
    name: str = ""
    kind: ClassVar[str] = "file"


@dataclass(frozen=True)
class SystemContent:
    """Server generated notice (member joined, left, role changed...)."""
    action: str
    text: str = ""
    kind: ClassVar[str] = "system"


MessageContent = Union[TextContent, FileContent, SystemContent]


def content_to_record(content: MessageContent) -> dict:
    if isinstance(content, TextContent):
        return {"type": "text", "text": content.text}
    if isinstance(content, FileContent):
        return {"type": "file", "url": content.url, "mime_type": content.mime_type,
                "size": content.size, "name": content.name}
    if isinstance(content, SystemContent):
        return {"type": "system", "action": content.action, "text": content.text}
    raise ValidationFailed(f"Unsupported content {type(content).__name__}")


def content_from_record(rec: dict) -> MessageContent:
    """Build a MessageContent variant from its tagged dict form.

    Raises:
        ValidationFailed: On an unknown tag or a missing field
    """
    if not isinstance(rec, dict):
        raise ValidationFailed("content must be an object")
    kind = rec.get("type", "text")
    try:
        if kind == "text":
            text = rec["text"]
            if not isinstance(text, str) or not text.strip():
                raise ValidationFailed("text content must not be empty")
            return TextContent(text=text)
        if kind == "file":
            return FileContent(url=rec["url"], mime_type=rec["mime_type"],
                               size=int(rec["size"]), name=rec.get("name", ""))
        if kind == "system":
            return SystemContent(action=rec["action"], text=rec.get("text", ""))
    except KeyError as e:
        raise ValidationFailed(f"{kind} content is missing {e.args[0]}")
    raise ValidationFailed(f"Unknown content type '{kind}'")


def render_content(content: MessageContent) -> str:
    """Short human readable form, used for previews and the CLI."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, FileContent):
        return f"[file] {content.name or content.url} ({content.mime_type}, {content.size} bytes)"
    if isinstance(content, SystemContent):
        return f"[{content.action}] {content.text}".strip()
    raise ValidationFailed(f"Unsupported content {type(content).__name__}")


@dataclass
class Reaction:
    user_id: str
    symbol: str
    reacted_ts: int = 0


@dataclass(frozen=True)
class ForwardInfo:
    original_message_id: str
    original_owner_id: str
    original_sender_id: str


@dataclass
class Message:
    """One chat message, stored inside its conversation's or group's list.

    Attributes:
        message_id (str): Globally unique identifier
        sender_id (str): User ID of the author ("system" for notices)
        content (MessageContent): Text, file or system payload
        created_ts (int): Unix timestamp in milliseconds
        receiver_id (str | None): Peer user ID for 1:1 messages
        group_id (str | None): Group ID for group messages
        recalled (bool): Set once the message is recalled; content stays stored
        hidden_for (Set[str]): Users who deleted the message for themselves
        reactions (List[Reaction]): At most one reaction per user
        forwarded_from (ForwardInfo | None): Provenance of forwarded messages
        status (str): "sent", or "read" once the receiver of a 1:1 message read it
    """
    message_id: str
    sender_id: str
    content: MessageContent
    created_ts: int
    receiver_id: Optional[str] = None
    group_id: Optional[str] = None
    recalled: bool = False
    hidden_for: Set[str] = field(default_factory=set)
    reactions: List[Reaction] = field(default_factory=list)
    forwarded_from: Optional[ForwardInfo] = None
    status: str = STATUS_SENT

    @property
    def type(self) -> str:
        return self.content.kind

    def is_hidden_for(self, user_id: str) -> bool:
        return user_id in self.hidden_for

    def preview(self) -> str:
        return RECALLED_PLACEHOLDER if self.recalled else render_content(self.content)

    def to_record(self) -> dict:
        rec = {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "type": self.type,
            "content": content_to_record(self.content),
            "created_ts": self.created_ts,
            "receiver_id": self.receiver_id,
            "group_id": self.group_id,
            "recalled": self.recalled,
            "hidden_for": sorted(self.hidden_for),
            "reactions": [{"user_id": r.user_id, "symbol": r.symbol, "reacted_ts": r.reacted_ts}
                          for r in self.reactions],
            "forwarded_from": None,
            "status": self.status,
        }
        if self.forwarded_from:
            rec["forwarded_from"] = {
                "original_message_id": self.forwarded_from.original_message_id,
                "original_owner_id": self.forwarded_from.original_owner_id,
                "original_sender_id": self.forwarded_from.original_sender_id,
            }
        return rec

    @classmethod
    def from_client(cls, sender_id: str, raw, created_ts: int) -> "Message":
        """Build a new message from a client payload.

        The payload carries ``message_id`` and either a tagged ``content``
        object or a bare ``text``. Sender and timestamp are set by the server.

        Raises:
            ValidationFailed: If the payload or its content is malformed
        """
        if not isinstance(raw, dict):
            raise ValidationFailed("message is required")
        content = raw.get("content")
        if content is None:
            content = {"type": "text", "text": raw.get("text")}
        return cls(message_id=raw.get("message_id") or "", sender_id=sender_id,
                   content=content_from_record(content), created_ts=created_ts)

    @classmethod
    def from_record(cls, rec: dict) -> "Message":
        fwd = rec.get("forwarded_from")
        return cls(
            message_id=rec["message_id"],
            sender_id=rec["sender_id"],
            content=content_from_record(rec["content"]),
            created_ts=rec["created_ts"],
            receiver_id=rec.get("receiver_id"),
            group_id=rec.get("group_id"),
            recalled=rec.get("recalled", False),
            hidden_for=set(rec.get("hidden_for", [])),
            reactions=[Reaction(**r) for r in rec.get("reactions", [])],
            forwarded_from=ForwardInfo(**fwd) if fwd else None,
            status=rec.get("status", STATUS_SENT),
        )


def conversation_id(user_a: str, user_b: str) -> str:
    """Deterministic id of the 1:1 conversation between two users."""
    first, second = sorted((user_a, user_b))
    return f"{first}_{second}"


@dataclass(frozen=True)
class OwnerRef:
    """Points at the durable record owning a message list."""
    kind: str
    owner_id: str
    participants: Tuple[str, ...] = field(default=(), compare=False)

    CONVERSATION: ClassVar[str] = "conversation"
    GROUP: ClassVar[str] = "group"

    @classmethod
    def conversation(cls, user_a: str, user_b: str) -> "OwnerRef":
        return cls(cls.CONVERSATION, conversation_id(user_a, user_b), tuple(sorted((user_a, user_b))))

    @classmethod
    def group(cls, group_id: str) -> "OwnerRef":
        return cls(cls.GROUP, group_id)

    @property
    def is_group(self) -> bool:
        return self.kind == self.GROUP

    @property
    def lock_key(self) -> str:
        return f"{self.kind}:{self.owner_id}"

    def to_record(self) -> dict:
        return {"kind": self.kind, "owner_id": self.owner_id}


@dataclass
class Conversation:
    conversation_id: str
    participants: Tuple[str, str]
    messages: List[Message] = field(default_factory=list)
    version: int = 0

    @classmethod
    def from_record(cls, rec: dict) -> "Conversation":
        return cls(
            conversation_id=rec["conversation_id"],
            participants=tuple(rec["participants"]),
            messages=[Message.from_record(m) for m in rec.get("messages", [])],
            version=rec.get("version", 0),
        )

    def peer_of(self, user_id: str) -> str:
        a, b = self.participants
        return b if user_id == a else a


@dataclass
class Group:
    """Represents a chat group in the system.

    Attributes:
        group_id (str): Unique identifier
        name (str): Display name
        creator_id (str): User ID of the group creator
        member_ids (Set[str]): Users belonging to the group
        admin_ids (Set[str]): Members allowed to administer the group
        deputy_ids (Set[str]): Members holding the deputy role
        avatar (str): Avatar URL
        allow_member_invite (bool): Whether non-admin members may add members
        messages (List[Message]): Ordered message list
        last_message (dict | None): Denormalized summary of the newest message
        created_ts (int): Unix timestamp in milliseconds when group was created
    """
    group_id: str
    name: str
    creator_id: str
    member_ids: Set[str]
    admin_ids: Set[str]
    deputy_ids: Set[str] = field(default_factory=set)
    avatar: str = DEFAULT_AVATAR
    allow_member_invite: bool = False
    messages: List[Message] = field(default_factory=list)
    last_message: Optional[dict] = None
    created_ts: int = 0
    version: int = 0

    def is_member(self, user_id: str) -> bool:
        return user_id in self.member_ids

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids

    def role_of(self, user_id: str) -> str:
        if user_id in self.admin_ids:
            return "admin"
        if user_id in self.deputy_ids:
            return "deputy"
        return "member"

    def summary(self) -> dict:
        """Group metadata without the message list."""
        return {
            "group_id": self.group_id,
            "name": self.name,
            "creator_id": self.creator_id,
            "member_ids": sorted(self.member_ids),
            "admin_ids": sorted(self.admin_ids),
            "deputy_ids": sorted(self.deputy_ids),
            "avatar": self.avatar,
            "allow_member_invite": self.allow_member_invite,
            "last_message": self.last_message,
            "created_ts": self.created_ts,
        }

    def to_record(self) -> dict:
        rec = self.summary()
        rec["messages"] = [m.to_record() for m in self.messages]
        return rec

    @classmethod
    def from_record(cls, rec: dict) -> "Group":
        return cls(
            group_id=rec["group_id"],
            name=rec["name"],
            creator_id=rec["creator_id"],
            member_ids=set(rec.get("member_ids", [])),
            admin_ids=set(rec.get("admin_ids", [])),
            deputy_ids=set(rec.get("deputy_ids", [])),
            avatar=rec.get("avatar", DEFAULT_AVATAR),
            allow_member_invite=rec.get("allow_member_invite", False),
            messages=[Message.from_record(m) for m in rec.get("messages", [])],
            last_message=rec.get("last_message"),
            created_ts=rec.get("created_ts", 0),
            version=rec.get("version", 0),
        )


@dataclass
class FriendRequest:
    user_id: str
    sent_ts: int
    status: str = "pending"


@dataclass
class User:
    """Represents a user in the chat system.

    Attributes:
        user_id (str): Unique identifier for the user
        email (str): Unique login email
        display_name (str): User's chosen display name
        avatar (str): Avatar URL
        friends (Dict[str, int]): Friend user ID -> timestamp the friendship started
        requests_sent (List[FriendRequest]): Pending requests this user sent
        requests_received (List[FriendRequest]): Pending requests sent to this user
    """
    user_id: str
    email: str
    display_name: str
    avatar: str = DEFAULT_AVATAR
    friends: Dict[str, int] = field(default_factory=dict)
    requests_sent: List[FriendRequest] = field(default_factory=list)
    requests_received: List[FriendRequest] = field(default_factory=list)
    created_ts: int = 0
    version: int = 0

    def public(self) -> dict:
        return {"user_id": self.user_id, "email": self.email,
                "display_name": self.display_name, "avatar": self.avatar}

    def to_record(self) -> dict:
        rec = self.public()
        rec.update({
            "friends": dict(self.friends),
            "requests_sent": [vars(r).copy() for r in self.requests_sent],
            "requests_received": [vars(r).copy() for r in self.requests_received],
            "created_ts": self.created_ts,
        })
        return rec

    @classmethod
    def from_record(cls, rec: dict) -> "User":
        return cls(
            user_id=rec["user_id"],
            email=rec["email"],
            display_name=rec["display_name"],
            avatar=rec.get("avatar", DEFAULT_AVATAR),
            friends=dict(rec.get("friends", {})),
            requests_sent=[FriendRequest(**r) for r in rec.get("requests_sent", [])],
            requests_received=[FriendRequest(**r) for r in rec.get("requests_received", [])],
            created_ts=rec.get("created_ts", 0),
            version=rec.get("version", 0),
        )


class ConnectionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One live transport session (one device of one user).

    Attributes:
        connection_id (str): Opaque id, unique for the process lifetime
        state (ConnectionState): Handshake progress
        user_id (str | None): Authenticated user, set by the handshake
        email (str | None): Authenticated user's email
        rooms (Set[str]): Rooms joined by this connection, cached for teardown
        outbox (asyncio.Queue): Envelopes waiting to be written to the transport
    """
    connection_id: str
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    user_id: Optional[str] = None
    email: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)

    @property
    def is_authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED
