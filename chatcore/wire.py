"""JSON wire format shared by the server and the client.

Every RPC of ``chatcore.ChatService`` carries a single JSON object. The
streaming RPC carries envelopes of the form ``{"event": <name>, "data": {...}}``.
"""
import json
from typing import Any, Dict, Optional

SERVICE_NAME = "chatcore.ChatService"


def encode(obj: Dict[str, Any]) -> bytes:
    """Serialize a JSON object to bytes (gRPC response/request serializer)."""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode(raw: bytes) -> Dict[str, Any]:
    """Deserialize bytes to a JSON object; empty payloads decode to {}."""
    if not raw:
        return {}
    obj = json.loads(raw.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("payload must be a JSON object")
    return obj


def envelope(event: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"event": event, "data": data or {}}


def method_path(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"


STREAM_METHOD = "OpenStream"

UNARY_METHODS = (
    "RegisterUser", "LoginUser", "SearchUsers",
    "CreateGroup", "ListUserGroups", "ListGroupMembers", "AddMembers", "RemoveMember",
    "LeaveGroup", "AddAdmin", "RemoveAdmin", "SetMemberRole", "TransferSoleAdmin",
    "AddDeputy", "RemoveDeputy", "ToggleMemberInvite", "UpdateGroupInfo", "DeleteGroup",
    "SendMessage", "ListMessages", "RecallMessage", "ReactMessage", "DeleteMessage",
    "HideAllMessages", "ForwardMessage", "MarkMessageRead",
    "SendFriendRequest", "RespondFriendRequest", "WithdrawFriendRequest", "Unfriend",
    "ListFriends", "UploadFile", "GetFile", "GetProfile", "UpdateProfile",
)


# Client -> server events
AUTHENTICATE = "authenticate"
JOIN_GROUP = "joinGroup"
LEAVE_GROUP = "leaveGroup"
GROUP_MESSAGE = "groupMessage"
TYPING_START = "typingStart"
TYPING_STOP = "typingStop"
USER_STATUS = "userStatus"
CALL_USER = "call-user"

# Server -> client events
AUTHENTICATED = "authenticated"
NEW_GROUP_MESSAGE = "newGroupMessage"
GROUP_MESSAGE_SENT = "groupMessageSent"
MESSAGE_SENT = "messageSent"
RECALL_GROUP_MESSAGE = "recallGroupMessage"
MESSAGE_RECALL_CONFIRMED = "messageRecallConfirmed"
MESSAGE_DELETE_CONFIRMED = "messageDeleteConfirmed"
MESSAGE_REACTION_CONFIRMED = "messageReactionConfirmed"
FRIEND_STATUS = "friendStatusUpdate"
INITIAL_FRIEND_STATUSES = "initialFriendStatuses"
FRIEND_REQUEST_UPDATE = "friendRequestUpdate"
FRIEND_REQUEST_WITHDRAWN = "friendRequestWithdrawn"
FRIEND_LIST_UPDATE = "friendListUpdate"
GROUP_UPDATE = "groupUpdate"
INCOMING_CALL = "incoming-call"
ERROR = "error"

# Both directions
NEW_MESSAGE = "newMessage"
MESSAGE_RECALLED = "messageRecalled"
MESSAGE_DELETED = "messageDeleted"
MESSAGE_REACTION = "messageReaction"
MESSAGE_READ = "messageRead"
CALL_ACCEPTED = "call-accepted"
CALL_DECLINED = "call-declined"
CALL_CANCELLED = "call-cancelled"
CALL_ENDED = "call-ended"
