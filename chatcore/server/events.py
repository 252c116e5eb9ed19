import functools
from typing import Any, Awaitable, Callable, Dict, Optional

from .coordinator import MutationCoordinator
from .errors import ChatError, Forbidden, NotFound, ValidationFailed
from .hub import EventRouter
from .lifecycle import ConnectionManager
from .models import Connection, Message, OwnerRef
from .presence import PresenceRegistry
from .repo import UsersRepo
from .. import wire
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.events')

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class EventHandlers:
    """Handles the events a client sends on its open stream.

    Each event name maps to one coroutine taking the authenticated connection
    and the event data. The acting user is always the connection's user; ids
    in the payload only name the other side.
    """

    def __init__(self, connections: ConnectionManager, coordinator: MutationCoordinator,
                 users: UsersRepo, router: EventRouter, presence: PresenceRegistry):
        self.connections = connections
        self.coordinator = coordinator
        self.users = users
        self.router = router
        self.presence = presence
        self.handlers: Dict[str, Handler] = {
            wire.JOIN_GROUP: self.on_join_group,
            wire.LEAVE_GROUP: self.on_leave_group,
            wire.GROUP_MESSAGE: self.on_group_message,
            wire.NEW_MESSAGE: self.on_new_message,
            wire.TYPING_START: functools.partial(self.on_typing, event=wire.TYPING_START),
            wire.TYPING_STOP: functools.partial(self.on_typing, event=wire.TYPING_STOP),
            wire.MESSAGE_READ: self.on_message_read,
            wire.MESSAGE_RECALLED: self.on_message_recalled,
            wire.MESSAGE_DELETED: self.on_message_deleted,
            wire.MESSAGE_REACTION: self.on_message_reaction,
            wire.USER_STATUS: self.on_user_status,
            wire.CALL_USER: self.on_call_user,
            wire.CALL_ACCEPTED: functools.partial(self.on_call_answer, event=wire.CALL_ACCEPTED),
            wire.CALL_DECLINED: functools.partial(self.on_call_answer, event=wire.CALL_DECLINED),
            wire.CALL_CANCELLED: self.on_call_cancelled,
            wire.CALL_ENDED: self.on_call_ended,
        }

    async def dispatch(self, conn: Connection, event: str, data: Optional[Dict[str, Any]]):
        """Run the handler of one incoming event.

        Failures never propagate to the stream: they are logged and reported
        to the originating connection as an ``error`` event.
        """
        handler = self.handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event '{event}' from connection {conn.connection_id}")
            await self._reply_error(conn, event, ValidationFailed(f"Unknown event '{event}'"))
            return
        if not conn.is_authenticated:
            await self._reply_error(conn, event, Forbidden("Connection is not authenticated"))
            return
        try:
            await handler(conn, data if isinstance(data, dict) else {})
        except ChatError as e:
            logger.warning(f"{event} from {conn.user_id} failed: {e.message}")
            await self._reply_error(conn, event, e)
        except Exception:
            logger.exception(f"Unexpected error handling {event} from {conn.user_id}")
            await self.router.emit_to_connection(conn.connection_id, wire.ERROR, {
                "event": event, "code": "internal", "message": "Internal server error"})

    async def _reply_error(self, conn: Connection, event: str, error: ChatError):
        payload = error.to_payload()
        payload["event"] = event
        await self.router.emit_to_connection(conn.connection_id, wire.ERROR, payload)

    async def _reply(self, conn: Connection, event: str, payload: dict):
        await self.router.emit_to_connection(conn.connection_id, event, payload)

    async def _resolve_user(self, data: dict, id_key: str, email_key: str) -> str:
        if data.get(id_key):
            return (await self.users.require(data[id_key])).user_id
        if data.get(email_key):
            return (await self.users.require_by_email(data[email_key])).user_id
        raise ValidationFailed(f"{id_key} or {email_key} is required")

    async def _owner_hint(self, conn: Connection, data: dict) -> Optional[OwnerRef]:
        if data.get("groupId"):
            return OwnerRef.group(data["groupId"])
        if data.get("receiverId") or data.get("receiverEmail"):
            peer_id = await self._resolve_user(data, "receiverId", "receiverEmail")
            return OwnerRef.conversation(conn.user_id, peer_id)
        return None

    def _build_message(self, conn: Connection, raw: Any) -> Message:
        return Message.from_client(conn.user_id, raw, self.coordinator.clock())

    @staticmethod
    def _message_id(data: dict) -> str:
        message_id = data.get("messageId")
        if not message_id:
            raise ValidationFailed("messageId is required")
        return message_id

    async def on_join_group(self, conn: Connection, data: dict):
        group_id = data.get("groupId")
        if not group_id:
            raise ValidationFailed("groupId is required")
        await self.connections.join_room(conn, group_id)

    async def on_leave_group(self, conn: Connection, data: dict):
        group_id = data.get("groupId")
        if not group_id:
            raise ValidationFailed("groupId is required")
        self.connections.leave_room(conn, group_id)

    async def on_group_message(self, conn: Connection, data: dict):
        group_id = data.get("groupId")
        if not group_id:
            raise ValidationFailed("groupId is required")
        message = self._build_message(conn, data.get("message"))
        stored = await self.coordinator.append(OwnerRef.group(group_id), message, conn.connection_id)
        await self._reply(conn, wire.GROUP_MESSAGE_SENT,
                          {"success": True, "groupId": group_id, "messageId": stored.message_id})

    async def on_new_message(self, conn: Connection, data: dict):
        receiver_id = await self._resolve_user(data, "receiverId", "receiverEmail")
        message = self._build_message(conn, data.get("message"))
        owner = OwnerRef.conversation(conn.user_id, receiver_id)
        stored = await self.coordinator.append(owner, message, conn.connection_id)
        await self._reply(conn, wire.MESSAGE_SENT,
                          {"success": True, "conversationId": owner.owner_id,
                           "messageId": stored.message_id})

    async def on_typing(self, conn: Connection, data: dict, event: str = wire.TYPING_START):
        receiver_id = await self._resolve_user(data, "receiverId", "receiverEmail")
        await self.router.emit_to_user(receiver_id, event,
                                       {"senderEmail": conn.email, "senderId": conn.user_id})

    async def on_message_read(self, conn: Connection, data: dict):
        message_id = self._message_id(data)
        owner = None
        if data.get("senderId") or data.get("senderEmail"):
            sender_id = await self._resolve_user(data, "senderId", "senderEmail")
            owner = OwnerRef.conversation(conn.user_id, sender_id)
        await self.coordinator.mark_read(message_id, conn.user_id, owner, conn.connection_id)

    async def on_message_recalled(self, conn: Connection, data: dict):
        message_id = self._message_id(data)
        owner = await self._owner_hint(conn, data)
        await self.coordinator.recall(message_id, conn.user_id, owner, conn.connection_id)
        await self._reply(conn, wire.MESSAGE_RECALL_CONFIRMED, {"success": True, "messageId": message_id})

    async def on_message_deleted(self, conn: Connection, data: dict):
        message_id = self._message_id(data)
        owner = await self._owner_hint(conn, data)
        await self.coordinator.soft_delete_for_user(message_id, conn.user_id, owner, conn.connection_id)
        await self._reply(conn, wire.MESSAGE_DELETE_CONFIRMED, {"success": True, "messageId": message_id})

    async def on_message_reaction(self, conn: Connection, data: dict):
        message_id = self._message_id(data)
        reaction = data.get("reaction")
        owner = await self._owner_hint(conn, data)
        message = await self.coordinator.react(message_id, conn.user_id, reaction, owner,
                                                conn.connection_id)
        active = any(r.user_id == conn.user_id and r.symbol == reaction for r in message.reactions)
        await self._reply(conn, wire.MESSAGE_REACTION_CONFIRMED,
                          {"success": True, "messageId": message_id, "reaction": reaction,
                           "active": active})

    async def on_user_status(self, conn: Connection, data: dict):
        online = bool(data.get("online", True))
        result = await self.connections.announce_status(conn, online)
        statuses = {friend_id: self.presence.is_online(friend_id) for friend_id in result["friends"]}
        await self._reply(conn, wire.INITIAL_FRIEND_STATUSES, {"statuses": statuses})

    async def on_call_user(self, conn: Connection, data: dict):
        callee_id = data.get("toUserId")
        if not callee_id:
            raise ValidationFailed("toUserId is required")
        delivered = await self.router.emit_to_user(callee_id, wire.INCOMING_CALL,
                                                   {"fromUserId": conn.user_id, "toUserId": callee_id})
        if not delivered:
            raise NotFound(f"User {callee_id} is not online")
        logger.info(f"Call from {conn.user_id} to {callee_id}")

    async def on_call_answer(self, conn: Connection, data: dict, event: str = wire.CALL_ACCEPTED):
        """Relay the callee's accept or decline back to the caller."""
        caller_id = data.get("fromUserId")
        if not caller_id:
            raise ValidationFailed("fromUserId is required")
        await self.router.emit_to_user(caller_id, event,
                                       {"fromUserId": caller_id, "toUserId": conn.user_id})

    async def on_call_cancelled(self, conn: Connection, data: dict):
        callee_id = data.get("toUserId")
        if not callee_id:
            raise ValidationFailed("toUserId is required")
        await self.router.emit_to_user(callee_id, wire.CALL_CANCELLED,
                                       {"fromUserId": conn.user_id, "toUserId": callee_id})

    async def on_call_ended(self, conn: Connection, data: dict):
        room_id = data.get("roomId") or ""
        parts = room_id.split("_")
        if len(parts) != 2 or conn.user_id not in parts:
            raise Forbidden("You are not part of this call")
        other_id = parts[1] if parts[0] == conn.user_id else parts[0]
        await self.router.emit_to_user(other_id, wire.CALL_ENDED, {"roomId": room_id})
        logger.info(f"Call {room_id} ended by {conn.user_id}")
