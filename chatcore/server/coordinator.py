import uuid
from typing import Callable, List, Optional, Union

from .errors import Forbidden, MessageNotFound, NotFound, RecallWindowExpired, ValidationFailed
from .hub import EventRouter
from .models import (STATUS_READ, Conversation, ForwardInfo, Group, Message, OwnerRef, Reaction,
                     SystemContent)
from .repo import ConversationsRepo, GroupsRepo, UsersRepo, now_ms
from .store import KeyedLock
from .. import wire
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.coordinator')

SYSTEM_SENDER = "system"
DEFAULT_RECALL_WINDOW_SECONDS = 120

Owned = Union[Conversation, Group]


class MutationCoordinator:
    """Applies message-level mutations to conversation and group message lists.

    Every mutation follows the same shape: fetch the owning record, find the
    message by id with a linear scan, change an in-memory copy of the whole
    list and write the list back in a single store update. The sequence runs
    under a per-owner lock, and the update carries the version that was read,
    so concurrent mutators of one owner are serialized in-process and a stale
    write from elsewhere is rejected instead of dropping the newer list.

    After a successful write the change is fanned out through the event
    router. Fan-out is best-effort and never fails the mutation.
    """

    def __init__(self, conversations: ConversationsRepo, groups: GroupsRepo, users: UsersRepo,
                 router: EventRouter, locks: Optional[KeyedLock] = None,
                 recall_window_seconds: int = DEFAULT_RECALL_WINDOW_SECONDS,
                 clock: Callable[[], int] = now_ms):
        """Initialize the coordinator.

        Args:
            conversations (ConversationsRepo): 1:1 message lists
            groups (GroupsRepo): Group records and message lists
            users (UsersRepo): Used to resolve sender emails and forward targets
            router (EventRouter): Fan-out of applied changes
            locks (KeyedLock, optional): Per-owner locks, shared with group administration
            recall_window_seconds (int): Window in which non-admin senders may recall
            clock (Callable[[], int]): Current time in milliseconds
        """
        self.conversations = conversations
        self.groups = groups
        self.users = users
        self.router = router
        self.locks = locks or KeyedLock()
        self.recall_window_ms = recall_window_seconds * 1000
        self.clock = clock

    async def _load(self, owner: OwnerRef) -> Owned:
        if owner.is_group:
            return await self.groups.require(owner.owner_id)
        conversation = await self.conversations.get(owner.owner_id)
        if conversation is None:
            raise NotFound(f"Conversation {owner.owner_id} not found")
        return conversation

    def _check_access(self, owner: OwnerRef, record: Owned, user_id: str):
        if owner.is_group:
            if not record.is_member(user_id):
                raise Forbidden(f"User {user_id} is not a member of group {owner.owner_id}")
        elif user_id not in record.participants:
            raise Forbidden(f"User {user_id} is not part of conversation {owner.owner_id}")

    @staticmethod
    def _index_of(messages: List[Message], message_id: str) -> int:
        for i, msg in enumerate(messages):
            if msg.message_id == message_id:
                return i
        raise MessageNotFound(f"Message {message_id} not found")

    async def _write(self, owner: OwnerRef, record: Owned, messages: List[Message],
                     last_message: Optional[dict] = None) -> Owned:
        if owner.is_group:
            return await self.groups.replace_messages(record, messages, last_message)
        return await self.conversations.replace_messages(record, messages)

    async def locate(self, message_id: str) -> OwnerRef:
        """Find the conversation or group holding a message id.

        Raises:
            MessageNotFound: If no list contains the id
        """
        conversation = await self.conversations.find_containing(message_id)
        if conversation is not None:
            return OwnerRef.conversation(*conversation.participants)
        group = await self.groups.find_containing(message_id)
        if group is not None:
            return OwnerRef.group(group.group_id)
        raise MessageNotFound(f"Message {message_id} not found")

    async def _require_unused(self, message_id: str):
        # message ids are unique across every conversation and group
        try:
            owner = await self.locate(message_id)
        except MessageNotFound:
            return
        logger.warning(f"Refused duplicate message id {message_id} (already in {owner.kind} {owner.owner_id})")
        raise ValidationFailed(f"Duplicate message id {message_id}")

    async def _user_email(self, user_id: str) -> Optional[str]:
        user = await self.users.get(user_id)
        return user.email if user else None

    async def _fan_out(self, owner: OwnerRef, record: Owned, event: str, payload: dict,
                       origin_connection_id: Optional[str] = None):
        try:
            if owner.is_group:
                await self.router.emit_to_room(owner.owner_id, event, payload, origin_connection_id)
            else:
                await self.router.emit_to_users(record.participants, event, payload, origin_connection_id)
        except Exception:
            logger.exception(f"Fan-out of {event} for {owner.kind} {owner.owner_id} failed")

    @staticmethod
    def _summary(message: Message) -> dict:
        return {"message_id": message.message_id, "content": message.preview(),
                "sender_id": message.sender_id, "timestamp": message.created_ts}

    async def append(self, owner: OwnerRef, message: Message,
                     origin_connection_id: Optional[str] = None) -> Message:
        """Append a message to the end of a conversation or group list.

        Args:
            owner (OwnerRef): Target conversation or group
            message (Message): New message; its id is supplied by the caller
            origin_connection_id (str, optional): Sending connection, skipped by fan-out

        Returns:
            Message: The stored message

        Raises:
            ValidationFailed: Missing or duplicate message id, or a conversation
                owner that does not match sender and receiver
            Forbidden: If the sender does not belong to the group
            NotFound: If the group does not exist
        """
        if not message.message_id:
            raise ValidationFailed("message_id is required")
        if not message.sender_id:
            raise ValidationFailed("sender_id is required")

        async with self.locks(owner.lock_key, f"message:{message.message_id}"):
            await self._require_unused(message.message_id)
            if owner.is_group:
                group = await self.groups.require(owner.owner_id)
                if message.sender_id != SYSTEM_SENDER and not group.is_member(message.sender_id):
                    raise Forbidden(f"User {message.sender_id} is not a member of group {group.group_id}")
                message.group_id = group.group_id
                message.receiver_id = None
                record = await self.groups.replace_messages(
                    group, group.messages + [message], self._summary(message))
                logger.info(f"New group message saved: {message.message_id} from "
                            f"{message.sender_id} to group {group.group_id}")
            else:
                if message.sender_id not in owner.participants:
                    raise ValidationFailed("Sender is not a participant of this conversation")
                receiver_id = next((p for p in owner.participants if p != message.sender_id),
                                   message.sender_id)
                message.receiver_id = receiver_id
                message.group_id = None
                record = await self.conversations.append(owner.owner_id, owner.participants, message)

        rec = message.to_record()
        if owner.is_group:
            await self._fan_out(owner, record, wire.NEW_GROUP_MESSAGE,
                                {"groupId": owner.owner_id, "message": rec}, origin_connection_id)
        else:
            rec["senderEmail"] = await self._user_email(message.sender_id)
            rec["conversationId"] = owner.owner_id
            await self._fan_out(owner, record, wire.NEW_MESSAGE, rec, origin_connection_id)
        return message

    async def append_system(self, group_id: str, action: str, text: str = "") -> Message:
        """Append a server notice (join, leave, role change...) to a group."""
        message = Message(message_id=uuid.uuid4().hex, sender_id=SYSTEM_SENDER,
                          content=SystemContent(action=action, text=text), created_ts=self.clock())
        return await self.append(OwnerRef.group(group_id), message)

    async def recall(self, message_id: str, requester_id: str, owner: Optional[OwnerRef] = None,
                     origin_connection_id: Optional[str] = None) -> Message:
        """Mark a message as recalled.

        The sender may recall within the recall window; in groups an admin may
        recall any message at any time. Content stays stored.

        Raises:
            Forbidden: Requester is neither the sender nor a group admin
            RecallWindowExpired: Non-admin sender past the window
        """
        owner = owner or await self.locate(message_id)
        async with self.locks(owner.lock_key):
            record = await self._load(owner)
            self._check_access(owner, record, requester_id)
            messages = record.messages
            message = messages[self._index_of(messages, message_id)]

            is_admin = owner.is_group and record.is_admin(requester_id)
            if message.sender_id != requester_id and not is_admin:
                raise Forbidden("Only the sender or a group admin can recall this message")
            if not is_admin and self.clock() - message.created_ts > self.recall_window_ms:
                raise RecallWindowExpired(
                    f"Messages can only be recalled within {self.recall_window_ms // 1000} seconds")

            message.recalled = True
            last_message = None
            if owner.is_group and (record.last_message or {}).get("message_id") == message_id:
                last_message = self._summary(message)
            record = await self._write(owner, record, messages, last_message)
        logger.info(f"Message {message_id} recalled by {requester_id} in {owner.kind} {owner.owner_id}")

        if owner.is_group:
            await self._fan_out(owner, record, wire.RECALL_GROUP_MESSAGE,
                                {"groupId": owner.owner_id, "messageId": message_id,
                                 "senderId": message.sender_id, "recalledBy": requester_id},
                                origin_connection_id)
        else:
            await self._fan_out(owner, record, wire.MESSAGE_RECALLED,
                                {"conversationId": owner.owner_id, "messageId": message_id,
                                 "senderId": message.sender_id,
                                 "senderEmail": await self._user_email(message.sender_id)},
                                origin_connection_id)
        return message

    async def react(self, message_id: str, reactor_id: str, symbol: str,
                    owner: Optional[OwnerRef] = None,
                    origin_connection_id: Optional[str] = None) -> Message:
        """Toggle a reaction.

        Reacting again with the same symbol removes the reaction; a different
        symbol replaces the reactor's previous one, so each reactor keeps at
        most one active reaction per message.
        """
        if not symbol:
            raise ValidationFailed("reaction is required")
        owner = owner or await self.locate(message_id)
        async with self.locks(owner.lock_key):
            record = await self._load(owner)
            self._check_access(owner, record, reactor_id)
            messages = record.messages
            message = messages[self._index_of(messages, message_id)]

            had_same = any(r.user_id == reactor_id and r.symbol == symbol for r in message.reactions)
            message.reactions = [r for r in message.reactions if r.user_id != reactor_id]
            if not had_same:
                message.reactions.append(Reaction(user_id=reactor_id, symbol=symbol,
                                                  reacted_ts=self.clock()))
            record = await self._write(owner, record, messages)
        logger.debug(f"Reaction {symbol} by {reactor_id} on {message_id}: "
                     f"{'removed' if had_same else 'set'}")

        payload = {"messageId": message_id, "reaction": symbol, "userId": reactor_id,
                   "active": not had_same,
                   "reactions": [{"user_id": r.user_id, "symbol": r.symbol} for r in message.reactions]}
        if owner.is_group:
            payload["groupId"] = owner.owner_id
        else:
            payload["conversationId"] = owner.owner_id
        await self._fan_out(owner, record, wire.MESSAGE_REACTION, payload, origin_connection_id)
        return message

    async def soft_delete_for_user(self, message_id: str, user_id: str,
                                   owner: Optional[OwnerRef] = None,
                                   origin_connection_id: Optional[str] = None) -> Message:
        """Hide a message for one user only. Idempotent."""
        owner = owner or await self.locate(message_id)
        async with self.locks(owner.lock_key):
            record = await self._load(owner)
            self._check_access(owner, record, user_id)
            messages = record.messages
            message = messages[self._index_of(messages, message_id)]
            if user_id in message.hidden_for:
                return message
            message.hidden_for.add(user_id)
            await self._write(owner, record, messages)
        logger.debug(f"Message {message_id} hidden for {user_id}")

        # Only the deleting user's other devices need to drop it
        try:
            await self.router.emit_to_user(user_id, wire.MESSAGE_DELETED,
                                           {"messageId": message_id, "ownerId": owner.owner_id},
                                           origin_connection_id)
        except Exception:
            logger.exception(f"Fan-out of {wire.MESSAGE_DELETED} for {user_id} failed")
        return message

    async def mark_read(self, message_id: str, reader_id: str, owner: Optional[OwnerRef] = None,
                        origin_connection_id: Optional[str] = None) -> Message:
        """Mark a 1:1 message as read by its receiver.

        Only the receiver may mark a message; group messages have no single
        receiver and are refused. Marking an already read message changes
        nothing and notifies nobody.

        Raises:
            Forbidden: Reader is not the receiver of the message
            MessageNotFound: No such message in the owner
        """
        owner = owner or await self.locate(message_id)
        async with self.locks(owner.lock_key):
            record = await self._load(owner)
            self._check_access(owner, record, reader_id)
            messages = record.messages
            message = messages[self._index_of(messages, message_id)]
            if owner.is_group or message.receiver_id != reader_id:
                raise Forbidden("Only the receiver can mark this message as read")
            if message.status == STATUS_READ:
                return message
            message.status = STATUS_READ
            record = await self._write(owner, record, messages)
        logger.debug(f"Message {message_id} read by {reader_id}")

        reader = await self.users.get(reader_id)
        try:
            await self.router.emit_to_user(message.sender_id, wire.MESSAGE_READ,
                                           {"messageId": message_id, "conversationId": owner.owner_id,
                                            "readerId": reader_id,
                                            "readerEmail": reader.email if reader else None},
                                           origin_connection_id)
        except Exception:
            logger.exception(f"Fan-out of {wire.MESSAGE_READ} for {message.sender_id} failed")
        return message

    async def forward(self, message_id: str, source: OwnerRef, target: OwnerRef, forwarder_id: str,
                      origin_connection_id: Optional[str] = None) -> Message:
        """Copy a message into another conversation or group as a new message.

        The forwarder must belong to both source and target and must still see
        the source message. Recalled messages are forwarded like any other.

        Returns:
            Message: The new message, stamped with its provenance
        """
        record = await self._load(source)
        self._check_access(source, record, forwarder_id)
        original = record.messages[self._index_of(record.messages, message_id)]
        if original.is_hidden_for(forwarder_id):
            raise MessageNotFound(f"Message {message_id} not found")

        if not target.is_group:
            if forwarder_id not in target.participants:
                raise Forbidden("Can only forward into your own conversations")
            peer = next((p for p in target.participants if p != forwarder_id), forwarder_id)
            await self.users.require(peer)

        forwarded = Message(
            message_id=uuid.uuid4().hex,
            sender_id=forwarder_id,
            content=original.content,
            created_ts=self.clock(),
            forwarded_from=ForwardInfo(original_message_id=original.message_id,
                                       original_owner_id=source.owner_id,
                                       original_sender_id=original.sender_id),
        )
        stored = await self.append(target, forwarded, origin_connection_id)
        logger.info(f"Message {message_id} forwarded by {forwarder_id} from {source.kind} "
                    f"{source.owner_id} to {target.kind} {target.owner_id} as {stored.message_id}")
        return stored

    async def read_list_filtered(self, owner: OwnerRef, viewer_id: str) -> List[Message]:
        """Messages visible to a viewer, oldest first.

        Messages the viewer deleted for themselves are left out; recalled
        messages stay in the list with ``recalled`` set. A conversation that
        never had a message reads as empty.
        """
        try:
            record = await self._load(owner)
        except NotFound:
            if owner.is_group:
                raise
            if viewer_id not in owner.participants:
                raise Forbidden(f"User {viewer_id} is not part of conversation {owner.owner_id}")
            return []
        self._check_access(owner, record, viewer_id)
        visible = [m for m in record.messages if not m.is_hidden_for(viewer_id)]
        visible.sort(key=lambda m: m.created_ts)
        return visible

    async def hide_all_for_user(self, owner: OwnerRef, user_id: str) -> int:
        """Hide every message of a conversation or group for one user.

        Returns:
            int: Number of messages newly hidden
        """
        async with self.locks(owner.lock_key):
            try:
                record = await self._load(owner)
            except NotFound:
                if owner.is_group:
                    raise
                return 0
            self._check_access(owner, record, user_id)
            changed = 0
            for message in record.messages:
                if user_id not in message.hidden_for:
                    message.hidden_for.add(user_id)
                    changed += 1
            if changed:
                await self._write(owner, record, record.messages)
        logger.info(f"Hid {changed} messages of {owner.kind} {owner.owner_id} for {user_id}")
        return changed

    async def purge_between(self, user_a: str, user_b: str) -> int:
        """Permanently delete every message exchanged by two users.

        Returns:
            int: Number of messages removed
        """
        owner = OwnerRef.conversation(user_a, user_b)
        async with self.locks(owner.lock_key):
            conversation = await self.conversations.get(owner.owner_id)
            if conversation is None or not conversation.messages:
                return 0
            removed = len(conversation.messages)
            await self.conversations.replace_messages(conversation, [])
        logger.info(f"Purged {removed} messages between {user_a} and {user_b}")
        return removed
