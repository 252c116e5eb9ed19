import asyncio
import base64
import binascii
import contextlib
import functools
from typing import Any, AsyncIterable, Dict, Optional

import grpc
from grpc import aio

from .auth import TokenAuthority
from .blobstore import BlobStore
from .coordinator import MutationCoordinator
from .errors import AuthenticationFailed, ChatError, ValidationFailed
from .events import EventHandlers
from .friends import FriendService
from .groups import GroupService
from .lifecycle import ConnectionManager
from .models import Message, OwnerRef, User
from .repo import UsersRepo
from .. import wire
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.server')

Request = Dict[str, Any]

AVATAR_CONTENT_TYPES = ("image/jpeg", "image/png", "image/gif")
MAX_AVATAR_BYTES = 10 * 1024 * 1024


def rpc(authenticated: bool = True):
    """Wrap a unary handler: resolve the caller and map ChatError to a gRPC status.

    Authenticated handlers receive the calling User as an extra argument,
    resolved from the ``authorization: Bearer <token>`` metadata.
    """
    def decorate(fn):
        @functools.wraps(fn)
        async def handler(self, request: Request, context: aio.ServicerContext):
            try:
                if authenticated:
                    user = await self._caller(context)
                    return await fn(self, request, context, user)
                return await fn(self, request, context)
            except ChatError as e:
                logger.error(f"{fn.__name__}: {e.message}")
                await context.abort(e.status, e.message)
        return handler
    return decorate


class ChatService:
    """gRPC service implementation for chat functionality.

    Unary RPCs cover accounts and profiles, groups, messages, friends and
    files. The bidirectional ``OpenStream`` RPC is the realtime connection:
    its first envelope must authenticate, after which incoming envelopes are
    dispatched to the event handlers and the connection's outbox is streamed
    back.
    """

    def __init__(self, users: UsersRepo, tokens: TokenAuthority, connections: ConnectionManager,
                 events: EventHandlers, coordinator: MutationCoordinator, groups: GroupService,
                 friends: FriendService, blobs: BlobStore):
        """Initialize chat service with its collaborators.

        Args:
            users (UsersRepo): User accounts
            tokens (TokenAuthority): Issues tokens at login, validates them per call
            connections (ConnectionManager): Lifecycle of streaming connections
            events (EventHandlers): Handlers of streamed client events
            coordinator (MutationCoordinator): Message list mutations
            groups (GroupService): Group administration
            friends (FriendService): Friend requests and friendships
            blobs (BlobStore): Uploaded files
        """
        self.users = users
        self.tokens = tokens
        self.connections = connections
        self.events = events
        self.coordinator = coordinator
        self.groups = groups
        self.friends = friends
        self.blobs = blobs

    async def _caller(self, context: aio.ServicerContext) -> User:
        metadata = dict(context.invocation_metadata() or ())
        header = metadata.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationFailed("Missing bearer token")
        return await self.tokens.authenticate(token.strip())

    async def _peer_id(self, request: Request, prefix: str = "") -> Optional[str]:
        if request.get(f"{prefix}receiver_id"):
            return (await self.users.require(request[f"{prefix}receiver_id"])).user_id
        if request.get(f"{prefix}receiver_email"):
            return (await self.users.require_by_email(request[f"{prefix}receiver_email"])).user_id
        return None

    async def _owner(self, request: Request, user: User, prefix: str = "",
                     required: bool = True) -> Optional[OwnerRef]:
        """Owner named by ``<prefix>group_id`` or ``<prefix>receiver_id|email``."""
        if request.get(f"{prefix}group_id"):
            return OwnerRef.group(request[f"{prefix}group_id"])
        peer_id = await self._peer_id(request, prefix)
        if peer_id:
            return OwnerRef.conversation(user.user_id, peer_id)
        if required:
            raise ValidationFailed(f"{prefix}group_id or {prefix}receiver_id is required")
        return None

    @staticmethod
    def _field(request: Request, name: str) -> Any:
        value = request.get(name)
        if value in (None, ""):
            raise ValidationFailed(f"{name} is required")
        return value

    def _decode_b64(self, request: Request, name: str) -> bytes:
        try:
            return base64.b64decode(self._field(request, name), validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValidationFailed(f"{name} is not valid base64: {e}")

    @rpc(authenticated=False)
    async def RegisterUser(self, request: Request, context: aio.ServicerContext):
        """Register a new user and hand back a token for it.

        Raises:
            ALREADY_EXISTS: If the email is already registered
            INVALID_ARGUMENT: If email or display name is missing
        """
        user = await self.users.create(request.get("email"), request.get("display_name"),
                                       request.get("avatar"))
        logger.info(f"RegisterUser: User '{user.email}' registered successfully with ID '{user.user_id}'")
        return {"user": user.public(), "token": self.tokens.issue(user)}

    @rpc(authenticated=False)
    async def LoginUser(self, request: Request, context: aio.ServicerContext):
        """Log a user in by email.

        Note:
            Only verifies the email exists; credential checks belong to an
            identity provider in front of this service.
        """
        user = await self.users.find_by_email(request.get("email"))
        if not user:
            return {"success": False, "error_message": f"User {request.get('email')} not found"}
        logger.info(f"LoginUser: User '{user.email}' logged in")
        return {"success": True, "user": user.public(), "token": self.tokens.issue(user)}

    @rpc()
    async def SearchUsers(self, request, context, user):
        users = await self.users.search(request.get("query", ""))
        return {"users": [u.public() for u in users if u.user_id != user.user_id]}

    @rpc()
    async def CreateGroup(self, request, context, user):
        group = await self.groups.create(user.user_id, request.get("name"),
                                         request.get("member_ids") or [], request.get("avatar"))
        logger.info(f"CreateGroup: User '{user.user_id}' created group '{group.name}'")
        return {"group": group.summary()}

    @rpc()
    async def ListUserGroups(self, request, context, user):
        groups = await self.groups.list_for_user(user.user_id)
        return {"groups": [g.summary() for g in groups]}

    @rpc()
    async def ListGroupMembers(self, request, context, user):
        members = await self.groups.members(user.user_id, self._field(request, "group_id"))
        return {"members": members}

    @rpc()
    async def AddMembers(self, request, context, user):
        group = await self.groups.add_members(user.user_id, self._field(request, "group_id"),
                                              request.get("member_ids") or [])
        return {"group": group.summary()}

    @rpc()
    async def RemoveMember(self, request, context, user):
        group = await self.groups.remove_member(user.user_id, self._field(request, "group_id"),
                                                self._field(request, "member_id"))
        return {"group": group.summary()}

    @rpc()
    async def LeaveGroup(self, request, context, user):
        group = await self.groups.leave(user.user_id, self._field(request, "group_id"))
        return {"group": group.summary() if group else None, "deleted": group is None}

    @rpc()
    async def AddAdmin(self, request, context, user):
        group = await self.groups.add_admin(user.user_id, self._field(request, "group_id"),
                                            self._field(request, "member_id"))
        return {"group": group.summary()}

    @rpc()
    async def RemoveAdmin(self, request, context, user):
        group = await self.groups.remove_admin(user.user_id, self._field(request, "group_id"),
                                               self._field(request, "member_id"))
        return {"group": group.summary()}

    @rpc()
    async def SetMemberRole(self, request, context, user):
        group = await self.groups.set_member_role(user.user_id, self._field(request, "group_id"),
                                                  self._field(request, "member_id"),
                                                  self._field(request, "role"))
        return {"group": group.summary()}

    @rpc()
    async def TransferSoleAdmin(self, request, context, user):
        group = await self.groups.transfer_sole_admin(user.user_id, self._field(request, "group_id"),
                                                      self._field(request, "member_id"))
        return {"group": group.summary()}

    @rpc()
    async def AddDeputy(self, request, context, user):
        group = await self.groups.add_deputy(user.user_id, self._field(request, "group_id"),
                                             self._field(request, "member_id"))
        return {"group": group.summary()}

    @rpc()
    async def RemoveDeputy(self, request, context, user):
        group = await self.groups.remove_deputy(user.user_id, self._field(request, "group_id"),
                                                self._field(request, "member_id"))
        return {"group": group.summary()}

    @rpc()
    async def ToggleMemberInvite(self, request, context, user):
        group = await self.groups.toggle_member_invite(user.user_id, self._field(request, "group_id"),
                                                       request.get("allow"))
        return {"group": group.summary()}

    @rpc()
    async def UpdateGroupInfo(self, request, context, user):
        group = await self.groups.update_info(user.user_id, self._field(request, "group_id"),
                                              request.get("name"), request.get("avatar"))
        return {"group": group.summary()}

    @rpc()
    async def DeleteGroup(self, request, context, user):
        await self.groups.delete(user.user_id, self._field(request, "group_id"))
        return {"success": True}

    @rpc()
    async def SendMessage(self, request, context, user):
        owner = await self._owner(request, user)
        message = Message.from_client(user.user_id, request.get("message"), self.coordinator.clock())
        stored = await self.coordinator.append(owner, message)
        return {"message": stored.to_record()}

    @rpc()
    async def ListMessages(self, request, context, user):
        owner = await self._owner(request, user)
        messages = await self.coordinator.read_list_filtered(owner, user.user_id)
        return {"messages": [m.to_record() for m in messages]}

    @rpc()
    async def RecallMessage(self, request, context, user):
        owner = await self._owner(request, user, required=False)
        message = await self.coordinator.recall(self._field(request, "message_id"), user.user_id, owner)
        return {"message": message.to_record()}

    @rpc()
    async def ReactMessage(self, request, context, user):
        owner = await self._owner(request, user, required=False)
        message = await self.coordinator.react(self._field(request, "message_id"), user.user_id,
                                               self._field(request, "reaction"), owner)
        return {"message": message.to_record()}

    @rpc()
    async def DeleteMessage(self, request, context, user):
        owner = await self._owner(request, user, required=False)
        await self.coordinator.soft_delete_for_user(self._field(request, "message_id"), user.user_id, owner)
        return {"success": True}

    @rpc()
    async def HideAllMessages(self, request, context, user):
        owner = await self._owner(request, user)
        hidden = await self.coordinator.hide_all_for_user(owner, user.user_id)
        return {"hidden": hidden}

    @rpc()
    async def ForwardMessage(self, request, context, user):
        message_id = self._field(request, "message_id")
        source = await self._owner(request, user, prefix="source_", required=False)
        source = source or await self.coordinator.locate(message_id)
        target = await self._owner(request, user, prefix="target_")
        message = await self.coordinator.forward(message_id, source, target, user.user_id)
        return {"message": message.to_record()}

    @rpc()
    async def MarkMessageRead(self, request, context, user):
        owner = await self._owner(request, user, required=False)
        message = await self.coordinator.mark_read(self._field(request, "message_id"), user.user_id, owner)
        return {"message": message.to_record()}

    async def _other_user(self, request: Request) -> str:
        if request.get("user_id"):
            return request["user_id"]
        return (await self.users.require_by_email(self._field(request, "email"))).user_id

    @rpc()
    async def SendFriendRequest(self, request, context, user):
        sent = await self.friends.send_request(user.user_id, await self._other_user(request))
        return {"request": vars(sent).copy()}

    @rpc()
    async def RespondFriendRequest(self, request, context, user):
        accepted = await self.friends.respond(user.user_id, await self._other_user(request),
                                              bool(request.get("accept")))
        return {"friends": accepted}

    @rpc()
    async def WithdrawFriendRequest(self, request, context, user):
        await self.friends.withdraw(user.user_id, await self._other_user(request))
        return {"success": True}

    @rpc()
    async def Unfriend(self, request, context, user):
        purged = await self.friends.unfriend(user.user_id, await self._other_user(request))
        return {"success": True, "purged": purged}

    @rpc()
    async def ListFriends(self, request, context, user):
        return {"friends": await self.friends.list_friends(user.user_id),
                "requests": await self.friends.list_requests(user.user_id)}

    @rpc()
    async def UploadFile(self, request, context, user):
        data = self._decode_b64(request, "data_b64")
        filename = request.get("filename", "")
        content_type = request.get("content_type", "")
        url = await self.blobs.upload(data, content_type, filename)
        logger.info(f"UploadFile: User '{user.user_id}' uploaded {filename or 'a file'} ({len(data)} bytes)")
        return {"url": url, "size": len(data), "name": filename}

    @rpc()
    async def GetFile(self, request, context, user):
        key = request.get("key") or self.blobs.key_from_url(self._field(request, "url"))
        blob = await self.blobs.download(key)
        return {"data_b64": base64.b64encode(blob.data).decode("ascii"),
                "content_type": blob.content_type, "length": blob.length}

    @rpc()
    async def GetProfile(self, request, context, user):
        """Profile of the user named by user_id or email, or of the caller."""
        if request.get("user_id"):
            found = await self.users.require(request["user_id"])
        elif request.get("email"):
            found = await self.users.require_by_email(request["email"])
        else:
            found = user
        return {"user": found.public()}

    @rpc()
    async def UpdateProfile(self, request, context, user):
        """Change the caller's display name and/or avatar.

        The avatar is either a URL (``avatar``) or an image uploaded inline
        as ``avatar_b64`` with its ``avatar_content_type``.

        Raises:
            INVALID_ARGUMENT: Blank name, bad base64, or an avatar that is not a
                JPEG, PNG or GIF image of at most 10 MB
        """
        avatar = request.get("avatar")
        if request.get("avatar_b64"):
            data = self._decode_b64(request, "avatar_b64")
            content_type = request.get("avatar_content_type", "")
            if content_type not in AVATAR_CONTENT_TYPES:
                raise ValidationFailed("Avatar must be a JPEG, PNG or GIF image")
            if len(data) > MAX_AVATAR_BYTES:
                raise ValidationFailed(f"Avatar exceeds {MAX_AVATAR_BYTES} bytes")
            avatar = await self.blobs.upload(data, content_type, request.get("avatar_filename", ""))
        updated = await self.users.update_profile(user.user_id, request.get("display_name"), avatar)
        logger.info(f"UpdateProfile: User '{user.user_id}' updated their profile")
        return {"user": updated.public()}

    async def OpenStream(self, request_iterator: AsyncIterable[Request], context: aio.ServicerContext):
        """Open the realtime connection of one device.

        Protocol Flow:
        1. Client sends ``authenticate`` with its token
        2. Server validates it, registers the connection and answers ``authenticated``
        3. Client events are dispatched as they arrive while queued server
           events are streamed back

        Yields:
            dict: Envelopes from the connection's outbox

        Side Effects:
            - Registers the connection in presence on success
            - Closes the connection (presence, rooms, offline broadcast) on exit
        """
        conn = self.connections.accept()
        try:
            first = await anext(request_iterator)
        except StopAsyncIteration:
            await self.connections.close(conn)
            return
        if first.get("event") != wire.AUTHENTICATE:
            logger.error("ChatStream: Invalid first envelope - not authenticate")
            await self.connections.close(conn)
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "First envelope must be authenticate")
        data = first.get("data")
        token = data.get("token") if isinstance(data, dict) else None
        try:
            user = await self.connections.authenticate(conn, token)
        except AuthenticationFailed as e:
            await context.abort(e.status, e.message)
        except BaseException:
            # cancelled mid-handshake
            await self.connections.close(conn)
            raise
        logger.info(f"ChatStream: User '{user.user_id}' connected to stream {conn.connection_id}")
        await conn.outbox.put(wire.envelope(wire.AUTHENTICATED,
                                            {"user": user.public(), "connectionId": conn.connection_id}))

        async def reader():
            try:
                async for incoming in request_iterator:
                    await self.events.dispatch(conn, incoming.get("event"), incoming.get("data"))
            finally:
                # Client half-closed its side or the stream broke
                conn.outbox.put_nowait(None)

        reader_task = asyncio.create_task(reader())
        try:
            while True:
                out = await conn.outbox.get()
                if out is None:
                    break
                yield out
        finally:
            reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task
            await self.connections.close(conn)
            logger.info(f"ChatStream: User '{user.user_id}' disconnected from stream {conn.connection_id}")


def build_handler(servicer: ChatService) -> grpc.GenericRpcHandler:
    """Expose a servicer as ``chatcore.ChatService`` with JSON (de)serializers."""
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            getattr(servicer, name),
            request_deserializer=wire.decode,
            response_serializer=wire.encode,
        )
        for name in wire.UNARY_METHODS
    }
    handlers[wire.STREAM_METHOD] = grpc.stream_stream_rpc_method_handler(
        servicer.OpenStream,
        request_deserializer=wire.decode,
        response_serializer=wire.encode,
    )
    return grpc.method_handlers_generic_handler(wire.SERVICE_NAME, handlers)