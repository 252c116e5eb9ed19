import uuid
from typing import Dict, List

from .auth import TokenAuthority
from .errors import AuthenticationFailed, Forbidden
from .hub import EventRouter
from .models import Connection, ConnectionState, Group, User
from .presence import PresenceRegistry
from .repo import GroupsRepo, UsersRepo
from .rooms import RoomTracker
from .. import wire
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.lifecycle')


class ConnectionManager:
    """Owns every live connection from handshake to teardown.

    Connection states: UNAUTHENTICATED -> AUTHENTICATED -> CLOSED. Only an
    authenticated connection is registered in the presence registry and can
    join rooms. When a user's last connection closes, their friends are told
    the user went offline. Going online is announced by the client itself
    (see ``announce_status``).
    """

    def __init__(self, presence: PresenceRegistry, rooms: RoomTracker, router: EventRouter,
                 tokens: TokenAuthority, users: UsersRepo, groups: GroupsRepo):
        self.presence = presence
        self.rooms = rooms
        self.router = router
        self.tokens = tokens
        self.users = users
        self.groups = groups
        self.connections: Dict[str, Connection] = {}

    def accept(self) -> Connection:
        """Create the handle for a freshly opened transport."""
        conn = Connection(connection_id=uuid.uuid4().hex)
        self.connections[conn.connection_id] = conn
        logger.debug(f"Accepted connection {conn.connection_id}")
        return conn

    async def authenticate(self, conn: Connection, token: str) -> User:
        """Run the handshake for a connection.

        Args:
            conn (Connection): Connection in UNAUTHENTICATED state
            token (str): Credential token presented by the client

        Returns:
            User: The authenticated user

        Raises:
            AuthenticationFailed: Bad, expired or unknown token, or a connection
                that is not waiting for its handshake. The connection is closed.

        Side Effects:
            - Registers the connection in the presence registry
            - Makes its outbox reachable through the event router
        """
        if conn.state is not ConnectionState.UNAUTHENTICATED:
            raise AuthenticationFailed(f"Connection is already {conn.state.value}")
        try:
            user = await self.tokens.authenticate(token)
        except AuthenticationFailed as e:
            logger.error(f"Handshake rejected on connection {conn.connection_id}: {e.message}")
            await self.close(conn)
            raise

        conn.user_id = user.user_id
        conn.email = user.email
        conn.state = ConnectionState.AUTHENTICATED
        self.router.attach(conn)
        first = self.presence.register(user.user_id, conn.connection_id)
        logger.info(f"User '{user.user_id}' connected on {conn.connection_id}"
                    f"{' (first device)' if first else ''}")
        return user

    def _require_authenticated(self, conn: Connection):
        if not conn.is_authenticated:
            raise AuthenticationFailed("Connection is not authenticated")

    async def join_room(self, conn: Connection, group_id: str) -> Group:
        """Subscribe a connection to a group's room after checking membership."""
        self._require_authenticated(conn)
        group = await self.groups.require(group_id)
        if not group.is_member(conn.user_id):
            raise Forbidden(f"User {conn.user_id} is not a member of group {group_id}")
        self.rooms.join(group_id, conn.connection_id)
        conn.rooms.add(group_id)
        logger.info(f"User '{conn.user_id}' joined room {group_id}")
        return group

    def leave_room(self, conn: Connection, group_id: str) -> bool:
        self._require_authenticated(conn)
        conn.rooms.discard(group_id)
        left = self.rooms.leave(group_id, conn.connection_id)
        if left:
            logger.info(f"User '{conn.user_id}' left room {group_id}")
        return left

    def evict_from_room(self, user_id: str, group_id: str):
        """Unsubscribe every connection of a user from a room (removed or left member)."""
        for connection_id in self.presence.connections_for(user_id):
            conn = self.connections.get(connection_id)
            if conn is not None and group_id in conn.rooms:
                conn.rooms.discard(group_id)
                self.rooms.leave(group_id, connection_id)

    async def friend_ids(self, user_id: str) -> List[str]:
        user = await self.users.require(user_id)
        return list(user.friends)

    async def announce_status(self, conn: Connection, online: bool) -> dict:
        """Tell the user's friends that the user is online or offline.

        Returns:
            dict: ``friends`` and the subset currently ``onlineFriends``
        """
        self._require_authenticated(conn)
        friends = await self.friend_ids(conn.user_id)
        payload = {"userId": conn.user_id, "email": conn.email, "online": online}
        online_friends = []
        for friend_id in friends:
            if self.presence.is_online(friend_id):
                online_friends.append(friend_id)
                await self.router.emit_to_user(friend_id, wire.FRIEND_STATUS, payload)
        logger.debug(f"Status {'online' if online else 'offline'} of {conn.user_id} sent to "
                     f"{len(online_friends)} online friend(s)")
        return {"friends": friends, "onlineFriends": online_friends}

    async def close(self, conn: Connection):
        """Tear a connection down. Safe to call more than once.

        Side Effects:
            - Unregisters it from presence and every joined room
            - If it was the user's last connection, emits an offline
              friendStatusUpdate to each friend (best-effort)
        """
        if conn.state is ConnectionState.CLOSED:
            return
        was_authenticated = conn.is_authenticated
        conn.state = ConnectionState.CLOSED
        self.connections.pop(conn.connection_id, None)
        self.router.detach(conn.connection_id)
        if not was_authenticated:
            logger.debug(f"Closed unauthenticated connection {conn.connection_id}")
            return

        went_offline = self.presence.unregister(conn.user_id, conn.connection_id)
        if went_offline:
            try:
                friends = await self.friend_ids(conn.user_id)
                payload = {"userId": conn.user_id, "email": conn.email, "online": False}
                for friend_id in friends:
                    await self.router.emit_to_user(friend_id, wire.FRIEND_STATUS, payload)
            except Exception as e:
                logger.error(f"Could not notify friends of {conn.user_id} going offline: {e}")

        self.rooms.remove_connection_from_all_rooms(conn.connection_id, conn.rooms)
        conn.rooms.clear()
        logger.info(f"User '{conn.user_id}' disconnected from {conn.connection_id}")

    async def shutdown(self):
        """Close every live connection (server stop)."""
        for conn in list(self.connections.values()):
            await self.close(conn)
        self.presence.clear()
        self.rooms.clear()
        logger.info("All connections closed")
