from typing import Any, Dict, Iterable, Optional

from .models import Connection
from .presence import PresenceRegistry
from .rooms import RoomTracker
from ..utils.logger import setup_logger
from ..wire import envelope

logger = setup_logger('chatcore.hub')


class EventRouter:
    """Routing hub for real-time event delivery.

    Resolves a user or a room to its live connections through the presence
    registry and the room tracker, and pushes envelopes onto each
    connection's outbox queue. Delivery is best-effort: offline targets are a
    no-op and nothing is queued for later.

    Events pushed by one call reach each connection in call order; no
    ordering is promised between different callers.
    """

    def __init__(self, presence: PresenceRegistry, rooms: RoomTracker):
        """Initialize the router.

        Args:
            presence (PresenceRegistry): Read to resolve users to connections
            rooms (RoomTracker): Read to resolve rooms to connections

        Attributes:
            connections (Dict[str, Connection]): Live connections by id, whose
                outbox queues receive the routed envelopes
        """
        self.presence = presence
        self.rooms = rooms
        self.connections: Dict[str, Connection] = {}
        logger.info("Event router initialized")

    def attach(self, conn: Connection):
        """Make a connection's outbox reachable for routing."""
        self.connections[conn.connection_id] = conn
        logger.debug(f"Attached connection {conn.connection_id}; "
                     f"{len(self.connections)} live connections")

    def detach(self, connection_id: str):
        self.connections.pop(connection_id, None)
        logger.debug(f"Detached connection {connection_id}; "
                     f"{len(self.connections)} live connections")

    async def emit_to_connection(self, connection_id: str, event: str,
                                 payload: Optional[Dict[str, Any]] = None) -> bool:
        """Push one event to one connection.

        Returns:
            bool: True if the event was queued, False if the connection is gone
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            logger.debug(f"Dropping {event} for closed connection {connection_id}")
            return False
        try:
            await conn.outbox.put(envelope(event, payload))
        except Exception:
            logger.exception(f"Failed to queue {event} for connection {connection_id}")
            return False
        return True

    async def _emit_many(self, connection_ids: Iterable[str], event: str,
                         payload: Optional[Dict[str, Any]],
                         exclude_connection_id: Optional[str]) -> int:
        delivered = 0
        for connection_id in sorted(connection_ids):
            if connection_id == exclude_connection_id:
                continue
            if await self.emit_to_connection(connection_id, event, payload):
                delivered += 1
        return delivered

    async def emit_to_user(self, user_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
                           exclude_connection_id: Optional[str] = None) -> int:
        """Send an event to every device of a user if they are online.

        Args:
            user_id (str): Target user
            event (str): Event name
            payload (dict, optional): Event data
            exclude_connection_id (str, optional): Connection to skip (the origin)

        Returns:
            int: Number of connections the event was queued on
        """
        targets = self.presence.connections_for(user_id)
        if not targets:
            logger.debug(f"{event} for user {user_id} dropped - not online")
            return 0
        delivered = await self._emit_many(targets, event, payload, exclude_connection_id)
        logger.debug(f"{event} sent to user {user_id} on {delivered} connection(s)")
        return delivered

    async def emit_to_users(self, user_ids: Iterable[str], event: str,
                            payload: Optional[Dict[str, Any]] = None,
                            exclude_connection_id: Optional[str] = None) -> int:
        """Send an event to each distinct user once, however often it is listed."""
        delivered = 0
        for user_id in dict.fromkeys(user_ids):
            delivered += await self.emit_to_user(user_id, event, payload, exclude_connection_id)
        return delivered

    async def emit_to_room(self, room_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
                           exclude_connection_id: Optional[str] = None) -> int:
        """Send an event to every connection subscribed to a room.

        Returns:
            int: Number of connections the event was queued on
        """
        delivered = await self._emit_many(self.rooms.members_of(room_id), event, payload,
                                          exclude_connection_id)
        logger.debug(f"{event} broadcast to room {room_id} on {delivered} connection(s)")
        return delivered
