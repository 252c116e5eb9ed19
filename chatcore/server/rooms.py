from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from ..utils.logger import setup_logger

logger = setup_logger('chatcore.rooms')


class RoomTracker:
    """Maps a room (group) id to the connection ids subscribed to it.

    Rooms are created on first join and dropped as soon as they are empty.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}

    def join(self, room_id: str, connection_id: str) -> bool:
        """Subscribe a connection; returns False if it was already subscribed."""
        members = self._rooms.setdefault(room_id, set())
        if connection_id in members:
            return False
        members.add(connection_id)
        logger.debug(f"Connection {connection_id} joined room {room_id}")
        return True

    def leave(self, room_id: str, connection_id: str) -> bool:
        """Unsubscribe a connection; returns False if it was not subscribed."""
        members = self._rooms.get(room_id)
        if members is None or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[room_id]
        logger.debug(f"Connection {connection_id} left room {room_id}")
        return True

    def members_of(self, room_id: str) -> FrozenSet[str]:
        return frozenset(self._rooms.get(room_id, ()))

    def remove_connection_from_all_rooms(self, connection_id: str,
                                         rooms: Optional[Iterable[str]] = None) -> List[str]:
        """Drop a connection from every room it joined.

        Args:
            connection_id (str): Connection being torn down
            rooms (Iterable[str], optional): Rooms the connection is known to have
                joined. When omitted every room is scanned.

        Returns:
            List[str]: Rooms the connection was removed from
        """
        candidates = list(rooms) if rooms is not None else list(self._rooms)
        left = [room_id for room_id in candidates if self.leave(room_id, connection_id)]
        if left:
            logger.debug(f"Connection {connection_id} removed from rooms {left}")
        return left

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def clear(self):
        self._rooms.clear()
