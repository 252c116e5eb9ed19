from typing import Dict, FrozenSet, List, Set

from ..utils.logger import setup_logger

logger = setup_logger('chatcore.presence')


class PresenceRegistry:
    """Live mapping of user id -> open connection ids (one per device).

    A user id is present iff it has at least one open connection. Only the
    connection lifecycle manager mutates the registry; the event router reads
    it. State lives in process memory and is rebuilt as clients reconnect.
    """

    def __init__(self):
        self._connections: Dict[str, Set[str]] = {}

    def register(self, user_id: str, connection_id: str) -> bool:
        """Add a connection for a user.

        Returns:
            bool: True if the user had no live connection before this one
        """
        conns = self._connections.get(user_id)
        first = conns is None
        if first:
            conns = self._connections[user_id] = set()
        conns.add(connection_id)
        logger.debug(f"Registered connection {connection_id} for user {user_id} "
                     f"({len(conns)} live)")
        return first

    def unregister(self, user_id: str, connection_id: str) -> bool:
        """Remove a connection for a user.

        Returns:
            bool: True if this removed the user's last connection (user went offline)
        """
        conns = self._connections.get(user_id)
        if conns is None or connection_id not in conns:
            return False
        conns.discard(connection_id)
        if conns:
            logger.debug(f"Unregistered connection {connection_id}, user {user_id} "
                         f"still has {len(conns)} live")
            return False
        del self._connections[user_id]
        logger.info(f"User {user_id} went offline")
        return True

    def connections_for(self, user_id: str) -> FrozenSet[str]:
        return frozenset(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def online_users(self) -> List[str]:
        return list(self._connections)

    def clear(self):
        self._connections.clear()

    def __len__(self):
        return len(self._connections)
