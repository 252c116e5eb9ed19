from typing import List, Optional, Tuple

from .coordinator import MutationCoordinator
from .errors import AlreadyExists, NotFound, ValidationFailed
from .hub import EventRouter
from .models import FriendRequest, User
from .presence import PresenceRegistry
from .repo import UsersRepo, now_ms
from .. import wire
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.friends')


def _user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _without(requests: List[FriendRequest], user_id: str) -> List[FriendRequest]:
    return [r for r in requests if r.user_id != user_id]


class FriendService:
    """Friend requests and the symmetric friend relationship.

    Every operation locks both user records (in sorted order) and writes both
    back, so after it returns A lists B iff B lists A, and a request sent by A
    is listed as received by B.
    """

    def __init__(self, users: UsersRepo, coordinator: MutationCoordinator, router: EventRouter,
                 presence: Optional[PresenceRegistry] = None):
        self.users = users
        self.coordinator = coordinator
        self.router = router
        self.presence = presence

    async def _load_pair(self, user_id: str, other_id: str) -> Tuple[User, User]:
        if user_id == other_id:
            raise ValidationFailed("You cannot do this with yourself")
        return await self.users.require(user_id), await self.users.require(other_id)

    async def _notify(self, user_id: str, event: str, payload: dict):
        try:
            await self.router.emit_to_user(user_id, event, payload)
        except Exception:
            logger.exception(f"Failed to send {event} to {user_id}")

    async def send_request(self, sender_id: str, target_id: str) -> FriendRequest:
        """Send a friend request.

        Raises:
            ValidationFailed: Request to oneself
            NotFound: Unknown sender or target
            AlreadyExists: Already friends, or a request is pending either way
        """
        async with self.coordinator.locks(_user_key(sender_id), _user_key(target_id)):
            sender, target = await self._load_pair(sender_id, target_id)
            if target_id in sender.friends:
                raise AlreadyExists("You are already friends")
            if any(r.user_id == target_id for r in sender.requests_sent):
                raise AlreadyExists("Friend request already sent")
            if any(r.user_id == target_id for r in sender.requests_received):
                raise AlreadyExists("This user already sent you a friend request")

            ts = now_ms()
            sender.requests_sent.append(FriendRequest(user_id=target_id, sent_ts=ts))
            target.requests_received.append(FriendRequest(user_id=sender_id, sent_ts=ts))
            await self.users.save_social_pair(sender, target)

        logger.info(f"Friend request {sender_id} -> {target_id}")
        await self._notify(target_id, wire.FRIEND_REQUEST_UPDATE,
                           {"type": "received", "from": sender.public(), "sentTs": ts})
        return FriendRequest(user_id=target_id, sent_ts=ts)

    async def respond(self, user_id: str, requester_id: str, accept: bool) -> bool:
        """Accept or decline a received request; the request is removed either way.

        Returns:
            bool: True if the two users are now friends
        """
        async with self.coordinator.locks(_user_key(user_id), _user_key(requester_id)):
            user, requester = await self._load_pair(user_id, requester_id)
            if not any(r.user_id == requester_id for r in user.requests_received):
                raise NotFound("Friend request not found")
            user.requests_received = _without(user.requests_received, requester_id)
            requester.requests_sent = _without(requester.requests_sent, user_id)
            if accept:
                since = now_ms()
                user.friends[requester_id] = since
                requester.friends[user_id] = since
            await self.users.save_social_pair(user, requester)

        logger.info(f"Friend request {requester_id} -> {user_id} {'accepted' if accept else 'declined'}")
        await self._notify(requester_id, wire.FRIEND_REQUEST_UPDATE,
                           {"type": "accepted" if accept else "declined", "by": user.public()})
        if accept:
            await self._notify(user_id, wire.FRIEND_LIST_UPDATE,
                               {"type": "added", "friend": requester.public()})
            await self._notify(requester_id, wire.FRIEND_LIST_UPDATE,
                               {"type": "added", "friend": user.public()})
        return accept

    async def withdraw(self, sender_id: str, target_id: str) -> bool:
        async with self.coordinator.locks(_user_key(sender_id), _user_key(target_id)):
            sender, target = await self._load_pair(sender_id, target_id)
            if not any(r.user_id == target_id for r in sender.requests_sent):
                raise NotFound("Friend request not found")
            sender.requests_sent = _without(sender.requests_sent, target_id)
            target.requests_received = _without(target.requests_received, sender_id)
            await self.users.save_social_pair(sender, target)

        logger.info(f"Friend request {sender_id} -> {target_id} withdrawn")
        await self._notify(target_id, wire.FRIEND_REQUEST_WITHDRAWN, {"from": sender_id})
        return True

    async def unfriend(self, user_id: str, friend_id: str) -> int:
        """End a friendship and delete every message the two exchanged.

        Returns:
            int: Number of purged messages
        """
        async with self.coordinator.locks(_user_key(user_id), _user_key(friend_id)):
            user, friend = await self._load_pair(user_id, friend_id)
            if friend_id not in user.friends:
                raise NotFound("You are not friends with this user")
            user.friends.pop(friend_id, None)
            friend.friends.pop(user_id, None)
            await self.users.save_social_pair(user, friend)

        purged = await self.coordinator.purge_between(user_id, friend_id)
        logger.info(f"{user_id} unfriended {friend_id}, {purged} messages purged")
        await self._notify(user_id, wire.FRIEND_LIST_UPDATE, {"type": "removed", "userId": friend_id})
        await self._notify(friend_id, wire.FRIEND_LIST_UPDATE, {"type": "removed", "userId": user_id})
        return purged

    async def list_friends(self, user_id: str) -> List[dict]:
        user = await self.users.require(user_id)
        friends = []
        for friend_id, since in sorted(user.friends.items()):
            friend = await self.users.get(friend_id)
            if friend is None:
                logger.warning(f"User {user_id} lists unknown friend {friend_id}")
                continue
            entry = friend.public()
            entry["since"] = since
            entry["online"] = bool(self.presence and self.presence.is_online(friend_id))
            friends.append(entry)
        return friends

    async def list_requests(self, user_id: str) -> dict:
        user = await self.users.require(user_id)
        return {
            "sent": [vars(r).copy() for r in user.requests_sent],
            "received": [vars(r).copy() for r in user.requests_received],
        }
