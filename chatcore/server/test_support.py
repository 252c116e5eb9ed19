"""Shared helpers for the server test modules."""
import shutil
import tempfile
from typing import List, Optional

from chatcore.server.auth import TokenAuthority
from chatcore.server.blobstore import LocalBlobStore
from chatcore.server.coordinator import MutationCoordinator
from chatcore.server.events import EventHandlers
from chatcore.server.friends import FriendService
from chatcore.server.groups import GroupService
from chatcore.server.hub import EventRouter
from chatcore.server.lifecycle import ConnectionManager
from chatcore.server.models import Connection, User
from chatcore.server.presence import PresenceRegistry
from chatcore.server.repo import ConversationsRepo, GroupsRepo, UsersRepo
from chatcore.server.rooms import RoomTracker
from chatcore.server.service import ChatService
from chatcore.server.store import JsonlStore

SECRET = "test-secret"


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


class AbortCalled(Exception):
    def __init__(self, code, details):
        super().__init__(f"{code}: {details}")
        self.code = code
        self.details = details


class FakeContext:
    """Just enough of grpc.aio.ServicerContext for the servicer."""

    def __init__(self, token: Optional[str] = None):
        self.metadata = (("authorization", f"Bearer {token}"),) if token else ()

    def invocation_metadata(self):
        return self.metadata

    async def abort(self, code, details):
        raise AbortCalled(code, details)


class Stack:
    """Every server component wired together over a temporary data directory."""

    def __init__(self, persist: bool = True):
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.store = JsonlStore(self.temp_dir if persist else None)
        self.users = UsersRepo(self.store)
        self.conversations = ConversationsRepo(self.store)
        self.groups_repo = GroupsRepo(self.store)
        self.presence = PresenceRegistry()
        self.rooms = RoomTracker()
        self.router = EventRouter(self.presence, self.rooms)
        self.tokens = TokenAuthority(SECRET, self.users)
        self.coordinator = MutationCoordinator(self.conversations, self.groups_repo, self.users,
                                               self.router, clock=self.clock)
        self.connections = ConnectionManager(self.presence, self.rooms, self.router, self.tokens,
                                             self.users, self.groups_repo)
        self.events = EventHandlers(self.connections, self.coordinator, self.users, self.router,
                                    self.presence)
        self.groups = GroupService(self.groups_repo, self.users, self.coordinator, self.router,
                                   self.connections)
        self.friends = FriendService(self.users, self.coordinator, self.router, self.presence)
        self.blobs = LocalBlobStore(f"{self.temp_dir}/blobs", "http://files.test/files")
        self.service = ChatService(self.users, self.tokens, self.connections, self.events,
                                   self.coordinator, self.groups, self.friends, self.blobs)

    def cleanup(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def user(self, name: str) -> User:
        return await self.users.create(f"{name}@example.com", name.capitalize())

    async def connect(self, user: User) -> Connection:
        conn = self.connections.accept()
        await self.connections.authenticate(conn, self.tokens.issue(user))
        return conn

    async def befriend(self, a: User, b: User):
        await self.friends.send_request(a.user_id, b.user_id)
        await self.friends.respond(b.user_id, a.user_id, accept=True)


def drain(conn: Connection) -> List[dict]:
    """Pop every envelope waiting in a connection's outbox."""
    out = []
    while not conn.outbox.empty():
        out.append(conn.outbox.get_nowait())
    return out


def events_of(conn: Connection, name: str) -> List[dict]:
    return [env["data"] for env in drain(conn) if env["event"] == name]
