import asyncio
from datetime import timedelta
from typing import Optional

from grpc import aio

from .auth import TokenAuthority
from .blobstore import LocalBlobStore
from .coordinator import MutationCoordinator
from .events import EventHandlers
from .friends import FriendService
from .groups import GroupService
from .hub import EventRouter
from .lifecycle import ConnectionManager
from .presence import PresenceRegistry
from .repo import ConversationsRepo, GroupsRepo, UsersRepo
from .rooms import RoomTracker
from .service import ChatService, build_handler
from .store import JsonlStore, KeyedLock
from ..utils.config import Settings, load_settings
from ..utils.logger import configure_logging, setup_logger

logger = setup_logger('chatcore.server')


def build_service(settings: Settings, store: Optional[JsonlStore] = None) -> ChatService:
    """Wire every server component for one process.

    The presence registry and room tracker are created here and handed to the
    components that use them; they live exactly as long as the returned service.
    """
    store = store or JsonlStore(settings.data_dir)
    users = UsersRepo(store)
    conversations = ConversationsRepo(store)
    groups_repo = GroupsRepo(store)

    presence = PresenceRegistry()
    rooms = RoomTracker()
    router = EventRouter(presence, rooms)
    tokens = TokenAuthority(settings.jwt_secret, users, settings.jwt_algorithm,
                            timedelta(minutes=settings.token_ttl_minutes))
    coordinator = MutationCoordinator(conversations, groups_repo, users, router, KeyedLock(),
                                      settings.recall_window_seconds)
    connections = ConnectionManager(presence, rooms, router, tokens, users, groups_repo)
    events = EventHandlers(connections, coordinator, users, router, presence)
    groups = GroupService(groups_repo, users, coordinator, router, connections)
    friends = FriendService(users, coordinator, router, presence)
    blobs = LocalBlobStore(settings.blob_dir, settings.blob_base_url)
    return ChatService(users, tokens, connections, events, coordinator, groups, friends, blobs)


async def serve(host: Optional[str] = None, port: Optional[int] = None,
                settings: Optional[Settings] = None):
    """Start the chat server.

    Args:
        host (str, optional): Overrides the configured bind address
        port (int, optional): Overrides the configured port
        settings (Settings, optional): Defaults to ``load_settings()``

    Side Effects:
        - Applies the configured log level and log directory
        - Creates data directories if needed
        - Starts gRPC server and blocks until it terminates
        - Closes every live connection on the way out
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_dir)
    host = host or settings.host
    port = port or settings.port
    if settings.jwt_secret == Settings.jwt_secret:
        logger.warning("CHAT_JWT_SECRET is not set, using the development default")

    service = build_service(settings)
    server = aio.server()
    server.add_generic_rpc_handlers((build_handler(service),))
    listen_addr = f"{host}:{port}"
    server.add_insecure_port(listen_addr)
    logger.info(f"Server starting, listening on {listen_addr}")
    await server.start()
    logger.info(f"Server is now running on {listen_addr}")
    try:
        await server.wait_for_termination()
    finally:
        await service.connections.shutdown()
        await server.stop(grace=2)
        logger.info("Server stopped")


def main():
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
