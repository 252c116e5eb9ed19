import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    """Runtime configuration for the chat server.

    Attributes:
        host (str): Address the gRPC server binds to
        port (int): Port the gRPC server listens on
        data_dir (str): Directory holding the JSONL tables
        blob_dir (str): Directory holding uploaded files
        blob_base_url (str): Public prefix of uploaded file URLs
        jwt_secret (str): Shared secret used to sign credential tokens
        jwt_algorithm (str): Token signature algorithm
        token_ttl_minutes (int): Lifetime of issued tokens
        recall_window_seconds (int): How long a non-admin sender may recall a message
        log_level (str): Console log level
        log_dir (str | None): Directory for server.log (package default when None)
    """
    host: str = "127.0.0.1"
    port: int = 50051
    data_dir: str = "chatcore/data"
    blob_dir: str = "chatcore/data/blobs"
    blob_base_url: str = "http://127.0.0.1:8000/files"
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    token_ttl_minutes: int = 60 * 24
    recall_window_seconds: int = 120
    log_level: str = "INFO"
    log_dir: Optional[str] = None


def load_settings(env_file=None) -> Settings:
    """Build Settings from CHAT_* environment variables.

    A .env file is read first (without overriding variables already set),
    then every CHAT_* variable present replaces the matching default.
    """
    load_dotenv(env_file)
    defaults = Settings()
    return Settings(
        host=os.getenv("CHAT_HOST", defaults.host),
        port=int(os.getenv("CHAT_PORT", defaults.port)),
        data_dir=os.getenv("CHAT_DATA_DIR", defaults.data_dir),
        blob_dir=os.getenv("CHAT_BLOB_DIR", defaults.blob_dir),
        blob_base_url=os.getenv("CHAT_BLOB_BASE_URL", defaults.blob_base_url),
        jwt_secret=os.getenv("CHAT_JWT_SECRET", defaults.jwt_secret),
        jwt_algorithm=os.getenv("CHAT_JWT_ALGORITHM", defaults.jwt_algorithm),
        token_ttl_minutes=int(os.getenv("CHAT_TOKEN_TTL_MINUTES", defaults.token_ttl_minutes)),
        recall_window_seconds=int(os.getenv("CHAT_RECALL_WINDOW_SECONDS", defaults.recall_window_seconds)),
        log_level=os.getenv("CHAT_LOG_LEVEL", defaults.log_level),
        log_dir=os.getenv("CHAT_LOG_DIR", defaults.log_dir),
    )
