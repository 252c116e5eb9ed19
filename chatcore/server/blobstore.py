import asyncio
import json
import mimetypes
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .errors import NotFound, PersistenceFailure, ValidationFailed
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.blobstore')

MAX_UPLOAD_BYTES = 100 * 1024 * 1024


@dataclass
class Blob:
    data: bytes
    content_type: str
    length: int


class BlobStore(ABC):
    """Opaque object storage for uploaded files."""

    @abstractmethod
    async def upload(self, data: bytes, content_type: str, filename: str = "") -> str:
        """Store bytes and return the public URL they can be fetched from."""

    @abstractmethod
    async def download(self, key: str) -> Blob:
        """Return the bytes, content type and length stored under key."""

    def key_from_url(self, url: str) -> str:
        return url.rstrip("/").rsplit("/", 1)[-1]


class LocalBlobStore(BlobStore):
    """Blob store writing each object and a small JSON sidecar to a directory.

    Args:
        root (str): Directory receiving the objects
        base_url (str): Public prefix joined with the object key to build URLs
    """

    def __init__(self, root: str, base_url: str):
        os.makedirs(root, exist_ok=True)
        self.root = root
        self.base_url = base_url.rstrip("/")

    def _paths(self, key: str):
        if not key or "/" in key or key.startswith("."):
            raise ValidationFailed(f"Invalid blob key '{key}'")
        path = os.path.join(self.root, key)
        return path, path + ".meta.json"

    def _write(self, key: str, data: bytes, meta: dict):
        path, meta_path = self._paths(key)
        with open(path, "wb") as f:
            f.write(data)
        with open(meta_path, "w", encoding="utf-8") as f:
            json.dump(meta, f)

    def _read(self, key: str) -> Blob:
        path, meta_path = self._paths(key)
        if not os.path.exists(path):
            raise NotFound(f"File {key} not found")
        with open(path, "rb") as f:
            data = f.read()
        content_type = "application/octet-stream"
        if os.path.exists(meta_path):
            with open(meta_path, "r", encoding="utf-8") as f:
                content_type = json.load(f).get("content_type", content_type)
        return Blob(data=data, content_type=content_type, length=len(data))

    async def upload(self, data, content_type, filename=""):
        if not data:
            raise ValidationFailed("Cannot upload an empty file")
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationFailed(f"File exceeds {MAX_UPLOAD_BYTES} bytes")
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        ext = os.path.splitext(filename)[1] or mimetypes.guess_extension(content_type) or ""
        key = f"{uuid.uuid4().hex}{ext}"
        try:
            await asyncio.to_thread(self._write, key, data,
                                    {"content_type": content_type, "filename": filename})
        except OSError as e:
            logger.error(f"Upload of {filename or key} failed: {e}")
            raise PersistenceFailure("could not store file") from e
        logger.info(f"Stored file {key} ({content_type}, {len(data)} bytes)")
        return f"{self.base_url}/{key}"

    async def download(self, key):
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError as e:
            logger.error(f"Download of {key} failed: {e}")
            raise PersistenceFailure("could not read file") from e
