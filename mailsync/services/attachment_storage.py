"""
Content-addressed blob store on the local filesystem.
"""

import hashlib
import os
import uuid
from typing import Optional

import aiofiles
import aiofiles.os

from mailsync.config import settings
from mailsync.utils.logging import get_logger

logger = get_logger("attachment_storage")


class AttachmentTooLarge(Exception):
    pass


class BlobStore:
    """Stores bytes under ``<root>/<aa>/<bb>/<sha256>``; identical content is stored once."""

    def __init__(self, root: Optional[str] = None, max_size_bytes: Optional[int] = None):
        self.root = root or settings.attachment_storage_dir
        self.max_size_bytes = max_size_bytes or settings.attachment_max_size_mb * 1024 * 1024

    def path_for(self, digest: str) -> str:
        return os.path.join(self.root, digest[:2], digest[2:4], digest)

    async def put(self, data: bytes) -> tuple:
        """Store ``data`` and return (storage_path, sha256)."""
        if len(data) > self.max_size_bytes:
            raise AttachmentTooLarge(f"{len(data)} bytes exceeds limit of {self.max_size_bytes}")

        digest = hashlib.sha256(data).hexdigest()
        path = self.path_for(digest)
        if await aiofiles.os.path.exists(path):
            return path, digest

        await aiofiles.os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp_path, path)
        return path, digest


blob_store = BlobStore()
