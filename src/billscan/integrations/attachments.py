"""Attachment stores for invoice photos."""

import asyncio
from pathlib import Path
from typing import Protocol

from loguru import logger

from billscan.errors import AttachmentError
from billscan.models import PhotoBlob


class AttachmentStore(Protocol):
    """Stores a binary blob under a generated name and returns a reference."""

    async def upload(self, name: str, blob: PhotoBlob) -> str: ...


class LocalAttachmentStore:
    """Attachment store writing photos into a local directory.

    The returned reference is the absolute path of the written file.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _write(self, name: str, data: bytes) -> Path:
        path = self.directory / name
        # Ensure parent directory exists
        path.parent.mkdir(parents=True, exist_ok=True)
        # "x" refuses to overwrite an attachment that is already referenced
        with open(path, mode="xb") as f:
            f.write(data)
        return path.resolve()

    async def upload(self, name: str, blob: PhotoBlob) -> str:
        """Write the blob to ``<directory>/<name>``.

        Raises:
            AttachmentError: If the name is not a plain file name or the write fails
        """
        if not name or Path(name).name != name:
            raise AttachmentError(f"Invalid attachment name: {name!r}")

        loop = asyncio.get_running_loop()
        try:
            path = await loop.run_in_executor(None, self._write, name, blob.data)
        except OSError as e:
            raise AttachmentError(f"Could not store attachment {name}: {e}") from e

        logger.debug("Stored attachment {} ({} bytes)", path, len(blob.data))
        return str(path)
