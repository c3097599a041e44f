"""Google Drive integration for storing invoice photos.

Note: The Google API Client library uses dynamic method creation at runtime.
Methods like .files() are added to Resource objects when build() is called,
so type checkers can't detect them. We use # type: ignore[attr-defined] to
suppress these warnings where appropriate.
"""

import asyncio
import io

from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from billscan.errors import AttachmentError
from billscan.models import PhotoBlob


def generate_file_url(file_id: str) -> str:
    """Return the browser URL of a Drive file."""
    return f"https://drive.google.com/file/d/{file_id}/view"


def _is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry.

    Retries on:
    - HTTP 429 (rate limit exceeded)
    - HTTP 503 (service unavailable)
    - Network errors (ConnectionError, TimeoutError, etc.)

    Does NOT retry on:
    - HTTP 400 (bad request - invalid input)
    - HTTP 403 (forbidden - authentication/permission issue)
    - HTTP 404 (not found - invalid folder ID)
    - Other client errors (4xx)

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    # Retry on network errors
    if isinstance(exception, ConnectionError | TimeoutError | OSError):
        return True

    # Retry on specific HTTP errors
    if isinstance(exception, HttpError):
        status = exception.resp.status
        # Retry on rate limit (429) and service unavailable (503)
        return status in (429, 503)

    return False


class GDriveAttachmentStore:
    """Attachment store uploading photos into a Google Drive folder.

    Attributes:
        folder_id: Drive folder that receives the uploads
    """

    def __init__(self, folder_id: str):
        self._service: Resource | None = None  # Private cache for lazy initialization
        self.folder_id = folder_id

    @property
    def service(self) -> Resource:
        """Lazily initialize and return the Google Drive service.

        The service is created on first access and cached for subsequent calls.

        Returns:
            The Google Drive API service (Resource object)
        """
        if self._service is None:
            self._service = build("drive", "v3")
        return self._service

    @retry(
        retry=retry_if_exception(_is_retryable_error),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def upload_file(self, name: str, blob: PhotoBlob) -> str:
        """Upload one file and return its Drive file ID.

        Raises:
            HttpError: For non-retryable errors or after max retries
        """
        media = MediaIoBaseUpload(io.BytesIO(blob.data), mimetype=blob.mime_type)
        metadata = {"name": name, "parents": [self.folder_id]}
        # Note: files() is dynamically added by googleapiclient at runtime
        created = (
            self.service.files()  # type: ignore[attr-defined]
            .create(body=metadata, media_body=media, fields="id")
            .execute()
        )
        return created["id"]

    async def upload(self, name: str, blob: PhotoBlob) -> str:
        """Upload the blob and return its web view URL.

        Raises:
            AttachmentError: If the upload fails after retries
        """
        loop = asyncio.get_running_loop()
        try:
            file_id = await loop.run_in_executor(None, self.upload_file, name, blob)
        except (HttpError, OSError) as e:
            raise AttachmentError(f"Drive upload of {name} failed: {e}") from e

        logger.debug("Uploaded {} to Drive folder {} as {}", name, self.folder_id, file_id)
        return generate_file_url(file_id)
