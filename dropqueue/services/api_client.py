"""Client for the remote upload, listing and deletion endpoints."""

import io
import logging
from collections.abc import Callable
from typing import IO, Any

import httpx

from dropqueue.services.errors import (
    RemoteRejection,
    RemoteServiceError,
    TransportError,
)
from dropqueue.services.models import FileRef, RemoteFile

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/upload"
FILES_PATH = "/api/files"
UPLOAD_FIELD = "files"

ProgressCallback = Callable[[int, int], None]

# Largest read served per call; local disk reads happen on the event loop
READ_CHUNK_SIZE = 64 * 1024


class ProgressReader:
    """Binary stream wrapper that reports how many bytes have been read.

    httpx reads the multipart payload from this object chunk by chunk while
    streaming the request, so the read position tracks bytes handed to the
    transport. Reads are capped at READ_CHUNK_SIZE so a large local file never
    holds the event loop for more than one chunk at a time.
    """

    def __init__(
        self, raw: IO[bytes], total_size: int, callback: ProgressCallback | None
    ) -> None:
        self._raw = raw
        self.total_size = total_size
        self.callback = callback

    def read(self, size: int = -1) -> bytes:
        if size < 0 or size > READ_CHUNK_SIZE:
            size = READ_CHUNK_SIZE
        chunk = self._raw.read(size)
        if chunk and self.callback:
            self.callback(self._raw.tell(), self.total_size)
        return chunk

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()

    def fileno(self) -> int:
        return self._raw.fileno()

    def close(self) -> None:
        self._raw.close()


def build_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    """Build the async client used for uploads."""
    return httpx.AsyncClient(base_url=base_url, timeout=timeout, trust_env=False)


def extract_error_message(response: httpx.Response) -> str | None:
    """Pull the most specific error message out of a service response.

    Structured ``error`` wins over the generic ``message`` field.

    Returns:
        The message, or None if the body carries neither field
    """
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    error = body.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    if error:
        return str(error)

    message = body.get("message")
    if message:
        return str(message)
    return None


def parse_upload_response(response: httpx.Response, file: FileRef) -> RemoteFile:
    """Read the stored-file descriptor from a successful upload response.

    The first element of ``files`` is used; a placeholder is synthesized when
    the body omits it.
    """
    try:
        body = response.json()
    except ValueError:
        return RemoteFile.placeholder(file)

    files = body.get("files") if isinstance(body, dict) else None
    if isinstance(files, list) and files and isinstance(files[0], dict):
        return RemoteFile.from_response(files[0], file)
    return RemoteFile.placeholder(file)


async def upload_file_with_progress(
    client: httpx.AsyncClient,
    file: FileRef,
    callback: ProgressCallback | None = None,
) -> RemoteFile:
    """Upload one file as multipart/form-data with progress tracking.

    Args:
        client: Async client bound to the remote service
        file: The payload to send in the ``files`` field
        callback: Progress callback (bytes_sent, bytes_total)

    Returns:
        Descriptor of the stored file

    Raises:
        TransportError: The request never produced a usable response
        RemoteRejection: The service answered with an error body
    """
    with file.open() as raw:
        reader = ProgressReader(raw, file.size, callback)
        try:
            response = await client.post(
                UPLOAD_PATH,
                files={UPLOAD_FIELD: (file.name, reader, file.content_type)},
            )
        except httpx.RequestError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    if response.is_error:
        message = extract_error_message(response)
        if message:
            raise RemoteRejection(message, response.status_code)
        raise TransportError(f"Request failed with status code {response.status_code}")

    return parse_upload_response(response, file)


def list_remote_files(
    base_url: str,
    page: int = 1,
    limit: int = 10,
    search: str = "",
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    """List stored files, paginated and optionally filtered.

    Returns:
        Dictionary with ``files`` and ``pagination`` as returned by the service

    Raises:
        RemoteServiceError: If the request fails or the service returns an error
    """
    params: dict[str, Any] = {"page": page, "limit": limit}
    if search:
        params["search"] = search

    with httpx.Client(
        base_url=base_url, timeout=timeout, transport=transport, trust_env=False
    ) as client:
        try:
            response = client.get(FILES_PATH, params=params)
        except httpx.RequestError as e:
            raise RemoteServiceError(f"Failed to load files: {e}") from e

    if response.is_error:
        message = extract_error_message(response) or "Failed to load files"
        raise RemoteServiceError(message, response.status_code)

    try:
        body = response.json()
    except ValueError as e:
        raise RemoteServiceError("Remote service returned invalid JSON") from e

    files = body.get("files") or []
    pagination = body.get("pagination") or {
        "page": page,
        "limit": limit,
        "total": len(files),
        "pages": 1,
    }
    return {"files": files, "pagination": pagination}


def delete_remote_file(
    base_url: str,
    file_id: str,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> None:
    """Delete one stored file.

    Raises:
        RemoteServiceError: If the request fails or the service returns an error
    """
    with httpx.Client(
        base_url=base_url, timeout=timeout, transport=transport, trust_env=False
    ) as client:
        try:
            response = client.delete(f"{FILES_PATH}/{file_id}")
        except httpx.RequestError as e:
            raise RemoteServiceError(f"Failed to delete file: {e}") from e

    if response.is_error:
        message = extract_error_message(response) or "Failed to delete file"
        raise RemoteServiceError(message, response.status_code)

    logger.debug("Deleted remote file %s", file_id)
