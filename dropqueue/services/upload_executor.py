"""Upload executor: performs one upload attempt and reports its outcome."""

import logging
from collections.abc import Callable

import httpx

from dropqueue.services import api_client
from dropqueue.services.errors import UnknownFailure, UploadError
from dropqueue.services.log_service import get_log_service
from dropqueue.services.models import JobRecord, Outcome
from dropqueue.services.utils import progress_percent

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Upload failed"

PercentCallback = Callable[[int], None]


class UploadExecutor:
    """Sends one job's file to the remote service.

    ``run`` never raises: every failure is captured into a failed Outcome.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """The async client, created on first use inside the running loop."""
        if self._client is None:
            self._client = api_client.build_client(self.base_url, self.timeout)
        return self._client

    async def run(self, job: JobRecord, on_progress: PercentCallback | None = None) -> Outcome:
        """Upload ``job.file`` and return the attempt's outcome.

        Args:
            job: The admitted job (status uploading)
            on_progress: Called with an integer percentage as bytes are sent

        Returns:
            A completed Outcome with the remote descriptor, or a failed one
            with the most specific error message available
        """
        log = get_log_service()

        def byte_callback(sent: int, total: int) -> None:
            if on_progress:
                on_progress(progress_percent(sent, total))

        try:
            try:
                result = await api_client.upload_file_with_progress(
                    self.client, job.file, byte_callback
                )
            except UploadError:
                raise
            except Exception as e:
                raise UnknownFailure(str(e) or GENERIC_FAILURE_MESSAGE) from e
        except UploadError as e:
            message = e.message or GENERIC_FAILURE_MESSAGE
            log.error(
                "upload",
                "file_upload_failed",
                f"Failed to upload {job.filename}: {message}",
                {
                    "job_id": job.id,
                    "filename": job.filename,
                    "attempt": job.attempt,
                    "error": message,
                    "error_kind": e.kind,
                },
            )
            return Outcome.failure(job.attempt, message, e.kind)

        log.info(
            "upload",
            "file_upload_completed",
            f"Uploaded {job.filename}",
            {
                "job_id": job.id,
                "filename": job.filename,
                "file_size": job.file.size,
                "attempt": job.attempt,
                "url": result.url,
            },
        )
        return Outcome.completed(job.attempt, result)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
