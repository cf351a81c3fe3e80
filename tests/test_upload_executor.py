"""Tests for the upload executor against a mocked remote service."""

from collections.abc import Awaitable, Callable
from pathlib import Path

import httpx
import pytest

from conftest import make_file
from dropqueue.services import api_client
from dropqueue.services.models import FileRef, JobRecord, JobStatus, OutcomeStatus
from dropqueue.services.upload_executor import GENERIC_FAILURE_MESSAGE, UploadExecutor

pytestmark = pytest.mark.anyio

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]


def make_executor(handler: Handler) -> UploadExecutor:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://remote.test"
    )
    return UploadExecutor("http://remote.test", client=client)


def make_job(file: FileRef | None = None) -> JobRecord:
    return JobRecord(id="job-1", file=file or make_file("a.txt"), status=JobStatus.UPLOADING)


class TestUploadSuccess:
    """Tests for successful uploads."""

    async def test_posts_multipart_and_returns_descriptor(self) -> None:
        """Test that the file is posted as multipart and the descriptor is returned."""
        captured: dict[str, bytes | str] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["content_type"] = request.headers["content-type"]
            captured["body"] = await request.aread()
            return httpx.Response(
                200,
                json={
                    "files": [
                        {
                            "url": "https://files.test/a.txt",
                            "filename": "a.txt",
                            "size": 16,
                            "_id": "abc123",
                        }
                    ]
                },
            )

        executor = make_executor(handler)
        outcome = await executor.run(make_job())
        await executor.aclose()

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.result is not None
        assert outcome.result.url == "https://files.test/a.txt"
        assert outcome.result.extra == {"_id": "abc123"}
        assert captured["path"] == "/api/upload"
        assert str(captured["content_type"]).startswith("multipart/form-data")
        assert b'name="files"; filename="a.txt"' in captured["body"]  # type: ignore[operator]

    async def test_missing_descriptor_falls_back_to_placeholder(self) -> None:
        """Test that a body without files yields a placeholder descriptor."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(200, json={"ok": True})

        outcome = await make_executor(handler).run(make_job())

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.result is not None
        assert outcome.result.url == "#"
        assert outcome.result.filename == "a.txt"
        assert outcome.result.size == 16

    async def test_non_json_success_body_uses_placeholder(self) -> None:
        """Test that a successful non-JSON body yields a placeholder descriptor."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(201, text="created")

        outcome = await make_executor(handler).run(make_job())

        assert outcome.result is not None and outcome.result.url == "#"

    async def test_reports_non_decreasing_progress(self) -> None:
        """Test that progress only grows and ends at 100."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(200, json={"files": []})

        progress: list[int] = []
        job = make_job(make_file("big.bin", size=300_000))
        await make_executor(handler).run(job, progress.append)

        assert progress
        assert progress == sorted(progress)
        assert progress[-1] == 100

    async def test_uploads_file_from_disk(self, tmp_path: Path) -> None:
        """Test uploading a file read from disk."""
        path = tmp_path / "report.csv"
        path.write_bytes(b"a,b\n1,2\n")
        received: list[bytes] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            received.append(await request.aread())
            return httpx.Response(200, json={"files": [{"url": "u", "filename": "report.csv"}]})

        outcome = await make_executor(handler).run(make_job(FileRef.from_path(str(path))))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert b"a,b\n1,2\n" in received[0]

    async def test_large_disk_file_is_read_in_bounded_chunks(self, tmp_path: Path) -> None:
        """Test that a file on disk is streamed in reads no larger than one chunk."""
        path = tmp_path / "large.bin"
        path.write_bytes(b"z" * 300_000)
        sent: list[int] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(200, json={"files": []})

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://remote.test"
        )
        async with client:
            await api_client.upload_file_with_progress(
                client, FileRef.from_path(str(path)), lambda done, total: sent.append(done)
            )

        steps = [b - a for a, b in zip([0, *sent], sent)]
        assert sent[-1] == 300_000
        assert max(steps) <= api_client.READ_CHUNK_SIZE

    async def test_non_numeric_size_in_descriptor(self) -> None:
        """Test that a descriptor with an unusable size keeps the local size."""

        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(
                200, json={"files": [{"url": "u", "filename": "a.txt", "size": "unknown"}]}
            )

        outcome = await make_executor(handler).run(make_job())

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.result is not None and outcome.result.size == 16


class TestUploadFailure:
    """Tests for the error message fallback chain."""

    async def test_structured_error_wins(self) -> None:
        """Test that the error field is preferred over the generic message."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(
                422, json={"error": "virus detected", "message": "Unprocessable"}
            )

        outcome = await make_executor(handler).run(make_job())

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.error == "virus detected"
        assert outcome.error_kind == "remote_rejection"
        assert outcome.attempt == 1

    async def test_nested_error_object(self) -> None:
        """Test that a nested error message is used."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(413, json={"error": {"message": "quota exceeded"}})

        outcome = await make_executor(handler).run(make_job())

        assert outcome.error == "quota exceeded"

    async def test_generic_message_used_without_error_field(self) -> None:
        """Test that the generic message is used when there is no error field."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(500, json={"message": "disk full"})

        outcome = await make_executor(handler).run(make_job())

        assert outcome.error == "disk full"
        assert outcome.error_kind == "remote_rejection"

    async def test_status_code_message_without_usable_body(self) -> None:
        """Test that an unusable error body falls back to the status code."""
        async def handler(request: httpx.Request) -> httpx.Response:
            await request.aread()
            return httpx.Response(502, text="<html>Bad gateway</html>")

        outcome = await make_executor(handler).run(make_job())

        assert outcome.error == "Request failed with status code 502"
        assert outcome.error_kind == "transport"

    async def test_transport_error(self) -> None:
        """Test that a connection failure becomes a transport failure."""
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        outcome = await make_executor(handler).run(make_job())

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.error == "connection refused"
        assert outcome.error_kind == "transport"

    async def test_timeout_is_an_ordinary_failure(self) -> None:
        """Test that a timeout is reported like any other transport failure."""
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        outcome = await make_executor(handler).run(make_job())

        assert outcome.error == "timed out"
        assert outcome.error_kind == "transport"

    async def test_unexpected_exception_is_captured(self) -> None:
        """Test that an unexpected exception with no message gets the generic message."""
        async def handler(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("")

        outcome = await make_executor(handler).run(make_job())

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.error == GENERIC_FAILURE_MESSAGE
        assert outcome.error_kind == "unknown"

    async def test_vanished_local_file_is_captured(self, tmp_path: Path) -> None:
        """Test that a file deleted after it was queued fails the job."""
        path = tmp_path / "gone.txt"
        path.write_bytes(b"soon gone")
        file = FileRef.from_path(str(path))
        path.unlink()

        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        outcome = await make_executor(handler).run(make_job(file))

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.error_kind == "unknown"
        assert "gone.txt" in (outcome.error or "")
