"""Pytest configuration and fixtures for the dropqueue tests."""

import asyncio
import os
import tempfile
from collections.abc import Generator
from pathlib import Path

# Keep settings and event logs out of the working tree.
_TEST_DIR = tempfile.mkdtemp(prefix="dropqueue_tests_")
os.environ["DROPQUEUE_SETTINGS_FILE"] = os.path.join(_TEST_DIR, "settings.json")
os.environ["DROPQUEUE_LOG_DIRECTORY"] = os.path.join(_TEST_DIR, "logs")
os.environ["DROPQUEUE_REMOTE_BASE_URL"] = "http://remote.test"

import pytest  # noqa: E402
from flask import Flask  # noqa: E402
from flask.testing import FlaskClient  # noqa: E402

from dropqueue import create_app  # noqa: E402
from dropqueue.services import upload_manager as upload_manager_module  # noqa: E402
from dropqueue.services.models import FileRef, JobRecord, Outcome, RemoteFile  # noqa: E402
from dropqueue.services.upload_executor import PercentCallback  # noqa: E402
from dropqueue.services.upload_manager import UploadManager  # noqa: E402


class GatedExecutor:
    """Executor whose transfers finish only when a test resolves them."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._gates: dict[str, asyncio.Future[Outcome]] = {}
        self._progress: dict[str, PercentCallback | None] = {}
        self._jobs: dict[str, JobRecord] = {}

    async def run(self, job: JobRecord, on_progress: PercentCallback | None = None) -> Outcome:
        self.started.append(job.filename)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        gate: asyncio.Future[Outcome] = asyncio.get_running_loop().create_future()
        self._gates[job.filename] = gate
        self._progress[job.filename] = on_progress
        self._jobs[job.filename] = job
        try:
            return await gate
        finally:
            self.in_flight -= 1

    def progress(self, filename: str, percent: int) -> None:
        callback = self._progress.get(filename)
        if callback:
            callback(percent)

    def complete(self, filename: str, url: str = "https://files.test/x") -> None:
        job = self._jobs[filename]
        result = RemoteFile(url=url, filename=filename, size=job.file.size)
        self._gates.pop(filename).set_result(Outcome.completed(job.attempt, result))

    def fail(self, filename: str, error: str) -> None:
        job = self._jobs[filename]
        self._gates.pop(filename).set_result(
            Outcome.failure(job.attempt, error, "remote_rejection")
        )

    def is_waiting(self, filename: str) -> bool:
        return filename in self._gates


class ScriptedExecutor:
    """Executor that resolves immediately; listed files fail on their first attempt."""

    def __init__(self, failures: dict[str, str] | None = None) -> None:
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, job: JobRecord, on_progress: PercentCallback | None = None) -> Outcome:
        self.calls.append((job.filename, job.attempt))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if on_progress:
                on_progress(50)
                on_progress(100)
            error = self.failures.pop(job.filename, None)
            if error is not None:
                return Outcome.failure(job.attempt, error, "remote_rejection")
            return Outcome.completed(job.attempt, RemoteFile.placeholder(job.file))
        finally:
            self.in_flight -= 1


def make_file(name: str, size: int = 16) -> FileRef:
    """In-memory file of ``size`` bytes."""
    return FileRef.from_bytes(name, b"x" * size, "text/plain")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def gated_executor() -> GatedExecutor:
    return GatedExecutor()


@pytest.fixture
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor(failures={"bad.bin": "virus detected"})


@pytest.fixture
def manager(scripted_executor: ScriptedExecutor) -> Generator[UploadManager, None, None]:
    """Started upload manager installed as the global instance."""
    mgr = UploadManager(executor=scripted_executor, ceiling=2, pass_delay=0)
    mgr.start()
    upload_manager_module._upload_manager = mgr
    yield mgr
    upload_manager_module._upload_manager = None
    mgr.shutdown()


@pytest.fixture
def gated_manager(gated_executor: GatedExecutor) -> Generator[UploadManager, None, None]:
    """Started upload manager whose transfers wait for the test to resolve them."""
    mgr = UploadManager(executor=gated_executor, ceiling=2, pass_delay=0)
    mgr.start()
    yield mgr
    mgr.shutdown()


@pytest.fixture
def app(manager: UploadManager) -> Generator[Flask, None, None]:
    """Create application for testing."""
    app = create_app()
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def temp_files() -> Generator[list[Path], None, None]:
    """Create three distinct temporary files on disk."""
    temp_dir = Path(tempfile.mkdtemp())
    files: list[Path] = []
    for i in range(3):
        path = temp_dir / f"test_file_{i}.txt"
        path.write_bytes(b"payload" * (i + 1))
        files.append(path)

    yield files

    for f in files:
        if f.exists():
            f.unlink()
    temp_dir.rmdir()
