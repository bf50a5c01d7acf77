"""Shared fixtures for MobileTester unit tests."""

import asyncio
import os
import tempfile
from datetime import UTC, datetime, timedelta

import pytest

from mt_controller.matrix_client import (
    RUNNING,
    MatrixHandle,
    MatrixStatus,
    TestMatrixClient,
)
from mt_controller.scheduler import Clock
from mt_persistence.sqlite_repository import SQLiteJobRepository


class FakeClock(Clock):
    """Clock whose sleep() advances time instantly."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class ScriptedMatrixClient(TestMatrixClient):
    """
    Device farm that answers polls from a script.

    Each entry in polls is either a MatrixStatus or an exception to raise.
    Once the script is exhausted every poll reports running.
    """

    def __init__(self):
        self.polls: list = []
        self.start_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self.started: list[tuple[str, list[str], int]] = []
        self.cancelled: list[str] = []
        self.poll_count = 0

    async def start(self, artifact_ref, device_ids, timeout_seconds):
        if self.start_error is not None:
            raise self.start_error
        self.started.append((artifact_ref, list(device_ids), timeout_seconds))
        return MatrixHandle(
            matrix_id=f"matrix-{len(self.started)}", devices=tuple(device_ids)
        )

    async def poll(self, matrix_id):
        self.poll_count += 1
        if not self.polls:
            return MatrixStatus(matrix_id, RUNNING)
        item = self.polls.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def cancel(self, matrix_id):
        self.cancelled.append(matrix_id)
        if self.cancel_error is not None:
            raise self.cancel_error


@pytest.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteJobRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def matrix_client():
    return ScriptedMatrixClient()
