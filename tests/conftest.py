import asyncio
import json
import shutil

import pytest
from httpx import ASGITransport, AsyncClient

from speedshift.api.main import create_app
from speedshift.events import EventBus
from speedshift.exceptions import ExecutionError
from speedshift.models import SpeedShiftConfig
from speedshift.orchestrator import JobOrchestrator
from speedshift.storage import FileStore


class FakeExecutor:
    """Stands in for FFmpeg: copies input to output, or fails on demand."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.partial_output = None  # bytes written as soon as a run starts
        self.gate = None  # asyncio.Event holding every run until set

    async def run(self, input_path, steps, output_path):
        self.calls.append((input_path.name, list(steps), output_path.name))
        if self.partial_output is not None:
            output_path.write_bytes(self.partial_output)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise ExecutionError(self.fail_with, returncode=1)
        shutil.copyfile(input_path, output_path)
        return output_path


def drain_events(subscription):
    """All messages queued for a subscription, parsed."""
    messages = []
    while True:
        try:
            messages.append(json.loads(subscription.queue.get_nowait()))
        except asyncio.QueueEmpty:
            return messages


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / "my_files"
    path.mkdir()
    return path


@pytest.fixture
def config(storage_dir):
    return SpeedShiftConfig.from_dict({"storage": {"directory": str(storage_dir)}})


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def store(storage_dir):
    return FileStore(storage_dir)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def orchestrator(store, fake_executor, bus):
    return JobOrchestrator(store, fake_executor, bus)


@pytest.fixture
def app(config, fake_executor):
    return create_app(config, executor=fake_executor)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
