import asyncio
from dataclasses import dataclass
from typing import Any, Generator
from unittest.mock import patch

import pytest

from coreason_codebox.config import SandboxSettings
from coreason_codebox.events import EventBus, SandboxEvent
from coreason_codebox.exceptions import ContainerStartFailed
from coreason_codebox.models import IsolationSpec
from coreason_codebox.output import OutputCapture
from coreason_codebox.runtime import (
    ContainerHandle,
    ContainerManager,
    ContainerStats,
    StreamAttachment,
    WaitOutcome,
)


@dataclass
class FakeProgram:
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int = 0
    oom_killed: bool = False
    hang: bool = False
    delay: float = 0.0
    memory_used: int | None = None


class FakeContainerManager(ContainerManager):
    """In-process ContainerManager. Behaviour is looked up by the submitted code."""

    def __init__(self) -> None:
        self.initialized = False
        self.shut_down = False
        self.images: list[str] = []
        self.programs: dict[str, FakeProgram] = {}
        self.default_program = FakeProgram(stdout=b"ok\n")
        self.create_error: Exception | None = None
        self.start_error: Exception | None = None
        self.initialize_error: Exception | None = None
        self.created: list[ContainerHandle] = []
        self.specs: list[IsolationSpec] = []
        self.commands: list[list[str]] = []
        self.stopped: list[str] = []
        self.destroy_calls: list[str] = []
        self.stale_removed = 0
        self.cleanup_calls: list[float] = []
        self.running = 0
        self.max_running = 0
        self._attachments: dict[str, StreamAttachment] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self._programs_by_handle: dict[str, FakeProgram] = {}
        self._counter = 0

    async def initialize(self) -> None:
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized = True

    async def ensure_image(self, image: str) -> None:
        self.images.append(image)

    async def create(
        self, image: str, spec: IsolationSpec, command: list[str], *, execution_id: str
    ) -> ContainerHandle:
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        handle = ContainerHandle(
            id=f"container-{self._counter:04d}",
            name=f"codebox-{execution_id[:12]}",
            execution_id=execution_id,
            image=image,
        )
        self.created.append(handle)
        self.specs.append(spec)
        self.commands.append(command)
        self._stop_events[handle.id] = asyncio.Event()
        return handle

    async def attach_streams(
        self, handle: ContainerHandle, max_output_bytes: int, hard_multiplier: int
    ) -> StreamAttachment:
        attachment = StreamAttachment(OutputCapture(max_output_bytes, hard_multiplier))
        self._attachments[handle.id] = attachment
        return attachment

    async def start(self, handle: ContainerHandle, code: str) -> None:
        if self.start_error is not None:
            raise self.start_error
        if handle.id not in self._attachments:
            raise ContainerStartFailed("streams not attached", execution_id=handle.execution_id)
        program = self.programs.get(code, self.default_program)
        self._programs_by_handle[handle.id] = program
        handle.started = True
        self.running += 1
        self.max_running = max(self.max_running, self.running)

        capture = self._attachments[handle.id].capture
        ok = capture.feed("stdout", program.stdout) and capture.feed("stderr", program.stderr)
        if not ok:
            self._stop_events[handle.id].set()
        if not program.hang:
            self._attachments[handle.id].finish()

    async def wait(self, handle: ContainerHandle, timeout: float) -> WaitOutcome:
        program = self._programs_by_handle[handle.id]
        stop_event = self._stop_events[handle.id]
        if program.hang:
            await stop_event.wait()
            self._attachments[handle.id].finish()
            return WaitOutcome(exit_code=137)
        if stop_event.is_set():
            return WaitOutcome(exit_code=137)
        if program.delay:
            try:
                await asyncio.wait_for(stop_event.wait(), program.delay)
                return WaitOutcome(exit_code=137)
            except asyncio.TimeoutError:
                pass
        return WaitOutcome(exit_code=program.exit_code, oom_killed=program.oom_killed)

    async def stop(self, handle: ContainerHandle, grace: float) -> None:
        self.stopped.append(handle.id)
        self._stop_events[handle.id].set()

    async def stats(self, handle: ContainerHandle) -> ContainerStats:
        program = self._programs_by_handle.get(handle.id)
        return ContainerStats(memory_used_bytes=program.memory_used if program else None)

    async def destroy(self, handle: ContainerHandle) -> None:
        self.destroy_calls.append(handle.id)
        if handle.destroyed:
            return
        handle.destroyed = True
        if handle.started:
            self.running -= 1

    async def cleanup_stale(self, max_age: float) -> int:
        self.cleanup_calls.append(max_age)
        return self.stale_removed

    async def shutdown(self) -> None:
        self.shut_down = True


@pytest.fixture
def settings(tmp_path: Any) -> SandboxSettings:
    return SandboxSettings(
        _env_file=None,
        pull_images_on_startup=False,
        admission_timeout_seconds=2.0,
        stop_grace_seconds=0.1,
        stream_drain_timeout=0.5,
        docker_timeout=1.0,
        create_retry_delay=0.0,
        shutdown_timeout=2.0,
        reaper_interval=3600.0,
    )


@pytest.fixture
def fake_manager() -> FakeContainerManager:
    return FakeContainerManager()


@pytest.fixture
def event_log() -> tuple[EventBus, list[tuple[SandboxEvent, dict[str, Any]]]]:
    bus = EventBus()
    seen: list[tuple[SandboxEvent, dict[str, Any]]] = []
    bus.subscribe("*", lambda event, payload: seen.append((event, payload)))
    return bus, seen


@pytest.fixture
def mock_vault_integrator() -> Generator[Any, None, None]:
    with patch("coreason_codebox.config.VaultIntegrator") as mock:
        yield mock
