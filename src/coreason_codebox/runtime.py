# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import anyio

from coreason_codebox.models import IsolationSpec, Language
from coreason_codebox.output import OutputCapture

# Fixed interpreter invocations. Code always arrives on stdin, never as an argument.
INTERPRETER_COMMANDS: dict[Language, list[str]] = {
    Language.PYTHON: ["python3", "-u", "-"],
    Language.JAVASCRIPT: ["node", "-"],
    Language.BASH: ["bash", "-s"],
}


@dataclass
class ContainerHandle:
    """A single container owned by exactly one execution. Never pooled."""

    id: str
    name: str
    execution_id: str
    image: str
    created_at: float = field(default_factory=time.time)
    native: Any = field(default=None, repr=False)
    started: bool = False
    destroyed: bool = False


@dataclass(frozen=True)
class WaitOutcome:
    exit_code: int | None
    oom_killed: bool = False


@dataclass(frozen=True)
class ContainerStats:
    memory_used_bytes: int | None = None


class StreamAttachment:
    """Live stdout/stderr attachment feeding an OutputCapture.

    Backends push chunks into `capture` from a reader and call `finish()` when
    the streams reach EOF or the reader stops.
    """

    def __init__(self, capture: OutputCapture):
        self.capture = capture
        self._finished = threading.Event()

    def finish(self) -> None:
        self._finished.set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    async def drain(self, timeout: float) -> bool:
        """Waits for the reader to reach EOF. Returns False if it did not within `timeout`."""
        return await anyio.to_thread.run_sync(self._finished.wait, timeout)

    def close(self) -> None:
        self.finish()


class ContainerManager(ABC):
    """
    Abstract base class for container backends.
    Follows the Strategy Pattern.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to the container runtime and verify it responds.

        Raises:
            DockerNotAvailable: If the runtime is unreachable.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def ensure_image(self, image: str) -> None:
        """Make sure `image` is available locally, pulling it as the pull policy allows.

        Raises:
            ImagePullFailed: If the image is missing and cannot be pulled.
            ImageNotAvailable: If the image is missing and the policy forbids pulling.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def create(
        self, image: str, spec: IsolationSpec, command: list[str], *, execution_id: str
    ) -> ContainerHandle:
        """Create (but do not start) a container for one execution.

        Args:
            image: Pinned language image.
            spec: Isolation contract to apply.
            command: Fixed interpreter invocation.
            execution_id: Owning execution.

        Returns:
            ContainerHandle: Handle owned by the caller until destroy().

        Raises:
            ContainerCreateFailed: If creation fails after the bounded retry.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def attach_streams(
        self, handle: ContainerHandle, max_output_bytes: int, hard_multiplier: int
    ) -> StreamAttachment:
        """Attach to stdout/stderr before the container starts.

        The container is killed once a stream exceeds `max_output_bytes * hard_multiplier`.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def start(self, handle: ContainerHandle, code: str) -> None:
        """Start the container and deliver `code` over stdin.

        Raises:
            ContainerStartFailed: If the container cannot be started. Never retried.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def wait(self, handle: ContainerHandle, timeout: float) -> WaitOutcome:
        """Block until the container exits.

        Returns:
            WaitOutcome: Exit code and the runtime's own OOM-killed flag.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def stop(self, handle: ContainerHandle, grace: float) -> None:
        """Signal the container, then kill it once `grace` seconds have passed."""
        pass  # pragma: no cover

    @abstractmethod
    async def stats(self, handle: ContainerHandle) -> ContainerStats:
        """Best-effort resource usage of a container that has not been destroyed yet.

        Returns empty stats instead of raising when the runtime cannot report them.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def destroy(self, handle: ContainerHandle) -> None:
        """Force-remove the container and its anonymous volumes. Idempotent."""
        pass  # pragma: no cover

    @abstractmethod
    async def cleanup_stale(self, max_age: float) -> int:
        """Remove managed containers older than `max_age` seconds.

        Returns:
            int: Number of containers removed.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def shutdown(self) -> None:
        """Remove tracked containers and release the runtime client."""
        pass  # pragma: no cover
