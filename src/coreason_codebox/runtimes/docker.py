import asyncio
import math
import socket
import threading
import time
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import Ulimit
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_fixed

from coreason_codebox.events import EventBus, SandboxEvent
from coreason_codebox.exceptions import (
    ContainerCreateFailed,
    ContainerStartFailed,
    DockerNotAvailable,
    ExecutionFailed,
    ImageNotAvailable,
    ImagePullFailed,
)
from coreason_codebox.models import IsolationSpec
from coreason_codebox.output import OutputCapture
from coreason_codebox.runtime import (
    ContainerHandle,
    ContainerManager,
    ContainerStats,
    StreamAttachment,
    WaitOutcome,
)

PullPolicy = Literal["always", "if_not_present", "never"]


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, NotFound):
        return False
    # APIError is itself an OSError via requests, so check it first.
    if isinstance(error, APIError):
        status = error.status_code
        return status is None or status == 409 or status >= 500
    return isinstance(error, OSError)


def _log_create_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Transient create failure (attempt {retry_state.attempt_number}), retrying: {error}")


def _memory_used(stats: dict[str, Any]) -> int | None:
    memory = stats.get("memory_stats") or {}
    # cgroup v1 reports a peak; v2 only the current usage.
    used = memory.get("max_usage") or memory.get("usage")
    return int(used) if used else None


def _created_at(container: Container) -> float | None:
    created = container.attrs.get("Created")
    if not created:
        return None
    try:
        # Docker reports nanosecond precision; seconds are enough here.
        parsed = datetime.strptime(created[:19], "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return parsed.timestamp()


class DockerStreamAttachment(StreamAttachment):
    """Pumps a demultiplexed attach stream into the capture on a reader thread."""

    def __init__(self, capture: OutputCapture, stream: Any, container: Container):
        super().__init__(capture)
        self._stream = stream
        self._container = container
        self._thread = threading.Thread(target=self._pump, name=f"attach-{container.id[:12]}", daemon=True)

    def begin(self) -> None:
        self._thread.start()

    def _pump(self) -> None:
        try:
            for stdout, stderr in self._stream:
                ok = self.capture.feed("stdout", stdout) and self.capture.feed("stderr", stderr)
                if not ok:
                    logger.warning(
                        f"Container {self._container.id[:12]} exceeded the output hard limit "
                        f"({self.capture.hard_limit} bytes). Killing."
                    )
                    try:
                        self._container.kill()
                    except DockerException as e:
                        logger.warning(f"Failed to kill container {self._container.id[:12]}: {e}")
                    break
        except (DockerException, OSError, ValueError) as e:
            # Closing the stream from another thread surfaces here.
            logger.debug(f"Attach stream for {self._container.id[:12]} ended: {e}")
        finally:
            self.finish()

    def close(self) -> None:
        try:
            self._stream.close()
        except (DockerException, OSError) as e:
            logger.debug(f"Error closing attach stream: {e}")
        finally:
            super().close()


class DockerContainerManager(ContainerManager):
    """
    Docker-based implementation of the ContainerManager.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 30.0,
        prefix: str = "codebox",
        create_retry_delay: float = 0.25,
        events: EventBus | None = None,
        pull_policy: PullPolicy = "if_not_present",
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.prefix = prefix
        self.create_retry_delay = create_retry_delay
        self.pull_policy = pull_policy
        self.events = events or EventBus()
        self.client: docker.DockerClient | None = None
        self._tracked: dict[str, ContainerHandle] = {}

    def _client(self) -> docker.DockerClient:
        if self.client is None:
            raise DockerNotAvailable("Container manager is not initialized")
        return self.client

    def _connect(self) -> docker.DockerClient:
        if self.base_url:
            client = docker.DockerClient(base_url=self.base_url, timeout=int(self.timeout))
        else:
            client = docker.from_env(timeout=int(self.timeout))
        client.ping()
        return client

    async def initialize(self) -> None:
        """
        Connect to the Docker daemon and ping it.
        """
        if self.client is not None:
            return
        logger.info(f"Connecting to Docker at {self.base_url or 'environment default'}")
        try:
            self.client = await asyncio.to_thread(self._connect)
        except (DockerException, OSError) as e:
            logger.error(f"Docker is not available: {e}")
            raise DockerNotAvailable(f"Docker is not available: {e}") from e
        logger.info("Docker connection established")

    async def ensure_image(self, image: str) -> None:
        """
        Make the image available according to the pull policy.
        """
        client = self._client()
        policy = self.pull_policy

        def _ensure() -> None:
            if policy != "always":
                try:
                    client.images.get(image)
                    return
                except ImageNotFound:
                    if policy == "never":
                        raise
            logger.info(f"Pulling image {image}")
            client.images.pull(image)

        try:
            await asyncio.to_thread(_ensure)
        except ImageNotFound as e:
            raise ImageNotAvailable(
                f"Image {image} not found and pull policy is 'never'", context={"image": image}
            ) from e
        except (DockerException, OSError) as e:
            logger.error(f"Failed to pull image {image}: {e}")
            raise ImagePullFailed(f"Failed to pull image {image}: {e}", context={"image": image}) from e

    def _create_kwargs(self, image: str, spec: IsolationSpec, command: list[str], name: str) -> dict[str, Any]:
        return {
            "image": image,
            "command": command,
            "name": name,
            "detach": True,
            "stdin_open": True,
            "stdin_once": True,
            "tty": False,
            "network_mode": spec.network_mode,
            "mem_limit": spec.memory_bytes,
            "memswap_limit": spec.memory_swap_bytes,
            "nano_cpus": spec.nano_cpus,
            "pids_limit": spec.pids_limit,
            "cap_drop": list(spec.cap_drop) or None,
            "cap_add": list(spec.cap_add) or None,
            "security_opt": list(spec.security_opt),
            "read_only": spec.read_only_root_fs,
            "tmpfs": dict(spec.tmpfs),
            "user": spec.user,
            "environment": dict(spec.environment),
            "labels": dict(spec.labels),
            "working_dir": spec.working_dir,
            "ulimits": [Ulimit(name=n, soft=soft, hard=hard) for n, soft, hard in spec.ulimits],
            "init": spec.init,
        }

    async def _create_with_retry(
        self,
        client: docker.DockerClient,
        image: str,
        spec: IsolationSpec,
        command: list[str],
        execution_id: str,
    ) -> tuple[Container, str]:
        """Creates the container, retrying once on transient daemon errors. ImageNotFound propagates."""
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                wait=wait_fixed(self.create_retry_delay),
                retry=retry_if_exception(_is_transient),
                before_sleep=_log_create_retry,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    name = f"{self.prefix}-{execution_id[:12]}-{uuid4().hex[:6]}"
                    kwargs = self._create_kwargs(image, spec, command, name)
                    container: Container = await asyncio.to_thread(client.containers.create, **kwargs)
        except ImageNotFound:
            raise
        except (DockerException, OSError) as e:
            logger.error(f"Failed to create container for {execution_id}: {e}")
            raise ContainerCreateFailed(
                f"Failed to create container: {e}",
                execution_id=execution_id,
                context={"image": image, "attempts": attempts},
                transient=_is_transient(e),
            ) from e
        return container, name

    async def create(
        self, image: str, spec: IsolationSpec, command: list[str], *, execution_id: str
    ) -> ContainerHandle:
        """
        Create the container. Transient daemon failures get one retry.
        """
        client = self._client()
        if self.pull_policy == "always":
            await self.ensure_image(image)
        try:
            container, name = await self._create_with_retry(client, image, spec, command, execution_id)
        except ImageNotFound as e:
            if self.pull_policy == "never":
                raise ImageNotAvailable(
                    f"Image {image} not found and pull policy is 'never'",
                    execution_id=execution_id,
                    context={"image": image},
                ) from e
            logger.warning(f"Image {image} missing at create time; pulling")
            await self.ensure_image(image)
            try:
                container, name = await self._create_with_retry(client, image, spec, command, execution_id)
            except ImageNotFound as e:
                raise ContainerCreateFailed(
                    f"Image {image} not found", execution_id=execution_id, context={"image": image}
                ) from e

        handle = ContainerHandle(
            id=container.id,
            name=name,
            execution_id=execution_id,
            image=image,
            native=container,
        )
        self._tracked[handle.id] = handle
        logger.info(f"Created container {container.short_id} for execution {execution_id}")
        self.events.emit(
            SandboxEvent.CONTAINER_CREATED,
            {"execution_id": execution_id, "container_id": handle.id, "image": image},
        )
        return handle

    async def attach_streams(
        self, handle: ContainerHandle, max_output_bytes: int, hard_multiplier: int
    ) -> StreamAttachment:
        container: Container = handle.native
        capture = OutputCapture(max_output_bytes, hard_multiplier)
        try:
            stream = await asyncio.to_thread(
                container.attach, stdout=True, stderr=True, stream=True, logs=True, demux=True
            )
        except (DockerException, OSError) as e:
            raise ContainerStartFailed(
                f"Failed to attach to container output: {e}", execution_id=handle.execution_id
            ) from e
        attachment = DockerStreamAttachment(capture, stream, container)
        attachment.begin()
        return attachment

    def _start_with_stdin(self, container: Container, code: str) -> None:
        # On unix sockets docker-py returns a SocketIO; the socket itself sits behind it.
        sock = container.attach_socket(params={"stdin": 1, "stream": 1})
        raw = getattr(sock, "_sock", sock)
        try:
            container.start()
            raw.sendall(code.encode("utf-8"))
            # Interpreters read stdin to EOF before running; closing the SocketIO does not send it.
            raw.shutdown(socket.SHUT_WR)
        finally:
            sock.close()
            if raw is not sock:
                raw.close()

    async def start(self, handle: ContainerHandle, code: str) -> None:
        """
        Start the container and stream the code to the interpreter's stdin.
        """
        container: Container = handle.native
        logger.info(f"Starting container {container.short_id} for execution {handle.execution_id}")
        try:
            await asyncio.to_thread(self._start_with_stdin, container, code)
        except (DockerException, OSError) as e:
            logger.error(f"Failed to start container {container.short_id}: {e}")
            raise ContainerStartFailed(
                f"Failed to start container: {e}", execution_id=handle.execution_id
            ) from e
        handle.started = True
        self.events.emit(
            SandboxEvent.CONTAINER_STARTED,
            {"execution_id": handle.execution_id, "container_id": handle.id},
        )

    async def wait(self, handle: ContainerHandle, timeout: float) -> WaitOutcome:
        container: Container = handle.native

        def _wait() -> WaitOutcome:
            status = container.wait(timeout=timeout)
            container.reload()
            state = container.attrs.get("State", {})
            return WaitOutcome(
                exit_code=status.get("StatusCode"),
                oom_killed=bool(state.get("OOMKilled", False)),
            )

        try:
            return await asyncio.to_thread(_wait)
        except (DockerException, OSError) as e:
            logger.error(f"Failed waiting on container {container.short_id}: {e}")
            raise ExecutionFailed(
                f"Lost track of container {container.short_id}: {e}", execution_id=handle.execution_id
            ) from e

    async def stop(self, handle: ContainerHandle, grace: float) -> None:
        container: Container = handle.native
        logger.info(f"Stopping container {container.short_id} (grace {grace}s)")
        try:
            await asyncio.to_thread(container.stop, timeout=max(0, math.ceil(grace)))
        except NotFound:
            logger.debug(f"Container {container.short_id} already gone")
        except DockerException as e:
            logger.warning(f"Error stopping container {container.short_id}: {e}")
        self.events.emit(
            SandboxEvent.CONTAINER_STOPPED,
            {"execution_id": handle.execution_id, "container_id": handle.id},
        )

    async def stats(self, handle: ContainerHandle) -> ContainerStats:
        container: Container = handle.native
        try:
            raw = await asyncio.to_thread(container.stats, stream=False, one_shot=True)
        except (DockerException, OSError) as e:
            logger.debug(f"Stats unavailable for container {container.short_id}: {e}")
            return ContainerStats()
        return ContainerStats(memory_used_bytes=_memory_used(raw))

    async def destroy(self, handle: ContainerHandle) -> None:
        """
        Force-remove the container including anonymous volumes.
        """
        if handle.destroyed:
            return
        handle.destroyed = True
        self._tracked.pop(handle.id, None)
        container: Container = handle.native
        logger.info(f"Removing container {container.short_id}")
        try:
            await asyncio.to_thread(container.remove, force=True, v=True)
        except NotFound:
            logger.debug(f"Container {container.short_id} already removed")
        except DockerException as e:
            logger.warning(f"Error removing container {container.short_id}: {e}")
            return
        self.events.emit(
            SandboxEvent.CONTAINER_REMOVED,
            {"execution_id": handle.execution_id, "container_id": handle.id},
        )

    async def cleanup_stale(self, max_age: float) -> int:
        client = self._client()
        label = f"{self.prefix}.managed=true"

        def _cleanup() -> int:
            now = time.time()
            removed = 0
            for container in client.containers.list(all=True, filters={"label": label}):
                if container.id in self._tracked:
                    continue
                created = _created_at(container)
                if created is None or now - created <= max_age:
                    continue
                logger.info(f"Removing stale container {container.short_id}")
                try:
                    container.remove(force=True, v=True)
                    removed += 1
                except NotFound:
                    pass
                except DockerException as e:
                    logger.warning(f"Failed to remove stale container {container.short_id}: {e}")
            return removed

        return await asyncio.to_thread(_cleanup)

    async def shutdown(self) -> None:
        for handle in list(self._tracked.values()):
            await self.destroy(handle)
        if self.client is not None:
            try:
                self.client.close()
            except DockerException as e:
                logger.warning(f"Error closing Docker client: {e}")
            finally:
                self.client = None
