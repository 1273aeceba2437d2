import asyncio
import socket
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from coreason_codebox.config import SandboxSettings
from coreason_codebox.events import EventBus, SandboxEvent
from coreason_codebox.exceptions import (
    ContainerCreateFailed,
    ContainerStartFailed,
    DockerNotAvailable,
    ExecutionFailed,
    ImageNotAvailable,
    ImagePullFailed,
)
from coreason_codebox.limits import ResourceLimitEnforcer
from coreason_codebox.models import IsolationSpec, Language
from coreason_codebox.output import OutputCapture
from coreason_codebox.runtime import ContainerHandle, ContainerStats
from coreason_codebox.runtimes.docker import DockerContainerManager, DockerStreamAttachment


def _api_error(status: int) -> APIError:
    response = MagicMock()
    response.status_code = status
    return APIError(f"status {status}", response=response)


@pytest.fixture
def mock_docker_client() -> Any:
    with patch("coreason_codebox.runtimes.docker.docker.from_env") as mock:
        yield mock


@pytest.fixture
def spec(settings: SandboxSettings) -> IsolationSpec:
    return ResourceLimitEnforcer(settings).build(
        settings.default_sandbox_config(), execution_id="exec-123456789abc", language=Language.PYTHON
    )


@pytest.fixture
def manager(mock_docker_client: Any) -> DockerContainerManager:
    manager = DockerContainerManager(create_retry_delay=0.0, events=EventBus())
    manager.client = mock_docker_client.return_value
    return manager


def _handle(container: MagicMock) -> ContainerHandle:
    return ContainerHandle(
        id=container.id, name="codebox-x", execution_id="exec-1", image="python:3.12-alpine", native=container
    )


def _container(container_id: str = "c" * 64) -> MagicMock:
    container = MagicMock()
    container.id = container_id
    container.short_id = container_id[:12]
    return container


@pytest.mark.asyncio
async def test_initialize_pings_daemon(mock_docker_client: Any) -> None:
    manager = DockerContainerManager()
    await manager.initialize()

    mock_docker_client.assert_called_once_with(timeout=30)
    mock_docker_client.return_value.ping.assert_called_once()


@pytest.mark.asyncio
async def test_initialize_with_base_url() -> None:
    with patch("coreason_codebox.runtimes.docker.docker.DockerClient") as client_cls:
        manager = DockerContainerManager(base_url="tcp://docker:2375", timeout=5)
        await manager.initialize()
    client_cls.assert_called_once_with(base_url="tcp://docker:2375", timeout=5)


@pytest.mark.asyncio
async def test_initialize_unreachable_daemon(mock_docker_client: Any) -> None:
    mock_docker_client.side_effect = DockerException("Error while fetching server API version")

    with pytest.raises(DockerNotAvailable):
        await DockerContainerManager().initialize()


@pytest.mark.asyncio
async def test_operations_require_initialize() -> None:
    with pytest.raises(DockerNotAvailable):
        await DockerContainerManager().ensure_image("python:3.12-alpine")


@pytest.mark.asyncio
async def test_ensure_image_pulls_missing(manager: DockerContainerManager, mock_docker_client: Any) -> None:
    images = mock_docker_client.return_value.images
    images.get.side_effect = ImageNotFound("missing")

    await manager.ensure_image("node:20-alpine")

    images.pull.assert_called_once_with("node:20-alpine")


@pytest.mark.asyncio
async def test_ensure_image_present_skips_pull(manager: DockerContainerManager, mock_docker_client: Any) -> None:
    await manager.ensure_image("bash:5.2")
    mock_docker_client.return_value.images.pull.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_image_pull_failure(manager: DockerContainerManager, mock_docker_client: Any) -> None:
    images = mock_docker_client.return_value.images
    images.get.side_effect = ImageNotFound("missing")
    images.pull.side_effect = APIError("pull access denied")

    with pytest.raises(ImagePullFailed):
        await manager.ensure_image("private/image:1")


@pytest.mark.asyncio
async def test_create_applies_isolation(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    containers = mock_docker_client.return_value.containers
    containers.create.return_value = _container()
    created: list[dict[str, Any]] = []
    manager.events.subscribe(SandboxEvent.CONTAINER_CREATED, lambda e, p: created.append(p))

    handle = await manager.create(
        "python:3.12-alpine", spec, ["python3", "-u", "-"], execution_id="exec-123456789abc"
    )

    kwargs = containers.create.call_args.kwargs
    assert kwargs["image"] == "python:3.12-alpine"
    assert kwargs["command"] == ["python3", "-u", "-"]
    assert kwargs["stdin_open"] is True
    assert kwargs["stdin_once"] is True
    assert kwargs["network_mode"] == "none"
    assert kwargs["mem_limit"] == kwargs["memswap_limit"]
    assert kwargs["cap_drop"] == ["ALL"]
    assert kwargs["cap_add"] is None
    assert "no-new-privileges:true" in kwargs["security_opt"]
    assert kwargs["read_only"] is True
    assert kwargs["user"] == "65534:65534"
    assert kwargs["pids_limit"] == 64
    assert kwargs["name"].startswith("codebox-exec-1234567")
    assert kwargs["labels"]["codebox.execution_id"] == "exec-123456789abc"
    assert handle.execution_id == "exec-123456789abc"
    assert created[0]["container_id"] == handle.id


@pytest.mark.asyncio
async def test_create_retries_transient_failure_once(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    containers = mock_docker_client.return_value.containers
    containers.create.side_effect = [_api_error(500), _container()]

    await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    assert containers.create.call_count == 2


@pytest.mark.asyncio
async def test_create_gives_up_after_second_transient_failure(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    containers = mock_docker_client.return_value.containers
    containers.create.side_effect = [_api_error(409), _api_error(503)]

    with pytest.raises(ContainerCreateFailed) as exc_info:
        await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    assert exc_info.value.transient is True
    assert containers.create.call_count == 2


@pytest.mark.asyncio
async def test_create_does_not_retry_client_errors(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    containers = mock_docker_client.return_value.containers
    containers.create.side_effect = _api_error(400)

    with pytest.raises(ContainerCreateFailed) as exc_info:
        await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    assert exc_info.value.transient is False
    assert containers.create.call_count == 1


@pytest.mark.asyncio
async def test_create_pulls_missing_image(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    client = mock_docker_client.return_value
    client.containers.create.side_effect = [ImageNotFound("no such image"), _container()]
    client.images.get.side_effect = ImageNotFound("no such image")

    await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    client.images.pull.assert_called_once_with("python:3.12-alpine")


@pytest.mark.asyncio
async def test_create_second_missing_image_fails(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    client = mock_docker_client.return_value
    client.containers.create.side_effect = ImageNotFound("no such image")

    with pytest.raises(ContainerCreateFailed):
        await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    assert client.containers.create.call_count == 2


@pytest.mark.asyncio
async def test_pull_policy_never_reports_missing_image(
    mock_docker_client: Any, spec: IsolationSpec
) -> None:
    manager = DockerContainerManager(create_retry_delay=0.0, pull_policy="never")
    manager.client = client = mock_docker_client.return_value
    client.images.get.side_effect = ImageNotFound("missing")
    client.containers.create.side_effect = ImageNotFound("no such image")

    with pytest.raises(ImageNotAvailable) as exc_info:
        await manager.ensure_image("python:3.12-alpine")
    assert exc_info.value.code.value == "IMAGE_NOT_FOUND"

    with pytest.raises(ImageNotAvailable):
        await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    client.images.pull.assert_not_called()
    assert client.containers.create.call_count == 1


@pytest.mark.asyncio
async def test_pull_policy_always_pulls_present_image(
    mock_docker_client: Any, spec: IsolationSpec
) -> None:
    manager = DockerContainerManager(create_retry_delay=0.0, pull_policy="always")
    manager.client = client = mock_docker_client.return_value
    client.containers.create.return_value = _container()

    await manager.ensure_image("bash:5.2")
    await manager.create("bash:5.2", spec, ["bash", "-s"], execution_id="exec-1")

    assert client.images.pull.call_count == 2
    client.images.get.assert_not_called()


@pytest.mark.asyncio
async def test_start_delivers_code_on_stdin(manager: DockerContainerManager) -> None:
    container = _container()
    sock = MagicMock()
    container.attach_socket.return_value = sock
    handle = _handle(container)

    await manager.start(handle, "print('hi')")

    container.start.assert_called_once()
    sock._sock.sendall.assert_called_once_with(b"print('hi')")
    sock._sock.shutdown.assert_called_once_with(socket.SHUT_WR)
    sock._sock.close.assert_called_once()
    sock.close.assert_called_once()
    assert handle.started


@pytest.mark.asyncio
async def test_start_half_closes_stdin_over_a_real_socket(manager: DockerContainerManager) -> None:
    interpreter_side, daemon_side = socket.socketpair()
    container = _container()
    container.attach_socket.return_value = daemon_side.makefile("rwb", buffering=0)
    code = "import sys\nprint(sum(range(10)))\n"

    await manager.start(_handle(container), code)

    interpreter_side.settimeout(2)
    received = b""
    while chunk := interpreter_side.recv(4096):
        received += chunk
    interpreter_side.close()

    assert received == code.encode("utf-8")


@pytest.mark.asyncio
async def test_start_failure_is_not_retried(manager: DockerContainerManager) -> None:
    container = _container()
    container.start.side_effect = _api_error(500)
    handle = _handle(container)

    with pytest.raises(ContainerStartFailed):
        await manager.start(handle, "print('hi')")

    container.start.assert_called_once()
    container.attach_socket.return_value.close.assert_called_once()
    assert not handle.started


@pytest.mark.asyncio
async def test_wait_reads_runtime_oom_flag(manager: DockerContainerManager) -> None:
    container = _container()
    container.wait.return_value = {"StatusCode": 137}
    container.attrs = {"State": {"OOMKilled": True}}

    outcome = await manager.wait(_handle(container), timeout=5)

    assert outcome.exit_code == 137
    assert outcome.oom_killed is True
    container.reload.assert_called_once()


@pytest.mark.asyncio
async def test_wait_exit_137_without_oom_flag(manager: DockerContainerManager) -> None:
    container = _container()
    container.wait.return_value = {"StatusCode": 137}
    container.attrs = {"State": {"OOMKilled": False}}

    outcome = await manager.wait(_handle(container), timeout=5)

    assert outcome.oom_killed is False


@pytest.mark.asyncio
async def test_wait_failure(manager: DockerContainerManager) -> None:
    container = _container()
    container.wait.side_effect = DockerException("gone")

    with pytest.raises(ExecutionFailed):
        await manager.wait(_handle(container), timeout=5)


@pytest.mark.asyncio
async def test_stop_uses_grace_then_kill(manager: DockerContainerManager) -> None:
    container = _container()

    await manager.stop(_handle(container), grace=0.5)

    container.stop.assert_called_once_with(timeout=1)


@pytest.mark.asyncio
async def test_stats_reports_memory_usage(manager: DockerContainerManager) -> None:
    container = _container()
    container.stats.return_value = {"memory_stats": {"usage": 1234, "limit": 268435456}}

    stats = await manager.stats(_handle(container))

    assert stats.memory_used_bytes == 1234
    container.stats.assert_called_once_with(stream=False, one_shot=True)


@pytest.mark.asyncio
async def test_stats_prefers_peak_usage(manager: DockerContainerManager) -> None:
    container = _container()
    container.stats.return_value = {"memory_stats": {"usage": 1000, "max_usage": 5000}}

    assert (await manager.stats(_handle(container))).memory_used_bytes == 5000


@pytest.mark.asyncio
async def test_stats_unavailable(manager: DockerContainerManager) -> None:
    container = _container()
    container.stats.side_effect = DockerException("container is not running")

    assert await manager.stats(_handle(container)) == ContainerStats()

    container.stats.side_effect = None
    container.stats.return_value = {"memory_stats": {}}
    assert (await manager.stats(_handle(container))).memory_used_bytes is None


@pytest.mark.asyncio
async def test_destroy_is_idempotent(manager: DockerContainerManager) -> None:
    container = _container()
    handle = _handle(container)
    removed: list[dict[str, Any]] = []
    manager.events.subscribe(SandboxEvent.CONTAINER_REMOVED, lambda e, p: removed.append(p))

    await manager.destroy(handle)
    await manager.destroy(handle)

    container.remove.assert_called_once_with(force=True, v=True)
    assert handle.destroyed
    assert len(removed) == 1


@pytest.mark.asyncio
async def test_destroy_ignores_missing_container(manager: DockerContainerManager) -> None:
    container = _container()
    container.remove.side_effect = NotFound("no such container")

    await manager.destroy(_handle(container))


@pytest.mark.asyncio
async def test_cleanup_stale_removes_old_managed_containers(
    manager: DockerContainerManager, mock_docker_client: Any
) -> None:
    old = _container("a" * 64)
    old.attrs = {"Created": "2020-01-01T00:00:00.123456789Z"}
    fresh = _container("b" * 64)
    fresh.attrs = {"Created": "2999-01-01T00:00:00Z"}
    mock_docker_client.return_value.containers.list.return_value = [old, fresh]

    removed = await manager.cleanup_stale(max_age=600)

    assert removed == 1
    old.remove.assert_called_once_with(force=True, v=True)
    fresh.remove.assert_not_called()
    mock_docker_client.return_value.containers.list.assert_called_once_with(
        all=True, filters={"label": "codebox.managed=true"}
    )


@pytest.mark.asyncio
async def test_shutdown_removes_tracked_and_closes(
    manager: DockerContainerManager, mock_docker_client: Any, spec: IsolationSpec
) -> None:
    container = _container()
    mock_docker_client.return_value.containers.create.return_value = container
    await manager.create("python:3.12-alpine", spec, ["python3"], execution_id="exec-1")

    await manager.shutdown()

    container.remove.assert_called_once_with(force=True, v=True)
    mock_docker_client.return_value.close.assert_called_once()
    assert manager.client is None


@pytest.mark.asyncio
async def test_attach_pump_caps_output() -> None:
    container = _container()
    stream = iter([(b"hello", None), (None, b"warn"), (b" world", None)])
    attachment = DockerStreamAttachment(OutputCapture(max_bytes=8), stream, container)

    attachment.begin()
    assert await attachment.drain(1.0)

    assert attachment.capture.stdout == "hello wo"
    assert attachment.capture.stderr == "warn"
    assert attachment.capture.truncated
    container.kill.assert_not_called()


@pytest.mark.asyncio
async def test_attach_pump_kills_on_hard_limit() -> None:
    container = _container()
    stream = iter([(b"x" * 10, None)] * 10)
    attachment = DockerStreamAttachment(OutputCapture(max_bytes=5, hard_multiplier=2), stream, container)

    attachment.begin()
    await asyncio.wait_for(attachment.drain(1.0), 2.0)

    assert attachment.capture.overflowed
    container.kill.assert_called_once()
