from typing import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from mcp.types import TextContent

from coreason_codebox.exceptions import ErrorCode, InvalidRequest, NotFound
from coreason_codebox.main import (
    cancel_execution,
    execute_code,
    get_audit_log,
    get_execution,
    lifespan,
    list_active_executions,
    main,
    mcp,
)
from coreason_codebox.models import ExecutionResult, ExecutionState, Language


def _result(**overrides: object) -> ExecutionResult:
    values: dict[str, object] = {
        "execution_id": "exec-1",
        "language": Language.PYTHON,
        "state": ExecutionState.COMPLETED,
        "success": True,
        "stdout": "hello",
        "exit_code": 0,
        "duration_ms": 42,
    }
    values.update(overrides)
    return ExecutionResult.model_validate(values)


@pytest.fixture
def mock_service() -> Generator[MagicMock, None, None]:
    with patch("coreason_codebox.main.service", new_callable=MagicMock) as mock:
        mock.execute = AsyncMock()
        mock.cancel_execution = AsyncMock()
        mock.initialize = AsyncMock()
        mock.shutdown = AsyncMock()
        mock.get_audit_log = AsyncMock()
        yield mock


@pytest.mark.asyncio
async def test_execute_code_text_only(mock_service: MagicMock) -> None:
    mock_service.execute.return_value = _result()

    result = await execute_code("python", "print('hello')")

    # Order: Stdout, Stderr (skipped if empty), Exit Code, State, Duration, Execution ID
    assert all(isinstance(item, TextContent) for item in result)
    assert [item.text for item in result] == [
        "STDOUT:\nhello",
        "Exit Code: 0",
        "State: completed",
        "Duration: 42ms",
        "Execution ID: exec-1",
    ]
    request = mock_service.execute.call_args.args[0]
    assert request == {"language": "python", "code": "print('hello')", "user_id": None, "tenant_id": None}


@pytest.mark.asyncio
async def test_execute_code_passes_overrides(mock_service: MagicMock) -> None:
    mock_service.execute.return_value = _result()

    await execute_code("bash", "ls", timeout_ms=500, memory_bytes=64 * 1024 * 1024, tenant_id="t1")

    request = mock_service.execute.call_args.args[0]
    assert request["config"] == {"timeout_ms": 500, "resources": {"memory_bytes": 64 * 1024 * 1024}}
    assert request["tenant_id"] == "t1"


@pytest.mark.asyncio
async def test_execute_code_failure_details(mock_service: MagicMock) -> None:
    mock_service.execute.return_value = _result(
        state=ExecutionState.TIMED_OUT,
        success=False,
        stdout="",
        stderr="partial",
        exit_code=None,
        timed_out=True,
        output_truncated=True,
        error_code=ErrorCode.EXECUTION_TIMEOUT,
        error="Execution exceeded 100ms",
    )

    texts = [item.text for item in await execute_code("python", "while True: pass")]

    assert texts[0] == "STDERR:\npartial"
    assert texts[1] == "Output was truncated."
    assert "State: timed_out" in texts
    assert "Error: [EXECUTION_TIMEOUT] Execution exceeded 100ms" in texts


@pytest.mark.asyncio
async def test_execute_code_rejected(mock_service: MagicMock) -> None:
    mock_service.execute.side_effect = InvalidRequest("Unsupported language: ruby")

    result = await execute_code("python", "x")

    assert len(result) == 1
    assert result[0].text.startswith("Request rejected:")
    assert "Unsupported language" in result[0].text


@pytest.mark.asyncio
async def test_execute_code_unexpected_error(mock_service: MagicMock) -> None:
    mock_service.execute.side_effect = RuntimeError("Sandbox service not initialized")

    result = await execute_code("python", "x")

    assert result[0].text == "Error executing code: Sandbox service not initialized"


@pytest.mark.asyncio
async def test_cancel_execution_tool(mock_service: MagicMock) -> None:
    assert await cancel_execution("exec-1") == "Cancellation requested for exec-1"

    mock_service.cancel_execution.side_effect = NotFound("No active execution exec-2")
    message = await cancel_execution("exec-2")
    assert message.startswith("Error cancelling execution:")


@pytest.mark.asyncio
async def test_get_execution_tool(mock_service: MagicMock) -> None:
    execution = MagicMock()
    execution.summary.return_value = {"execution_id": "exec-1", "state": "completed"}
    execution.result = _result()
    mock_service.get_execution.return_value = execution

    info = await get_execution("exec-1")

    assert info["state"] == "completed"
    assert info["result"]["stdout"] == "hello"


@pytest.mark.asyncio
async def test_get_execution_unknown(mock_service: MagicMock) -> None:
    mock_service.get_execution.side_effect = NotFound("Unknown execution nope")
    info = await get_execution("nope")
    assert "Unknown execution" in info["error"]


@pytest.mark.asyncio
async def test_list_active_executions_tool(mock_service: MagicMock) -> None:
    execution = MagicMock()
    execution.summary.return_value = {"execution_id": "exec-1", "state": "running"}
    mock_service.get_active_executions.return_value = [execution]

    assert await list_active_executions() == [{"execution_id": "exec-1", "state": "running"}]


@pytest.mark.asyncio
async def test_get_audit_log_tool(mock_service: MagicMock) -> None:
    mock_service.get_audit_log.return_value = []

    assert await get_audit_log(tenant_id="t1", since="2025-01-01T00:00:00Z", limit=5) == []

    audit_filter = mock_service.get_audit_log.call_args.args[0]
    assert audit_filter.tenant_id == "t1"
    assert audit_filter.limit == 5
    assert audit_filter.since.year == 2025


@pytest.mark.asyncio
async def test_get_audit_log_invalid_filter(mock_service: MagicMock) -> None:
    result = await get_audit_log(limit=0)
    assert result[0]["error"].startswith("Invalid audit filter")
    mock_service.get_audit_log.assert_not_called()


@pytest.mark.asyncio
async def test_lifespan_initializes_and_shuts_down(mock_service: MagicMock) -> None:
    async with lifespan(mcp):
        mock_service.initialize.assert_awaited_once()
        mock_service.shutdown.assert_not_awaited()
    mock_service.shutdown.assert_awaited_once()


def test_main_configures_logging_and_runs(mock_service: MagicMock) -> None:
    mock_service.settings.log_level = "DEBUG"
    mock_service.settings.log_file = None
    with (
        patch("coreason_codebox.main.configure_logging") as mock_logging,
        patch("coreason_codebox.main.mcp") as mock_mcp,
    ):
        main()
    mock_logging.assert_called_once_with("DEBUG", None)
    mock_mcp.run.assert_called_once()
