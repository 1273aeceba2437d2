# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from mcp.server.fastmcp import FastMCP
from mcp.types import TextContent

from coreason_codebox.exceptions import SandboxError
from coreason_codebox.models import AuditFilter
from coreason_codebox.service import SandboxService
from coreason_codebox.utils.logger import configure_logging

# Initialize Sandbox Logic
service = SandboxService()


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    await service.initialize()
    try:
        yield
    finally:
        await service.shutdown()


# Initialize MCP Server
mcp = FastMCP("coreason-codebox", lifespan=lifespan)


@mcp.tool()  # type: ignore[misc]
async def execute_code(
    language: Literal["python", "javascript", "bash"],
    code: str,
    timeout_ms: int | None = None,
    memory_bytes: int | None = None,
    user_id: str | None = None,
    tenant_id: str | None = None,
) -> list[TextContent]:
    """
    Execute a code snippet in a fresh, network-isolated container.
    Returns stdout, stderr, exit code and the final execution state.
    """
    config: dict[str, Any] = {}
    if timeout_ms is not None:
        config["timeout_ms"] = timeout_ms
    if memory_bytes is not None:
        config["resources"] = {"memory_bytes": memory_bytes}

    request: dict[str, Any] = {"language": language, "code": code, "user_id": user_id, "tenant_id": tenant_id}
    if config:
        request["config"] = config

    try:
        result = await service.execute(request)
    except SandboxError as e:
        return [TextContent(type="text", text=f"Request rejected: {e!s}")]
    except Exception as e:
        return [TextContent(type="text", text=f"Error executing code: {e!s}")]

    output: list[TextContent] = []

    # Stdout
    if result.stdout:
        output.append(TextContent(type="text", text=f"STDOUT:\n{result.stdout}"))

    # Stderr
    if result.stderr:
        output.append(TextContent(type="text", text=f"STDERR:\n{result.stderr}"))

    if result.output_truncated:
        output.append(TextContent(type="text", text="Output was truncated."))

    output.append(TextContent(type="text", text=f"Exit Code: {result.exit_code}"))
    output.append(TextContent(type="text", text=f"State: {result.state.value}"))

    if result.error:
        code = result.error_code.value if result.error_code else "UNKNOWN"
        output.append(TextContent(type="text", text=f"Error: [{code}] {result.error}"))

    output.append(TextContent(type="text", text=f"Duration: {result.duration_ms}ms"))
    output.append(TextContent(type="text", text=f"Execution ID: {result.execution_id}"))
    return output


@mcp.tool()  # type: ignore[misc]
async def cancel_execution(execution_id: str) -> str:
    """
    Cancel an in-flight execution.
    """
    try:
        await service.cancel_execution(execution_id)
    except SandboxError as e:
        return f"Error cancelling execution: {e!s}"
    return f"Cancellation requested for {execution_id}"


@mcp.tool()  # type: ignore[misc]
async def get_execution(execution_id: str) -> dict[str, Any]:
    """
    Get the state, and the result once finished, of an execution.
    """
    try:
        execution = service.get_execution(execution_id)
    except SandboxError as e:
        return {"error": str(e)}
    info = execution.summary()
    if execution.result is not None:
        info["result"] = execution.result.model_dump(mode="json")
    return info


@mcp.tool()  # type: ignore[misc]
async def list_active_executions() -> list[dict[str, Any]]:
    """
    List executions that have not reached a terminal state.
    """
    return [execution.summary() for execution in service.get_active_executions()]


@mcp.tool()  # type: ignore[misc]
async def get_audit_log(
    user_id: str | None = None,
    tenant_id: str | None = None,
    since: str | None = None,
    until: str | None = None,
    language: Literal["python", "javascript", "bash"] | None = None,
    success: bool | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """
    Query the audit trail, newest first. Entries carry code hashes, never code.
    """
    try:
        audit_filter = AuditFilter.model_validate(
            {
                "user_id": user_id,
                "tenant_id": tenant_id,
                "since": since,
                "until": until,
                "language": language,
                "success": success,
                "limit": limit,
            }
        )
    except ValueError as e:
        return [{"error": f"Invalid audit filter: {e!s}"}]
    return [entry.model_dump(mode="json") for entry in await service.get_audit_log(audit_filter)]


def main() -> None:
    """Entry point for the MCP server."""
    configure_logging(service.settings.log_level, service.settings.log_file)
    mcp.run()


if __name__ == "__main__":  # pragma: no cover
    main()
