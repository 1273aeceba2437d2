# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from coreason_codebox.admission import AdmissionGate
from coreason_codebox.audit import AuditLogger, build_entry
from coreason_codebox.config import SandboxSettings
from coreason_codebox.events import EventBus, SandboxEvent
from coreason_codebox.exceptions import AdmissionRejected, ErrorCode, SandboxError
from coreason_codebox.limits import ResourceLimitEnforcer
from coreason_codebox.models import ExecutionResult, ExecutionState
from coreason_codebox.registry import Execution, ExecutionRegistry
from coreason_codebox.runtime import (
    INTERPRETER_COMMANDS,
    ContainerHandle,
    ContainerManager,
    StreamAttachment,
    WaitOutcome,
)

TERMINAL_EVENTS = {
    ExecutionState.COMPLETED: SandboxEvent.EXECUTION_COMPLETED,
    ExecutionState.FAILED: SandboxEvent.EXECUTION_FAILED,
    ExecutionState.TIMED_OUT: SandboxEvent.EXECUTION_TIMEOUT,
    ExecutionState.OUT_OF_MEMORY: SandboxEvent.EXECUTION_OOM,
    ExecutionState.CANCELLED: SandboxEvent.EXECUTION_CANCELLED,
}


@dataclass
class _Outcome:
    state: ExecutionState
    exit_code: int | None = None
    error_code: ErrorCode | None = None
    error: str | None = None
    flags: dict[str, bool] = field(default_factory=dict)
    rejected: bool = False
    memory_used_bytes: int | None = None


class ExecutionSupervisor:
    """Drives one execution from admission to a terminal state.

    Every path, including task cancellation, ends in the same cleanup block:
    destroy the container, write one audit entry, emit the terminal event and
    retire the execution from the registry.
    """

    def __init__(
        self,
        manager: ContainerManager,
        enforcer: ResourceLimitEnforcer,
        gate: AdmissionGate,
        audit: AuditLogger,
        registry: ExecutionRegistry,
        events: EventBus,
        settings: SandboxSettings,
    ):
        self.manager = manager
        self.enforcer = enforcer
        self.gate = gate
        self.audit = audit
        self.registry = registry
        self.events = events
        self.settings = settings

    async def run(self, execution: Execution) -> ExecutionResult:
        """Runs a registered execution and returns its terminal result. Never raises SandboxError."""
        started = time.monotonic()
        admitted = False
        handle: ContainerHandle | None = None
        attachment: StreamAttachment | None = None
        outcome: _Outcome | None = None

        try:
            try:
                admitted = await self.gate.acquire(execution.id, execution.cancel_event)
            except AdmissionRejected as e:
                outcome = _Outcome(ExecutionState.FAILED, error_code=e.code, error=e.message, rejected=True)
                return self._conclude(execution, outcome, started, None, None)
            if not admitted or execution.cancel_event.is_set():
                outcome = self._cancelled(None)
                return self._conclude(execution, outcome, started, None, None)

            execution.transition(ExecutionState.PROVISIONING)
            request = execution.request
            spec = self.enforcer.build(
                execution.config,
                execution_id=execution.id,
                language=request.language,
                labels=self._labels(execution),
            )
            image = self.settings.images[request.language]
            handle = await self.manager.create(
                image, spec, INTERPRETER_COMMANDS[request.language], execution_id=execution.id
            )
            execution.container_id = handle.id
            if execution.cancel_event.is_set():
                outcome = self._cancelled(None)
                return self._conclude(execution, outcome, started, handle, None)

            res = execution.config.resources
            attachment = await self.manager.attach_streams(
                handle, res.max_output_bytes, self.settings.output_hard_limit_multiplier
            )
            await self.manager.start(handle, request.code)
            execution.transition(ExecutionState.RUNNING)
            logger.info(f"Execution {execution.id} running in container {handle.id[:12]}")
            self.events.emit(
                SandboxEvent.EXECUTION_STARTED,
                {"execution_id": execution.id, "language": request.language.value, "container_id": handle.id},
            )

            outcome = await self._race(execution, handle, attachment)
            outcome.memory_used_bytes = await self._memory_used(handle)
            return self._conclude(execution, outcome, started, handle, attachment)

        except SandboxError as e:
            logger.error(f"Execution {execution.id} failed: {e}")
            outcome = _Outcome(ExecutionState.FAILED, error_code=e.code, error=e.message)
            return self._conclude(execution, outcome, started, handle, attachment)
        except Exception as e:
            logger.exception(f"Unexpected fault in execution {execution.id}")
            outcome = _Outcome(ExecutionState.FAILED, error_code=ErrorCode.INTERNAL_ERROR, error=str(e))
            return self._conclude(execution, outcome, started, handle, attachment)
        finally:
            if outcome is None or execution.result is None:
                # Task cancelled from outside (service shutdown).
                outcome = self._cancelled(None)
                self._conclude(execution, outcome, started, handle, attachment)
            await self._cleanup(execution, outcome, admitted, handle, attachment)

    async def _race(
        self, execution: Execution, handle: ContainerHandle, attachment: StreamAttachment
    ) -> _Outcome:
        settings = self.settings
        timeout_s = execution.config.timeout_ms / 1000
        wait_budget = timeout_s + settings.stop_grace_seconds + settings.docker_timeout

        wait_task = asyncio.create_task(self.manager.wait(handle, wait_budget))
        cancel_task = asyncio.create_task(execution.cancel_event.wait())
        timer_task = asyncio.create_task(asyncio.sleep(timeout_s))
        try:
            done, _ = await asyncio.wait(
                {wait_task, cancel_task, timer_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
            timer_task.cancel()

        if wait_task in done:
            outcome = self._classify(wait_task.result(), attachment)
            await self._drain(attachment)
            return outcome

        cancelled = cancel_task in done
        reason = "cancellation" if cancelled else f"timeout after {execution.config.timeout_ms}ms"
        logger.warning(f"Stopping execution {execution.id}: {reason}")
        await self.manager.stop(handle, settings.stop_grace_seconds)

        exit_code: int | None = None
        finished, _ = await asyncio.wait({wait_task}, timeout=settings.stop_grace_seconds + settings.docker_timeout)
        if wait_task in finished and wait_task.exception() is None:
            exit_code = wait_task.result().exit_code
        else:
            wait_task.cancel()
        await self._drain(attachment)

        if cancelled:
            return self._cancelled(exit_code)
        return _Outcome(
            ExecutionState.TIMED_OUT,
            exit_code=exit_code,
            error_code=ErrorCode.EXECUTION_TIMEOUT,
            error=f"Execution exceeded {execution.config.timeout_ms}ms",
            flags={"timed_out": True},
        )

    def _classify(self, waited: WaitOutcome, attachment: StreamAttachment) -> _Outcome:
        if waited.oom_killed:
            return _Outcome(
                ExecutionState.OUT_OF_MEMORY,
                exit_code=waited.exit_code,
                error_code=ErrorCode.EXECUTION_OOM,
                error="Container was killed for exceeding its memory limit",
                flags={"oom_killed": True},
            )
        if attachment.capture.overflowed:
            return _Outcome(
                ExecutionState.FAILED,
                exit_code=waited.exit_code,
                error_code=ErrorCode.OUTPUT_LIMIT_EXCEEDED,
                error=f"Output exceeded the hard limit of {attachment.capture.hard_limit} bytes",
            )
        if waited.exit_code == 0:
            return _Outcome(ExecutionState.COMPLETED, exit_code=0)
        return _Outcome(
            ExecutionState.FAILED,
            exit_code=waited.exit_code,
            error_code=ErrorCode.EXECUTION_FAILED,
            error=f"Process exited with code {waited.exit_code}",
        )

    @staticmethod
    def _cancelled(exit_code: int | None) -> _Outcome:
        return _Outcome(
            ExecutionState.CANCELLED,
            exit_code=exit_code,
            error_code=ErrorCode.EXECUTION_CANCELLED,
            error="Execution was cancelled",
            flags={"cancelled": True},
        )

    async def _memory_used(self, handle: ContainerHandle) -> int | None:
        try:
            async with asyncio.timeout(self.settings.docker_timeout):
                stats = await self.manager.stats(handle)
        except Exception as e:
            logger.debug(f"No resource stats for container {handle.id[:12]}: {e}")
            return None
        return stats.memory_used_bytes

    async def _drain(self, attachment: StreamAttachment) -> None:
        if not await attachment.drain(self.settings.stream_drain_timeout):
            logger.warning("Output stream did not reach EOF in time; result may be incomplete")

    def _labels(self, execution: Execution) -> dict[str, str]:
        request = execution.request
        labels = {}
        for key in ("user_id", "tenant_id", "correlation_id"):
            value = getattr(request, key)
            if value:
                labels[key] = value
        return labels

    def _conclude(
        self,
        execution: Execution,
        outcome: _Outcome,
        started: float,
        handle: ContainerHandle | None,
        attachment: StreamAttachment | None,
    ) -> ExecutionResult:
        execution.transition(outcome.state)
        capture = attachment.capture if attachment else None
        result = ExecutionResult(
            execution_id=execution.id,
            language=execution.request.language,
            state=outcome.state,
            success=outcome.state == ExecutionState.COMPLETED,
            stdout=capture.stdout if capture else "",
            stderr=capture.stderr if capture else "",
            exit_code=outcome.exit_code,
            timed_out=outcome.flags.get("timed_out", False),
            oom_killed=outcome.flags.get("oom_killed", False),
            cancelled=outcome.flags.get("cancelled", False),
            output_truncated=capture.truncated if capture else False,
            duration_ms=int((time.monotonic() - started) * 1000),
            memory_used_bytes=outcome.memory_used_bytes,
            container_id=handle.id if handle else None,
            error_code=outcome.error_code,
            error=outcome.error,
        )
        execution.result = result
        return result

    async def _cleanup(
        self,
        execution: Execution,
        outcome: _Outcome,
        admitted: bool,
        handle: ContainerHandle | None,
        attachment: StreamAttachment | None,
    ) -> None:
        if attachment is not None:
            try:
                attachment.close()
            except Exception:
                logger.exception(f"Failed to close output streams for {execution.id}")

        if handle is not None:
            try:
                await self.manager.destroy(handle)
            except Exception:
                logger.exception(f"Failed to destroy container for {execution.id}")

        # The slot is held until the container is gone.
        if admitted:
            try:
                await self.gate.release()
            except Exception:
                logger.exception(f"Failed to release admission slot for {execution.id}")

        result = execution.result
        if result is not None:
            try:
                capture = attachment.capture if attachment else None
                entry = build_entry(
                    execution,
                    result,
                    stdout_size=capture.size("stdout") if capture else 0,
                    stderr_size=capture.size("stderr") if capture else 0,
                )
                await self.audit.log(entry)
            except Exception:
                logger.exception(f"Failed to write audit entry for {execution.id}")

            payload: dict[str, Any] = {
                "execution_id": execution.id,
                "state": result.state.value,
                "duration_ms": result.duration_ms,
                "exit_code": result.exit_code,
                "error_code": result.error_code.value if result.error_code else None,
            }
            event = SandboxEvent.EXECUTION_REJECTED if outcome.rejected else TERMINAL_EVENTS[result.state]
            self.events.emit(event, payload)
            logger.info(f"Execution {execution.id} finished: {result.state.value} in {result.duration_ms}ms")

        try:
            self.registry.remove(execution.id)
        finally:
            execution.finished.set()
