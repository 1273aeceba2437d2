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
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Callable
from uuid import uuid4

from anyio.from_thread import BlockingPortal, start_blocking_portal
from loguru import logger

from coreason_codebox.admission import AdmissionGate
from coreason_codebox.audit import AuditLogger
from coreason_codebox.config import SandboxSettings
from coreason_codebox.events import EventBus, EventHandler, SandboxEvent
from coreason_codebox.exceptions import (
    ConfigurationInvalid,
    ImageNotAvailable,
    ImagePullFailed,
    InvalidRequest,
    NotFound,
)
from coreason_codebox.factory import SandboxFactory
from coreason_codebox.limits import ResourceLimitEnforcer
from coreason_codebox.models import AuditEntry, AuditFilter, ExecutionRequest, ExecutionResult, ExecutionState
from coreason_codebox.registry import Execution, ExecutionRegistry, utcnow
from coreason_codebox.runtime import ContainerManager
from coreason_codebox.supervisor import ExecutionSupervisor
from coreason_codebox.validation import validate_request

RequestLike = ExecutionRequest | Mapping[str, Any]


class SandboxService:
    """Async-native code execution service (The Core).

    Validates requests, admits them through a bounded gate, runs each one in a
    fresh container under an ExecutionSupervisor and keeps the audit trail.
    """

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        manager: ContainerManager | None = None,
        registry: ExecutionRegistry | None = None,
        audit: AuditLogger | None = None,
        events: EventBus | None = None,
    ):
        """Initializes the SandboxService.

        Args:
            settings: Service configuration. Defaults are loaded from the environment.
            manager: Container backend. Defaults to the Docker backend.
            registry: Registry of executions. A private one is created if omitted.
            audit: Audit logger. Built from settings if omitted.
            events: Event bus shared with the collaborators.
        """
        self.settings = settings or SandboxSettings()
        self.events = events or EventBus()
        self.manager = manager or SandboxFactory.get_manager(self.settings, self.events)
        self.registry = registry or ExecutionRegistry(retention=self.settings.result_retention)
        self.audit = audit or SandboxFactory.get_audit_logger(self.settings, self.events)
        self.gate = AdmissionGate(
            max_concurrent=self.settings.max_concurrent_executions,
            max_queued=self.settings.max_queued_executions,
            timeout=self.settings.admission_timeout_seconds,
        )
        self.supervisor = ExecutionSupervisor(
            manager=self.manager,
            enforcer=ResourceLimitEnforcer(self.settings),
            gate=self.gate,
            audit=self.audit,
            registry=self.registry,
            events=self.events,
            settings=self.settings,
        )
        self._initialized = False
        self._reaper_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "SandboxService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """Connects to the runtime, primes images and starts the reaper.

        Raises:
            DockerNotAvailable: If the container runtime is unreachable.
        """
        if self._initialized:
            return
        await self.manager.initialize()

        if self.settings.pull_images_on_startup:
            for language, image in self.settings.images.items():
                try:
                    await self.manager.ensure_image(image)
                except (ImagePullFailed, ImageNotAvailable) as e:
                    # Not fatal: create() applies the pull policy again on demand.
                    logger.warning(f"Could not prime image for {language.value}: {e}")

        self._initialized = True
        self._start_reaper()
        logger.info("Sandbox service initialized")

    def _start_reaper(self) -> None:
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop())

    async def _reaper_loop(self) -> None:
        """Background task removing leftover containers and expired audit entries."""
        logger.info("Container reaper started")
        try:
            while True:
                await asyncio.sleep(self.settings.reaper_interval)
                await self.reap()
        except asyncio.CancelledError:
            logger.info("Container reaper cancelled")

    async def reap(self) -> None:
        """Runs one reaper pass."""
        try:
            removed = await self.manager.cleanup_stale(self.settings.max_container_age)
            if removed:
                logger.info(f"Reaper removed {removed} stale containers")
        except Exception as e:
            logger.error(f"Stale container cleanup failed: {e}")
        cutoff = utcnow() - timedelta(days=self.settings.audit_retention_days)
        await self.audit.purge(cutoff)

    async def shutdown(self) -> None:
        """Stops the reaper, cancels in-flight executions and releases the runtime."""
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        active = self.registry.active()
        logger.info(f"Shutting down sandbox service. Cancelling {len(active)} executions.")
        for execution in active:
            execution.cancel_event.set()
        if active:
            await self.gate.wake()
            waiters = [asyncio.create_task(e.finished.wait()) for e in active]
            _, pending = await asyncio.wait(waiters, timeout=self.settings.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} executions did not finish before shutdown timeout")

        try:
            await self.manager.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down container manager: {e}")
        self._initialized = False

    async def execute(self, request: RequestLike) -> ExecutionResult:
        """Runs one code snippet to a terminal state.

        Args:
            request: An ExecutionRequest or an equivalent mapping.

        Returns:
            ExecutionResult: The terminal result. Execution-level failures are reported here.

        Raises:
            InvalidRequest: The request is malformed.
            ConfigurationInvalid: The requested configuration cannot be satisfied.
            RuntimeError: If the service is not initialized.
        """
        if not self._initialized:
            raise RuntimeError("Sandbox service not initialized")

        try:
            parsed, config = validate_request(request, self.settings)
        except (InvalidRequest, ConfigurationInvalid) as e:
            self._reject(request, e)
            raise

        execution = Execution(id=str(uuid4()), request=parsed, config=config)
        self.registry.register(execution)
        logger.info(
            f"Accepted execution {execution.id} language={parsed.language.value} "
            f"user={parsed.user_id} tenant={parsed.tenant_id}"
        )
        return await self.supervisor.run(execution)

    def _reject(self, request: RequestLike, error: InvalidRequest | ConfigurationInvalid) -> None:
        fields: Mapping[str, Any]
        if isinstance(request, ExecutionRequest):
            fields = request.model_dump()
        elif isinstance(request, Mapping):
            fields = request
        else:
            fields = {}
        language = fields.get("language")
        self.audit.log_rejection(
            error,
            code=fields.get("code"),
            language=getattr(language, "value", language),
            user_id=fields.get("user_id"),
            tenant_id=fields.get("tenant_id"),
        )
        self.events.emit(
            SandboxEvent.EXECUTION_REJECTED,
            {"execution_id": None, "error_code": error.code.value, "error": error.message},
        )

    async def cancel_execution(self, execution_id: str) -> None:
        """Requests cancellation of an in-flight execution.

        Raises:
            NotFound: If the execution is unknown or already terminal.
        """
        execution = self.registry.get_active(execution_id)
        if execution is None or execution.state.is_terminal or execution.finished.is_set():
            raise NotFound(f"No active execution {execution_id}", execution_id=execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        execution.cancel_event.set()
        if execution.state == ExecutionState.QUEUED:
            await self.gate.wake()

    def get_execution(self, execution_id: str) -> Execution:
        """Looks up an active or recently finished execution.

        Raises:
            NotFound: If the execution is unknown or has aged out.
        """
        execution = self.registry.get(execution_id)
        if execution is None:
            raise NotFound(f"Unknown execution {execution_id}", execution_id=execution_id)
        return execution

    def get_active_executions(self) -> list[Execution]:
        return self.registry.active()

    async def get_audit_log(
        self, audit_filter: AuditFilter | Mapping[str, Any] | None = None
    ) -> list[AuditEntry]:
        if isinstance(audit_filter, Mapping):
            audit_filter = AuditFilter.model_validate(dict(audit_filter))
        return await self.audit.query(audit_filter)

    def subscribe(self, event: SandboxEvent | str, handler: EventHandler) -> Callable[[], None]:
        return self.events.subscribe(event, handler)


class Sandbox:
    """Sync Facade for SandboxService (The Facade).

    Runs the service on an anyio blocking portal so that calls from several
    threads share one event loop, e.g. cancelling while another thread waits
    on execute().
    """

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        manager: ContainerManager | None = None,
    ):
        self._async = SandboxService(settings, manager=manager)
        self._portal_cm: Any = None
        self._portal: BlockingPortal | None = None

    @property
    def service(self) -> SandboxService:
        return self._async

    def _require_portal(self) -> BlockingPortal:
        if self._portal is None:
            raise RuntimeError("Sandbox not started")
        return self._portal

    def __enter__(self) -> "Sandbox":
        """Context entry point."""
        self._portal_cm = start_blocking_portal()
        self._portal = self._portal_cm.__enter__()
        try:
            self._portal.call(self._async.initialize)
        except BaseException as e:
            self._portal_cm.__exit__(type(e), e, e.__traceback__)
            self._portal = None
            raise
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context exit point."""
        portal = self._require_portal()
        try:
            portal.call(self._async.shutdown)
        finally:
            self._portal = None
            self._portal_cm.__exit__(None, None, None)

    def execute(self, request: RequestLike) -> ExecutionResult:
        return self._require_portal().call(self._async.execute, request)

    def cancel_execution(self, execution_id: str) -> None:
        self._require_portal().call(self._async.cancel_execution, execution_id)

    def get_execution(self, execution_id: str) -> Execution:
        return self._async.get_execution(execution_id)

    def get_active_executions(self) -> list[Execution]:
        return self._async.get_active_executions()

    def get_audit_log(self, audit_filter: AuditFilter | Mapping[str, Any] | None = None) -> list[AuditEntry]:
        return self._require_portal().call(self._async.get_audit_log, audit_filter)
