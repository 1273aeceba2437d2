# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

import hashlib
from collections import OrderedDict
from datetime import datetime
from uuid import uuid4

from loguru import logger

from coreason_codebox.events import EventBus, SandboxEvent
from coreason_codebox.exceptions import SandboxError
from coreason_codebox.models import AuditEntry, AuditFilter, ExecutionResult
from coreason_codebox.registry import Execution, utcnow
from coreason_codebox.storage import AuditStore


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def build_entry(
    execution: Execution,
    result: ExecutionResult,
    stdout_size: int = 0,
    stderr_size: int = 0,
) -> AuditEntry:
    """Builds the single audit record for a finished execution. Raw code is reduced to its hash."""
    request = execution.request
    end_time = execution.ended_at or utcnow()
    return AuditEntry(
        id=str(uuid4()),
        execution_id=execution.id,
        user_id=request.user_id,
        tenant_id=request.tenant_id,
        correlation_id=request.correlation_id,
        language=request.language,
        code_hash=hash_code(request.code),
        code_size_bytes=len(request.code.encode("utf-8")),
        start_time=execution.created_at,
        end_time=end_time,
        duration_ms=result.duration_ms,
        state=result.state,
        exit_code=result.exit_code,
        success=result.success,
        timed_out=result.timed_out,
        oom_killed=result.oom_killed,
        cancelled=result.cancelled,
        output_truncated=result.output_truncated,
        stdout_size_bytes=stdout_size,
        stderr_size_bytes=stderr_size,
        memory_used_bytes=result.memory_used_bytes,
        error_code=result.error_code,
        container_id=result.container_id,
        network_enabled=execution.config.network.enabled,
        resource_limits=execution.config.resources,
    )


class AuditLogger:
    """
    Write-once audit trail of execution attempts.

    Entries live in a bounded in-memory window; when a store is configured
    every entry is also persisted there and queries are answered by the store.
    Execution ids already written are remembered beyond the window, so pruning
    and purging never reopen an execution for a second entry.
    """

    def __init__(
        self,
        store: AuditStore | None = None,
        max_in_memory: int = 10_000,
        events: EventBus | None = None,
        enabled: bool = True,
    ):
        self.store = store
        self.max_in_memory = max_in_memory
        self.events = events or EventBus()
        self.enabled = enabled
        self._entries: OrderedDict[str, AuditEntry] = OrderedDict()
        self._written: OrderedDict[str, None] = OrderedDict()
        self.max_written_ids = max_in_memory * 10

    async def log(self, entry: AuditEntry) -> None:
        """Records the entry for an execution.

        Raises:
            ValueError: An entry for this execution was already written.
        """
        if not self.enabled:
            return
        if entry.execution_id in self._written:
            raise ValueError(f"Audit entry already written for execution {entry.execution_id}")

        self._written[entry.execution_id] = None
        if len(self._written) > self.max_written_ids:
            self._written.popitem(last=False)
        self._entries[entry.execution_id] = entry
        if len(self._entries) > self.max_in_memory:
            self._prune()

        logger.info(
            f"AUDIT: execution={entry.execution_id} user={entry.user_id} tenant={entry.tenant_id} "
            f"language={entry.language.value} state={entry.state.value} success={entry.success} "
            f"code_hash={entry.code_hash} duration_ms={entry.duration_ms}"
        )

        if self.store is not None:
            try:
                await self.store.write(entry)
            except Exception as e:
                logger.error(f"Failed to persist audit entry for {entry.execution_id}: {e}")

        self.events.emit(
            SandboxEvent.AUDIT_WRITTEN,
            {"execution_id": entry.execution_id, "entry_id": entry.id},
        )

    def _prune(self) -> None:
        # Drop the oldest 10% so pruning does not run on every write.
        excess = max(1, self.max_in_memory // 10)
        for _ in range(min(excess, len(self._entries))):
            self._entries.popitem(last=False)
        logger.debug(f"Pruned {excess} audit entries from memory")

    async def query(self, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        """Returns matching entries, newest first.

        Reads from the store when one is configured, so entries pruned from
        memory are still found.
        """
        audit_filter = audit_filter or AuditFilter()
        if self.store is not None:
            return await self.store.query(audit_filter)
        return audit_filter.apply(list(self._entries.values()))

    def get_entry(self, entry_id: str) -> AuditEntry | None:
        for entry in self._entries.values():
            if entry.id == entry_id:
                return entry
        return None

    def get_for_execution(self, execution_id: str) -> AuditEntry | None:
        return self._entries.get(execution_id)

    async def purge(self, older_than: datetime) -> int:
        """Drops entries that started before `older_than` from memory and from the store.

        Returns:
            int: Entries removed from the store, or from memory when there is no store.
        """
        stale = [key for key, entry in self._entries.items() if entry.start_time < older_than]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(f"Purged {len(stale)} audit entries older than {older_than.isoformat()}")
        if self.store is None:
            return len(stale)
        try:
            return await self.store.purge(older_than)
        except Exception as e:
            logger.error(f"Failed to purge persisted audit entries: {e}")
            return 0

    def log_rejection(
        self,
        error: SandboxError,
        code: str | None = None,
        language: str | None = None,
        user_id: str | None = None,
        tenant_id: str | None = None,
    ) -> None:
        """Logs a request rejected before any container existed."""
        code_hash = hash_code(code) if isinstance(code, str) else None
        logger.warning(
            f"AUDIT: rejected request user={user_id} tenant={tenant_id} language={language} "
            f"code_hash={code_hash} error={error.code.value}: {error.message}"
        )

    def __len__(self) -> int:
        return len(self._entries)
