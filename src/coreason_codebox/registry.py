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
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from coreason_codebox.exceptions import InvalidStateTransition
from coreason_codebox.models import (
    ALLOWED_TRANSITIONS,
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    SandboxConfig,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Execution:
    id: str
    request: ExecutionRequest
    config: SandboxConfig
    state: ExecutionState = ExecutionState.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    container_id: str | None = None
    result: ExecutionResult | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def transition(self, new_state: ExecutionState) -> None:
        """Moves to `new_state`, rejecting anything the state machine forbids."""
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Illegal transition {self.state.value} -> {new_state.value}",
                execution_id=self.id,
            )
        self.state = new_state
        if new_state == ExecutionState.RUNNING:
            self.started_at = utcnow()
        elif new_state.is_terminal:
            self.ended_at = utcnow()

    def summary(self) -> dict[str, Any]:
        return {
            "execution_id": self.id,
            "language": self.request.language.value,
            "state": self.state.value,
            "user_id": self.request.user_id,
            "tenant_id": self.request.tenant_id,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "container_id": self.container_id,
        }


class ExecutionRegistry:
    """Tracks in-flight executions and a bounded window of finished ones.

    Guarded by a plain lock so the synchronous facade and the event loop can
    both read it.
    """

    def __init__(self, retention: int = 1000):
        self.retention = retention
        self._active: dict[str, Execution] = {}
        self._finished: OrderedDict[str, Execution] = OrderedDict()
        self._lock = threading.Lock()

    def register(self, execution: Execution) -> None:
        with self._lock:
            if execution.id in self._active or execution.id in self._finished:
                raise ValueError(f"Execution {execution.id} is already registered")
            self._active[execution.id] = execution

    def get(self, execution_id: str) -> Execution | None:
        with self._lock:
            return self._active.get(execution_id) or self._finished.get(execution_id)

    def get_active(self, execution_id: str) -> Execution | None:
        with self._lock:
            return self._active.get(execution_id)

    def remove(self, execution_id: str) -> Execution | None:
        """Retires an execution from the active set, keeping it for later lookups."""
        with self._lock:
            execution = self._active.pop(execution_id, None)
            if execution is None:
                return None
            if self.retention > 0:
                self._finished[execution_id] = execution
                while len(self._finished) > self.retention:
                    self._finished.popitem(last=False)
            return execution

    def active(self) -> list[Execution]:
        with self._lock:
            return list(self._active.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._active
