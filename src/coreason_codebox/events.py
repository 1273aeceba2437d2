# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codebox

from collections import defaultdict
from enum import Enum
from typing import Any, Callable

from loguru import logger


class SandboxEvent(str, Enum):
    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_TIMEOUT = "execution.timeout"
    EXECUTION_OOM = "execution.oom"
    EXECUTION_CANCELLED = "execution.cancelled"
    EXECUTION_REJECTED = "execution.rejected"
    CONTAINER_CREATED = "container.created"
    CONTAINER_STARTED = "container.started"
    CONTAINER_STOPPED = "container.stopped"
    CONTAINER_REMOVED = "container.removed"
    AUDIT_WRITTEN = "audit.written"


EventHandler = Callable[[SandboxEvent, dict[str, Any]], None]

WILDCARD = "*"


class EventBus:
    """Synchronous fan-out of lifecycle events to observability collaborators.

    Handlers run inline on the emitting coroutine and must not block. A failing
    handler is logged and skipped so observers can never break an execution.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: SandboxEvent | str, handler: EventHandler) -> Callable[[], None]:
        """Registers a handler for one event, or for all events with "*".

        Returns:
            A callable that removes the subscription.
        """
        key = event.value if isinstance(event, SandboxEvent) else event
        self._handlers[key].append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers[key]:
                self._handlers[key].remove(handler)

        return _unsubscribe

    def emit(self, event: SandboxEvent, payload: dict[str, Any]) -> None:
        for handler in [*self._handlers[event.value], *self._handlers[WILDCARD]]:
            try:
                handler(event, payload)
            except Exception:
                logger.exception(f"Event handler failed for {event.value}")
