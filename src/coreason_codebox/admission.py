"""Admission control.

Bounds how many executions hold a container at once. Requests beyond the
limit wait in a bounded queue for a bounded time. The gate blocks via
asyncio.Condition; a full queue or an expired wait raises AdmissionRejected.
"""

import asyncio

from loguru import logger

from coreason_codebox.exceptions import AdmissionRejected


class AdmissionGate:
    def __init__(self, max_concurrent: int, max_queued: int, timeout: float):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.max_queued = max_queued
        self.timeout = timeout
        self._condition = asyncio.Condition()
        self._in_flight = 0
        self._waiting = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return self._waiting

    async def acquire(self, execution_id: str, cancel_event: asyncio.Event | None = None) -> bool:
        """Takes a slot, waiting in the queue if necessary.

        Args:
            execution_id: Used for logging and error context.
            cancel_event: Set by the caller to abandon the wait; call wake() afterwards.

        Returns:
            True once a slot is held. False if the wait was cancelled; no slot is held then.

        Raises:
            AdmissionRejected: The queue is full or no slot freed up within the timeout.
        """
        async with self._condition:
            if self._in_flight < self.max_concurrent:
                self._in_flight += 1
                return True
            if self._waiting >= self.max_queued:
                logger.warning(f"Admission queue full; rejecting {execution_id}")
                raise AdmissionRejected(
                    f"Execution queue is full ({self.max_queued} waiting)",
                    execution_id=execution_id,
                    context={"in_flight": self._in_flight, "waiting": self._waiting},
                )
            self._waiting += 1

        def _ready() -> bool:
            cancelled = cancel_event is not None and cancel_event.is_set()
            return cancelled or self._in_flight < self.max_concurrent

        logger.debug(f"Execution {execution_id} queued for admission")
        try:
            async with asyncio.timeout(self.timeout):
                async with self._condition:
                    await self._condition.wait_for(_ready)
                    if cancel_event is not None and cancel_event.is_set():
                        return False
                    self._in_flight += 1
                    return True
        except TimeoutError:
            raise AdmissionRejected(
                f"No execution slot became available within {self.timeout}s",
                execution_id=execution_id,
                context={"in_flight": self._in_flight, "max_concurrent": self.max_concurrent},
            ) from None
        finally:
            self._waiting -= 1

    async def release(self) -> None:
        async with self._condition:
            if self._in_flight > 0:
                self._in_flight -= 1
            self._condition.notify_all()

    async def wake(self) -> None:
        """Re-evaluates waiters, e.g. after one of them was cancelled."""
        async with self._condition:
            self._condition.notify_all()
