"""
Best-effort audit and error recording.

Recording is a side effect that must never block or fail the operation
that triggered it. Every write reports a RecordOutcome instead of raising;
a failed write is logged locally and counted, nothing more.
"""

import asyncio
import logging
import time
import traceback
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import sentry_sdk

from config import AUDIT_STREAM, ERROR_STREAM, SENTRY_DSN
from models import AuditLogEntry, ErrorLogEntry
from storage import AuditStore
from utils.common_utils import now_ms
from utils.metrics_utils import AUDIT_WRITE_FAILURES

logger = logging.getLogger(__name__)


class RecordOutcome(str, Enum):
    RECORDED = "recorded"
    FAILED = "failed"
    DROPPED = "dropped"  # record_nowait without a running event loop


class _BestEffortRecorder:
    def __init__(self, store: AuditStore, stream: str, clock: Callable[[], float] = time.time):
        self.store = store
        self.stream = stream
        self.clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def _write(self, build_entry: Callable[[], Dict[str, Any]]) -> RecordOutcome:
        entry = None
        try:
            entry = build_entry()
            await self.store.append(self.stream, entry)
            return RecordOutcome.RECORDED
        except Exception as e:
            # Fallback to the local log if the entry cannot be built or stored
            logger.warning(f"Failed to record {self.stream} entry: {e}; entry: {entry!r}")
            AUDIT_WRITE_FAILURES.labels(stream=self.stream).inc()
            return RecordOutcome.FAILED

    def _schedule(self, coro) -> RecordOutcome:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"No running event loop, dropped {self.stream} entry")
            return RecordOutcome.DROPPED

        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return RecordOutcome.RECORDED

    async def drain(self) -> None:
        """Wait for writes scheduled with record_nowait (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class AuditRecorder(_BestEffortRecorder):
    """Operational audit trail (who did what to which resource)."""

    def __init__(self, store: AuditStore, clock: Callable[[], float] = time.time, stream: str = AUDIT_STREAM):
        super().__init__(store, stream, clock)

    async def record(
        self,
        action: str,
        resource: str,
        actor_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> RecordOutcome:
        def build_entry() -> Dict[str, Any]:
            return AuditLogEntry(
                action=action,
                resource=resource,
                created_at=now_ms(self.clock),
                actor_id=None if actor_id is None else str(actor_id),
                detail=dict(detail or {}),
            ).to_dict()

        return await self._write(build_entry)

    def record_nowait(self, action: str, resource: str, **kwargs) -> RecordOutcome:
        """Schedule record() on the running loop and return immediately."""
        return self._schedule(self.record(action, resource, **kwargs))


class ErrorRecorder(_BestEffortRecorder):
    """
    Persist errors for later inspection and forward them to Sentry.

    Args:
        store: AuditStore holding the error stream
        clock: Seconds clock, injectable for tests
        forward_to_sentry: Also call sentry_sdk.capture_exception (default: when SENTRY_DSN is set)
    """

    def __init__(
        self,
        store: AuditStore,
        clock: Callable[[], float] = time.time,
        forward_to_sentry: Optional[bool] = None,
        stream: str = ERROR_STREAM,
    ):
        super().__init__(store, stream, clock)
        self.forward_to_sentry = bool(SENTRY_DSN) if forward_to_sentry is None else forward_to_sentry

    async def record(
        self,
        error: BaseException,
        path: Optional[str] = None,
        actor_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RecordOutcome:
        if self.forward_to_sentry:
            try:
                sentry_sdk.capture_exception(error)
            except Exception as e:
                logger.warning(f"Sentry capture failed: {e}")

        def build_entry() -> Dict[str, Any]:
            return ErrorLogEntry(
                message=str(error),
                error_type=type(error).__name__,
                created_at=now_ms(self.clock),
                stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
                path=path,
                actor_id=None if actor_id is None else str(actor_id),
                context=dict(context or {}),
            ).to_dict()

        return await self._write(build_entry)

    def record_nowait(self, error: BaseException, **kwargs) -> RecordOutcome:
        """Schedule record() on the running loop and return immediately."""
        return self._schedule(self.record(error, **kwargs))
