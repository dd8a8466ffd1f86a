"""
Asynchronous audit log pipeline.

Decisions and administrative changes are appended to a Redis list and
flushed to the ``access_audit_log`` table in batches by a background
loop. The decision path never waits on the database: ``submit()``
schedules delivery as a task and returns immediately.

Batches are moved atomically from the shared queue into a per-worker
processing list before being written, so a crash between the move and
the write leaves the batch recoverable by the same worker on its next
start. Store writes ignore duplicate ``request_id`` values, which makes
re-delivery safe (at-least-once).
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from accessgate.core.logging import get_logger
from accessgate.db.models import AuditLogRecord

logger = get_logger(__name__)


class AuditDeliveryError(RuntimeError):
    """An audit entry could be neither queued nor written directly."""


class AuditLogEntry(BaseModel):
    """One append-only audit record."""

    request_id: str
    kind: Literal["decision", "admin"] = "decision"
    subject_id: str | None = None
    scope_id: str | None = None
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    allowed: bool | None = None
    reason: str | None = None
    stage: str | None = None
    matched_policies: list[str] = Field(default_factory=list)
    details: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AuditStore(Protocol):
    async def write_batch(self, entries: Sequence[AuditLogEntry]) -> None: ...


class SqlAuditStore:
    """Writes audit batches in a single transaction, skipping known request ids."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write_batch(self, entries: Sequence[AuditLogEntry]) -> None:
        if not entries:
            return
        rows = [entry.model_dump() for entry in entries]
        stmt = (
            pg_insert(AuditLogRecord)
            .values(rows)
            .on_conflict_do_nothing(index_elements=[AuditLogRecord.request_id])
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)


class AuditLogPipeline:
    """Durable, batched delivery of audit entries."""

    def __init__(
        self,
        redis_client: redis.Redis | None,
        store: AuditStore,
        *,
        batch_size: int = 100,
        flush_interval_ms: int = 5000,
        queue_key: str = "audit_logs:queue",
        worker_id: str = "default",
    ) -> None:
        self._redis = redis_client
        self._store = store
        self.batch_size = batch_size
        self.flush_interval_ms = flush_interval_ms
        self.queue_key = queue_key
        self.processing_key = f"{queue_key}:processing:{worker_id}"
        self._pending: set[asyncio.Task[None]] = set()

    async def enqueue(self, entry: AuditLogEntry) -> None:
        """Append to the queue, or write directly when the queue is unavailable."""
        r = self._redis
        if r is not None:
            try:
                await r.rpush(self.queue_key, entry.model_dump_json())
                return
            except Exception:
                logger.warning("audit_queue_redis_error", request_id=entry.request_id)
        else:
            logger.warning("audit_queue_store_unavailable", request_id=entry.request_id)

        try:
            await self._store.write_batch([entry])
        except Exception as exc:
            logger.error(
                "audit_delivery_failed",
                entry=entry.model_dump(mode="json"),
                exc_info=True,
            )
            raise AuditDeliveryError(f"Audit entry {entry.request_id} could not be delivered") from exc

    def submit(self, entry: AuditLogEntry) -> None:
        """Schedule delivery without blocking the caller."""
        task = asyncio.get_running_loop().create_task(self._deliver(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, entry: AuditLogEntry) -> None:
        # enqueue() has already logged the full entry at error level
        with contextlib.suppress(AuditDeliveryError):
            await self.enqueue(entry)

    async def drain_pending(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def queue_length(self) -> int:
        r = self._redis
        if r is None:
            return 0
        try:
            return int(await r.llen(self.queue_key))
        except Exception:
            logger.warning("audit_queue_redis_error", operation="queue_length")
            return 0

    async def _claim_batch(self, r: redis.Redis) -> list[str]:
        in_flight: list[str] = await r.lrange(self.processing_key, 0, -1)
        if in_flight:
            logger.info("audit_batch_recovered", size=len(in_flight))
            return in_flight
        pipe = r.pipeline(transaction=True)
        for _ in range(self.batch_size):
            pipe.lmove(self.queue_key, self.processing_key, "LEFT", "RIGHT")
        moved: list[str | None] = await pipe.execute()
        return [item for item in moved if item is not None]

    async def flush_batch(self) -> int:
        """
        Write one batch to the store.

        Returns the number of entries written. A failed write leaves the
        batch in the processing list; it is retried whole on the next call.
        """
        r = self._redis
        if r is None:
            return 0
        try:
            raw = await self._claim_batch(r)
        except Exception:
            logger.warning("audit_queue_redis_error", operation="claim_batch")
            return 0
        if not raw:
            return 0

        entries: list[AuditLogEntry] = []
        for item in raw:
            try:
                entries.append(AuditLogEntry.model_validate_json(item))
            except ValidationError:
                logger.error("audit_entry_corrupt", payload=item[:200])

        try:
            await self._store.write_batch(entries)
        except Exception:
            logger.warning("audit_store_write_failed", batch_size=len(entries), exc_info=True)
            return 0

        try:
            await r.delete(self.processing_key)
        except Exception:
            # The batch is rewritten on the next call; the store ignores duplicates.
            logger.warning("audit_queue_redis_error", operation="ack_batch")
        logger.debug("audit_batch_flushed", size=len(entries))
        return len(entries)

    async def run(self, stop_event: asyncio.Event | None = None, *, max_cycles: int = 0) -> None:
        """Flush until ``stop_event`` is set; a full batch is followed immediately by the next."""
        stop = stop_event or asyncio.Event()
        interval = self.flush_interval_ms / 1000
        cycle = 0
        logger.info("audit_pipeline_started", queue_key=self.queue_key, batch_size=self.batch_size)
        try:
            while not stop.is_set():
                cycle += 1
                flushed = await self.flush_batch()

                if max_cycles > 0 and cycle >= max_cycles:
                    break
                if flushed >= self.batch_size:
                    continue

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=interval)
        finally:
            await self.drain_pending()
            if stop.is_set():
                while await self.flush_batch() >= self.batch_size:
                    pass
            logger.info("audit_pipeline_stopped", cycles=cycle)
