"""
Audit Writer

Background delivery of audit records.

Callers hand records to submit(), which never blocks and never raises.
A single worker drains a bounded queue into the ledger, retrying each
record a few times with exponential backoff. A record that still fails,
or that arrives while the queue is full, is logged and dropped: delivery
is best-effort, not exactly-once.
"""

import asyncio
import logging
from typing import Optional

from app.access.audit_ledger import AuditLedger, AuditSink
from app.access.audit_records import AuditRecord
from app.access.exceptions import AuditWriteFailed

logger = logging.getLogger(__name__)


class AuditWriter(AuditSink):
    """Bounded async queue in front of an AuditLedger."""

    def __init__(
        self,
        ledger: AuditLedger,
        max_queue: int = 1000,
        max_retries: int = 3,
        retry_backoff: float = 0.05,
    ):
        self.ledger = ledger
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

        self._queue: asyncio.Queue[AuditRecord] = asyncio.Queue(maxsize=max_queue)
        self._worker: Optional[asyncio.Task] = None

        self.written = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker on the running event loop."""
        if self.running:
            return
        self._worker = asyncio.get_running_loop().create_task(self._run(), name="audit-writer")
        logger.info("Audit writer started")

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush what is queued (bounded by timeout), then stop the worker."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Audit writer stopped with {self.pending} records undelivered")

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(f"Audit writer stopped: written={self.written}, dropped={self.dropped}")

    def submit(self, record: AuditRecord) -> bool:
        """
        Queue a record for delivery.

        Returns:
            True if queued, False if dropped
        """
        try:
            if not self.running:
                self.start()
            self._queue.put_nowait(record)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                f"Audit queue full, record dropped: id={record.id}, "
                f"event={record.event_type.value}, action={record.action}"
            )
        except RuntimeError as e:
            # No running event loop
            self.dropped += 1
            logger.error(f"Audit writer unavailable, record dropped: id={record.id}: {e}")
        return False

    async def emit(self, record: AuditRecord) -> None:
        self.submit(record)

    async def drain(self) -> None:
        """Wait until every queued record was written or dropped."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._deliver(record)
            except Exception as e:
                self.dropped += 1
                logger.error(f"Audit writer error, record dropped: id={record.id}: {e}")
            finally:
                self._queue.task_done()

    async def _deliver(self, record: AuditRecord) -> None:
        for attempt in range(self.max_retries + 1):
            try:
                await self.ledger.write(record)
                self.written += 1
                return
            except AuditWriteFailed as e:
                if attempt == self.max_retries:
                    break
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning(
                    f"Audit write attempt {attempt + 1} failed, retrying in {delay:.2f}s: "
                    f"id={record.id}: {e}"
                )
                await asyncio.sleep(delay)

        self.dropped += 1
        logger.error(
            f"Audit record dropped after {self.max_retries + 1} attempts: "
            f"id={record.id}, event={record.event_type.value}, action={record.action}"
        )
