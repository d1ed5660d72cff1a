"""
Batch writer.
Buffers classified penalty records and flushes them to the store in batches,
with at most one flush in flight at a time.
"""

import contextvars
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Callable, Optional
from .models import PenaltyRecord, WriteKind, WriteOp
from .penalty_store import BulkWriteError, PenaltyStore
from .utils import shorten

logger = logging.getLogger(__name__)


class FlushSlot:
    """
    Single-slot work queue for batch flushes.

    Holds at most one in-flight flush. Submitting while a flush is running
    blocks until it completes, which is the pipeline's back-pressure point.
    """

    def __init__(self, executor: Optional[Executor] = None):
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix='penalty-flush')
        self._in_flight: Optional[Future] = None

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def submit(self, fn: Callable[[], None]) -> Future:
        """Wait for the in-flight flush, then start fn in the caller's context."""
        self.wait()
        self._in_flight = self._executor.submit(contextvars.copy_context().run, fn)
        return self._in_flight

    def wait(self) -> None:
        """Block until the in-flight flush (if any) completes."""
        if self._in_flight is None:
            return
        future, self._in_flight = self._in_flight, None
        future.result()

    def close(self) -> None:
        try:
            self.wait()
        finally:
            if self._owns_executor:
                self._executor.shutdown(wait=True)


class BatchWriter:
    """Accumulates inserts and updates and writes them in batches."""

    def __init__(self,
                 store: PenaltyStore,
                 batch_size: int = 50,
                 slot: Optional[FlushSlot] = None,
                 progress_every: int = 500):
        """
        Initialize batch writer.

        Args:
            store: PenaltyStore to write to
            batch_size: Buffered rows (inserts + updates) that trigger a flush
            slot: Flush slot (default: one background worker)
            progress_every: Log progress every N processed rows
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size
        self.progress_every = progress_every
        self._slot = slot or FlushSlot()
        self._lock = threading.Lock()
        self._inserts: list[PenaltyRecord] = []
        self._updates: list[PenaltyRecord] = []
        self._batch_num = 0

        self.imported = 0
        self.updated = 0
        self.errors = 0
        self.processed = 0

    @staticmethod
    def classify(record: PenaltyRecord, existing_keys: set[int]) -> WriteOp:
        """Insert unless the penalty number is already persisted."""
        kind = WriteKind.UPDATE if record.penalty_number in existing_keys else WriteKind.INSERT
        return WriteOp(kind=kind, record=record)

    @property
    def pending(self) -> int:
        return len(self._inserts) + len(self._updates)

    def enqueue(self, op: WriteOp) -> None:
        """Buffer a classified record and flush if the batch is full."""
        if op.kind == WriteKind.INSERT:
            self._inserts.append(op.record)
        else:
            self._updates.append(op.record)

        with self._lock:
            self.processed += 1
            processed = self.processed
        if self.progress_every and processed % self.progress_every == 0:
            logger.info(f"Progress: {processed} rows processed")

        self.flush_if_full()

    def record_row_error(self, message: str = "") -> None:
        """Count a row that could not be mapped."""
        with self._lock:
            self.errors += 1
            self.processed += 1
        if message:
            logger.debug(f"Row error: {shorten(message)}")

    def flush_if_full(self) -> bool:
        """Start a flush once the buffers reach batch_size."""
        if self.pending < self.batch_size:
            return False
        self._start_flush()
        return True

    def flush_all(self) -> None:
        """Flush whatever is buffered and wait for all writes to finish."""
        if self.pending:
            self._start_flush()
        self._slot.wait()

    def close(self) -> None:
        self._slot.close()

    def counters(self) -> dict[str, int]:
        with self._lock:
            return {
                'imported': self.imported,
                'updated': self.updated,
                'errors': self.errors,
                'total': self.processed,
            }

    def _start_flush(self) -> None:
        inserts, self._inserts = self._inserts, []
        updates, self._updates = self._updates, []
        self._batch_num += 1
        batch_num = self._batch_num
        self._slot.submit(lambda: self._write_batch(batch_num, inserts, updates))

    def _write_batch(self, batch_num: int,
                     inserts: list[PenaltyRecord],
                     updates: list[PenaltyRecord]) -> None:
        if inserts:
            self._write_inserts(batch_num, inserts)
        if updates:
            self._write_updates(batch_num, updates)

    def _write_inserts(self, batch_num: int, inserts: list[PenaltyRecord]) -> None:
        try:
            inserted = self.store.insert_many(inserts)
            failed = 0
        except BulkWriteError as e:
            inserted = e.inserted_count
            failed = len(inserts) - inserted
            for write_error in e.write_errors[:5]:
                logger.warning(
                    f"Batch {batch_num}: penalty {write_error.penalty_number} rejected: {write_error.message}"
                )
        except Exception as e:
            logger.error(f"Batch {batch_num}: insert of {len(inserts)} records failed: {e}")
            inserted = 0
            failed = len(inserts)

        with self._lock:
            self.imported += inserted
            self.errors += failed
            total = self.imported
        logger.info(f"Batch {batch_num}: Inserted {inserted} records (Total: {total})")

    def _write_updates(self, batch_num: int, updates: list[PenaltyRecord]) -> None:
        try:
            matched = min(self.store.update_many(updates), len(updates))
        except Exception as e:
            logger.error(f"Batch {batch_num}: update of {len(updates)} records failed: {e}")
            matched = 0

        with self._lock:
            self.updated += matched
            self.errors += len(updates) - matched
        logger.info(f"Batch {batch_num}: Updated {matched} records")
