# pool.py
# Zipship – Zipper subsystem: bounded worker pool and progress accounting

import logging
import queue
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterator, List, Optional, Sequence, Tuple

from ingest import FileDescriptor

from .errors import BuildAborted, EntryError
from .sink import COPY_CHUNK_SIZE, ArchiveEntry, ArchiveSink, CompressionMode

logger = logging.getLogger(__name__)


# ============================================================
# Configuration
# ============================================================

# Staged payloads above this size spill from memory to a temp file
DEFAULT_BUFFER_LIMIT = 8 * 1024 * 1024

# Queue slots per worker
QUEUE_DEPTH = 2

_PUT_TIMEOUT = 0.1


# ============================================================
# Progress Tracking
# ============================================================

@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of build progress."""
    done: int
    total: int

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, self.done / self.total)


ProgressListener = Callable[[ProgressSnapshot], None]


class ProgressTracker:
    """Monotonic counter shared by all workers."""

    def __init__(self, total: int = 0):
        self._lock = threading.Lock()
        self._done = 0
        self._total = total
        self._listeners: List[ProgressListener] = []

    def set_total(self, total: int):
        with self._lock:
            self._total = total

    def subscribe(self, listener: ProgressListener):
        with self._lock:
            self._listeners.append(listener)

    def increment(self, count: int = 1) -> ProgressSnapshot:
        if count < 0:
            raise ValueError("Progress can only move forward")
        with self._lock:
            self._done += count
            snapshot = ProgressSnapshot(self._done, self._total)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                # Display only; a broken listener must not fail the build
                logger.exception("Progress listener failed")
        return snapshot

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(self._done, self._total)


# ============================================================
# Staging
# ============================================================

def open_source(descriptor: FileDescriptor) -> BinaryIO:
    """Open a source file for reading."""
    return open(descriptor.absolute_path, "rb")


def stage_file(descriptor: FileDescriptor, buffer_limit: int = DEFAULT_BUFFER_LIMIT) -> Tuple[BinaryIO, int]:
    """
    Copy a source file into a spooled buffer, outside any lock.

    Args:
        descriptor: File to read
        buffer_limit: Bytes kept in memory before spilling to disk

    Returns:
        Tuple of (buffer rewound to the start, byte count)

    Raises:
        OSError: If the source cannot be opened or read
    """
    spool = tempfile.SpooledTemporaryFile(max_size=buffer_limit)
    try:
        with open_source(descriptor) as src:
            shutil.copyfileobj(src, spool, COPY_CHUNK_SIZE)
        size = spool.tell()
        spool.seek(0)
    except BaseException:
        spool.close()
        raise
    return spool, size


def write_staged(
    sink: ArchiveSink,
    descriptor: FileDescriptor,
    compression: CompressionMode,
    staged: BinaryIO,
    size: int,
) -> int:
    """Write one staged payload through a sink lease."""
    entry = ArchiveEntry.for_file(descriptor.relative_path, compression, size, descriptor.mode)
    with sink.lease() as handle:
        return handle.write(entry, staged)


# ============================================================
# Worker Pool
# ============================================================

@dataclass
class PoolOutcome:
    """What a pool run produced."""
    written: int = 0
    bytes_in: int = 0
    failed: List[EntryError] = field(default_factory=list)


class WorkerPool:
    """
    W threads pulling descriptors from one bounded queue.

    Each worker stages its file outside the sink lock, then holds the lock
    for header creation plus payload copy. Per-file failures are collected;
    anything else aborts the pool and is re-raised from run().

    With sequenced=True entries are committed strictly in dispatch order,
    so the archive layout is identical for every worker count.
    """

    def __init__(
        self,
        sink: ArchiveSink,
        compression: CompressionMode,
        workers: int,
        tracker: Optional[ProgressTracker] = None,
        sequenced: bool = False,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
        abort_event: Optional[threading.Event] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.sink = sink
        self.compression = compression
        self.workers = workers
        self.tracker = tracker or ProgressTracker()
        self.sequenced = sequenced
        self.buffer_limit = buffer_limit

        self._abort = abort_event or threading.Event()
        self._queue: "queue.Queue[Optional[Tuple[int, FileDescriptor]]]" = queue.Queue(
            maxsize=workers * QUEUE_DEPTH
        )
        self._results_lock = threading.Lock()
        self._outcome = PoolOutcome()
        self._fatal: Optional[BaseException] = None
        self._turn = threading.Condition()
        self._next_index = 0

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self):
        """Stop handing out descriptors; safe to call from any thread."""
        self._abort.set()
        with self._turn:
            self._turn.notify_all()

    def run(self, descriptors: Sequence[FileDescriptor]) -> PoolOutcome:
        """
        Process every descriptor once and block until all workers exit.

        Args:
            descriptors: Files to archive, in dispatch order

        Returns:
            PoolOutcome with written count and collected failures

        Raises:
            BuildAborted: If abort() was called before the run finished
        """
        threads = [
            threading.Thread(target=self._worker, name=f"zipship-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in threads:
            thread.start()

        try:
            self._dispatch(descriptors)
        except BaseException:
            self.abort()
            raise
        finally:
            for _ in threads:
                self._queue.put(None)
            for thread in threads:
                thread.join()

        if self._fatal is not None:
            raise self._fatal
        if self.aborted:
            raise BuildAborted("Build aborted before all files were archived")

        self._outcome.failed.sort(key=lambda e: e.path)
        return self._outcome

    def _dispatch(self, descriptors: Sequence[FileDescriptor]):
        for item in enumerate(descriptors):
            while True:
                if self.aborted:
                    return
                try:
                    self._queue.put(item, timeout=_PUT_TIMEOUT)
                    break
                except queue.Full:
                    continue

    def _worker(self):
        while True:
            item = self._queue.get()
            if item is None:
                return
            if self.aborted:
                # Drain without working so the dispatcher never blocks
                continue
            index, descriptor = item
            try:
                self._process(index, descriptor)
            except Exception as e:
                logger.error("Worker failed on %s: %s", descriptor.relative_path, e)
                with self._results_lock:
                    if self._fatal is None:
                        self._fatal = e
                self.abort()

    def _process(self, index: int, descriptor: FileDescriptor):
        staged = None
        size = 0
        failure = None
        try:
            staged, size = stage_file(descriptor, self.buffer_limit)
        except OSError as e:
            failure = EntryError(descriptor.relative_path, _reason(e), "read")

        try:
            with self._take_turn(index) as ready:
                if not ready:
                    return
                if failure is None:
                    try:
                        write_staged(self.sink, descriptor, self.compression, staged, size)
                    except OSError as e:
                        failure = EntryError(descriptor.relative_path, _reason(e), "write")
        finally:
            if staged is not None:
                staged.close()

        if failure is not None:
            logger.warning("Failed to zip %s: %s", failure.path, failure.reason)
            with self._results_lock:
                self._outcome.failed.append(failure)
        else:
            with self._results_lock:
                self._outcome.written += 1
                self._outcome.bytes_in += size
        self.tracker.increment()

    @contextmanager
    def _take_turn(self, index: int) -> Iterator[bool]:
        if not self.sequenced:
            yield not self.aborted
            return
        with self._turn:
            while self._next_index != index and not self.aborted:
                self._turn.wait()
            ready = not self.aborted
        try:
            yield ready
        finally:
            with self._turn:
                if self._next_index == index:
                    self._next_index += 1
                self._turn.notify_all()


def _reason(error: OSError) -> str:
    return error.strerror or str(error)
