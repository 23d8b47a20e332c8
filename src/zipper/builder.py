# builder.py
# Zipship – Zipper subsystem: orchestrate enumeration, workers and finalization

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from ingest import (
    ExclusionSet,
    FileDescriptor,
    PatternError,
    compile_patterns,
    describe_file,
    enumerate_files,
)

from .errors import BuildAborted, ConfigurationError, EntryError
from .pool import (
    DEFAULT_BUFFER_LIMIT,
    PoolOutcome,
    ProgressTracker,
    WorkerPool,
    stage_file,
    write_staged,
)
from .sink import ArchiveSink, CompressionMode

logger = logging.getLogger(__name__)


# ============================================================
# Configuration
# ============================================================

def default_workers() -> int:
    """Worker count matching the host's available parallelism."""
    return os.cpu_count() or 1


@dataclass(frozen=True)
class BuildJob:
    """Configuration for one archive build. Immutable once the build starts."""
    source: str
    output: str = "output.zip"
    compression: str = "deflate"  # "store" or "deflate"
    exclude: Tuple[str, ...] = ()
    workers: int = field(default_factory=default_workers)
    strict: bool = False
    reproducible: bool = False  # commit entries in sorted order
    buffer_limit: int = DEFAULT_BUFFER_LIMIT

    def __post_init__(self):
        object.__setattr__(self, "source", str(self.source))
        object.__setattr__(self, "output", str(self.output))
        exclude = self.exclude
        if isinstance(exclude, str):
            # A lone pattern, not an iterable of one-character patterns
            exclude = (exclude,)
        object.__setattr__(self, "exclude", tuple(exclude))

    def validate(self) -> Tuple[CompressionMode, ExclusionSet]:
        """
        Check the job before any I/O.

        Returns:
            Tuple of (compression mode, compiled exclusion set)

        Raises:
            ConfigurationError: On any invalid setting
        """
        if not self.source:
            raise ConfigurationError("Source path is required")
        source = Path(self.source)
        if not source.exists():
            raise ConfigurationError(f"Invalid source path: {self.source} does not exist")
        if not (source.is_file() or source.is_dir()):
            raise ConfigurationError(f"Invalid source path: {self.source} is not a file or directory")

        if not self.output:
            raise ConfigurationError("Output path is required")
        output = Path(self.output)
        if output.is_dir():
            raise ConfigurationError(f"Output path is a directory: {self.output}")
        if source.is_file() and output.exists() and output.resolve() == source.resolve():
            raise ConfigurationError("Output path must differ from the source file")

        if isinstance(self.workers, bool) or not isinstance(self.workers, int) or self.workers < 1:
            raise ConfigurationError(f"Worker count must be a positive integer, got {self.workers!r}")
        if self.buffer_limit < 0:
            raise ConfigurationError("buffer_limit must be >= 0")

        compression = CompressionMode.parse(self.compression)
        try:
            exclusions = compile_patterns(self.exclude)
        except PatternError as e:
            raise ConfigurationError(str(e)) from e
        return compression, exclusions


# ============================================================
# Output Format
# ============================================================

@dataclass
class BuildResult:
    """Outcome of a finished build."""
    archive_path: str
    file_count: int
    failed: List[EntryError] = field(default_factory=list)
    total: int = 0
    bytes_in: int = 0
    elapsed: float = 0.0
    strict: bool = False
    single_file: bool = False

    @property
    def failed_files(self) -> List[str]:
        return [e.path for e in self.failed]

    @property
    def verdict(self) -> str:
        if not self.failed:
            return "success"
        if self.strict:
            return "failure"
        return "success_with_warnings"

    @property
    def ok(self) -> bool:
        return self.verdict != "failure"


# ============================================================
# Builder
# ============================================================

class ArchiveBuilder:
    """
    Runs one BuildJob from configuration to finalized archive.

    The builder is the only long-lived owner of the ArchiveSink; workers
    see it through per-entry leases.
    """

    def __init__(self, job: BuildJob, tracker: Optional[ProgressTracker] = None):
        self.job = job
        self.tracker = tracker or ProgressTracker()
        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._pool: Optional[WorkerPool] = None

    def abort(self):
        """Cancel the build from any thread. The archive will not be finalized."""
        self._abort.set()
        with self._lock:
            pool = self._pool
        if pool is not None:
            pool.abort()

    def build(self) -> BuildResult:
        """
        Build the archive.

        Returns:
            BuildResult with the archive path, entry count and skipped files

        Raises:
            ConfigurationError: Invalid job, before any I/O
            EnumerationError: Source tree cannot be walked
            FinalizationError: Archive footer cannot be written
            BuildAborted: abort() was called or the build was interrupted
        """
        start_time = time.time()
        job = self.job
        compression, exclusions = job.validate()
        source = Path(job.source)

        single_file = source.is_file()
        if single_file:
            descriptors = [describe_file(source)]
        else:
            descriptors = self._exclude_output(enumerate_files(source, exclusions))

        self.tracker.set_total(len(descriptors))
        if self._abort.is_set():
            raise BuildAborted("Build aborted before writing")

        logger.info(
            "Zipping %d file(s) from %s → %s (%s, %d worker(s))",
            len(descriptors),
            source,
            job.output,
            compression.value,
            1 if single_file else job.workers,
        )

        sink = ArchiveSink(job.output, compression)
        sink.open()
        try:
            if single_file:
                outcome = self._write_single(sink, compression, descriptors[0])
            else:
                outcome = self._run_pool(sink, compression, descriptors)
            if self._abort.is_set():
                raise BuildAborted("Build aborted before finalization")
            archive_path = sink.finalize()
        except KeyboardInterrupt:
            sink.discard()
            raise BuildAborted("Build interrupted") from None
        except BaseException:
            sink.discard()
            raise

        result = BuildResult(
            archive_path=str(archive_path),
            file_count=outcome.written,
            failed=outcome.failed,
            total=len(descriptors),
            bytes_in=outcome.bytes_in,
            elapsed=time.time() - start_time,
            strict=job.strict,
            single_file=single_file,
        )
        if result.failed:
            logger.warning(
                "%d of %d file(s) skipped; verdict: %s",
                len(result.failed),
                result.total,
                result.verdict,
            )
        return result

    def _exclude_output(self, descriptors: List[FileDescriptor]) -> List[FileDescriptor]:
        # A previous archive inside the source tree must not be zipped into the new one
        output = os.path.abspath(self.job.output)
        return [d for d in descriptors if d.absolute_path != output]

    def _run_pool(
        self,
        sink: ArchiveSink,
        compression: CompressionMode,
        descriptors: List[FileDescriptor],
    ) -> PoolOutcome:
        pool = WorkerPool(
            sink,
            compression,
            workers=self.job.workers,
            tracker=self.tracker,
            sequenced=self.job.reproducible,
            buffer_limit=self.job.buffer_limit,
            abort_event=self._abort,
        )
        with self._lock:
            self._pool = pool
        try:
            return pool.run(descriptors)
        finally:
            with self._lock:
                self._pool = None

    def _write_single(
        self,
        sink: ArchiveSink,
        compression: CompressionMode,
        descriptor: FileDescriptor,
    ) -> PoolOutcome:
        outcome = PoolOutcome()
        failure = None
        try:
            staged, size = stage_file(descriptor, self.job.buffer_limit)
        except OSError as e:
            failure = EntryError(descriptor.relative_path, e.strerror or str(e), "read")
        else:
            with staged:
                try:
                    write_staged(sink, descriptor, compression, staged, size)
                except OSError as e:
                    failure = EntryError(descriptor.relative_path, e.strerror or str(e), "write")

        if failure is not None:
            logger.warning("Failed to zip %s: %s", failure.path, failure.reason)
            outcome.failed.append(failure)
        else:
            outcome.written = 1
            outcome.bytes_in = size
        self.tracker.increment()
        return outcome


def build(job: BuildJob, tracker: Optional[ProgressTracker] = None) -> BuildResult:
    """
    Build one archive from a BuildJob.

    Args:
        job: Build configuration
        tracker: Optional progress tracker to observe the build

    Returns:
        BuildResult (archive_path, file_count, failed)
    """
    return ArchiveBuilder(job, tracker).build()
