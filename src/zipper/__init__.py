"""
Zipper subsystem for Zipship.

Purpose: Build one deterministic ZIP archive from a file or directory using
a bounded pool of worker threads around a single serialized writer.

Responsibilities:
- Validate the BuildJob before any I/O
- Dispatch sorted descriptors to W workers through a bounded queue
- Serialize entry creation + payload copy through ArchiveSink
- Use a fixed timestamp and host-independent header fields
- Collect per-file failures; finalize exactly once or discard

Non-responsibilities:
- No hashing, signing or distribution of the finished archive
- No retries of failed reads
- No appending to existing archives

Layout: entries are written in completion order by default (deterministic
content set). BuildJob(reproducible=True) commits them in sorted order so
the archive bytes do not depend on the worker count.
"""

from .errors import (
    ZipperError,
    ConfigurationError,
    EnumerationError,
    EntryError,
    FinalizationError,
    BuildAborted,
)
from .sink import (
    ArchiveEntry,
    ArchiveSink,
    CompressionMode,
    FIXED_TIMESTAMP,
)
from .pool import (
    ProgressSnapshot,
    ProgressTracker,
    PoolOutcome,
    WorkerPool,
)
from .builder import (
    ArchiveBuilder,
    BuildJob,
    BuildResult,
    build,
    default_workers,
)

__all__ = [
    "build",
    "default_workers",
    "ArchiveBuilder",
    "BuildJob",
    "BuildResult",
    "ArchiveEntry",
    "ArchiveSink",
    "CompressionMode",
    "FIXED_TIMESTAMP",
    "ProgressSnapshot",
    "ProgressTracker",
    "PoolOutcome",
    "WorkerPool",
    "ZipperError",
    "ConfigurationError",
    "EnumerationError",
    "EntryError",
    "FinalizationError",
    "BuildAborted",
]
