# sink.py
# Zipship – Zipper subsystem: entry headers and the single serialized archive writer

import logging
import os
import shutil
import tempfile
import threading
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Set, Tuple

from .errors import ConfigurationError, FinalizationError

logger = logging.getLogger(__name__)


# ============================================================
# Configuration
# ============================================================

# Earliest timestamp a ZIP header can hold; replaces every real mtime
FIXED_TIMESTAMP: Tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)

# Headers always claim a Unix origin so mode bits survive and output
# does not depend on the building host
CREATE_SYSTEM_UNIX = 3

DEFAULT_FILE_MODE = 0o100644
ARCHIVE_FILE_MODE = 0o644

COPY_CHUNK_SIZE = 1024 * 1024


class CompressionMode(Enum):
    """Compression method applied uniformly to every entry of a build."""
    STORE = "store"
    DEFLATE = "deflate"

    @property
    def zip_method(self) -> int:
        if self is CompressionMode.STORE:
            return zipfile.ZIP_STORED
        return zipfile.ZIP_DEFLATED

    @classmethod
    def parse(cls, value: "str | CompressionMode") -> "CompressionMode":
        if isinstance(value, CompressionMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ConfigurationError(
                f"Unknown compression {value!r} (expected one of: {choices})"
            ) from None


# ============================================================
# Entry Model
# ============================================================

@dataclass(frozen=True)
class ArchiveEntry:
    """Header fields for one archive entry."""
    name: str
    compression: CompressionMode
    size: int = 0
    mode: int = DEFAULT_FILE_MODE
    modified: Tuple[int, int, int, int, int, int] = FIXED_TIMESTAMP

    @classmethod
    def for_file(
        cls,
        name: str,
        compression: CompressionMode,
        size: int,
        mode: Optional[int] = None,
    ) -> "ArchiveEntry":
        return cls(
            name=name.replace("\\", "/"),
            compression=compression,
            size=size,
            mode=mode if mode else DEFAULT_FILE_MODE,
        )

    def to_zipinfo(self) -> zipfile.ZipInfo:
        """Build the ZipInfo header; never reads the filesystem."""
        zinfo = zipfile.ZipInfo(self.name, date_time=self.modified)
        zinfo.compress_type = self.compression.zip_method
        zinfo.create_system = CREATE_SYSTEM_UNIX
        zinfo.external_attr = (self.mode & 0xFFFF) << 16
        # Used by zipfile to decide on ZIP64 extras before the payload arrives
        zinfo.file_size = self.size
        return zinfo


# ============================================================
# Archive Sink
# ============================================================

class EntryHandle:
    """
    Transient write access to the sink, valid for exactly one entry.

    Only handed out by ArchiveSink.lease() while the sink lock is held.
    """

    def __init__(self, sink: "ArchiveSink"):
        self._sink = sink
        self._used = False
        self._valid = True

    def write(self, entry: ArchiveEntry, source: BinaryIO) -> int:
        """
        Create the entry and stream its payload from source.

        Args:
            entry: Header fields
            source: Readable binary stream positioned at the payload start

        Returns:
            Number of payload bytes written
        """
        if not self._valid:
            raise ValueError("Entry handle used outside of its lease")
        if self._used:
            raise ValueError("Entry handle already used")
        self._used = True
        return self._sink._write_entry(entry, source)

    def _release(self):
        self._valid = False


class ArchiveSink:
    """
    Owns the output archive stream.

    The archive is written to a temporary file beside the output path and
    only renamed into place by finalize(). Entry creation and payload copy
    happen under one lock: zipfile cannot interleave entries.
    """

    def __init__(self, output_path: str | Path, compression: CompressionMode):
        self.output_path = Path(output_path)
        self.compression = compression
        self._lock = threading.Lock()
        self._state = "new"
        self._fp: Optional[BinaryIO] = None
        self._zip: Optional[zipfile.ZipFile] = None
        self._temp_path: Optional[Path] = None
        self._names: Set[str] = set()

    @property
    def state(self) -> str:
        return self._state

    @property
    def entry_count(self) -> int:
        return len(self._names)

    @property
    def temp_path(self) -> Optional[Path]:
        return self._temp_path

    def open(self):
        with self._lock:
            if self._state != "new":
                raise ValueError(f"Archive sink already {self._state}")
            directory = self.output_path.parent
            directory.mkdir(parents=True, exist_ok=True)
            fd, temp = tempfile.mkstemp(
                prefix=f".{self.output_path.name}.partial-", dir=directory
            )
            self._temp_path = Path(temp)
            self._fp = os.fdopen(fd, "w+b")
            self._zip = zipfile.ZipFile(
                self._fp, "w", compression=self.compression.zip_method
            )
            self._state = "open"
            logger.debug("Opened archive sink %s", self._temp_path)

    @contextmanager
    def lease(self) -> Iterator[EntryHandle]:
        """Hold the sink lock for one entry write."""
        with self._lock:
            if self._state != "open":
                raise ValueError(f"Cannot write to archive sink in state {self._state!r}")
            handle = EntryHandle(self)
            try:
                yield handle
            finally:
                handle._release()

    def _write_entry(self, entry: ArchiveEntry, source: BinaryIO) -> int:
        if entry.name in self._names:
            raise ValueError(f"Duplicate entry name: {entry.name}")
        zinfo = entry.to_zipinfo()
        offset = self._zip.start_dir
        try:
            with self._zip.open(zinfo, "w") as dest:
                shutil.copyfileobj(source, dest, COPY_CHUNK_SIZE)
        except BaseException:
            # Closing the entry stream registers it even after a failed copy
            self._retract(zinfo, offset)
            raise
        self._names.add(entry.name)
        logger.debug("Wrote entry %s (%d bytes)", entry.name, zinfo.file_size)
        return zinfo.file_size

    def _retract(self, zinfo: zipfile.ZipInfo, offset: int):
        """Drop a partially written entry and cut the file back to offset."""
        if zinfo in self._zip.filelist:
            self._zip.filelist.remove(zinfo)
        if self._zip.NameToInfo.get(zinfo.filename) is zinfo:
            del self._zip.NameToInfo[zinfo.filename]
        try:
            self._fp.seek(offset)
            self._fp.truncate()
        except OSError as e:
            # The archive can no longer be trusted; only discard() remains valid
            self._state = "broken"
            logger.error("Could not roll back entry %s; archive is unusable", zinfo.filename)
            raise FinalizationError(str(self.output_path), e) from e
        self._zip.start_dir = offset
        logger.debug("Rolled back partial entry %s", zinfo.filename)

    def finalize(self) -> Path:
        """
        Write the central directory and move the archive to its output path.

        Returns:
            Path of the finished archive

        Raises:
            FinalizationError: If the footer or the rename fails; the
                temporary file is removed
        """
        with self._lock:
            if self._state != "open":
                raise ValueError(f"Cannot finalize archive sink in state {self._state!r}")
            try:
                self._zip.close()
                self._fp.flush()
                os.fsync(self._fp.fileno())
                self._fp.close()
                # mkstemp creates 0600 files
                os.chmod(self._temp_path, ARCHIVE_FILE_MODE)
                os.replace(self._temp_path, self.output_path)
            except (OSError, ValueError) as e:
                self._cleanup()
                self._state = "discarded"
                raise FinalizationError(str(self.output_path), e) from e
            self._state = "finalized"
            logger.info("Finalized %s with %d entries", self.output_path, len(self._names))
            return self.output_path

    def discard(self):
        """Drop a partially written archive. No-op once finalized or discarded."""
        with self._lock:
            if self._state not in ("open", "broken"):
                return
            self._cleanup()
            self._state = "discarded"
            logger.info("Discarded partial archive for %s", self.output_path)

    def _cleanup(self):
        if self._zip is not None:
            try:
                self._zip.close()
            except (OSError, ValueError) as e:
                logger.debug("Ignoring close error on discarded archive: %s", e)
        if self._fp is not None and not self._fp.closed:
            self._fp.close()
        if self._temp_path is not None:
            try:
                self._temp_path.unlink()
            except FileNotFoundError:
                pass
