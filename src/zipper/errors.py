# errors.py
# Zipship – Zipper subsystem: build error kinds

from ingest import EnumerationError


# ============================================================
# Fatal Errors
# ============================================================

class ZipperError(Exception):
    """Base class for archive build errors."""
    pass


class ConfigurationError(ZipperError):
    """BuildJob is invalid; raised before any I/O happens."""
    pass


class FinalizationError(ZipperError):
    """The archive footer could not be written."""

    def __init__(self, path: str, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot finalize archive {path}: {cause}")


class BuildAborted(ZipperError):
    """The build was cancelled; no archive was produced."""
    pass


# ============================================================
# Per-file Errors
# ============================================================

class EntryError(ZipperError):
    """
    One file could not be archived.

    Collected into BuildResult.failed rather than raised; the build
    continues with the remaining files.
    """

    def __init__(self, path: str, reason: str, stage: str = "read"):
        self.path = path
        self.reason = reason
        self.stage = stage
        super().__init__(f"{path}: {stage} failed: {reason}")

    def __eq__(self, other):
        if not isinstance(other, EntryError):
            return NotImplemented
        return (self.path, self.reason, self.stage) == (other.path, other.reason, other.stage)

    def __hash__(self):
        return hash((self.path, self.reason, self.stage))


__all__ = [
    "ZipperError",
    "ConfigurationError",
    "EnumerationError",
    "FinalizationError",
    "BuildAborted",
    "EntryError",
]
