# ingest.py
# Zipship – Ingest subsystem: walk a source tree into sorted file descriptors

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import pathspec

logger = logging.getLogger(__name__)


# ============================================================
# Exceptions
# ============================================================

class IngestError(Exception):
    pass


class PatternError(IngestError):
    """An exclusion pattern could not be compiled."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid exclude pattern {pattern!r}: {reason}")


class EnumerationError(IngestError):
    """The source tree could not be walked."""

    def __init__(self, message: str, paths: Sequence[str] = ()):
        self.paths = list(paths)
        super().__init__(message)


# ============================================================
# Output Format
# ============================================================

@dataclass(frozen=True)
class FileDescriptor:
    """One regular file queued for archiving."""
    relative_path: str  # forward slashes, archive entry name
    absolute_path: str
    size: int
    mode: int


# ============================================================
# Exclusion Rules
# ============================================================

def parse_gitignore(content: str) -> List[str]:
    """Parse .gitignore content into patterns."""
    patterns = []
    for line in content.splitlines():
        line = line.strip()
        # Skip empty lines and comments
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return patterns


def load_pattern_file(path: str | Path) -> List[str]:
    """
    Read exclusion patterns from a gitignore-style file.

    Args:
        path: File with one pattern per line

    Returns:
        List of patterns, comments and blank lines removed
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise PatternError(str(path), f"cannot read pattern file: {e}") from e
    return parse_gitignore(content)


class ExclusionSet:
    """
    Immutable set of compiled exclusion patterns.

    Every pattern is compiled into its own PathSpec so that a path is excluded
    when any single pattern matches it, independent of pattern order.
    """

    def __init__(self, specs: Tuple[Tuple[str, pathspec.PathSpec], ...]):
        self._specs = specs

    @property
    def patterns(self) -> Tuple[str, ...]:
        return tuple(pattern for pattern, _ in self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def matches(self, relative_path: str) -> bool:
        for _, spec in self._specs:
            if spec.match_file(relative_path):
                return True
        return False


def compile_patterns(patterns: Iterable[str]) -> ExclusionSet:
    """
    Compile exclusion globs once, at configuration time.

    Supports gitignore-style wildmatch syntax: ``**`` spans directories,
    ``*`` and ``?`` stay within one path segment.

    Args:
        patterns: Glob expressions matched against slash-normalized relative paths

    Returns:
        ExclusionSet ready for matching

    Raises:
        PatternError: If a pattern is empty, negated, or malformed
    """
    compiled = []
    seen = set()
    for pattern in patterns:
        if not pattern or not pattern.strip():
            raise PatternError(pattern, "empty pattern")
        if pattern.startswith("!"):
            raise PatternError(pattern, "negated patterns are not supported")
        if pattern in seen:
            continue
        seen.add(pattern)
        try:
            spec = pathspec.PathSpec.from_lines(
                pathspec.patterns.GitWildMatchPattern, [pattern]
            )
        except (ValueError, TypeError) as e:
            raise PatternError(pattern, str(e)) from e
        compiled.append((pattern, spec))
    return ExclusionSet(tuple(compiled))


def matches(relative_path: str, patterns: Iterable[str] | ExclusionSet) -> bool:
    """Check if a relative path is excluded by any pattern."""
    if not isinstance(patterns, ExclusionSet):
        patterns = compile_patterns(patterns)
    return patterns.matches(relative_path.replace("\\", "/"))


# ============================================================
# Tree Walking
# ============================================================

def _walk(root: str) -> Iterator[Tuple[str, os.DirEntry]]:
    """Yield (relative_path, entry) for every non-directory entry under root."""
    pending = [("", root)]
    while pending:
        prefix, directory = pending.pop()
        try:
            with os.scandir(directory) as entries:
                children = list(entries)
        except OSError as e:
            raise EnumerationError(
                f"Cannot read directory {directory}: {e}", [prefix or "."]
            ) from e

        for child in children:
            rel = f"{prefix}/{child.name}" if prefix else child.name
            try:
                is_dir = child.is_dir(follow_symlinks=False)
            except OSError:
                is_dir = False
            if is_dir:
                pending.append((rel, child.path))
            else:
                yield rel, child


def enumerate_files(
    root: str | Path,
    exclude: Iterable[str] | ExclusionSet = (),
) -> List[FileDescriptor]:
    """
    Enumerate every regular file under root that is not excluded.

    Descriptors are sorted by relative path so dispatch order does not
    depend on filesystem iteration order. Symlinks to regular files are
    archived with the target's content; symlinked directories are not
    descended into and dangling links are not regular files.

    Args:
        root: Source directory
        exclude: Patterns or a compiled ExclusionSet

    Returns:
        List of FileDescriptor objects in ascending relative_path order

    Raises:
        EnumerationError: If root is missing, a directory cannot be read,
            or a file cannot be stat'ed
    """
    root = Path(root)
    if not isinstance(exclude, ExclusionSet):
        exclude = compile_patterns(exclude)

    if not root.exists():
        raise EnumerationError(f"Path does not exist: {root}")
    if not root.is_dir():
        raise EnumerationError(f"Not a directory: {root}")

    descriptors = []
    unreadable = []
    excluded = 0

    for rel, entry in _walk(str(root)):
        if exclude.matches(rel):
            excluded += 1
            continue

        try:
            st = entry.stat(follow_symlinks=True)
        except FileNotFoundError:
            # Dangling symlink or file removed mid-walk
            logger.debug("Skipping vanished entry %s", rel)
            continue
        except OSError as e:
            unreadable.append(rel)
            logger.warning("Cannot stat %s: %s", rel, e)
            continue

        if not stat.S_ISREG(st.st_mode):
            continue

        descriptors.append(
            FileDescriptor(
                relative_path=rel,
                absolute_path=os.path.abspath(entry.path),
                size=st.st_size,
                mode=st.st_mode,
            )
        )

    if unreadable:
        raise EnumerationError(
            f"Cannot stat {len(unreadable)} file(s) under {root}: {', '.join(unreadable[:5])}",
            unreadable,
        )

    descriptors.sort(key=lambda d: d.relative_path)
    logger.info(
        "Enumerated %d files under %s (%d excluded)", len(descriptors), root, excluded
    )
    return descriptors


def describe_file(path: str | Path, name: Optional[str] = None) -> FileDescriptor:
    """
    Build a descriptor for a single file source.

    Args:
        path: Regular file to archive
        name: Entry name (defaults to the file's base name)

    Returns:
        FileDescriptor for the file
    """
    path = Path(path)
    try:
        st = path.stat()
    except OSError as e:
        raise EnumerationError(f"Cannot stat {path}: {e}", [path.name]) from e
    if not stat.S_ISREG(st.st_mode):
        raise EnumerationError(f"Not a regular file: {path}", [path.name])
    return FileDescriptor(
        relative_path=name or path.name,
        absolute_path=os.path.abspath(path),
        size=st.st_size,
        mode=st.st_mode,
    )
