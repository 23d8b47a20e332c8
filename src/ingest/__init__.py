"""
Ingest subsystem for Zipship.

Purpose: Turn a source directory into the ordered list of files that will
become archive entries.

Responsibilities:
- Compile exclusion globs once per build (gitignore-style wildmatch)
- Walk the source tree and drop excluded paths
- Produce FileDescriptors with slash-normalized relative paths, sorted

Non-responsibilities:
- No reading of file contents
- No archive writing
"""

from .ingest import (
    enumerate_files,
    describe_file,
    compile_patterns,
    matches,
    load_pattern_file,
    parse_gitignore,
    ExclusionSet,
    FileDescriptor,
    IngestError,
    PatternError,
    EnumerationError,
)

__all__ = [
    "enumerate_files",
    "describe_file",
    "compile_patterns",
    "matches",
    "load_pattern_file",
    "parse_gitignore",
    "ExclusionSet",
    "FileDescriptor",
    "IngestError",
    "PatternError",
    "EnumerationError",
]
