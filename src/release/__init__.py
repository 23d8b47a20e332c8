"""
Release subsystem for Zipship.

Purpose: Post-process a finished archive for publication.

Responsibilities:
- Write a SHA-256 sidecar (sha256sum format)
- Produce a detached gpg signature of the sidecar
- Copy files to a directory / UNC share, mirror them with robocopy,
  or upload them over HTTP(S)
- Recompute the remote digest and compare it with the sidecar

Non-responsibilities:
- Never modifies the archive itself
"""

from .release import (
    sha256_file,
    write_hash_file,
    parse_hash_record,
    sign_file,
    distribute,
    copy_to_share,
    copy_with_robocopy,
    upload_http,
    verify_remote,
    ReleaseError,
    SignError,
    DistributionError,
    VerificationError,
)

__all__ = [
    "sha256_file",
    "write_hash_file",
    "parse_hash_record",
    "sign_file",
    "distribute",
    "copy_to_share",
    "copy_with_robocopy",
    "upload_http",
    "verify_remote",
    "ReleaseError",
    "SignError",
    "DistributionError",
    "VerificationError",
]
