# release.py
# Zipship – Release subsystem: hash, sign, distribute and verify a finished archive

import hashlib
import logging
import os
import shutil
import subprocess
from collections import OrderedDict
from pathlib import Path, PureWindowsPath
from typing import Iterable, List, Optional, Sequence
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


# ============================================================
# Exceptions
# ============================================================

class ReleaseError(Exception):
    pass


class SignError(ReleaseError):
    pass


class DistributionError(ReleaseError):
    pass


class VerificationError(ReleaseError):
    """Remote digest does not match, or could not be computed."""

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


# ============================================================
# Configuration
# ============================================================

HASH_SUFFIX = ".sha256"
SIGNATURE_SUFFIX = ".asc"
HASH_CHUNK_SIZE = 1024 * 1024
HTTP_TIMEOUT = 30

# robocopy exit codes below 8 mean "copied / nothing to do / extras found"
ROBOCOPY_FAILURE_CODE = 8
ROBOCOPY_OPTIONS = ["/Z", "/R:3", "/W:5", "/NFL", "/NDL"]


def is_http_destination(destination: str) -> bool:
    return destination.lower().startswith(("http://", "https://"))


def is_unc_path(destination: str) -> bool:
    return destination.startswith("\\\\")


def _run(cmd: Sequence[str]) -> subprocess.CompletedProcess:
    """Run a command, capturing combined output as text."""
    return subprocess.run(
        list(cmd),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
    )


def _auth(user: Optional[str], password: Optional[str]):
    if user and password:
        return (user, password)
    return None


# ============================================================
# Hashing
# ============================================================

def sha256_file(path: str | Path) -> str:
    """Return the lowercase hex SHA-256 of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def write_hash_file(path: str | Path) -> Path:
    """
    Write a sha256sum-style sidecar next to the archive.

    Args:
        path: Finished archive

    Returns:
        Path to ``<path>.sha256``
    """
    path = Path(path)
    digest = sha256_file(path)
    hash_path = path.with_name(path.name + HASH_SUFFIX)
    hash_path.write_text(f"{digest}  {path.name}\n", encoding="utf-8")
    logger.info("SHA256 %s written to %s", digest, hash_path)
    return hash_path


def parse_hash_record(content: str) -> str:
    """Extract the digest from a sidecar ("<hex>" or "<hex>  <name>")."""
    fields = content.split()
    if not fields:
        raise VerificationError("Hash file is empty")
    return fields[0].lower()


# ============================================================
# Signing
# ============================================================

def sign_file(path: str | Path, gpg: str = "gpg") -> Path:
    """
    Create an ASCII-armored detached signature with gpg.

    Args:
        path: File to sign (normally the .sha256 sidecar)
        gpg: gpg executable

    Returns:
        Path to ``<path>.asc``
    """
    path = Path(path)
    signature = path.with_name(path.name + SIGNATURE_SUFFIX)
    cmd = [
        gpg,
        "--batch",
        "--yes",
        "--armor",
        "--pinentry-mode", "loopback",
        "--output", str(signature),
        "--detach-sign", str(path),
    ]
    try:
        proc = _run(cmd)
    except OSError as e:
        raise SignError(f"gpg error: {e}") from e
    if proc.returncode != 0:
        raise SignError(f"gpg error: exit status {proc.returncode}\n{proc.stdout}")
    logger.info("Signature written to %s", signature)
    return signature


# ============================================================
# Distribution
# ============================================================

def connect_share(share: str, user: Optional[str] = None, password: Optional[str] = None):
    """Map a Windows network share for the current session."""
    cmd = ["net", "use", share]
    if user and password:
        cmd += [password, f"/user:{user}"]
    cmd.append("/persistent:no")
    try:
        proc = _run(cmd)
    except OSError as e:
        raise DistributionError(f"net use failed: {e}") from e
    if proc.returncode != 0:
        raise DistributionError(f"net use failed: exit status {proc.returncode}\n{proc.stdout}")


def disconnect_share(share: str):
    try:
        proc = _run(["net", "use", share, "/delete", "/yes"])
    except OSError as e:
        logger.warning("net use /delete failed for %s: %s", share, e)
        return
    if proc.returncode != 0:
        logger.warning("net use /delete failed for %s: %s", share, proc.stdout.strip())


def _needs_share_connection(destination: str) -> bool:
    return os.name == "nt" and is_unc_path(destination)


def _join_destination(destination: str, name: str) -> str:
    if is_unc_path(destination):
        return str(PureWindowsPath(destination) / name)
    return os.path.join(destination, name)


def copy_to_share(
    destination: str,
    files: Iterable[str | Path],
    user: Optional[str] = None,
    password: Optional[str] = None,
    dry_run: bool = False,
) -> List[str]:
    """
    Copy files into a directory or UNC share.

    Returns:
        Destination paths, one per file
    """
    files = [Path(f) for f in files]
    targets = [_join_destination(destination, f.name) for f in files]

    if dry_run:
        logger.info("[DRYRUN] Would connect to: %s", destination)
        for src, dest in zip(files, targets):
            logger.info("[DRYRUN] Would copy %s → %s", src, dest)
        return targets

    connected = False
    if _needs_share_connection(destination):
        connect_share(destination, user, password)
        connected = True
    try:
        for src, dest in zip(files, targets):
            try:
                shutil.copyfile(src, dest)
            except OSError as e:
                raise DistributionError(f"Failed to copy {src} → {dest}: {e}") from e
            logger.info("Copied %s → %s", src, dest)
    finally:
        if connected:
            disconnect_share(destination)
    return targets


def copy_with_robocopy(
    destination: str,
    files: Iterable[str | Path],
    user: Optional[str] = None,
    password: Optional[str] = None,
    dry_run: bool = False,
    robocopy: str = "robocopy",
) -> List[str]:
    """
    Mirror files with robocopy (restartable, 3 retries, 5s wait).

    Files are grouped by source directory so each directory is one call.
    """
    files = [Path(f) for f in files]
    targets = [_join_destination(destination, f.name) for f in files]

    if dry_run:
        logger.info("[DRYRUN] Would robocopy to: %s", destination)
        for f in files:
            logger.info("[DRYRUN] Would robocopy file: %s", f)
        return targets

    groups: "OrderedDict[str, List[str]]" = OrderedDict()
    for f in files:
        groups.setdefault(str(f.parent), []).append(f.name)

    connected = False
    if _needs_share_connection(destination):
        connect_share(destination, user, password)
        connected = True
    try:
        for directory, names in groups.items():
            cmd = [robocopy, directory, destination, *names, *ROBOCOPY_OPTIONS]
            try:
                proc = _run(cmd)
            except OSError as e:
                raise DistributionError(f"robocopy failed: {e}") from e
            if proc.returncode >= ROBOCOPY_FAILURE_CODE:
                raise DistributionError(
                    f"robocopy failed: exit status {proc.returncode}\n{proc.stdout}"
                )
            logger.debug("robocopy output:\n%s", proc.stdout)
    finally:
        if connected:
            disconnect_share(destination)
    return targets


def upload_http(
    destination: str,
    files: Iterable[str | Path],
    user: Optional[str] = None,
    password: Optional[str] = None,
    dry_run: bool = False,
) -> List[str]:
    """PUT each file to ``<destination>/<name>``."""
    files = [Path(f) for f in files]
    base = destination.rstrip("/")
    targets = [f"{base}/{quote(f.name)}" for f in files]

    if dry_run:
        for src, url in zip(files, targets):
            logger.info("[DRYRUN] Would upload %s → %s", src, url)
        return targets

    for src, url in zip(files, targets):
        try:
            with open(src, "rb") as body:
                resp = requests.put(url, data=body, auth=_auth(user, password), timeout=HTTP_TIMEOUT)
        except (OSError, requests.RequestException) as e:
            raise DistributionError(f"Failed to upload {src}: {e}") from e
        if not resp.ok:
            raise DistributionError(f"HTTP {resp.status_code}: failed to upload {src} → {url}")
        logger.info("Uploaded %s → %s", src, url)
    return targets


def distribute(
    files: Iterable[str | Path],
    destination: str,
    user: Optional[str] = None,
    password: Optional[str] = None,
    use_robocopy: bool = False,
    dry_run: bool = False,
) -> List[str]:
    """
    Send the archive and its sidecars to a remote location.

    Args:
        files: Archive plus optional .sha256 / .asc files
        destination: Directory, UNC share, or http(s) URL
        user: Optional share / HTTP user
        password: Optional share / HTTP password
        use_robocopy: Mirror with robocopy instead of a plain copy
        dry_run: Only log what would happen

    Returns:
        List of remote locations written
    """
    if not destination:
        raise DistributionError("No destination given")
    if is_http_destination(destination):
        return upload_http(destination, files, user, password, dry_run)
    if use_robocopy:
        return copy_with_robocopy(destination, files, user, password, dry_run)
    return copy_to_share(destination, files, user, password, dry_run)


# ============================================================
# Verification
# ============================================================

def _fetch_text(url: str, auth) -> str:
    try:
        resp = requests.get(url, auth=auth, timeout=HTTP_TIMEOUT)
    except requests.RequestException as e:
        raise VerificationError(f"Failed to fetch {url}: {e}") from e
    if not resp.ok:
        raise VerificationError(f"HTTP {resp.status_code}: failed to fetch {url}")
    return resp.text


def _sha256_url(url: str, auth) -> str:
    digest = hashlib.sha256()
    try:
        with requests.get(url, auth=auth, timeout=HTTP_TIMEOUT, stream=True) as resp:
            if not resp.ok:
                raise VerificationError(f"HTTP {resp.status_code}: failed to fetch {url}")
            for block in resp.iter_content(chunk_size=HASH_CHUNK_SIZE):
                digest.update(block)
    except requests.RequestException as e:
        raise VerificationError(f"Failed to fetch {url}: {e}") from e
    return digest.hexdigest()


def verify_remote(
    destination: str,
    archive_name: str,
    user: Optional[str] = None,
    password: Optional[str] = None,
) -> str:
    """
    Recompute the remote archive's SHA-256 and compare it with the remote sidecar.

    Args:
        destination: Where the archive was distributed
        archive_name: Base name of the archive

    Returns:
        The verified digest

    Raises:
        VerificationError: On mismatch or if either file cannot be read
    """
    hash_name = archive_name + HASH_SUFFIX

    if is_http_destination(destination):
        base = destination.rstrip("/")
        auth = _auth(user, password)
        expected = parse_hash_record(_fetch_text(f"{base}/{quote(hash_name)}", auth))
        actual = _sha256_url(f"{base}/{quote(archive_name)}", auth)
    else:
        remote_hash = _join_destination(destination, hash_name)
        remote_archive = _join_destination(destination, archive_name)
        try:
            expected = parse_hash_record(Path(remote_hash).read_text(encoding="utf-8"))
        except OSError as e:
            raise VerificationError(f"Failed to read remote {HASH_SUFFIX}: {e}") from e
        try:
            actual = sha256_file(remote_archive)
        except OSError as e:
            raise VerificationError(f"Failed to hash remote archive: {e}") from e

    if actual != expected:
        raise VerificationError(
            f"Hash mismatch:\nExpected: {expected}\nActual:   {actual}",
            expected=expected,
            actual=actual,
        )
    logger.info("Remote hash verified: %s", actual)
    return actual
