#!/usr/bin/env python3
"""
main.py
Zipship – Main orchestrator

Builds a deterministic ZIP archive from a file or directory with a pool of
worker threads, then optionally hashes, signs, distributes and verifies it:
zip → hash → sign → copy → verify

Usage:
    zipship <source> --out release.zip
    zipship --src build/ --out dist/app.zip --exclude "**/*.log" --hash
    zipship --src build/ --hash --sign --copyto \\\\fileserver\\drops --verify-target

Examples:
    zipship ./site --out site.zip --threads 8 --exclude ".git/" --exclude "*.tmp"
    zipship ./site --out site.zip --reproducible --compression store
    zipship ./site --hash --copyto https://artifacts.example.com/drops/ --user ci --pass secret
    zipship ./site --hash --sign --copyto /mnt/share --dryrun
"""

import argparse
import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from ingest import IngestError, load_pattern_file
from release import (
    ReleaseError,
    distribute,
    sign_file,
    verify_remote,
    write_hash_file,
)
from zipper import (
    BuildJob,
    BuildResult,
    ProgressSnapshot,
    ProgressTracker,
    ZipperError,
    build,
    default_workers,
)

logger = logging.getLogger("zipship")


# ============================================================
# Configuration
# ============================================================

@dataclass
class ReleaseConfig:
    """Post-build steps for the pipeline."""
    write_hash: bool = False
    sign: bool = False
    copy_to: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    use_robocopy: bool = False
    verify_target: bool = False
    dry_run: bool = False
    show_progress: bool = True


# ============================================================
# Pipeline Statistics
# ============================================================

@dataclass
class PipelineStats:
    """Statistics collected during pipeline execution."""
    # Stage timings
    zip_time: float = 0.0
    hash_time: float = 0.0
    sign_time: float = 0.0
    copy_time: float = 0.0
    verify_time: float = 0.0
    total_time: float = 0.0

    # Stage outputs
    archive_path: Optional[str] = None
    entries_written: int = 0
    files_total: int = 0
    bytes_in: int = 0
    skipped: List[str] = field(default_factory=list)
    hash_path: Optional[str] = None
    signature_path: Optional[str] = None
    copied: List[str] = field(default_factory=list)
    verified: bool = False
    verdict: str = "success"

    def print_summary(self):
        """Print a formatted summary of pipeline statistics."""
        print("\n" + "=" * 70)
        print("PIPELINE SUMMARY")
        print("=" * 70)

        print("\nStage Timings:")
        print(f"  Zip:     {self.zip_time:>8.2f}s  ({self.entries_written}/{self.files_total} files, {self.bytes_in/1024/1024:.1f} MB)")
        if self.hash_path:
            print(f"  Hash:    {self.hash_time:>8.2f}s  ({self.hash_path})")
        if self.signature_path:
            print(f"  Sign:    {self.sign_time:>8.2f}s  ({self.signature_path})")
        if self.copied:
            print(f"  Copy:    {self.copy_time:>8.2f}s  ({len(self.copied)} files)")
        if self.verified:
            print(f"  Verify:  {self.verify_time:>8.2f}s")
        print(f"  {'─' * 40}")
        print(f"  Total:   {self.total_time:>8.2f}s")

        if self.skipped:
            print(f"\nSkipped files ({len(self.skipped)}):")
            for path in self.skipped[:20]:
                print(f"  - {path}")
            if len(self.skipped) > 20:
                print(f"  ... and {len(self.skipped) - 20} more")

        status = {
            "success": "✓ Complete",
            "success_with_warnings": "⚠ Complete with warnings",
            "failure": "✗ Failed",
        }.get(self.verdict, self.verdict)
        print(f"\nPipeline Status: {status}")
        print("=" * 70)


# ============================================================
# Progress Display
# ============================================================

class ProgressBar:
    """Feeds ProgressTracker snapshots into a tqdm bar."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._lock = threading.Lock()
        self._bar: Optional[tqdm] = None

    def __call__(self, snapshot: ProgressSnapshot):
        with self._lock:
            if self._bar is None:
                self._bar = tqdm(
                    total=snapshot.total,
                    unit="file",
                    desc="Zipping",
                    disable=not self.enabled,
                )
            self._bar.update(snapshot.done - self._bar.n)

    def close(self):
        with self._lock:
            if self._bar is not None:
                self._bar.close()


def setup_logging(verbose: bool = False):
    """Configure one stream handler for all zipship loggers."""
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)

    # Replace rather than stack handlers when main() runs more than once
    for handler in list(root.handlers):
        if getattr(handler, "_zipship", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    handler._zipship = True
    root.addHandler(handler)


def _banner(title: str):
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70)


# ============================================================
# Pipeline Stages
# ============================================================

def stage_zip(job: BuildJob, config: ReleaseConfig) -> Optional[BuildResult]:
    """
    Stage 1: Build the archive.

    Args:
        job: Build configuration
        config: Release configuration (dry run, progress)

    Returns:
        BuildResult, or None in dry-run mode
    """
    _banner("STAGE 1: ZIP")

    if config.dry_run:
        print(f"[DRYRUN] Would zip {job.source} → {job.output}")
        return None

    print(f"\nZipping {job.source}")
    print(f"  Output:      {job.output}")
    print(f"  Compression: {job.compression}")
    print(f"  Workers:     {job.workers}")
    if job.exclude:
        print(f"  Exclude:     {', '.join(job.exclude)}")
    if job.reproducible:
        print("  Layout:      sorted (reproducible)")

    tracker = ProgressTracker()
    bar = ProgressBar(enabled=config.show_progress and sys.stderr.isatty())
    tracker.subscribe(bar)
    try:
        result = build(job, tracker)
    finally:
        bar.close()

    for failure in result.failed:
        print(f"⚠️ Failed to zip {failure.path}: {failure.reason}", file=sys.stderr)

    mark = "✓" if result.verdict == "success" else ("⚠" if result.ok else "✗")
    print(f"\n{mark} Zip completed: {result.archive_path} ({result.file_count} entries in {result.elapsed:.2f}s)")
    return result


def stage_hash(archive: str, config: ReleaseConfig) -> str:
    """Stage 2: Write the SHA-256 sidecar."""
    _banner("STAGE 2: HASH")
    hash_path = archive + ".sha256"
    if config.dry_run:
        print(f"[DRYRUN] Would generate SHA256 → {hash_path}")
        return hash_path
    hash_path = str(write_hash_file(archive))
    print(f"\n✓ SHA256 written to {hash_path}")
    return hash_path


def stage_sign(hash_path: str, config: ReleaseConfig) -> str:
    """Stage 3: Sign the sidecar with gpg."""
    _banner("STAGE 3: SIGN")
    signature = hash_path + ".asc"
    if config.dry_run:
        print(f"[DRYRUN] Would sign {hash_path} → {signature}")
        return signature
    signature = str(sign_file(hash_path))
    print(f"\n✓ Signature file created: {signature}")
    return signature


def stage_copy(files: List[str], config: ReleaseConfig) -> List[str]:
    """Stage 4: Distribute the archive and sidecars."""
    _banner("STAGE 4: COPY")
    method = "robocopy" if config.use_robocopy else "copy"
    print(f"\nDistributing {len(files)} file(s) to {config.copy_to} ({method})")
    copied = distribute(
        files,
        config.copy_to,
        user=config.user,
        password=config.password,
        use_robocopy=config.use_robocopy,
        dry_run=config.dry_run,
    )
    if config.dry_run:
        for target in copied:
            print(f"[DRYRUN] Would copy → {target}")
    else:
        print(f"\n✓ Copied to {config.copy_to}")
    return copied


def stage_verify(archive: str, config: ReleaseConfig) -> bool:
    """Stage 5: Verify the remote archive against its sidecar."""
    _banner("STAGE 5: VERIFY")
    if config.dry_run:
        print(f"[DRYRUN] Would verify SHA256 on {config.copy_to}")
        return False
    digest = verify_remote(config.copy_to, Path(archive).name, config.user, config.password)
    print(f"\n✓ Remote file hash verified successfully ({digest})")
    return True


# ============================================================
# Main Pipeline
# ============================================================

def run_pipeline(job: BuildJob, config: Optional[ReleaseConfig] = None) -> PipelineStats:
    """
    Run zip and the configured release stages.

    Release stages are skipped when the build verdict is failure.

    Args:
        job: Build configuration
        config: Release configuration (optional)

    Returns:
        PipelineStats object with execution statistics
    """
    if config is None:
        config = ReleaseConfig()

    stats = PipelineStats()
    pipeline_start = time.time()

    print("\n" + "╔" + "═" * 68 + "╗")
    print("║" + " " * 26 + "ZIPSHIP PIPELINE" + " " * 26 + "║")
    print("╚" + "═" * 68 + "╝")

    # Stage 1: Zip
    start = time.time()
    result = stage_zip(job, config)
    stats.zip_time = time.time() - start
    archive = job.output
    if result is not None:
        archive = result.archive_path
        stats.archive_path = result.archive_path
        stats.entries_written = result.file_count
        stats.files_total = result.total
        stats.bytes_in = result.bytes_in
        stats.skipped = result.failed_files
        stats.verdict = result.verdict
        if not result.ok:
            print("\n✗ Strict mode: skipped files turn the build into a failure")
            stats.total_time = time.time() - pipeline_start
            stats.print_summary()
            return stats

    files = [archive]

    # Stage 2: Hash
    if config.write_hash:
        start = time.time()
        stats.hash_path = stage_hash(archive, config)
        stats.hash_time = time.time() - start
        files.append(stats.hash_path)

    # Stage 3: Sign
    if config.sign and stats.hash_path:
        start = time.time()
        stats.signature_path = stage_sign(stats.hash_path, config)
        stats.sign_time = time.time() - start
        files.append(stats.signature_path)

    # Stage 4: Copy
    if config.copy_to:
        start = time.time()
        stats.copied = stage_copy(files, config)
        stats.copy_time = time.time() - start

    # Stage 5: Verify
    if config.verify_target and config.copy_to and stats.hash_path:
        start = time.time()
        stats.verified = stage_verify(archive, config)
        stats.verify_time = time.time() - start

    stats.total_time = time.time() - pipeline_start
    stats.print_summary()
    return stats


# ============================================================
# CLI Interface
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zipship",
        description="Zipship - parallel deterministic ZIP builder with release steps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ./site --out site.zip
  %(prog)s --src ./site --out site.zip --exclude "**/*.log" --exclude ".git/"
  %(prog)s ./site --hash --sign --copyto \\\\\\\\host\\\\share --verify-target
  %(prog)s ./site --hash --copyto https://artifacts.example.com/drops/
        """
    )

    # Input / output
    parser.add_argument(
        "source",
        nargs="?",
        help="Source file or directory to zip"
    )
    parser.add_argument(
        "--src",
        help="Source file or directory to zip"
    )
    parser.add_argument(
        "--out",
        default="output.zip",
        help="Output zip file path (default: output.zip)"
    )

    # Build configuration
    parser.add_argument(
        "--compression",
        choices=["store", "deflate"],
        default="deflate",
        help="Compression method (default: deflate)"
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Exclude pattern, repeatable (e.g. --exclude '**/*.log' --exclude '.git/')"
    )
    parser.add_argument(
        "--exclude-from",
        metavar="FILE",
        help="Read exclude patterns from a gitignore-style file"
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=default_workers(),
        help="Number of parallel workers for directories (default: CPU count)"
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail the build if any file cannot be archived"
    )
    parser.add_argument(
        "--reproducible",
        action="store_true",
        help="Write entries in sorted order so output bytes do not depend on --threads"
    )
    parser.add_argument(
        "--no-progress",
        action="store_false",
        dest="progress",
        help="Disable the progress bar"
    )

    # Release steps
    parser.add_argument(
        "--hash",
        action="store_true",
        help="Write SHA256 hash file (<out>.sha256)"
    )
    parser.add_argument(
        "--sign",
        action="store_true",
        help="Sign the SHA256 file using gpg (requires --hash)"
    )
    parser.add_argument(
        "--copyto",
        help="Copy files to a directory, UNC share or http(s) URL"
    )
    parser.add_argument(
        "--user",
        help="Username for the network share or HTTP upload"
    )
    parser.add_argument(
        "--pass",
        dest="password",
        help="Password for the network share or HTTP upload"
    )
    parser.add_argument(
        "--use-robocopy",
        action="store_true",
        help="Use robocopy instead of a regular copy"
    )
    parser.add_argument(
        "--verify-target",
        action="store_true",
        help="Verify SHA256 after copy (requires --hash and --copyto)"
    )
    parser.add_argument(
        "--dryrun",
        action="store_true",
        help="Simulate all actions without creating or copying files"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with CLI argument parsing."""
    parser = build_parser()
    args = parser.parse_args(argv)

    source = args.src or args.source
    if not source:
        parser.print_help()
        print("\n❌ Please provide a source path (positional or --src)", file=sys.stderr)
        return 1
    if args.sign and not args.hash:
        print("❌ --sign requires --hash", file=sys.stderr)
        return 1
    if args.verify_target and not (args.hash and args.copyto):
        print("❌ --verify-target requires --hash and --copyto", file=sys.stderr)
        return 1

    setup_logging(args.verbose)

    try:
        patterns = list(args.exclude)
        if args.exclude_from:
            patterns.extend(load_pattern_file(args.exclude_from))

        job = BuildJob(
            source=source,
            output=args.out,
            compression=args.compression,
            exclude=tuple(patterns),
            workers=args.threads,
            strict=args.strict,
            reproducible=args.reproducible,
        )
        config = ReleaseConfig(
            write_hash=args.hash,
            sign=args.sign,
            copy_to=args.copyto,
            user=args.user,
            password=args.password,
            use_robocopy=args.use_robocopy,
            verify_target=args.verify_target,
            dry_run=args.dryrun,
            show_progress=args.progress,
        )

        stats = run_pipeline(job, config)
    except (ZipperError, IngestError, ReleaseError) as e:
        print(f"\n✗ Pipeline failed: {e}", file=sys.stderr)
        return 1

    return 0 if stats.verdict != "failure" else 1


if __name__ == "__main__":
    sys.exit(main())
