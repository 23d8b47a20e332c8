#!/usr/bin/env python3
"""
Test the zipper subsystem: worker pool, sink discipline and build results.
"""

import io
import os
import threading
import zipfile

import pytest

from ingest import enumerate_files
from zipper import (
    FIXED_TIMESTAMP,
    ArchiveBuilder,
    ArchiveEntry,
    ArchiveSink,
    BuildAborted,
    BuildJob,
    CompressionMode,
    ConfigurationError,
    FinalizationError,
    ProgressTracker,
    WorkerPool,
    build,
)


def make_tree(root, files):
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
    return root


def read_archive(path):
    with zipfile.ZipFile(path) as zf:
        assert zf.testzip() is None
        return {name: zf.read(name) for name in zf.namelist()}


def sample_tree(root, count=40):
    files = {}
    for i in range(count):
        files[f"dir{i % 4}/sub{i % 3}/file{i:03d}.txt"] = f"content {i}\n" * (i + 1)
    files["top.bin"] = bytes(range(256)) * 64
    return make_tree(root, files)


# ============================================================
# Directory builds
# ============================================================

def test_one_entry_per_file_with_relative_names(tmp_path):
    src = sample_tree(tmp_path / "src")
    out = tmp_path / "out.zip"

    result = build(BuildJob(source=src, output=out, workers=4))

    entries = read_archive(out)
    expected = sorted(
        p.relative_to(src).as_posix() for p in src.rglob("*") if p.is_file()
    )
    assert sorted(entries) == expected
    assert result.file_count == len(expected)
    assert result.failed == []
    assert result.verdict == "success"
    assert result.archive_path == str(out)


def test_round_trip_contents(tmp_path):
    src = sample_tree(tmp_path / "src")
    out = tmp_path / "out.zip"

    build(BuildJob(source=src, output=out, workers=3))

    for name, data in read_archive(out).items():
        assert (src / name).read_bytes() == data


def test_exclusion_scenario(tmp_path):
    src = make_tree(tmp_path / "src", {
        "a.txt": "hi",
        "b/log.txt": "noise",
        "b/keep.txt": "k",
    })
    out = tmp_path / "out.zip"

    build(BuildJob(source=src, output=out, exclude=["**/log.txt"], workers=2))

    assert read_archive(out) == {"a.txt": b"hi", "b/keep.txt": b"k"}


def test_no_entry_matches_any_pattern(tmp_path):
    src = sample_tree(tmp_path / "src")
    out = tmp_path / "out.zip"
    patterns = ["dir1/", "**/sub2/*.txt", "*.bin"]

    build(BuildJob(source=src, output=out, exclude=patterns, workers=4))

    names = list(read_archive(out))
    assert names
    for name in names:
        assert not name.startswith("dir1/")
        assert "/sub2/" not in name
        assert not name.endswith(".bin")


def test_fixed_timestamp_and_uniform_method(tmp_path):
    src = sample_tree(tmp_path / "src", count=5)
    os.utime(src / "top.bin", (1_700_000_000, 1_700_000_000))

    for mode, method in [("store", zipfile.ZIP_STORED), ("deflate", zipfile.ZIP_DEFLATED)]:
        out = tmp_path / f"{mode}.zip"
        build(BuildJob(source=src, output=out, compression=mode, workers=2))
        with zipfile.ZipFile(out) as zf:
            for info in zf.infolist():
                assert info.date_time == FIXED_TIMESTAMP
                assert info.compress_type == method
                assert info.create_system == 3
                assert "\\" not in info.filename


def test_serial_builds_are_byte_identical(tmp_path):
    src = sample_tree(tmp_path / "src")
    first = tmp_path / "first.zip"
    second = tmp_path / "second.zip"

    build(BuildJob(source=src, output=first, workers=1))
    build(BuildJob(source=src, output=second, workers=1))

    assert first.read_bytes() == second.read_bytes()


def test_reproducible_layout_independent_of_workers(tmp_path):
    src = sample_tree(tmp_path / "src", count=60)
    serial = tmp_path / "serial.zip"
    parallel = tmp_path / "parallel.zip"

    build(BuildJob(source=src, output=serial, workers=1))
    build(BuildJob(source=src, output=parallel, workers=6, reproducible=True))

    assert serial.read_bytes() == parallel.read_bytes()
    with zipfile.ZipFile(parallel) as zf:
        names = zf.namelist()
    assert names == sorted(names)


@pytest.mark.parametrize("workers", [1, 2, 5, 16])
def test_worker_count_does_not_change_contents(tmp_path, workers):
    src = sample_tree(tmp_path / "src")
    baseline = tmp_path / "baseline.zip"
    out = tmp_path / f"w{workers}.zip"

    build(BuildJob(source=src, output=baseline, workers=1))
    build(BuildJob(source=src, output=out, workers=workers))

    assert read_archive(out) == read_archive(baseline)


def test_empty_directory_produces_empty_archive(tmp_path):
    src = tmp_path / "empty"
    src.mkdir()
    out = tmp_path / "out.zip"

    result = build(BuildJob(source=src, output=out, workers=4))

    assert result.file_count == 0
    assert result.verdict == "success"
    assert read_archive(out) == {}


def test_previous_output_inside_source_is_not_archived(tmp_path):
    src = make_tree(tmp_path / "src", {"a.txt": "a"})
    out = src / "release.zip"

    build(BuildJob(source=src, output=out, workers=2))
    build(BuildJob(source=src, output=out, workers=2))

    assert read_archive(out) == {"a.txt": b"a"}
    assert not [p for p in src.iterdir() if ".partial-" in p.name]


def test_large_files_spill_to_disk(tmp_path):
    payload = os.urandom(256 * 1024)
    src = make_tree(tmp_path / "src", {"big.dat": payload, "small.txt": "s"})
    out = tmp_path / "out.zip"

    build(BuildJob(source=src, output=out, workers=2, buffer_limit=4096))

    assert read_archive(out) == {"big.dat": payload, "small.txt": b"s"}


# ============================================================
# Single file mode
# ============================================================

def test_single_file_source(tmp_path):
    source = make_tree(tmp_path, {"nested/notes.md": "# notes\n"}) / "nested" / "notes.md"
    out = tmp_path / "single.zip"

    result = build(BuildJob(source=source, output=out, workers=8))

    assert result.single_file
    assert result.file_count == 1
    assert read_archive(out) == {"notes.md": b"# notes\n"}


# ============================================================
# Partial failure
# ============================================================

def _fail_on(monkeypatch, name):
    import zipper.pool

    real_open = zipper.pool.open_source

    def open_source(descriptor):
        if descriptor.relative_path == name:
            raise PermissionError(13, "Permission denied", descriptor.absolute_path)
        return real_open(descriptor)

    monkeypatch.setattr(zipper.pool, "open_source", open_source)


def test_unreadable_file_is_skipped_and_reported(tmp_path, monkeypatch):
    src = make_tree(tmp_path / "src", {f"f{i:03d}.txt": str(i) for i in range(100)})
    out = tmp_path / "out.zip"
    _fail_on(monkeypatch, "f042.txt")

    result = build(BuildJob(source=src, output=out, workers=8))

    entries = read_archive(out)
    assert len(entries) == 99
    assert "f042.txt" not in entries
    assert result.file_count == 99
    assert result.failed_files == ["f042.txt"]
    assert result.failed[0].reason == "Permission denied"
    assert result.verdict == "success_with_warnings"
    assert result.ok


def test_strict_mode_turns_skips_into_failure(tmp_path, monkeypatch):
    src = make_tree(tmp_path / "src", {f"f{i:03d}.txt": str(i) for i in range(100)})
    out = tmp_path / "out.zip"
    _fail_on(monkeypatch, "f042.txt")

    result = build(BuildJob(source=src, output=out, workers=8, strict=True))

    assert result.verdict == "failure"
    assert not result.ok
    assert result.file_count == 99


def test_sequenced_pool_survives_failures(tmp_path, monkeypatch):
    src = make_tree(tmp_path / "src", {f"f{i:03d}.txt": str(i) for i in range(30)})
    out = tmp_path / "out.zip"
    _fail_on(monkeypatch, "f000.txt")

    result = build(BuildJob(source=src, output=out, workers=4, reproducible=True))

    assert result.failed_files == ["f000.txt"]
    with zipfile.ZipFile(out) as zf:
        assert zf.namelist() == [f"f{i:03d}.txt" for i in range(1, 30)]


class ShortStream(io.BytesIO):
    """Staged payload that fails after its first few bytes."""

    def __init__(self, data, fail_after=4):
        super().__init__(data)
        self.fail_after = fail_after

    def read(self, size=-1):
        if self.tell() >= self.fail_after:
            raise OSError(28, "No space left on device")
        return super().read(self.fail_after - self.tell())


def _fail_mid_copy(monkeypatch, name):
    import zipper.builder
    import zipper.pool

    real_stage = zipper.pool.stage_file

    def stage_file(descriptor, buffer_limit=zipper.pool.DEFAULT_BUFFER_LIMIT):
        staged, size = real_stage(descriptor, buffer_limit)
        if descriptor.relative_path != name:
            return staged, size
        with staged:
            return ShortStream(staged.read()), size

    monkeypatch.setattr(zipper.pool, "stage_file", stage_file)
    monkeypatch.setattr(zipper.builder, "stage_file", stage_file)


@pytest.mark.parametrize("workers,reproducible", [(1, False), (4, False), (4, True)])
@pytest.mark.parametrize("compression", ["store", "deflate"])
def test_failed_payload_copy_leaves_no_entry(tmp_path, monkeypatch, workers, reproducible, compression):
    src = make_tree(tmp_path / "src", {
        "a.txt": "alpha alpha",
        "bad.txt": "0123456789" * 10,
        "c.txt": "gamma gamma",
    })
    out = tmp_path / "out.zip"
    _fail_mid_copy(monkeypatch, "bad.txt")

    result = build(BuildJob(
        source=src, output=out, workers=workers,
        reproducible=reproducible, compression=compression,
    ))

    assert result.failed_files == ["bad.txt"]
    assert result.failed[0].stage == "write"
    assert result.file_count == 2
    assert result.verdict == "success_with_warnings"
    assert read_archive(out) == {"a.txt": b"alpha alpha", "c.txt": b"gamma gamma"}


def test_failed_payload_copy_single_file(tmp_path, monkeypatch):
    source = make_tree(tmp_path, {"bad.txt": "0123456789" * 10}) / "bad.txt"
    out = tmp_path / "single.zip"
    _fail_mid_copy(monkeypatch, "bad.txt")

    result = build(BuildJob(source=source, output=out))

    assert result.single_file
    assert result.failed_files == ["bad.txt"]
    assert result.failed[0].stage == "write"
    assert result.file_count == 0
    assert read_archive(out) == {}


def test_sink_accepts_entries_after_failed_copy(tmp_path):
    sink = ArchiveSink(tmp_path / "out.zip", CompressionMode.DEFLATE)
    sink.open()
    with pytest.raises(OSError):
        with sink.lease() as handle:
            handle.write(
                ArchiveEntry.for_file("bad", CompressionMode.DEFLATE, 100),
                ShortStream(b"x" * 100),
            )
    with sink.lease() as handle:
        handle.write(ArchiveEntry.for_file("bad", CompressionMode.DEFLATE, 2), io.BytesIO(b"ok"))
    sink.finalize()

    assert sink.entry_count == 1
    assert read_archive(tmp_path / "out.zip") == {"bad": b"ok"}


@pytest.mark.skipif(
    not hasattr(os, "geteuid") or os.geteuid() == 0,
    reason="permission bits are not enforced for root",
)
def test_chmod_unreadable_file(tmp_path):
    src = make_tree(tmp_path / "src", {"ok.txt": "ok", "locked.txt": "secret"})
    (src / "locked.txt").chmod(0)
    out = tmp_path / "out.zip"
    try:
        result = build(BuildJob(source=src, output=out, workers=2))
    finally:
        (src / "locked.txt").chmod(0o644)

    assert result.failed_files == ["locked.txt"]
    assert read_archive(out) == {"ok.txt": b"ok"}


def test_file_removed_after_enumeration(tmp_path):
    src = make_tree(tmp_path / "src", {"a.txt": "a", "gone.txt": "g"})
    descriptors = enumerate_files(src)
    (src / "gone.txt").unlink()

    sink = ArchiveSink(tmp_path / "out.zip", CompressionMode.DEFLATE)
    sink.open()
    outcome = WorkerPool(sink, CompressionMode.DEFLATE, workers=2).run(descriptors)
    sink.finalize()

    assert outcome.written == 1
    assert [e.path for e in outcome.failed] == ["gone.txt"]
    assert outcome.failed[0].stage == "read"
    assert read_archive(tmp_path / "out.zip") == {"a.txt": b"a"}


# ============================================================
# Configuration errors
# ============================================================

@pytest.mark.parametrize("kwargs", [
    {"workers": 0},
    {"workers": -3},
    {"compression": "lzma"},
    {"exclude": ["!keep"]},
    {"exclude": [""]},
])
def test_invalid_job_rejected_before_io(tmp_path, kwargs):
    src = make_tree(tmp_path / "src", {"a.txt": "a"})
    out = tmp_path / "out.zip"

    with pytest.raises(ConfigurationError):
        build(BuildJob(source=src, output=out, **kwargs))
    assert not out.exists()


def test_single_exclude_string_is_one_pattern(tmp_path):
    src = make_tree(tmp_path / "src", {"a.txt": "a", "logs/run.log": "noise"})
    out = tmp_path / "out.zip"

    job = BuildJob(source=src, output=out, exclude="*.log")
    result = build(job)

    assert job.exclude == ("*.log",)
    assert result.file_count == 1
    assert read_archive(out) == {"a.txt": b"a"}


def test_missing_source_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        build(BuildJob(source=tmp_path / "missing", output=tmp_path / "out.zip"))


def test_output_directory_rejected(tmp_path):
    src = make_tree(tmp_path / "src", {"a.txt": "a"})
    with pytest.raises(ConfigurationError):
        build(BuildJob(source=src, output=tmp_path))


# ============================================================
# Cancellation and finalization
# ============================================================

def test_abort_mid_build_leaves_no_archive(tmp_path):
    src = sample_tree(tmp_path / "src", count=50)
    out = tmp_path / "out.zip"
    tracker = ProgressTracker()
    builder = ArchiveBuilder(BuildJob(source=src, output=out, workers=2), tracker)
    tracker.subscribe(lambda snapshot: builder.abort())

    with pytest.raises(BuildAborted):
        builder.build()

    assert not out.exists()
    assert [p.name for p in tmp_path.iterdir()] == ["src"]


def test_abort_before_build(tmp_path):
    src = sample_tree(tmp_path / "src", count=3)
    out = tmp_path / "out.zip"
    builder = ArchiveBuilder(BuildJob(source=src, output=out, workers=2))
    builder.abort()

    with pytest.raises(BuildAborted):
        builder.build()
    assert not out.exists()


def test_finalization_failure_leaves_no_archive(tmp_path, monkeypatch):
    import zipper.sink

    src = make_tree(tmp_path / "src", {"a.txt": "a"})
    out = tmp_path / "out" / "out.zip"

    def no_space(*args, **kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(zipper.sink.os, "replace", no_space)

    with pytest.raises(FinalizationError):
        build(BuildJob(source=src, output=out, workers=2))
    assert list((tmp_path / "out").iterdir()) == []


def test_sink_rejects_writes_after_finalize(tmp_path):
    sink = ArchiveSink(tmp_path / "out.zip", CompressionMode.STORE)
    sink.open()
    sink.finalize()

    with pytest.raises(ValueError):
        with sink.lease():
            pass
    with pytest.raises(ValueError):
        sink.finalize()


def test_sink_rejects_duplicate_names(tmp_path):
    sink = ArchiveSink(tmp_path / "out.zip", CompressionMode.STORE)
    sink.open()
    entry = ArchiveEntry.for_file("a.txt", CompressionMode.STORE, 1)
    with sink.lease() as handle:
        handle.write(entry, io.BytesIO(b"a"))
    with pytest.raises(ValueError):
        with sink.lease() as handle:
            handle.write(entry, io.BytesIO(b"a"))
    sink.discard()
    assert not (tmp_path / "out.zip").exists()


def test_entry_handle_is_single_use(tmp_path):
    sink = ArchiveSink(tmp_path / "out.zip", CompressionMode.STORE)
    sink.open()
    with sink.lease() as handle:
        handle.write(ArchiveEntry.for_file("a", CompressionMode.STORE, 1), io.BytesIO(b"a"))
        with pytest.raises(ValueError):
            handle.write(ArchiveEntry.for_file("b", CompressionMode.STORE, 1), io.BytesIO(b"b"))
    with pytest.raises(ValueError):
        handle.write(ArchiveEntry.for_file("c", CompressionMode.STORE, 1), io.BytesIO(b"c"))
    sink.finalize()

    assert read_archive(tmp_path / "out.zip") == {"a": b"a"}


# ============================================================
# Progress
# ============================================================

def test_progress_tracker_concurrent_increments():
    tracker = ProgressTracker(total=8000)

    def worker():
        for _ in range(1000):
            tracker.increment()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snapshot = tracker.snapshot()
    assert snapshot.done == 8000
    assert snapshot.fraction == 1.0


def test_progress_reaches_total_including_failures(tmp_path, monkeypatch):
    src = make_tree(tmp_path / "src", {f"f{i}.txt": "x" for i in range(10)})
    _fail_on(monkeypatch, "f3.txt")
    tracker = ProgressTracker()
    seen = []
    tracker.subscribe(lambda snapshot: seen.append(snapshot.done))

    build(BuildJob(source=src, output=tmp_path / "out.zip", workers=3), tracker)

    assert tracker.snapshot().done == 10
    assert tracker.snapshot().total == 10
    assert sorted(seen) == list(range(1, 11))


def test_broken_progress_listener_does_not_fail_build(tmp_path):
    src = make_tree(tmp_path / "src", {"a.txt": "a"})
    tracker = ProgressTracker()

    def explode(snapshot):
        raise RuntimeError("display gone")

    tracker.subscribe(explode)
    result = build(BuildJob(source=src, output=tmp_path / "out.zip", workers=1), tracker)

    assert result.file_count == 1
