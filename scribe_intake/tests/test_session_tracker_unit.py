import asyncio
from pathlib import Path

import pytest

from scribe_intake.internal_core.audit import AuditLog
from scribe_intake.internal_core.chunk_store import ChunkStore
from scribe_intake.internal_core.errors import FailureKind, SessionError
from scribe_intake.internal_core.session_tracker import SessionTracker, run_expiry_sweeper


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make(tmp_path: Path, clock: _Clock | None = None, **overrides):
    store = ChunkStore(tmp_path / "chunks")
    audit = AuditLog()
    kwargs = {"ttl_seconds": 60, "max_upload_bytes": 1024 * 1024, "max_chunks": 100}
    kwargs.update(overrides)
    tracker = SessionTracker(store, audit=audit, clock=clock or _Clock(), **kwargs)
    return tracker, store, audit


def test_open_rejects_bad_declarations(tmp_path: Path) -> None:
    tracker, _, _ = _make(tmp_path, max_upload_bytes=1000, max_chunks=10)

    cases = [
        ((0, 100, "audio/wav"), FailureKind.INVALID_REQUEST),
        ((11, 100, "audio/wav"), FailureKind.INVALID_REQUEST),
        ((1, 0, "audio/wav"), FailureKind.INVALID_REQUEST),
        ((1, 1001, "audio/wav"), FailureKind.UPLOAD_TOO_LARGE),
        ((1, 100, "text/plain"), FailureKind.UNSUPPORTED_FILE_TYPE),
    ]
    for args, kind in cases:
        with pytest.raises(SessionError) as excinfo:
            tracker.open(*args)
        assert excinfo.value.kind == kind


def test_open_normalizes_type_hint_and_digest(tmp_path: Path) -> None:
    tracker, _, audit = _make(tmp_path)
    sid = tracker.open(2, 10, "application/octet-stream", expected_sha256="  ABCDEF  ")
    session = tracker.get(sid)
    assert session.file_type == "any"
    assert session.expected_sha256 == "abcdef"
    assert session.expires_at == 1060.0
    assert audit.types_for(sid) == ["SESSION_OPENED"]

    sid_m4a = tracker.open(1, 10, ".M4A")
    assert tracker.get(sid_m4a).file_type == "mp4"


@pytest.mark.asyncio
async def test_out_of_order_chunks_complete_session(tmp_path: Path) -> None:
    tracker, _, _ = _make(tmp_path)
    sid = tracker.open(3, 9, "wav")

    r2 = await tracker.accept_chunk(sid, 2, b"ccc")
    r0 = await tracker.accept_chunk(sid, 0, b"aaa")
    assert not r0.complete
    assert tracker.status(sid).missing_indices == [1]

    r1 = await tracker.accept_chunk(sid, 1, b"bbb")
    assert r2.chunks_received == 1
    assert r1.complete
    assert tracker.is_complete(sid)
    assert [rec.index for rec in tracker.chunk_records(sid)] == [0, 1, 2]
    assert tracker.status(sid).bytes_received == 9


@pytest.mark.asyncio
async def test_duplicate_chunk_is_benign_and_not_double_counted(tmp_path: Path) -> None:
    tracker, store, audit = _make(tmp_path)
    sid = tracker.open(2, 8, "wav")

    await tracker.accept_chunk(sid, 0, b"1234")
    dup = await tracker.accept_chunk(sid, 0, b"1234")

    assert dup.duplicate
    assert dup.bytes_received == 4
    assert dup.chunks_received == 1
    assert "CHUNK_DUPLICATE" in audit.types_for(sid)
    assert sorted(p.name for p in store.session_dir(sid).iterdir()) == ["chunk_000000.bin"]


@pytest.mark.asyncio
async def test_parallel_writes_for_one_session_do_not_lose_updates(tmp_path: Path) -> None:
    tracker, store, _ = _make(tmp_path)
    total = 20
    sid = tracker.open(total, total * 4, "wav")

    writes = [tracker.accept_chunk(sid, i, f"{i:04d}".encode()) for i in range(total)]
    # Retransmissions racing the originals.
    writes += [tracker.accept_chunk(sid, i, f"{i:04d}".encode()) for i in range(0, total, 3)]
    receipts = await asyncio.gather(*writes)

    assert sum(1 for r in receipts if not r.duplicate) == total
    assert tracker.is_complete(sid)
    assert tracker.status(sid).bytes_received == total * 4
    leftovers = [p.name for p in store.session_dir(sid).iterdir() if p.suffix == ".part"]
    assert leftovers == []


@pytest.mark.asyncio
async def test_chunk_validation_errors(tmp_path: Path) -> None:
    tracker, store, _ = _make(tmp_path)
    sid = tracker.open(2, 10, "wav")

    with pytest.raises(SessionError) as excinfo:
        await tracker.accept_chunk(sid, 2, b"x")
    assert excinfo.value.kind == FailureKind.CHUNK_INDEX_OUT_OF_RANGE

    with pytest.raises(SessionError) as excinfo:
        await tracker.accept_chunk(sid, 0, b"")
    assert excinfo.value.kind == FailureKind.EMPTY_CHUNK

    await tracker.accept_chunk(sid, 0, b"12345678")
    with pytest.raises(SessionError) as excinfo:
        await tracker.accept_chunk(sid, 1, b"12345")
    assert excinfo.value.kind == FailureKind.DECLARED_SIZE_EXCEEDED
    assert [p.name for p in store.session_dir(sid).iterdir()] == ["chunk_000000.bin"]

    with pytest.raises(SessionError) as excinfo:
        await tracker.accept_chunk("nope", 0, b"x")
    assert excinfo.value.kind == FailureKind.UNKNOWN_SESSION


@pytest.mark.asyncio
async def test_abort_releases_chunk_storage(tmp_path: Path) -> None:
    tracker, store, audit = _make(tmp_path)
    sid = tracker.open(2, 10, "wav")
    await tracker.accept_chunk(sid, 0, b"abc")
    assert store.session_dir(sid).exists()

    await tracker.abort(sid)

    assert sid not in tracker
    assert not store.session_dir(sid).exists()
    assert audit.types_for(sid)[-1] == "SESSION_ABORTED"
    with pytest.raises(SessionError) as excinfo:
        await tracker.abort(sid)
    assert excinfo.value.kind == FailureKind.UNKNOWN_SESSION


@pytest.mark.asyncio
async def test_write_landing_after_abort_leaves_no_orphans(tmp_path: Path) -> None:
    tracker, store, _ = _make(tmp_path)
    sid = tracker.open(2, 10, "wav")

    await tracker.accept_chunk(sid, 0, b"early")
    await tracker.abort(sid)
    assert not store.session_dir(sid).exists()

    # An in-flight write staged its bytes after the purge, recreating the dir.
    staged = await store.stage(sid, 1, b"late")
    assert staged.exists()
    with pytest.raises(SessionError) as excinfo:
        await tracker.record_chunk(sid, 1, 4, staged)
    assert excinfo.value.kind == FailureKind.UNKNOWN_SESSION
    assert not store.session_dir(sid).exists()


@pytest.mark.asyncio
async def test_sweep_expired_removes_stale_sessions_only(tmp_path: Path) -> None:
    clock = _Clock(1000.0)
    tracker, store, audit = _make(tmp_path, clock=clock, ttl_seconds=60)
    old = tracker.open(2, 10, "wav")
    await tracker.accept_chunk(old, 0, b"abc")
    clock.now = 1030.0
    fresh = tracker.open(2, 10, "wav")

    clock.now = 1061.0
    with pytest.raises(SessionError) as excinfo:
        await tracker.accept_chunk(old, 1, b"def")
    assert excinfo.value.kind == FailureKind.UNKNOWN_SESSION

    swept = await tracker.sweep_expired()

    assert swept == [old]
    assert old not in tracker
    assert fresh in tracker
    assert not store.session_dir(old).exists()
    assert audit.types_for(old)[-1] == "SESSION_EXPIRED"


@pytest.mark.asyncio
async def test_wait_until_complete_wakes_on_last_chunk(tmp_path: Path) -> None:
    tracker, _, _ = _make(tmp_path)
    sid = tracker.open(2, 4, "wav")

    assert await tracker.wait_until_complete(sid, timeout=0.01) is False

    waiter = asyncio.create_task(tracker.wait_until_complete(sid, timeout=5))
    await tracker.accept_chunk(sid, 1, b"cd")
    await asyncio.sleep(0)
    assert not waiter.done()
    await tracker.accept_chunk(sid, 0, b"ab")
    assert await waiter is True


@pytest.mark.asyncio
async def test_expiry_sweeper_runs_periodically(tmp_path: Path) -> None:
    clock = _Clock(1000.0)
    tracker, _, _ = _make(tmp_path, clock=clock, ttl_seconds=1)
    sid = tracker.open(1, 4, "wav")
    clock.now = 2000.0
    sweeps = []

    task = asyncio.create_task(run_expiry_sweeper(tracker, 0.01, on_sweep=lambda: sweeps.append(1)))
    for _ in range(100):
        if sweeps:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sweeps
    assert sid not in tracker


@pytest.mark.asyncio
async def test_abort_wakes_pending_completion_waiter(tmp_path: Path) -> None:
    tracker, _, _ = _make(tmp_path)
    sid = tracker.open(2, 4, "wav")
    await tracker.accept_chunk(sid, 0, b"ab")

    waiter = asyncio.create_task(tracker.wait_until_complete(sid))
    await asyncio.sleep(0)
    await tracker.abort(sid)

    done, _ = await asyncio.wait({waiter}, timeout=1)
    assert waiter in done
    with pytest.raises(SessionError) as excinfo:
        waiter.result()
    assert excinfo.value.kind == FailureKind.SESSION_CLOSED


@pytest.mark.asyncio
async def test_claimed_session_survives_sweep_and_abort(tmp_path: Path) -> None:
    clock = _Clock(1000.0)
    tracker, store, audit = _make(tmp_path, clock=clock, ttl_seconds=60)
    sid = tracker.open(2, 4, "wav")
    await tracker.accept_chunk(sid, 0, b"ab")

    with pytest.raises(SessionError) as excinfo:
        tracker.claim(sid)
    assert excinfo.value.kind == FailureKind.INCOMPLETE_SESSION
    assert excinfo.value.failure.detail["missing_indices"] == [1]

    await tracker.accept_chunk(sid, 1, b"cd")
    tracker.claim(sid)
    clock.now = 2000.0

    assert await tracker.sweep_expired() == []
    with pytest.raises(SessionError) as excinfo:
        await tracker.abort(sid)
    assert excinfo.value.kind == FailureKind.SESSION_CLOSED
    assert sid in tracker
    assert store.chunk_path(sid, 0).exists()
    assert "SESSION_EXPIRED" not in audit.types_for(sid)

    await tracker.release(sid)
    assert sid not in tracker
    assert not store.session_dir(sid).exists()


@pytest.mark.asyncio
async def test_chunk_write_racing_abort_reports_unknown_session(tmp_path: Path, monkeypatch) -> None:
    tracker, store, _ = _make(tmp_path)
    sid = tracker.open(2, 10, "wav")

    async def stage_after_purge(session_id, index, data):
        await tracker.abort(session_id)
        raise FileNotFoundError(2, "No such file or directory", str(store.session_dir(session_id)))

    monkeypatch.setattr(store, "stage", stage_after_purge)

    with pytest.raises(SessionError) as excinfo:
        await tracker.accept_chunk(sid, 0, b"abc")
    assert excinfo.value.kind == FailureKind.UNKNOWN_SESSION


@pytest.mark.asyncio
async def test_bytes_received_counts_only_committed_chunks(tmp_path: Path) -> None:
    tracker, _, _ = _make(tmp_path)
    sid = tracker.open(3, 10, "wav")

    await tracker.accept_chunk(sid, 0, b"1234")
    await tracker.accept_chunk(sid, 0, b"1234")
    with pytest.raises(SessionError):
        await tracker.accept_chunk(sid, 1, b"1234567")
    receipt = await tracker.accept_chunk(sid, 2, b"56")

    assert receipt.bytes_received == 6
    assert tracker.get(sid).bytes_received == 6
    assert tracker.status(sid).bytes_received == 6
