from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .audit import AuditLog
from .chunk_store import ChunkStore
from .contracts import ChunkReceipt, ChunkRecord, UploadSessionStatus
from .errors import FailureKind, SessionError
from .integrity import normalize_file_type

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    session_id: str
    total_chunks: int
    total_size: int
    file_type: str
    created_at: float
    expires_at: float
    file_name: Optional[str] = None
    expected_sha256: Optional[str] = None
    chunks: Dict[int, ChunkRecord] = field(default_factory=dict)
    bytes_received: int = 0
    closed: bool = False
    # Set once finalize owns the session; only release() may destroy it then.
    claimed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    completed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def is_complete(self) -> bool:
        return len(self.chunks) == self.total_chunks

    def missing_indices(self, limit: int = 50) -> List[int]:
        out: List[int] = []
        for index in range(self.total_chunks):
            if index not in self.chunks:
                out.append(index)
                if len(out) >= limit:
                    break
        return out


class SessionTracker:
    def __init__(
        self,
        chunk_store: ChunkStore,
        *,
        ttl_seconds: int,
        max_upload_bytes: int,
        max_chunks: int,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._chunks = chunk_store
        self._ttl_seconds = ttl_seconds
        self._max_upload_bytes = max_upload_bytes
        self._max_chunks = max_chunks
        self._audit = audit or AuditLog()
        self._clock = clock
        # Writers only ever touch one entry under that entry's lock.
        self._sessions: Dict[str, UploadSession] = {}

    def open(
        self,
        total_chunks: int,
        total_size: int,
        file_type_hint: str,
        *,
        file_name: Optional[str] = None,
        expected_sha256: Optional[str] = None,
    ) -> str:
        if not 1 <= total_chunks <= self._max_chunks:
            raise SessionError(
                FailureKind.INVALID_REQUEST,
                f"total_chunks must be between 1 and {self._max_chunks}.",
                total_chunks=total_chunks,
            )
        if total_size <= 0:
            raise SessionError(FailureKind.INVALID_REQUEST, "total_size must be positive.")
        if total_size > self._max_upload_bytes:
            raise SessionError(
                FailureKind.UPLOAD_TOO_LARGE,
                f"Upload of {total_size} bytes exceeds the {self._max_upload_bytes} byte limit.",
                total_size=total_size,
                max_upload_bytes=self._max_upload_bytes,
            )
        if total_chunks > total_size:
            raise SessionError(
                FailureKind.INVALID_REQUEST,
                "total_chunks cannot exceed total_size.",
            )
        file_type = normalize_file_type(file_type_hint)
        if file_type is None:
            raise SessionError(
                FailureKind.UNSUPPORTED_FILE_TYPE,
                f"Unsupported file type: {file_type_hint!r}.",
                file_type=file_type_hint,
            )

        session_id = uuid.uuid4().hex
        now = self._clock()
        self._sessions[session_id] = UploadSession(
            session_id=session_id,
            total_chunks=total_chunks,
            total_size=total_size,
            file_type=file_type,
            file_name=file_name,
            expected_sha256=(expected_sha256 or "").strip().lower() or None,
            created_at=now,
            expires_at=now + self._ttl_seconds,
        )
        self._audit.log_event(
            session_id,
            "SESSION_OPENED",
            "OPEN",
            f"chunks={total_chunks} size={total_size} type={file_type}",
        )
        return session_id

    def _get_open(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(FailureKind.UNKNOWN_SESSION, f"Unknown session_id: {session_id}", session_id)
        if session.closed:
            raise SessionError(FailureKind.SESSION_CLOSED, f"Session {session_id} is closed.", session_id)
        if session.expires_at <= self._clock():
            raise SessionError(FailureKind.UNKNOWN_SESSION, f"Session {session_id} has expired.", session_id)
        return session

    def _receipt(self, session: UploadSession, index: int, size_bytes: int, duplicate: bool) -> ChunkReceipt:
        return ChunkReceipt(
            session_id=session.session_id,
            index=index,
            size_bytes=size_bytes,
            duplicate=duplicate,
            chunks_received=len(session.chunks),
            total_chunks=session.total_chunks,
            bytes_received=session.bytes_received,
            complete=session.is_complete(),
        )

    async def accept_chunk(self, session_id: str, index: int, data: bytes) -> ChunkReceipt:
        session = self._get_open(session_id)
        if not 0 <= index < session.total_chunks:
            raise SessionError(
                FailureKind.CHUNK_INDEX_OUT_OF_RANGE,
                f"Chunk index {index} outside [0, {session.total_chunks}).",
                session_id,
                index=index,
            )
        if not data:
            raise SessionError(FailureKind.EMPTY_CHUNK, f"Chunk {index} is empty.", session_id, index=index)

        existing = session.chunks.get(index)
        if existing is not None:
            return self._duplicate(session, existing)

        try:
            staged = await self._chunks.stage(session_id, index, data)
        except FileNotFoundError:
            # The session directory was purged under us; report why.
            self._get_open(session_id)
            raise
        try:
            return await self.record_chunk(session_id, index, len(data), staged)
        except BaseException:
            await self._chunks.discard(staged)
            raise

    async def record_chunk(self, session_id: str, index: int, length: int, staged: Path) -> ChunkReceipt:
        session = self._sessions.get(session_id)
        if session is None:
            # Aborted or swept while the bytes were in flight.
            await self._chunks.discard(staged)
            await self._chunks.purge(session_id)
            raise SessionError(FailureKind.UNKNOWN_SESSION, f"Unknown session_id: {session_id}", session_id)

        async with session.lock:
            if session.closed:
                await self._chunks.discard(staged)
                await self._chunks.purge(session_id)
                raise SessionError(FailureKind.SESSION_CLOSED, f"Session {session_id} is closed.", session_id)

            existing = session.chunks.get(index)
            if existing is not None:
                await self._chunks.discard(staged)
                return self._duplicate(session, existing)

            if session.bytes_received + length > session.total_size:
                raise SessionError(
                    FailureKind.DECLARED_SIZE_EXCEEDED,
                    f"Chunk {index} would exceed the declared size of {session.total_size} bytes.",
                    session_id,
                    index=index,
                )

            record = await self._chunks.commit(staged, session_id, index, length)
            session.chunks[index] = record
            session.bytes_received += length
            if session.is_complete():
                session.completed.set()
            receipt = self._receipt(session, index, length, duplicate=False)

        self._audit.log_event(
            session_id,
            "CHUNK_RECEIVED",
            "CHUNK",
            f"index={index} bytes={length} received={receipt.chunks_received}/{receipt.total_chunks}",
        )
        return receipt

    def _duplicate(self, session: UploadSession, existing: ChunkRecord) -> ChunkReceipt:
        self._audit.log_event(session.session_id, "CHUNK_DUPLICATE", "CHUNK_DUP", f"index={existing.index}")
        return self._receipt(session, existing.index, existing.size_bytes, duplicate=True)

    def is_complete(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(FailureKind.UNKNOWN_SESSION, f"Unknown session_id: {session_id}", session_id)
        return session.is_complete()

    async def wait_until_complete(self, session_id: str, timeout: Optional[float] = None) -> bool:
        session = self._get_open(session_id)
        try:
            await asyncio.wait_for(session.completed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        if session.closed and not session.claimed:
            # Woken by abort or expiry, not by the last chunk.
            raise SessionError(FailureKind.SESSION_CLOSED, f"Session {session_id} is closed.", session_id)
        return True

    def claim(self, session_id: str) -> UploadSession:
        """Hand a complete session to finalize; abort and expiry leave it alone afterwards."""
        session = self._get_open(session_id)
        if not session.is_complete():
            raise SessionError(
                FailureKind.INCOMPLETE_SESSION,
                f"Session {session_id} has {len(session.chunks)}/{session.total_chunks} chunks.",
                session_id,
                missing_indices=session.missing_indices(),
            )
        session.claimed = True
        return session

    def get(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(FailureKind.UNKNOWN_SESSION, f"Unknown session_id: {session_id}", session_id)
        return session

    def status(self, session_id: str) -> UploadSessionStatus:
        session = self.get(session_id)
        return UploadSessionStatus(
            session_id=session.session_id,
            total_chunks=session.total_chunks,
            total_size=session.total_size,
            file_type=session.file_type,
            file_name=session.file_name,
            created_at=session.created_at,
            expires_at=session.expires_at,
            chunks_received=len(session.chunks),
            bytes_received=session.bytes_received,
            missing_indices=session.missing_indices(),
            complete=session.is_complete(),
        )

    def chunk_records(self, session_id: str) -> List[ChunkRecord]:
        session = self.get(session_id)
        return [session.chunks[i] for i in range(session.total_chunks) if i in session.chunks]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def _destroy(self, session_id: str, *, release_claimed: bool = False) -> Optional[UploadSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        async with session.lock:
            if session.claimed and not release_claimed:
                raise SessionError(
                    FailureKind.SESSION_CLOSED,
                    f"Session {session_id} is already being finalized.",
                    session_id,
                )
            session.closed = True
            session.completed.set()
            self._sessions.pop(session_id, None)
            await self._chunks.purge(session_id)
        return session

    async def release(self, session_id: str) -> None:
        await self._destroy(session_id, release_claimed=True)

    async def abort(self, session_id: str, reason: str = "client_abort") -> None:
        session = await self._destroy(session_id)
        if session is None:
            raise SessionError(FailureKind.UNKNOWN_SESSION, f"Unknown session_id: {session_id}", session_id)
        self._audit.log_event(session_id, "SESSION_ABORTED", "ABORT", f"reason={reason}")

    async def sweep_expired(self) -> List[str]:
        now = self._clock()
        expired = [
            sid for sid, s in list(self._sessions.items())
            if s.expires_at <= now and not s.claimed
        ]
        swept: List[str] = []
        for session_id in expired:
            try:
                session = await self._destroy(session_id)
            except SessionError:
                # Claimed by finalize while waiting for the lock.
                continue
            if session is not None:
                swept.append(session_id)
                self._audit.log_event(session_id, "SESSION_EXPIRED", "TTL", "reason=ttl_expired")
        if swept:
            logger.info("swept %d expired upload session(s)", len(swept))
        return swept


async def run_expiry_sweeper(
    tracker: SessionTracker,
    interval_sec: float,
    *,
    on_sweep: Optional[Callable[[], None]] = None,
) -> None:
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await tracker.sweep_expired()
            if on_sweep is not None:
                on_sweep()
        except Exception:
            logger.exception("expiry sweep failed")
