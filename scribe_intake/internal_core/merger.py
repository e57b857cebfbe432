from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import aiofiles.os

from .audit import AuditLog
from .contracts import MergedArtifact
from .errors import FailureKind, PipelineFailure, SessionError
from .session_tracker import SessionTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    artifact: Optional[MergedArtifact] = None
    failure: Optional[PipelineFailure] = None

    @property
    def ok(self) -> bool:
        return self.artifact is not None


class StreamMerger:
    def __init__(
        self,
        tracker: SessionTracker,
        artifact_dir: Path,
        *,
        buffer_bytes: int = 64 * 1024,
        audit: Optional[AuditLog] = None,
    ):
        self._tracker = tracker
        self._artifact_dir = Path(artifact_dir)
        self._buffer_bytes = max(1024, int(buffer_bytes))
        self._audit = audit or AuditLog()
        self._artifacts: Dict[str, MergedArtifact] = {}
        self._inflight: Dict[str, "asyncio.Task[MergeResult]"] = {}
        self.merge_runs = 0

    def cached(self, session_id: str) -> Optional[MergedArtifact]:
        return self._artifacts.get(session_id)

    async def merge(self, session_id: str) -> MergeResult:
        cached = self._artifacts.get(session_id)
        if cached is not None:
            return MergeResult(artifact=cached)

        task = self._inflight.get(session_id)
        if task is None:
            if not self._tracker.is_complete(session_id):
                session = self._tracker.get(session_id)
                raise SessionError(
                    FailureKind.INCOMPLETE_SESSION,
                    f"Session {session_id} has {len(session.chunks)}/{session.total_chunks} chunks.",
                    session_id,
                    missing_indices=session.missing_indices(),
                )
            task = asyncio.ensure_future(self._run(session_id))
            self._inflight[session_id] = task
            task.add_done_callback(lambda _t, sid=session_id: self._inflight.pop(sid, None))
        return await asyncio.shield(task)

    async def _run(self, session_id: str) -> MergeResult:
        self.merge_runs += 1
        session = self._tracker.get(session_id)
        records = self._tracker.chunk_records(session_id)
        started = time.monotonic()

        await aiofiles.os.makedirs(self._artifact_dir, exist_ok=True)
        final_path = self._artifact_dir / f"{session_id}.audio"
        part_path = self._artifact_dir / f"{session_id}.{uuid.uuid4().hex[:8]}.part"
        digest = hashlib.sha256()
        written = 0

        try:
            # Destination stays open across every chunk; it is closed (end of
            # stream) only after the last index has been copied.
            async with aiofiles.open(part_path, "wb") as dest:
                for expected_index, record in enumerate(records):
                    if record.index != expected_index:
                        raise OSError(f"chunk {expected_index} missing from registry")
                    async with aiofiles.open(record.path, "rb") as src:
                        while True:
                            block = await src.read(self._buffer_bytes)
                            if not block:
                                break
                            digest.update(block)
                            await dest.write(block)
                            written += len(block)
                await dest.flush()
            await aiofiles.os.replace(part_path, final_path)
        except OSError as exc:
            await _remove_quietly(part_path)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._audit.log_event(session_id, "MERGE_FAILED", "MERGE_READ", str(exc), elapsed_ms)
            logger.exception("merge failed", extra={"session_id": session_id})
            return MergeResult(
                failure=PipelineFailure(
                    kind=FailureKind.MERGE_FAILED,
                    message=f"Failed to reassemble upload: {exc}",
                    detail={"bytes_written": written},
                )
            )
        except BaseException:
            await _remove_quietly(part_path)
            raise

        artifact = MergedArtifact(
            session_id=session_id,
            path=final_path,
            size_bytes=written,
            sha256=digest.hexdigest(),
            chunk_count=len(records),
            recorded_bytes=sum(r.size_bytes for r in records),
            declared_size=session.total_size,
            file_type=session.file_type,
            expected_sha256=session.expected_sha256,
        )
        self._artifacts[session_id] = artifact
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._audit.log_event(
            session_id,
            "MERGE_COMPLETED",
            "MERGE_OK",
            f"chunks={artifact.chunk_count} bytes={artifact.size_bytes} sha256={artifact.sha256}",
            elapsed_ms,
        )
        # Chunk records never outlive a successful merge.
        await self._tracker.release(session_id)
        return MergeResult(artifact=artifact)

    async def discard(self, session_id: str) -> None:
        artifact = self._artifacts.pop(session_id, None)
        if artifact is not None:
            await _remove_quietly(artifact.path)


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
