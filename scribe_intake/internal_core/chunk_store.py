from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from pathlib import Path

import aiofiles
import aiofiles.os

from .contracts import ChunkRecord

logger = logging.getLogger(__name__)


class ChunkStore:
    def __init__(self, root: Path):
        self._root = Path(root)

    def session_dir(self, session_id: str) -> Path:
        return self._root / session_id

    def chunk_path(self, session_id: str, index: int) -> Path:
        return self.session_dir(session_id) / f"chunk_{index:06d}.bin"

    async def stage(self, session_id: str, index: int, data: bytes) -> Path:
        session_dir = self.session_dir(session_id)
        await aiofiles.os.makedirs(session_dir, exist_ok=True)
        staged = session_dir / f"chunk_{index:06d}.{uuid.uuid4().hex[:12]}.part"
        try:
            async with aiofiles.open(staged, "wb") as handle:
                await handle.write(data)
        except BaseException:
            await self.discard(staged)
            raise
        return staged

    async def commit(self, staged: Path, session_id: str, index: int, size_bytes: int) -> ChunkRecord:
        final_path = self.chunk_path(session_id, index)
        await aiofiles.os.replace(staged, final_path)
        return ChunkRecord(
            session_id=session_id,
            index=index,
            size_bytes=size_bytes,
            path=final_path,
        )

    async def discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    async def purge(self, session_id: str) -> None:
        session_dir = self.session_dir(session_id)
        if not await aiofiles.os.path.exists(session_dir):
            return
        # Best-effort: a concurrent stage() may have just recreated the dir.
        await asyncio.to_thread(shutil.rmtree, session_dir, True)
        logger.debug("purged chunk storage", extra={"session_id": session_id})
