from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import aiofiles
import aiofiles.os

from .contracts import MergedArtifact
from .errors import FailureKind, PipelineFailure

logger = logging.getLogger(__name__)

ANY_AUDIO = "any"

_TYPE_ALIASES: dict[str, str] = {
    "wav": "wav",
    "wave": "wav",
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/vnd.wave": "wav",
    "mp3": "mp3",
    "mpeg": "mp3",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mpeg3": "mp3",
    "m4a": "mp4",
    "mp4": "mp4",
    "aac": "mp4",
    "audio/mp4": "mp4",
    "audio/m4a": "mp4",
    "audio/x-m4a": "mp4",
    "audio/aac": "mp4",
    "video/mp4": "mp4",
    "webm": "webm",
    "audio/webm": "webm",
    "video/webm": "webm",
    "ogg": "ogg",
    "oga": "ogg",
    "opus": "ogg",
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "flac": "flac",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    # Chunked browser uploads often cannot name a type.
    "application/octet-stream": ANY_AUDIO,
}

HEADER_BYTES = 16


def normalize_file_type(hint: str | None) -> Optional[str]:
    raw = (hint or "").strip().lower()
    if not raw:
        return None
    raw = raw.split(";", 1)[0].strip()
    if raw.startswith("."):
        raw = raw[1:]
    return _TYPE_ALIASES.get(raw)


def sniff_container(head: bytes) -> Optional[str]:
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WAVE":
        return "wav"
    if head[:3] == b"ID3":
        return "mp3"
    # Bare MPEG audio frame sync (11 set bits).
    if len(head) >= 2 and head[0] == 0xFF and (head[1] & 0xE0) == 0xE0:
        return "mp3"
    if len(head) >= 8 and head[4:8] == b"ftyp":
        return "mp4"
    if head[:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    if head[:4] == b"OggS":
        return "ogg"
    if head[:4] == b"fLaC":
        return "flac"
    return None


@dataclass(frozen=True)
class IntegrityReport:
    ok: bool
    size_bytes: int
    container: Optional[str] = None
    failure: Optional[PipelineFailure] = None


class IntegrityVerifier:
    async def verify(
        self,
        artifact: MergedArtifact,
        declared_size: int,
        declared_hash: Optional[str],
        file_type_hint: str,
    ) -> IntegrityReport:
        stat = await aiofiles.os.stat(artifact.path)
        actual_size = int(stat.st_size)

        if actual_size != artifact.recorded_bytes or actual_size != declared_size:
            return self._fail(
                FailureKind.SIZE_MISMATCH,
                f"Artifact is {actual_size} bytes; chunks recorded {artifact.recorded_bytes}, "
                f"client declared {declared_size}.",
                actual_size,
                actual_bytes=actual_size,
                recorded_bytes=artifact.recorded_bytes,
                declared_bytes=declared_size,
            )

        expected = (declared_hash or "").strip().lower()
        if expected and not hmac.compare_digest(expected, artifact.sha256.lower()):
            return self._fail(
                FailureKind.DIGEST_MISMATCH,
                "Artifact SHA-256 does not match the digest supplied by the client.",
                actual_size,
                expected_sha256=expected,
                actual_sha256=artifact.sha256,
            )

        async with aiofiles.open(artifact.path, "rb") as handle:
            head = await handle.read(HEADER_BYTES)
        container = sniff_container(head)
        wanted = normalize_file_type(file_type_hint)
        if container is None or (wanted not in (None, ANY_AUDIO) and container != wanted):
            return self._fail(
                FailureKind.INVALID_CONTAINER,
                f"Leading bytes do not match a {wanted or 'known'} audio container.",
                actual_size,
                expected_container=wanted,
                detected_container=container,
                header_hex=head[:8].hex(),
            )

        return IntegrityReport(ok=True, size_bytes=actual_size, container=container)

    def _fail(self, kind: FailureKind, message: str, size_bytes: int, **detail) -> IntegrityReport:
        logger.warning("integrity check failed: %s", message)
        return IntegrityReport(
            ok=False,
            size_bytes=size_bytes,
            failure=PipelineFailure(kind=kind, message=message, detail=detail),
        )
