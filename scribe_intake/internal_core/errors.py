from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal

FailureCategory = Literal["session", "integrity", "transcription", "corruption"]


class FailureKind(str, Enum):
    UNKNOWN_SESSION = "unknown_session"
    SESSION_CLOSED = "session_closed"
    INVALID_REQUEST = "invalid_request"
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    UPLOAD_TOO_LARGE = "upload_too_large"
    CHUNK_INDEX_OUT_OF_RANGE = "chunk_index_out_of_range"
    EMPTY_CHUNK = "empty_chunk"
    DECLARED_SIZE_EXCEEDED = "declared_size_exceeded"
    INCOMPLETE_SESSION = "incomplete_session"
    MERGE_FAILED = "merge_failed"
    SIZE_MISMATCH = "size_mismatch"
    DIGEST_MISMATCH = "digest_mismatch"
    INVALID_CONTAINER = "invalid_container"
    SIZE_CEILING_EXCEEDED = "size_ceiling_exceeded"
    AUTH_INVALID = "auth_invalid"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TRANSCRIPTION_FAILED = "transcription_failed"
    CORRUPT_TRANSCRIPT = "corrupt_transcript"


_CATEGORY: Dict[FailureKind, FailureCategory] = {
    FailureKind.UNKNOWN_SESSION: "session",
    FailureKind.SESSION_CLOSED: "session",
    FailureKind.INVALID_REQUEST: "session",
    FailureKind.UNSUPPORTED_FILE_TYPE: "session",
    FailureKind.UPLOAD_TOO_LARGE: "session",
    FailureKind.CHUNK_INDEX_OUT_OF_RANGE: "session",
    FailureKind.EMPTY_CHUNK: "session",
    FailureKind.DECLARED_SIZE_EXCEEDED: "session",
    FailureKind.INCOMPLETE_SESSION: "session",
    FailureKind.MERGE_FAILED: "integrity",
    FailureKind.SIZE_MISMATCH: "integrity",
    FailureKind.DIGEST_MISMATCH: "integrity",
    FailureKind.INVALID_CONTAINER: "integrity",
    FailureKind.SIZE_CEILING_EXCEEDED: "transcription",
    FailureKind.AUTH_INVALID: "transcription",
    FailureKind.RATE_LIMITED: "transcription",
    FailureKind.SERVICE_UNAVAILABLE: "transcription",
    FailureKind.TRANSCRIPTION_FAILED: "transcription",
    FailureKind.CORRUPT_TRANSCRIPT: "corruption",
}

_REMEDIATION: Dict[FailureKind, str] = {
    FailureKind.UNKNOWN_SESSION: "The upload session was not found or has expired. Start a new upload.",
    FailureKind.SESSION_CLOSED: "This upload session is already closed. Start a new upload.",
    FailureKind.INVALID_REQUEST: "The upload request was malformed. Refresh the page and start a new upload.",
    FailureKind.UNSUPPORTED_FILE_TYPE: "Upload a .wav, .mp3, .m4a, .webm, .ogg or .flac recording.",
    FailureKind.UPLOAD_TOO_LARGE: "The recording exceeds the upload limit. Compress it or split it into shorter recordings.",
    FailureKind.CHUNK_INDEX_OUT_OF_RANGE: "The upload client sent an invalid piece. Start a new upload.",
    FailureKind.EMPTY_CHUNK: "An empty piece was received. Retry sending that piece.",
    FailureKind.DECLARED_SIZE_EXCEEDED: "More data arrived than announced. Start a new upload.",
    FailureKind.INCOMPLETE_SESSION: "Some pieces of the recording are still missing. Send the missing pieces, then finalize again.",
    FailureKind.MERGE_FAILED: "The recording could not be reassembled. Re-upload the file.",
    FailureKind.SIZE_MISMATCH: "The reassembled recording is truncated. Re-upload the file.",
    FailureKind.DIGEST_MISMATCH: "The reassembled recording does not match the original. Re-upload the file.",
    FailureKind.INVALID_CONTAINER: "The file is not a recognised audio recording. Check the file and re-upload it.",
    FailureKind.SIZE_CEILING_EXCEEDED: "The recording is too large for transcription. Use a smaller or more compressed file.",
    FailureKind.AUTH_INVALID: "The transcription service rejected our credentials. Contact support.",
    FailureKind.RATE_LIMITED: "The transcription service is busy. Try again in a few minutes.",
    FailureKind.SERVICE_UNAVAILABLE: "The transcription service is temporarily unavailable. Try again later.",
    FailureKind.TRANSCRIPTION_FAILED: "Transcription failed. Try again; contact support if it keeps happening.",
    FailureKind.CORRUPT_TRANSCRIPT: "The transcript looks corrupted. Check the audio quality and re-upload the recording.",
}


def category_of(kind: FailureKind) -> FailureCategory:
    return _CATEGORY[kind]


def remediation_for(kind: FailureKind) -> str:
    return _REMEDIATION[kind]


@dataclass(frozen=True)
class PipelineFailure:
    kind: FailureKind
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> FailureCategory:
        return category_of(self.kind)

    @property
    def remediation(self) -> str:
        return remediation_for(self.kind)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "category": self.category,
            "message": self.message,
            "remediation": self.remediation,
            "detail": dict(self.detail),
        }


class SessionError(RuntimeError):
    def __init__(self, kind: FailureKind, message: str, session_id: str = "", **detail: Any):
        super().__init__(message)
        self.session_id = session_id
        self.failure = PipelineFailure(kind=kind, message=message, detail=detail)

    @property
    def kind(self) -> FailureKind:
        return self.failure.kind
