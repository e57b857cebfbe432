from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..detection.corruption import CorruptionFlag

GateState = Literal[
    "receiving", "merging", "verifying", "transcribing", "inspecting", "accepted", "rejected"
]

GATE_STATE_ORDER: dict[str, int] = {
    "receiving": 0,
    "merging": 1,
    "verifying": 2,
    "transcribing": 3,
    "inspecting": 4,
    "accepted": 5,
    "rejected": 5,
}


class ChunkRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    index: int = Field(ge=0)
    size_bytes: int = Field(ge=0)
    path: Path


class ChunkReceipt(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    index: int
    size_bytes: int
    duplicate: bool = False
    chunks_received: int
    total_chunks: int
    bytes_received: int
    complete: bool


class UploadSessionStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    total_chunks: int
    total_size: int
    file_type: str
    file_name: Optional[str] = None
    created_at: float
    expires_at: float
    chunks_received: int
    bytes_received: int
    missing_indices: List[int] = Field(default_factory=list)
    complete: bool


class MergedArtifact(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    path: Path
    size_bytes: int = Field(ge=0)
    sha256: str
    chunk_count: int = Field(ge=1)
    recorded_bytes: int = Field(ge=0)
    declared_size: int = Field(ge=0)
    file_type: str
    expected_sha256: Optional[str] = None
    header_valid: bool = False


AttemptOutcome = Literal["success", "retryable_failure", "fatal_failure"]


class TranscriptionAttempt(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    attempt: int = Field(ge=1)
    outcome: AttemptOutcome
    error_kind: Optional[str] = None
    status_code: Optional[int] = None
    latency_ms: int = Field(ge=0)
    backoff_sec: float = 0.0


class TranscriptionResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str
    char_length: int = Field(ge=0)
    flags: List[CorruptionFlag] = Field(default_factory=list)

    @classmethod
    def from_text(cls, text: str) -> "TranscriptionResult":
        return cls(text=text, char_length=len(text))


AuditEventType = Literal[
    "SESSION_OPENED",
    "CHUNK_RECEIVED",
    "CHUNK_DUPLICATE",
    "SESSION_ABORTED",
    "SESSION_EXPIRED",
    "MERGE_COMPLETED",
    "MERGE_FAILED",
    "VERIFY_PASSED",
    "VERIFY_FAILED",
    "TRANSCRIBE_ATTEMPT",
    "TRANSCRIBE_DONE",
    "TRANSCRIBE_FAILED",
    "CORRUPTION_FLAGGED",
    "ACCEPTED",
    "REJECTED",
    "HANDOFF",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None
