from __future__ import annotations

"""
Sequence merge -> verify -> transcribe -> inspect for one upload session.

Design intent:
- States only move forward; there is no path back to receiving.
- Every stage hands back a typed failure, never an exception, so the gate
  branches on FailureKind.
- Only an accepted transcript ever leaves this module.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..detection.corruption import CorruptionDetector, CorruptionFlag, describe_flags
from .asr.client import TranscriptionClient
from .audit import AuditLog
from .contracts import GATE_STATE_ORDER, GateState, TranscriptionAttempt
from .errors import FailureKind, PipelineFailure
from .integrity import IntegrityVerifier
from .merger import StreamMerger
from .session_tracker import SessionTracker

logger = logging.getLogger(__name__)


class NoteHandoff(ABC):
    @abstractmethod
    async def deliver(self, session_id: str, text: str, context: Dict[str, Any]) -> None: ...


class LoggingHandoff(NoteHandoff):
    async def deliver(self, session_id: str, text: str, context: Dict[str, Any]) -> None:
        logger.info(
            "transcript ready for note generation chars=%d",
            len(text),
            extra={"session_id": session_id},
        )


@dataclass
class GateOutcome:
    session_id: str
    state: GateState = "receiving"
    history: List[GateState] = field(default_factory=lambda: ["receiving"])
    text: Optional[str] = None
    sha256: Optional[str] = None
    size_bytes: Optional[int] = None
    container: Optional[str] = None
    attempts: List[TranscriptionAttempt] = field(default_factory=list)
    flags: List[CorruptionFlag] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    failure: Optional[PipelineFailure] = None
    finished_at: Optional[float] = None

    @property
    def accepted(self) -> bool:
        return self.state == "accepted"

    def advance(self, state: GateState) -> None:
        if GATE_STATE_ORDER[state] <= GATE_STATE_ORDER[self.state]:
            raise ValueError(f"illegal gate transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "session_id": self.session_id,
            "state": self.state,
            "history": list(self.history),
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "container": self.container,
            "attempts": [a.model_dump() for a in self.attempts],
            "flags": [f.to_payload() for f in self.flags],
            "warnings": list(self.warnings),
        }
        if self.accepted:
            out["text"] = self.text
        if self.failure is not None:
            out["failure"] = self.failure.to_payload()
        return out


class ResultGate:
    def __init__(
        self,
        tracker: SessionTracker,
        merger: StreamMerger,
        verifier: IntegrityVerifier,
        client: TranscriptionClient,
        detector: CorruptionDetector,
        *,
        audit: Optional[AuditLog] = None,
        handoff: Optional[NoteHandoff] = None,
        short_transcript_chars: int = 10,
        outcome_ttl_sec: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self._tracker = tracker
        self._merger = merger
        self._verifier = verifier
        self._client = client
        self._detector = detector
        self._audit = audit or AuditLog()
        self._handoff = handoff or LoggingHandoff()
        self._short_chars = short_transcript_chars
        self._outcome_ttl = outcome_ttl_sec
        self._clock = clock
        self._outcomes: Dict[str, GateOutcome] = {}
        self._inflight: Dict[str, "asyncio.Task[GateOutcome]"] = {}

    def outcome(self, session_id: str) -> Optional[GateOutcome]:
        return self._outcomes.get(session_id)

    def in_progress(self, session_id: str) -> bool:
        return session_id in self._inflight

    async def finalize(self, session_id: str, expected_sha256: Optional[str] = None) -> GateOutcome:
        done = self._outcomes.get(session_id)
        if done is not None:
            return done

        task = self._inflight.get(session_id)
        if task is None:
            # Raises before any state change when the session is unknown or
            # still missing chunks; the client can keep sending.
            self._tracker.claim(session_id)
            task = asyncio.ensure_future(self._run(session_id, expected_sha256))
            self._inflight[session_id] = task
            task.add_done_callback(lambda _t, sid=session_id: self._inflight.pop(sid, None))
        return await asyncio.shield(task)

    async def _run(self, session_id: str, expected_sha256: Optional[str]) -> GateOutcome:
        outcome = GateOutcome(session_id=session_id)
        started = time.monotonic()

        outcome.advance("merging")
        try:
            merged = await self._merger.merge(session_id)
        except BaseException:
            # A claimed session is skipped by the sweeper; never strand one.
            await self._tracker.release(session_id)
            raise
        if not merged.ok:
            if session_id in self._tracker:
                await self._tracker.release(session_id)
            return self._reject(outcome, merged.failure, started)
        artifact = merged.artifact
        outcome.sha256 = artifact.sha256
        outcome.size_bytes = artifact.size_bytes

        outcome.advance("verifying")
        declared_hash = (expected_sha256 or "").strip().lower() or artifact.expected_sha256
        report = await self._verifier.verify(
            artifact, artifact.declared_size, declared_hash, artifact.file_type
        )
        if not report.ok:
            await self._merger.discard(session_id)
            self._audit.log_event(session_id, "VERIFY_FAILED", report.failure.kind.value, report.failure.message)
            return self._reject(outcome, report.failure, started)
        outcome.container = report.container
        artifact = artifact.model_copy(update={"header_valid": True})
        self._audit.log_event(
            session_id, "VERIFY_PASSED", "VERIFY_OK", f"bytes={report.size_bytes} container={report.container}"
        )

        outcome.advance("transcribing")
        try:
            transcription = await self._client.transcribe(artifact)
        finally:
            # The recording is never retained past transcription.
            await self._merger.discard(session_id)
        outcome.attempts = list(transcription.attempts)
        if not transcription.ok:
            return self._reject(outcome, transcription.failure, started)

        outcome.advance("inspecting")
        text = transcription.result.text
        flags = self._detector.inspect(text)
        if flags:
            outcome.flags = flags
            summary = describe_flags(flags)
            self._audit.log_event(
                session_id, "CORRUPTION_FLAGGED", "CORRUPT", ",".join(f.kind for f in flags)
            )
            failure = PipelineFailure(
                kind=FailureKind.CORRUPT_TRANSCRIPT,
                message=f"Transcription appears corrupted: {summary}",
                detail={"flags": [f.to_payload() for f in flags]},
            )
            return self._reject(outcome, failure, started)

        if len(text.strip()) < self._short_chars:
            outcome.warnings.append("short_transcript")
        outcome.text = text
        outcome.advance("accepted")
        self._finish(outcome, started)
        self._audit.log_event(
            session_id,
            "ACCEPTED",
            "ACCEPTED",
            f"chars={len(text)} attempts={len(outcome.attempts)}",
            int((time.monotonic() - started) * 1000),
        )
        await self._deliver(outcome)
        return outcome

    async def _deliver(self, outcome: GateOutcome) -> None:
        context = {
            "sha256": outcome.sha256,
            "size_bytes": outcome.size_bytes,
            "warnings": list(outcome.warnings),
        }
        try:
            await self._handoff.deliver(outcome.session_id, outcome.text or "", context)
        except Exception:
            logger.exception("note handoff failed", extra={"session_id": outcome.session_id})
            outcome.warnings.append("handoff_failed")
            return
        self._audit.log_event(outcome.session_id, "HANDOFF", "HANDOFF_OK", type(self._handoff).__name__)

    def _reject(self, outcome: GateOutcome, failure: PipelineFailure, started: float) -> GateOutcome:
        outcome.failure = failure
        outcome.advance("rejected")
        self._finish(outcome, started)
        self._audit.log_event(
            outcome.session_id,
            "REJECTED",
            failure.kind.value,
            f"category={failure.category} at={outcome.history[-2]}",
            int((time.monotonic() - started) * 1000),
        )
        return outcome

    def _finish(self, outcome: GateOutcome, started: float) -> None:
        outcome.finished_at = self._clock()
        self._outcomes[outcome.session_id] = outcome
        logger.info(
            "gate finished state=%s elapsed_ms=%d",
            outcome.state,
            int((time.monotonic() - started) * 1000),
            extra={"session_id": outcome.session_id},
        )

    def prune_outcomes(self) -> List[str]:
        cutoff = self._clock() - self._outcome_ttl
        stale = [
            sid for sid, o in self._outcomes.items()
            if o.finished_at is not None and o.finished_at <= cutoff
        ]
        for sid in stale:
            self._outcomes.pop(sid, None)
        return stale
