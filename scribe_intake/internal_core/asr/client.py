from __future__ import annotations

"""
Submit a verified artifact to the speech-to-text provider.

Design intent:
- Fail fast on the provider's hard size ceiling, before any network call.
- Scale the request timeout with artifact size (floor + per-MB allowance).
- Retry only transient failures (rate limit, upstream 5xx) with exponential
  backoff; auth and everything else are fatal on the first attempt.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from ..audit import AuditLog
from ..config import MIB, TranscriptionPolicy
from ..contracts import MergedArtifact, TranscriptionAttempt, TranscriptionResult
from ..errors import FailureKind, PipelineFailure
from .base import ProviderReply, TranscriptionProvider

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_RETRYABLE = {
    "rate_limited": FailureKind.RATE_LIMITED,
    "server_error": FailureKind.SERVICE_UNAVAILABLE,
}

_EXHAUSTED_MESSAGE = {
    FailureKind.RATE_LIMITED: "Transcription service rate limit exceeded. Please try again later.",
    FailureKind.SERVICE_UNAVAILABLE: "Transcription service temporarily unavailable. Please try again.",
}


@dataclass(frozen=True)
class TranscriptionOutcome:
    result: Optional[TranscriptionResult] = None
    failure: Optional[PipelineFailure] = None
    attempts: List[TranscriptionAttempt] = field(default_factory=list)
    timeout_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def total_backoff_sec(self) -> float:
        return sum(a.backoff_sec for a in self.attempts)


class TranscriptionClient:
    def __init__(
        self,
        provider: TranscriptionProvider,
        policy: TranscriptionPolicy,
        *,
        audit: Optional[AuditLog] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._provider = provider
        self._policy = policy
        self._audit = audit or AuditLog()
        self._sleep = sleep

    @property
    def provider(self) -> TranscriptionProvider:
        return self._provider

    async def transcribe(
        self,
        artifact: MergedArtifact,
        *,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> TranscriptionOutcome:
        session_id = artifact.session_id
        if artifact.size_bytes > self._policy.max_bytes:
            size_mb = artifact.size_bytes / MIB
            limit_mb = self._policy.max_bytes / MIB
            failure = PipelineFailure(
                kind=FailureKind.SIZE_CEILING_EXCEEDED,
                message=f"File size {size_mb:.2f}MB exceeds transcription limit of {limit_mb:.0f}MB.",
                detail={"size_bytes": artifact.size_bytes, "max_bytes": self._policy.max_bytes},
            )
            self._audit.log_event(session_id, "TRANSCRIBE_FAILED", failure.kind.value, failure.message)
            return TranscriptionOutcome(failure=failure)

        timeout_sec = self._policy.timeout_for(artifact.size_bytes)
        language = language or self._policy.language
        prompt = prompt if prompt is not None else self._policy.prompt
        attempts: List[TranscriptionAttempt] = []
        max_attempts = self._policy.max_attempts
        logger.info(
            "starting transcription provider=%s bytes=%d timeout=%.0fs",
            self._provider.name(),
            artifact.size_bytes,
            timeout_sec,
            extra={"session_id": session_id},
        )

        for attempt_index in range(max_attempts):
            started = time.monotonic()
            reply = await self._call_provider(artifact, language, prompt, timeout_sec)
            latency_ms = int((time.monotonic() - started) * 1000)
            attempt_no = attempt_index + 1

            if reply.ok:
                attempts.append(
                    TranscriptionAttempt(attempt=attempt_no, outcome="success", latency_ms=latency_ms)
                )
                self._log_attempt(session_id, attempts[-1], max_attempts)
                text = reply.text or ""
                self._audit.log_event(
                    session_id, "TRANSCRIBE_DONE", "TRANSCRIBE_OK", f"chars={len(text)} attempts={attempt_no}"
                )
                return TranscriptionOutcome(
                    result=TranscriptionResult.from_text(text),
                    attempts=attempts,
                    timeout_sec=timeout_sec,
                )

            retry_kind = _RETRYABLE.get(reply.error_class or "")
            can_retry = retry_kind is not None and attempt_no < max_attempts
            backoff = self._policy.backoff_for(attempt_index) if can_retry else 0.0
            attempts.append(
                TranscriptionAttempt(
                    attempt=attempt_no,
                    outcome="retryable_failure" if can_retry else "fatal_failure",
                    error_kind=reply.error_class,
                    status_code=reply.status_code,
                    latency_ms=latency_ms,
                    backoff_sec=backoff,
                )
            )
            self._log_attempt(session_id, attempts[-1], max_attempts)

            if can_retry:
                await self._sleep(backoff)
                continue

            failure = self._terminal_failure(reply, retry_kind, attempt_no)
            self._audit.log_event(session_id, "TRANSCRIBE_FAILED", failure.kind.value, failure.message)
            return TranscriptionOutcome(failure=failure, attempts=attempts, timeout_sec=timeout_sec)

        # max_attempts >= 1, so the loop always returns.
        raise AssertionError("unreachable")

    async def _call_provider(
        self, artifact: MergedArtifact, language: str, prompt: Optional[str], timeout_sec: float
    ) -> ProviderReply:
        try:
            return await self._provider.transcribe(
                artifact.path,
                language=language,
                prompt=prompt,
                timeout_sec=timeout_sec,
                file_type=artifact.file_type,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("transcription provider raised", extra={"session_id": artifact.session_id})
            return ProviderReply.failure("other", f"{type(exc).__name__}: {exc}")

    def _terminal_failure(
        self, reply: ProviderReply, retry_kind: Optional[FailureKind], attempts: int
    ) -> PipelineFailure:
        detail = {"attempts": attempts, "status_code": reply.status_code, "provider_message": reply.message}
        if reply.error_class == "auth":
            return PipelineFailure(
                kind=FailureKind.AUTH_INVALID,
                message="Transcription service API key invalid or expired.",
                detail=detail,
            )
        if retry_kind is not None:
            return PipelineFailure(kind=retry_kind, message=_EXHAUSTED_MESSAGE[retry_kind], detail=detail)
        return PipelineFailure(
            kind=FailureKind.TRANSCRIPTION_FAILED,
            message=f"Audio transcription failed: {reply.message or 'unknown error'}",
            detail=detail,
        )

    def _log_attempt(self, session_id: str, attempt: TranscriptionAttempt, max_attempts: int) -> None:
        detail = f"attempt={attempt.attempt}/{max_attempts} outcome={attempt.outcome}"
        if attempt.error_kind:
            detail += f" error={attempt.error_kind} status={attempt.status_code}"
        if attempt.backoff_sec:
            detail += f" backoff={attempt.backoff_sec:.1f}s"
        self._audit.log_event(session_id, "TRANSCRIBE_ATTEMPT", "ATTEMPT", detail, attempt.latency_ms)
