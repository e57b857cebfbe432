from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..detection.corruption import CorruptionDetector
from .asr.base import TranscriptionProvider
from .asr.client import TranscriptionClient
from .asr.mock import MockTranscriptionProvider
from .asr.openai_whisper import OpenAIWhisperProvider
from .audit import AuditLog
from .chunk_store import ChunkStore
from .config import IntakeConfig
from .gate import NoteHandoff, ResultGate
from .integrity import IntegrityVerifier
from .merger import StreamMerger
from .session_tracker import SessionTracker

logger = logging.getLogger(__name__)


@dataclass
class IntakeServices:
    config: IntakeConfig
    audit: AuditLog
    chunk_store: ChunkStore
    tracker: SessionTracker
    merger: StreamMerger
    verifier: IntegrityVerifier
    client: TranscriptionClient
    detector: CorruptionDetector
    gate: ResultGate

    async def aclose(self) -> None:
        await self.client.provider.aclose()


def build_provider(cfg: IntakeConfig) -> TranscriptionProvider:
    provider = cfg.INTAKE_TRANSCRIBE_PROVIDER
    if provider == "openai":
        return OpenAIWhisperProvider(
            cfg.INTAKE_OPENAI_API_KEY,
            base_url=cfg.INTAKE_OPENAI_BASE_URL,
            model=cfg.INTAKE_WHISPER_MODEL,
        )
    if provider == "mock":
        return MockTranscriptionProvider()
    raise ValueError(f"Unsupported INTAKE_TRANSCRIBE_PROVIDER: {provider}")


def build_services(
    cfg: IntakeConfig,
    *,
    provider: Optional[TranscriptionProvider] = None,
    handoff: Optional[NoteHandoff] = None,
    data_dir: Optional[Path] = None,
    client: Optional[TranscriptionClient] = None,
) -> IntakeServices:
    root = Path(data_dir) if data_dir is not None else cfg.data_dir_path()
    audit = AuditLog()
    chunk_store = ChunkStore(root / "chunks")
    tracker = SessionTracker(
        chunk_store,
        ttl_seconds=cfg.INTAKE_SESSION_TTL_SECONDS,
        max_upload_bytes=cfg.INTAKE_MAX_UPLOAD_BYTES,
        max_chunks=cfg.INTAKE_MAX_CHUNKS,
        audit=audit,
    )
    merger = StreamMerger(
        tracker,
        root / "artifacts",
        buffer_bytes=cfg.INTAKE_MERGE_BUFFER_BYTES,
        audit=audit,
    )
    verifier = IntegrityVerifier()
    if client is None:
        client = TranscriptionClient(
            provider or build_provider(cfg),
            cfg.transcription_policy(),
            audit=audit,
        )
    detector = CorruptionDetector(cfg.detector_config())
    gate = ResultGate(
        tracker,
        merger,
        verifier,
        client,
        detector,
        audit=audit,
        handoff=handoff,
        short_transcript_chars=cfg.INTAKE_SHORT_TRANSCRIPT_CHARS,
        outcome_ttl_sec=cfg.INTAKE_SESSION_TTL_SECONDS,
    )
    logger.info(
        "intake services ready provider=%s data_dir=%s",
        client.provider.name(),
        root,
    )
    return IntakeServices(
        config=cfg,
        audit=audit,
        chunk_store=chunk_store,
        tracker=tracker,
        merger=merger,
        verifier=verifier,
        client=client,
        detector=detector,
        gate=gate,
    )
