from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..detection.corruption import DEFAULT_BOILERPLATE_PHRASES, DetectorConfig

MIB = 1024 * 1024


def _project_root() -> Path:
    # scribe_intake/internal_core/config.py -> scribe_intake -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_opt_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _getenv_list(name: str) -> tuple[str, ...]:
    value = os.getenv(name)
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class TranscriptionPolicy:
    max_bytes: int
    max_attempts: int
    backoff_base_sec: float
    timeout_floor_sec: float
    timeout_per_mb_sec: float
    language: str
    prompt: str

    def timeout_for(self, size_bytes: int) -> float:
        return max(self.timeout_floor_sec, (size_bytes / MIB) * self.timeout_per_mb_sec)

    def backoff_for(self, attempt_index: int) -> float:
        return (2 ** attempt_index) * self.backoff_base_sec


@dataclass(frozen=True)
class IntakeConfig:
    INTAKE_DATA_DIR: str
    INTAKE_SESSION_TTL_SECONDS: int
    INTAKE_SWEEP_INTERVAL_SECONDS: int
    INTAKE_MAX_UPLOAD_BYTES: int
    INTAKE_MAX_CHUNKS: int
    INTAKE_MERGE_BUFFER_BYTES: int
    INTAKE_TRANSCRIBE_PROVIDER: str
    INTAKE_OPENAI_API_KEY: str
    INTAKE_OPENAI_BASE_URL: str
    INTAKE_WHISPER_MODEL: str
    INTAKE_TRANSCRIBE_LANGUAGE: str
    INTAKE_TRANSCRIBE_PROMPT: str
    INTAKE_TRANSCRIBE_MAX_BYTES: int
    INTAKE_TRANSCRIBE_MAX_ATTEMPTS: int
    INTAKE_TRANSCRIBE_BACKOFF_BASE_SEC: float
    INTAKE_TRANSCRIBE_TIMEOUT_FLOOR_SEC: float
    INTAKE_TRANSCRIBE_TIMEOUT_PER_MB_SEC: float
    INTAKE_DETECTOR_DOMINANCE_THRESHOLD: float
    INTAKE_DETECTOR_DOMINANCE_MIN_WORD_CHARS: int
    INTAKE_DETECTOR_DOMINANCE_MIN_TOKENS: int
    INTAKE_DETECTOR_EXTRA_PHRASES: tuple[str, ...]
    INTAKE_SHORT_TRANSCRIPT_CHARS: int
    INTAKE_LOG_LEVEL: str

    def data_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        root = repo_root if repo_root is not None else _project_root()
        return (root / self.INTAKE_DATA_DIR).resolve()

    def chunk_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        return self.data_dir_path(repo_root) / "chunks"

    def artifact_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        return self.data_dir_path(repo_root) / "artifacts"

    def transcription_policy(self) -> TranscriptionPolicy:
        return TranscriptionPolicy(
            max_bytes=self.INTAKE_TRANSCRIBE_MAX_BYTES,
            max_attempts=max(1, self.INTAKE_TRANSCRIBE_MAX_ATTEMPTS),
            backoff_base_sec=self.INTAKE_TRANSCRIBE_BACKOFF_BASE_SEC,
            timeout_floor_sec=self.INTAKE_TRANSCRIBE_TIMEOUT_FLOOR_SEC,
            timeout_per_mb_sec=self.INTAKE_TRANSCRIBE_TIMEOUT_PER_MB_SEC,
            language=self.INTAKE_TRANSCRIBE_LANGUAGE,
            prompt=self.INTAKE_TRANSCRIBE_PROMPT,
        )

    def detector_config(self) -> DetectorConfig:
        phrases = DEFAULT_BOILERPLATE_PHRASES + tuple(
            p.lower() for p in self.INTAKE_DETECTOR_EXTRA_PHRASES
            if p.lower() not in DEFAULT_BOILERPLATE_PHRASES
        )
        return DetectorConfig(
            boilerplate_phrases=phrases,
            dominance_threshold=self.INTAKE_DETECTOR_DOMINANCE_THRESHOLD,
            dominance_min_word_chars=self.INTAKE_DETECTOR_DOMINANCE_MIN_WORD_CHARS,
            dominance_min_tokens=self.INTAKE_DETECTOR_DOMINANCE_MIN_TOKENS,
        )


def load_config() -> IntakeConfig:
    api_key = _getenv_str("INTAKE_OPENAI_API_KEY", _getenv_str("OPENAI_API_KEY", ""))
    if api_key == "your_openai_api_key_here":
        api_key = ""
    provider = _getenv_opt_str("INTAKE_TRANSCRIBE_PROVIDER") or ("openai" if api_key else "mock")

    return IntakeConfig(
        INTAKE_DATA_DIR=_getenv_str("INTAKE_DATA_DIR", "./tmp/intake"),
        INTAKE_SESSION_TTL_SECONDS=_getenv_int("INTAKE_SESSION_TTL_SECONDS", 3600),
        INTAKE_SWEEP_INTERVAL_SECONDS=_getenv_int("INTAKE_SWEEP_INTERVAL_SECONDS", 60),
        INTAKE_MAX_UPLOAD_BYTES=_getenv_int("INTAKE_MAX_UPLOAD_BYTES", 200 * MIB),
        INTAKE_MAX_CHUNKS=_getenv_int("INTAKE_MAX_CHUNKS", 10000),
        INTAKE_MERGE_BUFFER_BYTES=_getenv_int("INTAKE_MERGE_BUFFER_BYTES", 64 * 1024),
        INTAKE_TRANSCRIBE_PROVIDER=provider.lower(),
        INTAKE_OPENAI_API_KEY=api_key,
        INTAKE_OPENAI_BASE_URL=_getenv_str("INTAKE_OPENAI_BASE_URL", "https://api.openai.com/v1"),
        INTAKE_WHISPER_MODEL=_getenv_str(
            "INTAKE_WHISPER_MODEL",
            _getenv_str("WHISPER_MODEL", "whisper-1"),
        ),
        INTAKE_TRANSCRIBE_LANGUAGE=_getenv_str("INTAKE_TRANSCRIBE_LANGUAGE", "en"),
        INTAKE_TRANSCRIBE_PROMPT=_getenv_str(
            "INTAKE_TRANSCRIBE_PROMPT",
            "Please transcribe this audio and it is in English",
        ),
        INTAKE_TRANSCRIBE_MAX_BYTES=_getenv_int("INTAKE_TRANSCRIBE_MAX_BYTES", 25 * MIB),
        INTAKE_TRANSCRIBE_MAX_ATTEMPTS=_getenv_int("INTAKE_TRANSCRIBE_MAX_ATTEMPTS", 3),
        INTAKE_TRANSCRIBE_BACKOFF_BASE_SEC=_getenv_float("INTAKE_TRANSCRIBE_BACKOFF_BASE_SEC", 1.0),
        INTAKE_TRANSCRIBE_TIMEOUT_FLOOR_SEC=_getenv_float("INTAKE_TRANSCRIBE_TIMEOUT_FLOOR_SEC", 300.0),
        INTAKE_TRANSCRIBE_TIMEOUT_PER_MB_SEC=_getenv_float("INTAKE_TRANSCRIBE_TIMEOUT_PER_MB_SEC", 20.0),
        INTAKE_DETECTOR_DOMINANCE_THRESHOLD=_getenv_float("INTAKE_DETECTOR_DOMINANCE_THRESHOLD", 0.5),
        INTAKE_DETECTOR_DOMINANCE_MIN_WORD_CHARS=_getenv_int("INTAKE_DETECTOR_DOMINANCE_MIN_WORD_CHARS", 3),
        INTAKE_DETECTOR_DOMINANCE_MIN_TOKENS=_getenv_int("INTAKE_DETECTOR_DOMINANCE_MIN_TOKENS", 0),
        INTAKE_DETECTOR_EXTRA_PHRASES=_getenv_list("INTAKE_DETECTOR_EXTRA_PHRASES"),
        INTAKE_SHORT_TRANSCRIPT_CHARS=_getenv_int("INTAKE_SHORT_TRANSCRIPT_CHARS", 10),
        INTAKE_LOG_LEVEL=_getenv_str("INTAKE_LOG_LEVEL", "INFO"),
    )
