from __future__ import annotations

from .base import ProviderReply, TranscriptionProvider, classify_status
from .client import TranscriptionClient, TranscriptionOutcome
from .mock import MockTranscriptionProvider
from .openai_whisper import OpenAIWhisperProvider

__all__ = [
    "ProviderReply",
    "TranscriptionProvider",
    "classify_status",
    "TranscriptionClient",
    "TranscriptionOutcome",
    "MockTranscriptionProvider",
    "OpenAIWhisperProvider",
]
