from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Union

from .base import ProviderReply, TranscriptionProvider

ScriptItem = Union[str, ProviderReply]


class MockTranscriptionProvider(TranscriptionProvider):
    def __init__(self, script: Optional[Iterable[ScriptItem]] = None) -> None:
        self._script: List[ScriptItem] = list(script or [])
        self.calls: List[dict] = []

    async def transcribe(
        self,
        audio_path: Path,
        *,
        language: str = "en",
        prompt: Optional[str] = None,
        timeout_sec: float = 300.0,
        file_type: str = "",
    ) -> ProviderReply:
        self.calls.append(
            {
                "audio_path": str(audio_path),
                "file_type": file_type,
                "language": language,
                "prompt": prompt,
                "timeout_sec": timeout_sec,
            }
        )
        if self._script:
            item = self._script.pop(0)
            return ProviderReply.success(item) if isinstance(item, str) else item
        return ProviderReply.success(
            f"(mock) simulated transcript for call {len(self.calls)}, patient reports mild headache."
        )

    def name(self) -> str:
        return "mock"
