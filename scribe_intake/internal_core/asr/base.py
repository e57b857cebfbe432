from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

ProviderErrorClass = Literal["auth", "rate_limited", "server_error", "other"]


@dataclass(frozen=True)
class ProviderReply:
    text: Optional[str] = None
    error_class: Optional[ProviderErrorClass] = None
    status_code: Optional[int] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error_class is None and self.text is not None

    @classmethod
    def success(cls, text: str) -> "ProviderReply":
        return cls(text=text)

    @classmethod
    def failure(
        cls, error_class: ProviderErrorClass, message: str, status_code: Optional[int] = None
    ) -> "ProviderReply":
        return cls(error_class=error_class, message=message, status_code=status_code)


def classify_status(status_code: int) -> ProviderErrorClass:
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500:
        return "server_error"
    return "other"


class TranscriptionProvider(ABC):
    @abstractmethod
    async def transcribe(
        self,
        audio_path: Path,
        *,
        language: str = "en",
        prompt: Optional[str] = None,
        timeout_sec: float = 300.0,
        file_type: str = "",
    ) -> ProviderReply: ...

    @abstractmethod
    def name(self) -> str: ...

    async def aclose(self) -> None:
        return None
