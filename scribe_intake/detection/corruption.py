from __future__ import annotations

"""
Flag transcripts that carry signatures of known upstream failure modes.

Checks (any one is enough, all triggered flags are reported):
- boilerplate phrases that never occur in dictation (video outros, CTAs)
- a short phrase looping N+ times in a row
- a single word dominating the token stream

Design intent:
- Known-signature checks catch previously observed failures precisely.
- The dominance check catches novel loops at the cost of false positives
  on short, legitimately repetitive dictation.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Literal, Sequence

CorruptionKind = Literal["boilerplate_phrase", "repetition_pattern", "word_dominance"]

DEFAULT_BOILERPLATE_PHRASES: tuple[str, ...] = (
    "please subscribe",
    "subscribe in english",
    "thank you for watching",
    "knock on their doors",
    "don't leave them waiting",
    "thanks for watching",
    "like, share the video",
    "subscribe to the channel",
)


@dataclass(frozen=True)
class RepetitionRule:
    name: str
    phrase: str
    min_repeats: int

    def compile(self) -> re.Pattern[str]:
        body = r"\s+".join(re.escape(w) for w in self.phrase.split())
        # A repeat may be followed by light punctuation ("Thanks for watching! ").
        return re.compile(
            rf"(?:\b{body}\b[\s!?.,;:]*){{{self.min_repeats},}}",
            re.IGNORECASE,
        )


DEFAULT_REPETITION_RULES: tuple[RepetitionRule, ...] = (
    RepetitionRule(name="english_loop", phrase="english", min_repeats=3),
    RepetitionRule(name="thanks_for_watching_loop", phrase="thanks for watching", min_repeats=5),
)


@dataclass(frozen=True)
class DetectorConfig:
    boilerplate_phrases: tuple[str, ...] = DEFAULT_BOILERPLATE_PHRASES
    repetition_rules: tuple[RepetitionRule, ...] = DEFAULT_REPETITION_RULES
    dominance_threshold: float = 0.5
    dominance_min_word_chars: int = 3
    dominance_min_tokens: int = 0


@dataclass(frozen=True)
class CorruptionFlag:
    kind: CorruptionKind
    message: str
    phrase: str | None = None
    rule: str | None = None
    word: str | None = None
    count: int | None = None
    percentage: float | None = None

    def to_payload(self) -> dict:
        out = {"kind": self.kind, "message": self.message}
        for key in ("phrase", "rule", "word", "count", "percentage"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass
class CorruptionDetector:
    config: DetectorConfig = field(default_factory=DetectorConfig)

    def __post_init__(self) -> None:
        self._phrases = tuple(p.strip().lower() for p in self.config.boilerplate_phrases if p.strip())
        self._rules = [(rule, rule.compile()) for rule in self.config.repetition_rules]

    def inspect(self, text: str) -> list[CorruptionFlag]:
        text = text or ""
        flags: list[CorruptionFlag] = []
        flags.extend(self._check_boilerplate(text))
        flags.extend(self._check_repetition(text))
        flags.extend(self._check_dominance(text))
        return flags

    def _check_boilerplate(self, text: str) -> list[CorruptionFlag]:
        lowered = text.lower()
        return [
            CorruptionFlag(
                kind="boilerplate_phrase",
                message=f"detected boilerplate phrase '{phrase}' that never occurs in dictation",
                phrase=phrase,
            )
            for phrase in self._phrases
            if phrase in lowered
        ]

    def _check_repetition(self, text: str) -> list[CorruptionFlag]:
        out: list[CorruptionFlag] = []
        for rule, pattern in self._rules:
            match = pattern.search(text)
            if match is None:
                continue
            repeats = _count_phrase(rule.phrase, match.group(0))
            out.append(
                CorruptionFlag(
                    kind="repetition_pattern",
                    message=f"detected repeated filler content: '{rule.phrase}' repeated {repeats} times",
                    phrase=rule.phrase,
                    rule=rule.name,
                    count=repeats,
                )
            )
        return out

    def _check_dominance(self, text: str) -> list[CorruptionFlag]:
        tokens = text.lower().split()
        total = len(tokens)
        if total == 0 or total < self.config.dominance_min_tokens:
            return []
        out: list[CorruptionFlag] = []
        for word, count in Counter(tokens).most_common():
            if count <= total * self.config.dominance_threshold:
                break
            if len(word) <= self.config.dominance_min_word_chars:
                continue
            percentage = round(count / total * 100.0, 1)
            out.append(
                CorruptionFlag(
                    kind="word_dominance",
                    message=f"detected dominant-word repetition at {percentage:.1f}% ('{word}')",
                    word=word,
                    count=count,
                    percentage=percentage,
                )
            )
        return out


def _count_phrase(phrase: str, segment: str) -> int:
    body = r"\s+".join(re.escape(w) for w in phrase.split())
    return len(re.findall(rf"\b{body}\b", segment, flags=re.IGNORECASE))


def describe_flags(flags: Sequence[CorruptionFlag]) -> str:
    return "; ".join(flag.message for flag in flags)
