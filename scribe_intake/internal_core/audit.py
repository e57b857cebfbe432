from __future__ import annotations

import datetime as _dt
import logging
from collections import OrderedDict, deque
from typing import Deque, Dict, List, Optional

from .contracts import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include transcript text or audio bytes in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "..."
    return detail


class AuditLog:
    def __init__(self, max_sessions: int = 1000, max_events_per_session: int = 200):
        self._max_sessions = max(1, int(max_sessions))
        self._max_events = max(1, int(max_events_per_session))
        self._events: "OrderedDict[str, Deque[AuditEvent]]" = OrderedDict()

    def append(self, event: AuditEvent) -> None:
        bucket = self._events.get(event.session_id)
        if bucket is None:
            bucket = deque(maxlen=self._max_events)
            self._events[event.session_id] = bucket
            while len(self._events) > self._max_sessions:
                self._events.popitem(last=False)
        bucket.append(event)

    def events_for(self, session_id: str) -> List[AuditEvent]:
        return list(self._events.get(session_id, ()))

    def types_for(self, session_id: str) -> List[str]:
        return [e.type for e in self.events_for(session_id)]

    def log_event(
        self,
        session_id: str,
        event_type: AuditEventType,
        code: str,
        detail: str = "",
        duration_ms: Optional[int] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            ts_iso=_ts_iso(),
            session_id=session_id,
            type=event_type,
            code=code,
            detail=_sanitize_detail(detail),
            duration_ms=duration_ms,
        )
        self.append(event)
        extra: Dict[str, object] = {
            "session_id": session_id,
            "event_type": event_type,
            "event_code": code,
        }
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms
        level = logging.WARNING if event_type in _WARN_TYPES else logging.INFO
        logger.log(level, "%s %s %s", event_type, code, event.detail, extra=extra)
        return event


_WARN_TYPES = {"MERGE_FAILED", "VERIFY_FAILED", "TRANSCRIBE_FAILED", "CORRUPTION_FLAGGED", "REJECTED"}
