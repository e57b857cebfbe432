import logging

from scribe_intake.internal_core.audit import AuditLog


def test_detail_is_single_line_and_truncated() -> None:
    audit = AuditLog()
    event = audit.log_event("s1", "CHUNK_RECEIVED", "CHUNK", "line one\nline two " + "x" * 300)

    assert "\n" not in event.detail
    assert event.detail.endswith("...")
    assert len(event.detail) == 203


def test_sessions_and_events_are_bounded() -> None:
    audit = AuditLog(max_sessions=2, max_events_per_session=3)
    for i in range(5):
        audit.log_event("a", "CHUNK_RECEIVED", "CHUNK", f"index={i}")
    audit.log_event("b", "SESSION_OPENED", "OPEN")
    audit.log_event("c", "SESSION_OPENED", "OPEN")

    assert audit.events_for("a") == []
    assert audit.types_for("b") == ["SESSION_OPENED"]
    assert len(audit.events_for("c")) == 1


def test_failure_events_log_at_warning(caplog) -> None:
    audit = AuditLog()
    with caplog.at_level(logging.INFO, logger="scribe_intake.internal_core.audit"):
        audit.log_event("s1", "VERIFY_PASSED", "VERIFY_OK", "bytes=10")
        audit.log_event("s1", "REJECTED", "digest_mismatch", "category=integrity", duration_ms=12)

    levels = [(r.levelno, r.event_type) for r in caplog.records]
    assert levels == [(logging.INFO, "VERIFY_PASSED"), (logging.WARNING, "REJECTED")]
    assert caplog.records[-1].duration_ms == 12
    assert caplog.records[-1].session_id == "s1"
