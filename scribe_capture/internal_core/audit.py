from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Optional

from .contracts import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)

MAX_AUDIT_EVENTS = 500


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include transcript text or audio bytes in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "…"
    return detail


def log_event(
    session: Any,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> AuditEvent:
    """Append an audit event to `session.audit_events` (bounded) and mirror it to the log."""
    event = AuditEvent(
        ts_iso=_ts_iso(),
        session_id=session.session_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    events = session.audit_events
    events.append(event)
    if len(events) > MAX_AUDIT_EVENTS:
        del events[: len(events) - MAX_AUDIT_EVENTS]
    logger.info(
        "capture audit session=%s type=%s code=%s detail=%s",
        event.session_id,
        event.type,
        event.code,
        event.detail,
    )
    return event
