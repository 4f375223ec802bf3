from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

CaptureState = Literal["idle", "starting", "active", "paused", "stopped", "error"]

BackendKind = Literal["cloud_streaming", "on_device", "chunked_upload"]

SpeakerLabel = Literal["Clinician", "Patient"]

TranscriptEventKind = Literal["partial", "final"]

TerminationReason = Literal[
    "user_stop",
    "no_speech",
    "aborted",
    "not_allowed",
    "service_not_allowed",
    "unsupported",
    "network",
    "device_lost",
    "connection_closed",
    "service_error",
    "recognizer_failed",
    "ended",
]


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    seq: int = Field(ge=0)
    timestamp: datetime
    speaker_label: SpeakerLabel
    text: str
    is_partial: bool = False
    source_backend: BackendKind
    raw_speaker_label: Optional[str] = None

    def display_time(self) -> str:
        return self.timestamp.astimezone().strftime("%H:%M:%S")


class TranscriptEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: TranscriptEventKind
    text: str
    speaker: SpeakerLabel
    raw_speaker_label: Optional[str] = None
    source_backend: BackendKind


class TerminationEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    reason: TerminationReason
    duration_ms: Optional[int] = None
    detail: str = ""
    source_backend: Optional[BackendKind] = None


AuditEventType = Literal[
    "SESSION_CREATED",
    "CAPTURE_STARTING",
    "DEVICE_ACQUIRED",
    "BACKEND_SELECTED",
    "BACKEND_UNAVAILABLE",
    "CAPTURE_ACTIVE",
    "CAPTURE_PAUSED",
    "CAPTURE_RESUMED",
    "ADAPTER_TERMINATED",
    "RESTART_SCHEDULED",
    "RESTART_DONE",
    "CAPTURE_STOPPED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


class CaptureSessionInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    session_id: str
    state: CaptureState
    active_backend_kind: Optional[BackendKind] = None
    started_at: Optional[datetime] = None
    last_restart_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    restart_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    audit_events: List[AuditEvent] = Field(default_factory=list)
