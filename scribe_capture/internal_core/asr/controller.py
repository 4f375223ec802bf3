from __future__ import annotations

import asyncio
import datetime as _dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from scribe_capture.asr.recovery import RecoverySupervisor
from scribe_capture.asr.speaker_assignment import SpeakerAssignment
from scribe_capture.asr.transcript_assembler import TranscriptAssembler, TranscriptListener, TranscriptView

from .. import audit
from ..audio_bridge import AudioBridge
from ..config import CaptureConfig, load_config
from ..contracts import (
    AuditEvent,
    BackendKind,
    CaptureSessionInfo,
    CaptureState,
    TerminationEvent,
    TranscriptEntry,
    TranscriptEvent,
)
from .base import BackendAdapter, BackendUnavailable, CaptureError, FatalAdapterFault

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[CaptureConfig, AudioBridge, SpeakerAssignment], BackendAdapter]
BridgeFactory = Callable[[CaptureConfig], AudioBridge]

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"starting"}),
    "starting": frozenset({"active", "error"}),
    "active": frozenset({"paused", "stopped", "error"}),
    "paused": frozenset({"active", "stopped", "error"}),
    "stopped": frozenset(),
    "error": frozenset(),
}

_LIVE_STATES = frozenset({"starting", "active", "paused"})


def _now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


@dataclass
class CaptureSession:
    session_id: str
    state: CaptureState = "idle"
    active_backend_kind: Optional[BackendKind] = None
    started_at: Optional[_dt.datetime] = None
    last_restart_at: Optional[_dt.datetime] = None
    stopped_at: Optional[_dt.datetime] = None
    restart_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    audit_events: List[AuditEvent] = field(default_factory=list)

    def snapshot(self) -> CaptureSessionInfo:
        return CaptureSessionInfo(
            session_id=self.session_id,
            state=self.state,
            active_backend_kind=self.active_backend_kind,
            started_at=self.started_at,
            last_restart_at=self.last_restart_at,
            stopped_at=self.stopped_at,
            restart_count=self.restart_count,
            error_code=self.error_code,
            error_message=self.error_message,
            audit_events=list(self.audit_events),
        )


def default_adapter_factories(cfg: CaptureConfig) -> List[Tuple[BackendKind, AdapterFactory]]:
    """Backends in fixed policy order, limited to the ones the config enables."""
    from .chunked_upload import ChunkedUploadAdapter
    from .cloud_streaming import CloudStreamingAdapter
    from .on_device import OnDeviceAdapter

    factories: List[Tuple[BackendKind, AdapterFactory]] = []
    if cfg.CAPTURE_CLOUD_ENABLED:
        factories.append(("cloud_streaming", CloudStreamingAdapter))
    if cfg.CAPTURE_ONDEVICE_ENABLED:
        factories.append(("on_device", OnDeviceAdapter))
    if cfg.CAPTURE_UPLOAD_URL:
        factories.append(("chunked_upload", ChunkedUploadAdapter))
    return factories


class CaptureController:
    """
    Owns the single live capture session: microphone, selected backend,
    transcript and recovery timer.

    Start and stop are serialized with an asyncio lock so overlapping requests
    can never acquire the device twice.
    """

    def __init__(
        self,
        cfg: Optional[CaptureConfig] = None,
        *,
        bridge_factory: Optional[BridgeFactory] = None,
        adapter_factories: Optional[Sequence[Tuple[BackendKind, AdapterFactory]]] = None,
    ) -> None:
        self._cfg = cfg or load_config()
        self._bridge_factory: BridgeFactory = bridge_factory or AudioBridge
        self._adapter_factories = list(
            adapter_factories if adapter_factories is not None else default_adapter_factories(self._cfg)
        )
        self._lock = asyncio.Lock()
        self._session: Optional[CaptureSession] = None
        self._bridge: Optional[AudioBridge] = None
        self._adapter: Optional[BackendAdapter] = None
        self._supervisor: Optional[RecoverySupervisor] = None
        self._speakers = SpeakerAssignment()
        self._assembler = TranscriptAssembler()
        self._remove_assembler_listener = self._assembler.add_listener(self._forward_change)
        self._transcript_listeners: List[TranscriptListener] = []
        self._cleanup_tasks: set[asyncio.Task] = set()

    # ---- read accessors ----

    @property
    def config(self) -> CaptureConfig:
        return self._cfg

    @property
    def session(self) -> Optional[CaptureSessionInfo]:
        return self._session.snapshot() if self._session is not None else None

    @property
    def state(self) -> CaptureState:
        return self._session.state if self._session is not None else "idle"

    @property
    def is_transcribing(self) -> bool:
        return self.state in _LIVE_STATES

    @property
    def is_paused(self) -> bool:
        return self.state == "paused"

    @property
    def active_adapter(self) -> Optional[BackendAdapter]:
        return self._adapter

    def transcript(self, include_partial: bool = False) -> TranscriptView:
        return self._assembler.get_ordered_transcript(include_partial=include_partial)

    def transcript_entries(self, include_partial: bool = False) -> List[TranscriptEntry]:
        return list(self.transcript(include_partial=include_partial))

    def transcript_text(self) -> str:
        return self._assembler.transcript_text()

    def add_transcript_listener(self, cb: TranscriptListener) -> Callable[[], None]:
        self._transcript_listeners.append(cb)

        def _remove() -> None:
            if cb in self._transcript_listeners:
                self._transcript_listeners.remove(cb)

        return _remove

    # ---- commands ----

    async def start_capture(self, *, secure_context: Optional[bool] = None) -> CaptureSessionInfo:
        async with self._lock:
            current = self._session
            if current is not None and current.state == "active":
                logger.info("start_capture ignored; session %s already active", current.session_id)
                return current.snapshot()
            if current is not None and current.state == "paused":
                logger.info("start_capture while paused; stopping session %s first", current.session_id)
                await self._stop_locked(current)
            elif current is not None and current.state == "starting":
                await self._fail_locked(current, "start_interrupted", "Previous start never completed.")
            return await self._start_locked(secure_context)

    async def pause_capture(self) -> Optional[CaptureSessionInfo]:
        async with self._lock:
            session = self._session
            if session is None or session.state != "active":
                return self.session
            if self._supervisor is not None:
                self._supervisor.cancel()
            if self._bridge is not None:
                self._bridge.mute()
            if self._adapter is not None:
                await self._adapter.pause()
            self._transition(session, "paused")
            audit.log_event(session, "CAPTURE_PAUSED", "PAUSE", f"backend={session.active_backend_kind}")
            return session.snapshot()

    async def resume_capture(self) -> Optional[CaptureSessionInfo]:
        async with self._lock:
            session = self._session
            if session is None or session.state != "paused":
                return self.session
            try:
                if self._adapter is not None:
                    await self._adapter.resume()
            except Exception as exc:
                code = exc.code if isinstance(exc, CaptureError) else "resume_failed"
                await self._fail_locked(session, code, f"Resume failed: {exc}")
                raise
            if self._bridge is not None:
                self._bridge.unmute()
            self._transition(session, "active")
            audit.log_event(session, "CAPTURE_RESUMED", "RESUME", f"backend={session.active_backend_kind}")
            return session.snapshot()

    async def stop_capture(self) -> Optional[CaptureSessionInfo]:
        async with self._lock:
            session = self._session
            if session is not None and session.state in ("active", "paused"):
                await self._stop_locked(session)
            elif session is not None and session.state == "starting":
                # starting cannot move to stopped; the half-started session ends in error.
                self._end_with_error(session, "start_interrupted", "Stopped before capture became active.")
            if self._cleanup_tasks:
                await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)
            return self.session

    # ---- internals ----

    def _transition(self, session: CaptureSession, new_state: CaptureState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[session.state]:
            raise RuntimeError(f"Illegal capture transition {session.state} -> {new_state}")
        logger.debug("capture session=%s %s -> %s", session.session_id, session.state, new_state)
        session.state = new_state

    def _is_current_active(self, session: CaptureSession) -> bool:
        return session is self._session and session.state == "active"

    async def _start_locked(self, secure_context: Optional[bool]) -> CaptureSessionInfo:
        session = CaptureSession(session_id=uuid.uuid4().hex)
        self._session = session
        self._speakers = SpeakerAssignment()
        self._remove_assembler_listener()
        self._assembler = TranscriptAssembler()
        self._remove_assembler_listener = self._assembler.add_listener(self._forward_change)

        audit.log_event(session, "SESSION_CREATED", "SESSION", f"language={self._cfg.CAPTURE_LANGUAGE}")
        self._transition(session, "starting")
        audit.log_event(session, "CAPTURE_STARTING", "START", "acquiring microphone")

        secure = self._cfg.endpoints_secure() and (True if secure_context is None else bool(secure_context))
        bridge = self._bridge_factory(self._cfg)
        self._bridge = bridge
        try:
            await bridge.acquire(secure_context=secure)
            audit.log_event(session, "DEVICE_ACQUIRED", "DEVICE", f"rate={bridge.device_rate}")
            bridge.add_termination_listener(lambda reason: self._on_device_terminated(session, reason))
            adapter = await self._select_backend(session, bridge)
        except BaseException as exc:
            if isinstance(exc, CaptureError):
                code = exc.code
            elif isinstance(exc, asyncio.CancelledError):
                code = "start_cancelled"
            else:
                code = "start_failed"
            message = str(exc) or "Capture start was cancelled."
            bridge.release()
            self._bridge = None
            session.error_code = code
            session.error_message = message
            session.stopped_at = _now()
            self._transition(session, "error")
            audit.log_event(session, "ERROR", code, message)
            logger.warning("Capture start failed session=%s code=%s: %s", session.session_id, code, message)
            raise

        self._adapter = adapter
        session.active_backend_kind = adapter.kind
        self._supervisor = RecoverySupervisor(
            restart=lambda: self._restart_adapter(session),
            is_active=lambda: self._is_current_active(session),
            on_fatal=lambda event, detail: self._on_fatal(session, event, detail),
            on_restart_scheduled=lambda event: audit.log_event(
                session,
                "RESTART_SCHEDULED",
                event.reason,
                f"delay_sec={self._cfg.CAPTURE_RESTART_DELAY_SEC}",
                duration_ms=event.duration_ms,
            ),
            on_restarted=lambda: self._on_restarted(session),
            restart_delay_sec=self._cfg.CAPTURE_RESTART_DELAY_SEC,
            min_session_ms=self._cfg.CAPTURE_MIN_SESSION_MS,
        )
        session.started_at = _now()
        self._transition(session, "active")
        audit.log_event(session, "CAPTURE_ACTIVE", "ACTIVE", f"backend={adapter.kind}")
        logger.info("Capture active session=%s backend=%s", session.session_id, adapter.kind)
        return session.snapshot()

    async def _select_backend(self, session: CaptureSession, bridge: AudioBridge) -> BackendAdapter:
        failures: List[str] = []
        for kind, factory in self._adapter_factories:
            adapter = factory(self._cfg, bridge, self._speakers)
            adapter.on_transcript(lambda event: self._on_transcript(session, event))
            adapter.on_termination(lambda event: self._on_termination(session, event))
            try:
                await adapter.start()
            except BackendUnavailable as exc:
                failures.append(f"{kind}: {exc.message}")
                audit.log_event(session, "BACKEND_UNAVAILABLE", exc.code, f"{kind}: {exc.message}")
                logger.info("Backend %s unavailable: %s", kind, exc.message)
                await adapter.stop()
                continue
            except BaseException:
                await adapter.stop()
                raise
            audit.log_event(session, "BACKEND_SELECTED", kind, f"candidates={len(self._adapter_factories)}")
            return adapter
        detail = "; ".join(failures) if failures else "no backend is enabled"
        raise BackendUnavailable(f"No transcription backend could start ({detail}).")

    async def _stop_locked(self, session: CaptureSession) -> None:
        if self._supervisor is not None:
            self._supervisor.close()
            self._supervisor = None
        self._transition(session, "stopped")
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await adapter.stop()
        self._assembler.flush()
        if self._bridge is not None:
            self._bridge.release()
            self._bridge = None
        session.stopped_at = _now()
        audit.log_event(session, "CAPTURE_STOPPED", "user_stop", f"backend={session.active_backend_kind}")
        logger.info("Capture stopped session=%s restarts=%s", session.session_id, session.restart_count)

    async def _fail_locked(self, session: CaptureSession, code: str, message: str) -> None:
        self._end_with_error(session, code, message)
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    def _end_with_error(self, session: CaptureSession, code: str, message: str) -> None:
        """Synchronous teardown on a fatal fault; the adapter is stopped in the background."""
        if session is not self._session or session.state not in _LIVE_STATES:
            return
        if self._supervisor is not None:
            self._supervisor.close()
            self._supervisor = None
        session.error_code = code
        session.error_message = message
        session.stopped_at = _now()
        self._transition(session, "error")
        self._assembler.flush()
        if self._bridge is not None:
            self._bridge.release()
            self._bridge = None
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            task = asyncio.get_running_loop().create_task(adapter.stop())
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)
        audit.log_event(session, "ERROR", code, message)
        logger.warning("Capture ended with error session=%s code=%s: %s", session.session_id, code, message)

    async def _restart_adapter(self, session: CaptureSession) -> None:
        adapter = self._adapter
        if adapter is None or not self._is_current_active(session):
            return
        await adapter.restart()

    def _on_restarted(self, session: CaptureSession) -> None:
        if session is not self._session:
            return
        session.restart_count += 1
        session.last_restart_at = _now()
        audit.log_event(session, "RESTART_DONE", "RESTART", f"restart_count={session.restart_count}")

    def _on_fatal(self, session: CaptureSession, event: TerminationEvent, detail: str) -> None:
        fault = FatalAdapterFault(event.reason, detail, event.source_backend)
        self._end_with_error(session, fault.code, fault.message)

    def _on_transcript(self, session: CaptureSession, event: TranscriptEvent) -> None:
        if not self._is_current_active(session):
            return
        if event.kind == "partial":
            self._assembler.on_partial(
                event.text,
                event.speaker,
                event.raw_speaker_label,
                source_backend=event.source_backend,
            )
        else:
            self._assembler.on_final(
                event.text,
                event.speaker,
                event.raw_speaker_label,
                source_backend=event.source_backend,
            )

    def _on_termination(self, session: CaptureSession, event: TerminationEvent) -> None:
        if session is not self._session or session.state not in ("active", "paused"):
            return
        audit.log_event(
            session,
            "ADAPTER_TERMINATED",
            event.reason,
            event.detail,
            duration_ms=event.duration_ms,
        )
        if self._supervisor is not None:
            self._supervisor.handle_termination(event)

    def _on_device_terminated(self, session: CaptureSession, reason: str) -> None:
        backend = self._adapter.kind if self._adapter is not None else None
        self._on_termination(
            session,
            TerminationEvent(reason="device_lost", detail=reason, source_backend=backend),
        )

    def _forward_change(self, kind, entry) -> None:
        for cb in list(self._transcript_listeners):
            try:
                cb(kind, entry)
            except Exception:
                logger.exception("Transcript listener failed kind=%s", kind)
