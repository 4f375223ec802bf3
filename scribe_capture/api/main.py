from __future__ import annotations

"""
HTTP/WebSocket surface for live consultation capture.

Design intent:
- Keep API orchestration thin and typed.
- Delegate capture lifecycle to the controller; never touch devices here.
- Map capture failures to explicit status codes the UI can explain.
"""

import asyncio
import logging
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from scribe_capture.asr.formatting import build_analysis_payload, format_for_display
from scribe_capture.internal_core.asr.base import (
    BackendUnavailable,
    CaptureError,
    DeviceUnavailable,
    FatalAdapterFault,
    PermissionDenied,
    SecureContextRequired,
)
from scribe_capture.internal_core.asr.controller import CaptureController
from scribe_capture.internal_core.config import load_config
from scribe_capture.internal_core.contracts import CaptureSessionInfo, CaptureState, TranscriptEntry

_LOOPBACK_CLIENTS = {"127.0.0.1", "::1", "localhost"}


class CaptureCommandResponse(BaseModel):
    state: CaptureState
    message: str
    session: Optional[CaptureSessionInfo] = None


class CaptureStatusResponse(BaseModel):
    state: CaptureState
    is_transcribing: bool
    is_paused: bool
    session: Optional[CaptureSessionInfo] = None


class CaptureTranscriptResponse(BaseModel):
    session_id: Optional[str] = None
    state: CaptureState
    entries: list[TranscriptEntry] = Field(default_factory=list)
    display_text: str = ""
    transcript_text: str = ""


class AnalysisPayloadResponse(BaseModel):
    session_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


def _configure_logging() -> None:
    level_name = str(load_config().CAPTURE_LOG_LEVEL or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


_configure_logging()
app = FastAPI(title="scribe capture service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_capture_controller() -> CaptureController:
    existing = getattr(app.state, "capture_controller", None)
    if existing is not None:
        return existing
    created = CaptureController(load_config())
    setattr(app.state, "capture_controller", created)
    return created


def _request_is_secure(request: Request) -> bool:
    forwarded = str(request.headers.get("x-forwarded-proto", "") or "").split(",")[0].strip().lower()
    if request.url.scheme == "https" or forwarded == "https":
        return True
    host = request.client.host if request.client is not None else ""
    return host in _LOOPBACK_CLIENTS


def _http_error_from_capture(exc: CaptureError) -> HTTPException:
    if isinstance(exc, PermissionDenied):
        status_code = 403
    elif isinstance(exc, SecureContextRequired):
        status_code = 426
    elif isinstance(exc, (DeviceUnavailable, BackendUnavailable)):
        status_code = 503
    elif isinstance(exc, FatalAdapterFault):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


def _command_response(controller: CaptureController, message: str) -> CaptureCommandResponse:
    return CaptureCommandResponse(state=controller.state, message=message, session=controller.session)


def _entry_payload(entry: Optional[TranscriptEntry]) -> Optional[dict[str, Any]]:
    return entry.model_dump(mode="json") if entry is not None else None


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/capture/start", response_model=CaptureCommandResponse)
async def capture_start(request: Request) -> CaptureCommandResponse:
    controller = _get_capture_controller()
    was_active = controller.state == "active"
    try:
        await controller.start_capture(secure_context=_request_is_secure(request))
    except CaptureError as exc:
        logger.warning("capture start rejected code=%s: %s", exc.code, exc.message)
        raise _http_error_from_capture(exc) from exc
    message = "Transcription already running." if was_active else "Transcription started."
    return _command_response(controller, message)


@app.post("/capture/pause", response_model=CaptureCommandResponse)
async def capture_pause() -> CaptureCommandResponse:
    controller = _get_capture_controller()
    await controller.pause_capture()
    message = "Transcription paused." if controller.is_paused else "Nothing to pause."
    return _command_response(controller, message)


@app.post("/capture/resume", response_model=CaptureCommandResponse)
async def capture_resume() -> CaptureCommandResponse:
    controller = _get_capture_controller()
    was_paused = controller.is_paused
    try:
        await controller.resume_capture()
    except CaptureError as exc:
        raise _http_error_from_capture(exc) from exc
    message = "Transcription resumed." if was_paused and controller.state == "active" else "Nothing to resume."
    return _command_response(controller, message)


@app.post("/capture/stop", response_model=CaptureCommandResponse)
async def capture_stop() -> CaptureCommandResponse:
    controller = _get_capture_controller()
    was_live = controller.is_transcribing
    await controller.stop_capture()
    message = "Transcription stopped." if was_live else "Transcription was not running."
    return _command_response(controller, message)


@app.get("/capture/status", response_model=CaptureStatusResponse)
async def capture_status() -> CaptureStatusResponse:
    controller = _get_capture_controller()
    return CaptureStatusResponse(
        state=controller.state,
        is_transcribing=controller.is_transcribing,
        is_paused=controller.is_paused,
        session=controller.session,
    )


@app.get("/capture/transcript", response_model=CaptureTranscriptResponse)
async def capture_transcript(include_partial: bool = Query(default=False)) -> CaptureTranscriptResponse:
    controller = _get_capture_controller()
    entries = controller.transcript_entries(include_partial=include_partial)
    session = controller.session
    return CaptureTranscriptResponse(
        session_id=session.session_id if session is not None else None,
        state=controller.state,
        entries=entries,
        display_text=format_for_display(entries),
        transcript_text=controller.transcript_text(),
    )


@app.get("/capture/analysis-payload", response_model=AnalysisPayloadResponse)
async def capture_analysis_payload() -> AnalysisPayloadResponse:
    controller = _get_capture_controller()
    try:
        payload = build_analysis_payload(controller.transcript_entries(include_partial=True))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    session = controller.session
    return AnalysisPayloadResponse(
        session_id=session.session_id if session is not None else None,
        payload=payload,
    )


@app.websocket("/ws/capture/transcript")
async def capture_transcript_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    controller = _get_capture_controller()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _on_change(kind: Literal["partial", "final", "partial_cleared", "flushed"], entry: Optional[TranscriptEntry]) -> None:
        queue.put_nowait({"type": kind, "entry": _entry_payload(entry), "state": controller.state})

    await websocket.send_json(
        {
            "type": "snapshot",
            "state": controller.state,
            "entries": [_entry_payload(item) for item in controller.transcript_entries(include_partial=True)],
        }
    )
    remove = controller.add_transcript_listener(_on_change)

    async def _pump() -> None:
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    async def _drain_client() -> None:
        # Client frames are ignored; receiving surfaces the disconnect.
        while True:
            await websocket.receive_text()

    pump = asyncio.create_task(_pump())
    drain = asyncio.create_task(_drain_client())
    try:
        done, _ = await asyncio.wait({pump, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("transcript websocket closed with error: %s", exc)
    finally:
        remove()
        for task in (pump, drain):
            task.cancel()
        await asyncio.gather(pump, drain, return_exceptions=True)
