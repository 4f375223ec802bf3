from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from scribe_capture.asr.speaker_assignment import SpeakerAssignment

from ..audio_bridge import AudioBridge, AudioFrame
from ..config import CaptureConfig
from ..contracts import TranscriptEvent
from .base import BackendAdapter, BackendUnavailable

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


class CloudStreamingAdapter(BackendAdapter):
    """
    Bidirectional streaming: PCM16 frames go up the socket as they are captured,
    JSON `{transcript, isPartial, speaker?, speakerLabel?}` events come back.
    """

    kind = "cloud_streaming"

    def __init__(
        self,
        cfg: CaptureConfig,
        bridge: AudioBridge,
        speakers: SpeakerAssignment,
        *,
        connect: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock=clock)
        self._cfg = cfg
        self._bridge = bridge
        self._speakers = speakers
        self._connect: Connector = connect or ws_connect
        self._ws: Any = None
        self._socket_closed = True
        self._recv_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def send_in_flight(self) -> bool:
        return self._send_task is not None and not self._send_task.done()

    def stream_url(self) -> str:
        parts = urlsplit(self._cfg.CAPTURE_CLOUD_URL)
        query = dict(parse_qsl(parts.query))
        query["language"] = self._cfg.CAPTURE_LANGUAGE
        query["sample_rate"] = str(self._cfg.CAPTURE_SAMPLE_RATE_HZ)
        query["encoding"] = "pcm16"
        return urlunsplit(parts._replace(query=urlencode(query)))

    async def _open(self) -> None:
        if not self._cfg.CAPTURE_CLOUD_URL:
            raise BackendUnavailable("Cloud streaming URL is not configured.", self.kind)
        await self._open_socket()
        if self._unsubscribe is None:
            self._unsubscribe = self._bridge.add_frame_listener(self._on_frame)

    async def _open_socket(self) -> None:
        headers: dict[str, str] = {}
        if self._cfg.CAPTURE_CLOUD_API_KEY:
            headers["Authorization"] = f"Bearer {self._cfg.CAPTURE_CLOUD_API_KEY}"
        try:
            ws = await asyncio.wait_for(
                self._connect(self.stream_url(), additional_headers=headers),
                timeout=self._cfg.CAPTURE_CLOUD_CONNECT_TIMEOUT_SEC,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise BackendUnavailable(f"Cloud streaming handshake failed: {exc}", self.kind) from exc
        self._ws = ws
        self._socket_closed = False
        self._recv_task = asyncio.get_running_loop().create_task(self._receive_loop(ws))
        logger.info("Cloud streaming connected url=%s", urlsplit(self._cfg.CAPTURE_CLOUD_URL).netloc)

    async def _close_socket(self) -> None:
        ws, task = self._ws, self._recv_task
        self._ws = None
        self._recv_task = None
        self._socket_closed = True
        send, self._send_task = self._send_task, None
        if send is not None and not send.done():
            send.cancel()
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Cloud socket close failed: %s", exc)

    async def _close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._close_socket()

    async def _suspend(self) -> None:
        # Socket stays open; the muted bridge sends nothing and events are dropped.
        return None

    async def _resume(self) -> None:
        if self._socket_closed:
            await self._close_socket()
            await self._open_socket()

    async def _reopen(self) -> None:
        await self._close_socket()
        await self._open_socket()

    def _on_frame(self, frame: AudioFrame) -> None:
        ws = self._ws
        if ws is None or not self.is_running or self._socket_closed:
            return
        # One send in flight at most; frames arriving while the socket is stalled are dropped.
        if self._send_task is not None and not self._send_task.done():
            self.frames_dropped += 1
            if self.frames_dropped == 1 or self.frames_dropped % 50 == 0:
                logger.warning("Cloud socket is not keeping up; dropped %s frames", self.frames_dropped)
            return
        self._send_task = asyncio.get_running_loop().create_task(self._send(ws, frame.pcm16))

    async def _send(self, ws: Any, payload: bytes) -> None:
        try:
            await ws.send(payload)
            self.frames_sent += 1
        except ConnectionClosed:
            # The receive loop reports the close.
            pass
        except Exception as exc:
            logger.warning("Cloud frame send failed: %s", exc)

    async def _receive_loop(self, ws: Any) -> None:
        detail = "stream ended"
        try:
            async for message in ws:
                if self._handle_message(message):
                    return
        except ConnectionClosed as exc:
            detail = str(exc)
        if ws is not self._ws:
            return
        self._socket_closed = True
        self._emit_termination("connection_closed", detail)

    def _handle_message(self, message: Any) -> bool:
        """Returns True when the stream must be abandoned."""
        if isinstance(message, (bytes, bytearray)):
            return False
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning("Cloud streaming sent a non-JSON message; ignoring")
            return False
        if not isinstance(data, dict):
            return False
        if data.get("error"):
            logger.warning("Cloud streaming reported an error: %s", data.get("error"))
            self._socket_closed = True
            self._emit_termination("service_error", str(data.get("error")))
            return True

        text = str(data.get("transcript") or "").strip()
        is_partial = bool(data.get("isPartial", False))
        raw_tag = data.get("speakerLabel")
        raw_tag = str(raw_tag) if raw_tag is not None and str(raw_tag).strip() else None
        if (not text and not is_partial) or not self.is_running:
            return False
        speaker = self._speakers.resolve(data.get("speaker"), raw_tag, final=not is_partial and bool(text))
        self._emit_transcript(
            TranscriptEvent(
                kind="partial" if is_partial else "final",
                text=text,
                speaker=speaker,
                raw_speaker_label=raw_tag,
                source_backend=self.kind,
            )
        )
        return False
