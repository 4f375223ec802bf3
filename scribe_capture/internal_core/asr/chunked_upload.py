from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from scribe_capture.asr.speaker_assignment import SpeakerAssignment

from ..audio_bridge import AudioBridge, AudioFrame
from ..audio_utils import BlobRecorder
from ..config import CaptureConfig
from ..contracts import TranscriptEvent
from .base import BackendAdapter, BackendUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_EXCEPTIONS = (httpx.TransportError,)


class ChunkedUploadAdapter(BackendAdapter):
    """
    Fallback backend: fixed-length WAV chunks are POSTed to a transcription
    endpoint. Every response becomes a final entry; there are no partials.
    """

    kind = "chunked_upload"

    def __init__(
        self,
        cfg: CaptureConfig,
        bridge: AudioBridge,
        speakers: SpeakerAssignment,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        retry_wait: Optional[Any] = None,
    ) -> None:
        super().__init__(clock=clock)
        self._cfg = cfg
        self._bridge = bridge
        self._speakers = speakers
        self._client = client
        self._owns_client = client is None
        self._retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=4)
        self._recorder = BlobRecorder(cfg.CAPTURE_CHUNK_SEC, self._on_blob, sample_rate=cfg.CAPTURE_SAMPLE_RATE_HZ)
        self._in_flight: set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._chunk_index = 0
        self.uploads_failed = 0
        self.results_discarded = 0

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def _open(self) -> None:
        if not self._cfg.CAPTURE_UPLOAD_URL:
            raise BackendUnavailable("No chunk upload endpoint is configured.", self.kind)
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._cfg.CAPTURE_UPLOAD_TIMEOUT_SEC)
        if self._unsubscribe is None:
            self._unsubscribe = self._bridge.add_frame_listener(self._on_frame)

    async def _close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._recorder.discard()
        pending = list(self._in_flight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._in_flight.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _suspend(self) -> None:
        self._recorder.discard()

    async def _resume(self) -> None:
        return None

    async def _reopen(self) -> None:
        self._recorder.discard()

    def _on_frame(self, frame: AudioFrame) -> None:
        if self.is_running:
            self._recorder.push(frame.samples)

    def _on_blob(self, blob: bytes) -> None:
        index = self._chunk_index
        self._chunk_index += 1
        task = asyncio.get_running_loop().create_task(self._upload_and_emit(index, blob))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _post_chunk(self, blob: bytes) -> dict:
        headers: dict[str, str] = {}
        if self._cfg.CAPTURE_UPLOAD_API_KEY:
            headers["Authorization"] = f"Bearer {self._cfg.CAPTURE_UPLOAD_API_KEY}"
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
            stop=stop_after_attempt(max(1, self._cfg.CAPTURE_UPLOAD_MAX_ATTEMPTS)),
            wait=self._retry_wait,
            before_sleep=lambda state: logger.warning(
                "Retrying chunk upload, attempt %s...", state.attempt_number
            ),
            reraise=True,
        ):
            with attempt:
                response = await self._client.post(
                    self._cfg.CAPTURE_UPLOAD_URL,
                    files={"audio": ("chunk.wav", blob, "audio/wav")},
                    data={"language": self._cfg.CAPTURE_LANGUAGE},
                    headers=headers,
                )
                response.raise_for_status()
                payload = response.json()
        return payload if isinstance(payload, dict) else {}

    async def _upload_and_emit(self, index: int, blob: bytes) -> None:
        try:
            payload = await self._post_chunk(blob)
        except asyncio.CancelledError:
            raise
        except (httpx.HTTPError, ValueError) as exc:
            self.uploads_failed += 1
            logger.warning("Chunk upload failed chunk=%s: %s; skipping", index, exc)
            return
        if not self.is_running:
            self.results_discarded += 1
            logger.info("Discarding chunk result after stop/pause chunk=%s", index)
            return
        text = str(payload.get("transcript") or payload.get("text") or "").strip()
        if not text:
            return
        raw_tag = payload.get("speakerLabel")
        raw_tag = str(raw_tag) if raw_tag is not None and str(raw_tag).strip() else None
        speaker = self._speakers.resolve(payload.get("speaker"), raw_tag, final=True)
        self._emit_transcript(
            TranscriptEvent(
                kind="final",
                text=text,
                speaker=speaker,
                raw_speaker_label=raw_tag,
                source_backend=self.kind,
            )
        )
