from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from scribe_capture.asr.speaker_assignment import SpeakerAssignment

from ..audio_bridge import AudioBridge, AudioFrame
from ..audio_utils import compute_rms
from ..config import CaptureConfig
from ..contracts import TranscriptEvent
from .base import BackendAdapter, BackendUnavailable

logger = logging.getLogger(__name__)

ResultCallback = Callable[[str, bool], None]
ErrorCallback = Callable[[str, str], None]
EndCallback = Callable[[], None]

TRANSIENT_ERRORS = frozenset({"no_speech", "aborted"})
FATAL_ERRORS = frozenset({"not_allowed", "service_not_allowed", "network", "unsupported"})


class ContinuousRecognizer(ABC):
    """
    A recognizer session that streams interim/final results and can end on its own.

    `on_end` fires exactly once per `start()`, including after `stop()`.
    """

    @abstractmethod
    async def start(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback) -> None: ...

    @abstractmethod
    def accept(self, samples: np.ndarray) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...


_MODEL_CACHE: Dict[Tuple[str, str, str], Any] = {}
_MODEL_LOCK = threading.Lock()


def load_whisper_model(model_size: str, device: str, compute_type: str) -> Any:
    key = (model_size, device, compute_type)
    with _MODEL_LOCK:
        model = _MODEL_CACHE.get(key)
        if model is None:
            from faster_whisper import WhisperModel

            model = WhisperModel(model_size, device=device, compute_type=compute_type)
            _MODEL_CACHE[key] = model
    return model


class FasterWhisperRecognizer(ContinuousRecognizer):
    """
    Sliding-window recognition with faster-whisper on a worker thread.

    Every `step` seconds the pending audio is decoded; the hypothesis is emitted
    as interim until the tail goes quiet or the window fills, then as final and
    the consumed audio is dropped.
    """

    def __init__(
        self,
        cfg: CaptureConfig,
        *,
        model_loader: Callable[[str, str, str], Any] = load_whisper_model,
    ) -> None:
        self._cfg = cfg
        self._model_loader = model_loader
        self._model: Any = None
        self._rate = int(cfg.CAPTURE_SAMPLE_RATE_HZ)
        self._audio = np.zeros(0, dtype=np.float32)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def load(self) -> Any:
        if self._model is not None:
            return self._model
        try:
            self._model = await asyncio.to_thread(
                self._model_loader,
                self._cfg.CAPTURE_ONDEVICE_MODEL,
                self._cfg.CAPTURE_ONDEVICE_DEVICE,
                self._cfg.CAPTURE_ONDEVICE_COMPUTE_TYPE,
            )
        except ImportError as exc:
            raise BackendUnavailable(
                "faster-whisper is not installed.", "on_device", code="unsupported"
            ) from exc
        except Exception as exc:
            raise BackendUnavailable(f"On-device model failed to load: {exc}", "on_device") from exc
        logger.info(
            "On-device model ready model=%s device=%s compute_type=%s",
            self._cfg.CAPTURE_ONDEVICE_MODEL,
            self._cfg.CAPTURE_ONDEVICE_DEVICE,
            self._cfg.CAPTURE_ONDEVICE_COMPUTE_TYPE,
        )
        return self._model

    async def start(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        await self.load()
        if self._task is not None and not self._task.done():
            await self.stop()
        self._audio = np.zeros(0, dtype=np.float32)
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run(on_result, on_error, on_end))

    def accept(self, samples: np.ndarray) -> None:
        if not self._running:
            return
        self._audio = np.concatenate([self._audio, np.asarray(samples, dtype=np.float32)])

    async def stop(self) -> None:
        self._running = False
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _decode(self, audio: np.ndarray) -> str:
        segments, _info = self._model.transcribe(
            audio,
            language=self._cfg.recognizer_language(),
            beam_size=1,
        )
        return " ".join((seg.text or "").strip() for seg in segments).strip()

    async def _run(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback) -> None:
        loop = asyncio.get_running_loop()
        step = max(0.05, float(self._cfg.CAPTURE_ONDEVICE_STEP_SEC))
        window_samples = int(self._cfg.CAPTURE_ONDEVICE_WINDOW_SEC * self._rate)
        tail_samples = max(1, int(0.5 * self._rate))
        started = loop.time()
        last_text_at = started
        try:
            while self._running:
                await asyncio.sleep(step)
                now = loop.time()
                if now - started >= self._cfg.CAPTURE_ONDEVICE_MAX_SESSION_SEC:
                    break
                audio = self._audio
                text = ""
                if audio.size:
                    text = await asyncio.to_thread(self._decode, audio)
                if not self._running:
                    break
                if text:
                    last_text_at = now
                    quiet = compute_rms(audio[-tail_samples:]) < self._cfg.CAPTURE_SILENCE_RMS
                    if quiet or audio.size >= window_samples:
                        on_result(text, True)
                        self._audio = self._audio[audio.size :]
                    else:
                        on_result(text, False)
                    continue
                if audio.size >= window_samples:
                    self._audio = self._audio[audio.size :]
                if now - last_text_at >= self._cfg.CAPTURE_ONDEVICE_NO_SPEECH_SEC:
                    last_text_at = now
                    on_error("no_speech", "no speech detected")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("On-device recognition failed: %s", exc)
            on_error("recognizer_failed", str(exc))
        finally:
            self._running = False
            on_end()


class OnDeviceAdapter(BackendAdapter):
    kind = "on_device"

    def __init__(
        self,
        cfg: CaptureConfig,
        bridge: AudioBridge,
        speakers: SpeakerAssignment,
        *,
        recognizer: Optional[ContinuousRecognizer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock=clock)
        self._cfg = cfg
        self._bridge = bridge
        self._speakers = speakers
        self._recognizer = recognizer or FasterWhisperRecognizer(cfg)
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._token = 0
        self._ended_token = -1
        self._last_error: Optional[str] = None

    async def _open(self) -> None:
        await self._start_recognizer()
        if self._unsubscribe is None:
            self._unsubscribe = self._bridge.add_frame_listener(self._on_frame)

    async def _start_recognizer(self) -> None:
        self._token += 1
        token = self._token
        self._last_error = None
        await self._recognizer.start(
            partial(self._on_result, token),
            partial(self._on_error, token),
            partial(self._on_end, token),
        )

    async def _stop_recognizer(self) -> None:
        # Callbacks from the retired session are ignored from here on.
        self._token += 1
        await self._recognizer.stop()

    async def _close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._stop_recognizer()

    async def _suspend(self) -> None:
        await self._stop_recognizer()

    async def _resume(self) -> None:
        await self._start_recognizer()

    async def _reopen(self) -> None:
        await self._stop_recognizer()
        await self._start_recognizer()

    def _on_frame(self, frame: AudioFrame) -> None:
        if self.is_running:
            self._recognizer.accept(frame.samples)

    def _on_result(self, token: int, text: str, is_final: bool) -> None:
        if token != self._token or not self.is_running:
            return
        text = (text or "").strip()
        speaker = self._speakers.resolve(final=is_final and bool(text))
        self._emit_transcript(
            TranscriptEvent(
                kind="final" if is_final else "partial",
                text=text,
                speaker=speaker,
                source_backend=self.kind,
            )
        )

    def _on_error(self, token: int, code: str, message: str) -> None:
        if token != self._token:
            return
        code = (code or "").strip().lower().replace("-", "_")
        if code in TRANSIENT_ERRORS:
            logger.info("On-device recognizer transient error code=%s; still listening", code)
            return
        logger.warning("On-device recognizer error code=%s message=%s", code, message)
        if code in FATAL_ERRORS:
            self._ended_token = token
            self._emit_termination(code, message)  # type: ignore[arg-type]
            return
        self._last_error = message or code

    def _on_end(self, token: int) -> None:
        if token != self._token or token == self._ended_token:
            return
        self._ended_token = token
        if self._last_error:
            self._emit_termination("recognizer_failed", self._last_error)
        else:
            self._emit_termination("ended", "recognizer session ended")
