from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

import numpy as np

from .asr.base import CaptureError, DeviceUnavailable, PermissionDenied, SecureContextRequired
from .audio_utils import FrameAssembler, downmix_to_mono, float_to_pcm16, pick_input_device, resample_linear
from .config import CaptureConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioFrame:
    pcm16: bytes
    samples: np.ndarray
    seq: int
    captured_at: float

    @property
    def num_samples(self) -> int:
        return int(self.samples.size)


FrameCallback = Callable[[AudioFrame], None]
DeviceTerminationCallback = Callable[[str], None]


class InputStream(Protocol):
    def stop(self) -> None: ...

    def close(self) -> None: ...


class InputSource(Protocol):
    def list_input_devices(self) -> List[dict]: ...

    def open_stream(
        self,
        *,
        device: int,
        samplerate: int,
        blocksize: int,
        callback: Callable[..., None],
        finished_callback: Callable[[], None],
    ) -> InputStream: ...


_PERMISSION_MARKERS = ("permission", "not permitted", "denied", "not authorized")


def stream_open_error(exc: BaseException) -> CaptureError:
    """Only permission-like PortAudio failures count as a refusal; anything else means the device is unusable."""
    text = str(exc).lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return PermissionDenied(f"Microphone access was denied: {exc}")
    return DeviceUnavailable(f"Could not open the microphone: {exc}")


def _close_abandoned_stream(opening: asyncio.Future) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    stream = opening.result()
    try:
        stream.stop()
        stream.close()
    except Exception as exc:
        logger.warning("Closing abandoned audio stream failed: %s", exc)
    logger.info("Closed audio stream that finished opening after acquire was cancelled")


class SoundDeviceSource:
    """PortAudio microphone access via `sounddevice` (imported lazily)."""

    def list_input_devices(self) -> List[dict]:
        import sounddevice as sd

        return [dict(dev) for dev in sd.query_devices()]

    def open_stream(
        self,
        *,
        device: int,
        samplerate: int,
        blocksize: int,
        callback: Callable[..., None],
        finished_callback: Callable[[], None],
    ) -> InputStream:
        import sounddevice as sd

        try:
            stream = sd.InputStream(
                samplerate=samplerate,
                channels=1,
                dtype="float32",
                blocksize=blocksize,
                device=device,
                callback=callback,
                finished_callback=finished_callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise stream_open_error(exc) from exc
        return stream


class AudioBridge:
    """
    Owns the single microphone handle for a capture session.

    PortAudio invokes `_on_block` on its own thread; every block is handed to the
    event loop with `call_soon_threadsafe`, resampled to the configured rate and
    re-blocked into fixed-size frames before listeners see it.
    """

    def __init__(self, cfg: CaptureConfig, *, source: Optional[InputSource] = None) -> None:
        self._cfg = cfg
        self._source: InputSource = source or SoundDeviceSource()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream: Optional[InputStream] = None
        self._device_rate = int(cfg.CAPTURE_SAMPLE_RATE_HZ)
        self._assembler = FrameAssembler(cfg.CAPTURE_FRAME_SAMPLES)
        self._frame_listeners: List[FrameCallback] = []
        self._termination_listeners: List[DeviceTerminationCallback] = []
        self._muted = False
        self._releasing = False
        self._seq = 0
        self.device_name: str = ""

    @property
    def acquired(self) -> bool:
        return self._stream is not None

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def device_rate(self) -> int:
        return self._device_rate

    async def acquire(self, *, secure_context: bool = True) -> None:
        if self._stream is not None:
            return
        if self._cfg.CAPTURE_REQUIRE_SECURE_CONTEXT and not secure_context:
            raise SecureContextRequired()

        self._loop = asyncio.get_running_loop()
        devices = await asyncio.to_thread(self._source.list_input_devices)
        index = pick_input_device(devices, self._cfg.CAPTURE_INPUT_DEVICE)
        if index is None:
            raise DeviceUnavailable()

        info = devices[index]
        self._device_rate = int(info.get("default_samplerate") or self._cfg.CAPTURE_SAMPLE_RATE_HZ)
        self.device_name = str(info.get("name", ""))
        blocksize = max(1, int(round(self._cfg.CAPTURE_FRAME_SAMPLES * self._device_rate / self._cfg.CAPTURE_SAMPLE_RATE_HZ)))

        self._releasing = False
        self._muted = False
        self._seq = 0
        self._assembler.reset()
        opening = asyncio.ensure_future(
            asyncio.to_thread(
                self._source.open_stream,
                device=index,
                samplerate=self._device_rate,
                blocksize=blocksize,
                callback=self._on_block,
                finished_callback=self._on_finished,
            )
        )
        try:
            self._stream = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The worker thread still finishes opening; close that stream once it exists.
            self._releasing = True
            opening.add_done_callback(_close_abandoned_stream)
            raise
        logger.info(
            "Microphone acquired device=%s rate=%s frame_samples=%s",
            self.device_name or index,
            self._device_rate,
            self._cfg.CAPTURE_FRAME_SAMPLES,
        )

    def release(self) -> None:
        stream = self._stream
        if stream is None:
            return
        self._releasing = True
        self._stream = None
        self._assembler.reset()
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.warning("Stopping audio stream failed: %s", exc)
        logger.info("Microphone released device=%s", self.device_name or "?")

    def mute(self) -> None:
        self._muted = True
        self._assembler.reset()

    def unmute(self) -> None:
        self._muted = False

    def add_frame_listener(self, cb: FrameCallback) -> Callable[[], None]:
        self._frame_listeners.append(cb)

        def _unsubscribe() -> None:
            if cb in self._frame_listeners:
                self._frame_listeners.remove(cb)

        return _unsubscribe

    def add_termination_listener(self, cb: DeviceTerminationCallback) -> None:
        self._termination_listeners.append(cb)

    # PortAudio thread
    def _on_block(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Audio input status: %s", status)
        loop = self._loop
        if loop is None or self._stream is None:
            return
        block = np.array(indata, dtype=np.float32, copy=True)
        try:
            loop.call_soon_threadsafe(self._deliver, block)
        except RuntimeError:
            # Loop already closed.
            pass

    # PortAudio thread
    def _on_finished(self) -> None:
        loop = self._loop
        if loop is None or self._releasing:
            return
        try:
            loop.call_soon_threadsafe(self._handle_device_lost)
        except RuntimeError:
            pass

    def _deliver(self, block: np.ndarray) -> None:
        if self._stream is None or self._muted:
            return
        mono = downmix_to_mono(block)
        samples = resample_linear(mono, self._device_rate, self._cfg.CAPTURE_SAMPLE_RATE_HZ)
        for chunk in self._assembler.push(samples):
            frame = AudioFrame(
                pcm16=float_to_pcm16(chunk),
                samples=chunk,
                seq=self._seq,
                captured_at=time.monotonic(),
            )
            self._seq += 1
            for cb in list(self._frame_listeners):
                try:
                    cb(frame)
                except Exception:
                    logger.exception("Audio frame listener failed")

    def _handle_device_lost(self) -> None:
        if self._stream is None or self._releasing:
            return
        logger.warning("Audio input stream finished unexpectedly device=%s", self.device_name or "?")
        self.release()
        for cb in list(self._termination_listeners):
            try:
                cb("device_lost")
            except Exception:
                logger.exception("Device termination listener failed")
