"""Test doubles shared by the unit tests."""

import asyncio
import dataclasses
import io
import threading
import time
import wave
from typing import Any, Callable, Optional

import numpy as np

from scribe_capture.internal_core.asr.base import BackendAdapter, PermissionDenied
from scribe_capture.internal_core.asr.on_device import ContinuousRecognizer
from scribe_capture.internal_core.audio_bridge import AudioBridge, AudioFrame
from scribe_capture.internal_core.audio_utils import float_to_pcm16, pcm16_to_float32
from scribe_capture.internal_core.config import CaptureConfig, load_config
from scribe_capture.internal_core.contracts import TranscriptEvent


def make_config(**overrides: Any) -> CaptureConfig:
    base = dataclasses.replace(
        load_config(),
        CAPTURE_LANGUAGE="pt-BR",
        CAPTURE_SAMPLE_RATE_HZ=16000,
        CAPTURE_FRAME_SAMPLES=4096,
        CAPTURE_INPUT_DEVICE=None,
        CAPTURE_REQUIRE_SECURE_CONTEXT=True,
        CAPTURE_CLOUD_ENABLED=False,
        CAPTURE_CLOUD_URL="",
        CAPTURE_CLOUD_API_KEY="",
        CAPTURE_CLOUD_CONNECT_TIMEOUT_SEC=1.0,
        CAPTURE_ONDEVICE_ENABLED=True,
        CAPTURE_UPLOAD_URL="",
        CAPTURE_UPLOAD_API_KEY="",
        CAPTURE_CHUNK_SEC=3.0,
        CAPTURE_UPLOAD_MAX_ATTEMPTS=3,
        CAPTURE_RESTART_DELAY_SEC=0.01,
        CAPTURE_MIN_SESSION_MS=1000,
    )
    return dataclasses.replace(base, **overrides)


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStream:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.finished_callback = kwargs["finished_callback"]
        self.stopped = False
        self.closed = False

    def feed(self, samples: np.ndarray) -> None:
        block = np.asarray(samples, dtype=np.float32).reshape(-1, 1)
        self.callback(block, block.shape[0], None, None)

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class FakeSource:
    def __init__(
        self,
        devices: Optional[list] = None,
        *,
        deny: bool = False,
        open_gate: Optional[threading.Event] = None,
    ) -> None:
        self.devices = devices if devices is not None else [
            {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0},
            {"name": "Built-in Microphone", "max_input_channels": 1, "default_samplerate": 16000.0},
        ]
        self.deny = deny
        self.open_gate = open_gate
        self.streams: list[FakeStream] = []

    @property
    def open_count(self) -> int:
        return len(self.streams)

    @property
    def last_stream(self) -> FakeStream:
        return self.streams[-1]

    def list_input_devices(self) -> list:
        return list(self.devices)

    def open_stream(self, **kwargs: Any) -> FakeStream:
        if self.deny:
            raise PermissionDenied("Microphone access was denied by the user.")
        if self.open_gate is not None:
            self.open_gate.wait(timeout=5)
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream


class FakeBridge:
    """Frame fan-out only; enough for adapter-level tests."""

    def __init__(self) -> None:
        self.listeners: list[Callable[[AudioFrame], None]] = []

    def add_frame_listener(self, cb: Callable[[AudioFrame], None]) -> Callable[[], None]:
        self.listeners.append(cb)

        def _unsubscribe() -> None:
            if cb in self.listeners:
                self.listeners.remove(cb)

        return _unsubscribe

    def emit(self, frame: AudioFrame) -> None:
        for cb in list(self.listeners):
            cb(frame)


def decode_wav(blob: bytes) -> tuple[np.ndarray, int]:
    with wave.open(io.BytesIO(blob), "rb") as wf:
        rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())
    return pcm16_to_float32(raw), rate


def make_frame(seq: int = 0, num_samples: int = 4096, value: float = 0.1) -> AudioFrame:
    samples = np.full(num_samples, value, dtype=np.float32)
    return AudioFrame(pcm16=float_to_pcm16(samples), samples=samples, seq=seq, captured_at=time.monotonic())


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.closed = False
        self.send_gate: Optional[asyncio.Event] = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, message: Any) -> None:
        self._incoming.put_nowait(message)

    def end(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, data: bytes) -> None:
        if self.send_gate is not None:
            await self.send_gate.wait()
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            message = await self._incoming.get()
            if message is None:
                return
            yield message


class FakeConnector:
    def __init__(self, *, error: Optional[BaseException] = None, hang: bool = False) -> None:
        self.error = error
        self.hang = hang
        self.calls: list[dict] = []
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self, url: str, additional_headers: Optional[dict] = None) -> FakeWebSocket:
        self.calls.append({"url": url, "headers": dict(additional_headers or {})})
        if self.hang:
            await asyncio.sleep(10)
        if self.error is not None:
            raise self.error
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws


class FakeRecognizer(ContinuousRecognizer):
    def __init__(self) -> None:
        self.starts = 0
        self.stops = 0
        self.accepted: list[np.ndarray] = []
        self._callbacks: Optional[tuple] = None
        self.sessions: list[tuple] = []

    async def start(self, on_result, on_error, on_end) -> None:
        self.starts += 1
        self._callbacks = (on_result, on_error, on_end)
        self.sessions.append(self._callbacks)

    def accept(self, samples: np.ndarray) -> None:
        self.accepted.append(samples)

    async def stop(self) -> None:
        self.stops += 1

    def result(self, text: str, final: bool) -> None:
        self._callbacks[0](text, final)

    def error(self, code: str, message: str = "") -> None:
        self._callbacks[1](code, message)

    def end(self) -> None:
        self._callbacks[2]()


class FakeAdapter(BackendAdapter):
    def __init__(
        self,
        kind: str = "on_device",
        *,
        clock: Callable[[], float] = time.monotonic,
        open_error: Optional[BaseException] = None,
        open_delay: float = 0.0,
        reopen_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(clock=clock)
        self.kind = kind
        self.open_delay = open_delay
        self.open_error = open_error
        self.reopen_error = reopen_error
        self.opens = 0
        self.closes = 0
        self.suspends = 0
        self.resumes = 0
        self.reopens = 0

    async def _open(self) -> None:
        self.opens += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error

    async def _close(self) -> None:
        self.closes += 1

    async def _suspend(self) -> None:
        self.suspends += 1

    async def _resume(self) -> None:
        self.resumes += 1

    async def _reopen(self) -> None:
        self.reopens += 1
        if self.reopen_error is not None:
            raise self.reopen_error

    def push(self, kind: str, text: str, speaker: str = "Clinician", raw: Optional[str] = None) -> None:
        self._emit_transcript(
            TranscriptEvent(
                kind=kind,
                text=text,
                speaker=speaker,
                raw_speaker_label=raw,
                source_backend=self.kind,
            )
        )

    def terminate(self, reason: str, detail: str = "") -> None:
        self._emit_termination(reason, detail)


class AdapterRecorder:
    """Factory for the controller that remembers every adapter it built."""

    def __init__(self, kind: str = "on_device", **adapter_kwargs: Any) -> None:
        self.kind = kind
        self.adapter_kwargs = adapter_kwargs
        self.built: list[FakeAdapter] = []

    def __call__(self, cfg, bridge, speakers) -> FakeAdapter:
        adapter = FakeAdapter(self.kind, **self.adapter_kwargs)
        self.built.append(adapter)
        return adapter

    @property
    def last(self) -> FakeAdapter:
        return self.built[-1]


def bridge_factory_for(source: FakeSource) -> Callable[[CaptureConfig], AudioBridge]:
    def _factory(cfg: CaptureConfig) -> AudioBridge:
        return AudioBridge(cfg, source=source)

    return _factory


async def settle(delay: float = 0.0, rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
    if delay:
        await asyncio.sleep(delay)
