from __future__ import annotations

import io
import wave
from typing import Callable, List, Optional

import numpy as np


def float_to_pcm16(audio: np.ndarray) -> bytes:
    audio = np.asarray(audio, dtype=np.float32).clip(-1.0, 1.0)
    audio_i16 = (audio * 32767.0).round().astype("<i2")
    return audio_i16.tobytes()


def pcm16_to_float32(raw: bytes) -> np.ndarray:
    audio_i16 = np.frombuffer(raw, dtype="<i2")
    return (audio_i16.astype(np.float32) / 32768.0).clip(-1.0, 1.0)


def downmix_to_mono(block: np.ndarray) -> np.ndarray:
    block = np.asarray(block, dtype=np.float32)
    if block.ndim == 1:
        return block
    if block.shape[1] == 1:
        return block[:, 0]
    return block.mean(axis=1).astype(np.float32)


def resample_linear(audio: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    audio = np.asarray(audio, dtype=np.float32)
    if src_rate == dst_rate or audio.size == 0:
        return audio
    duration = audio.size / float(src_rate)
    n_out = max(1, int(round(duration * dst_rate)))
    src_t = np.arange(audio.size, dtype=np.float64) / float(src_rate)
    dst_t = np.arange(n_out, dtype=np.float64) / float(dst_rate)
    return np.interp(dst_t, src_t, audio).astype(np.float32)


def compute_rms(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    x = audio.astype(np.float32)
    return float(np.sqrt(np.mean(x * x)))


def encode_wav_bytes(audio: np.ndarray, sample_rate: int = 16000) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(float_to_pcm16(audio))
    return buf.getvalue()


class FrameAssembler:
    """Re-blocks an arbitrary sample stream into fixed-size frames."""

    def __init__(self, frame_samples: int) -> None:
        if frame_samples <= 0:
            raise ValueError("frame_samples must be > 0")
        self._frame_samples = int(frame_samples)
        self._pending: List[np.ndarray] = []
        self._pending_len = 0

    @property
    def pending_samples(self) -> int:
        return self._pending_len

    def push(self, samples: np.ndarray) -> List[np.ndarray]:
        samples = np.asarray(samples, dtype=np.float32)
        if samples.size:
            self._pending.append(samples)
            self._pending_len += int(samples.size)
        if self._pending_len < self._frame_samples:
            return []
        joined = np.concatenate(self._pending)
        n_frames = joined.size // self._frame_samples
        cut = n_frames * self._frame_samples
        frames = [joined[i : i + self._frame_samples] for i in range(0, cut, self._frame_samples)]
        rest = joined[cut:]
        self._pending = [rest] if rest.size else []
        self._pending_len = int(rest.size)
        return frames

    def reset(self) -> None:
        self._pending = []
        self._pending_len = 0


class BlobRecorder:
    """
    Accumulates 16 kHz float frames and cuts a WAV blob every `chunk_sec` seconds.
    """

    def __init__(
        self,
        chunk_sec: float,
        on_blob: Callable[[bytes], None],
        *,
        sample_rate: int = 16000,
    ) -> None:
        if chunk_sec <= 0:
            raise ValueError("chunk_sec must be > 0")
        self._sample_rate = int(sample_rate)
        self._chunk_samples = max(1, int(round(chunk_sec * sample_rate)))
        self._on_blob = on_blob
        self._buffer = FrameAssembler(self._chunk_samples)

    @property
    def chunk_samples(self) -> int:
        return self._chunk_samples

    def push(self, samples: np.ndarray) -> int:
        emitted = 0
        for chunk in self._buffer.push(samples):
            self._on_blob(encode_wav_bytes(chunk, self._sample_rate))
            emitted += 1
        return emitted

    def discard(self) -> None:
        self._buffer.reset()


def pick_input_device(devices: List[dict], preferred: Optional[str] = None) -> Optional[int]:
    """Index of the preferred input device by name substring or index, else the first one with inputs."""
    candidates = [
        (idx, dev)
        for idx, dev in enumerate(devices)
        if int(dev.get("max_input_channels", 0) or 0) > 0
    ]
    if not candidates:
        return None
    if preferred:
        text = preferred.strip()
        if text.isdigit():
            wanted = int(text)
            for idx, _ in candidates:
                if idx == wanted:
                    return idx
        lowered = text.lower()
        for idx, dev in candidates:
            if lowered in str(dev.get("name", "")).lower():
                return idx
    return candidates[0][0]
