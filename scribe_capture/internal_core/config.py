from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_opt_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def endpoint_is_secure(url: str) -> bool:
    """True for https/wss endpoints and for any endpoint on a loopback host."""
    if not url:
        return True
    parts = urlsplit(url)
    if parts.scheme in {"https", "wss"}:
        return True
    return (parts.hostname or "").lower() in _LOOPBACK_HOSTS


@dataclass(frozen=True)
class CaptureConfig:
    CAPTURE_LANGUAGE: str
    CAPTURE_SAMPLE_RATE_HZ: int
    CAPTURE_FRAME_SAMPLES: int
    CAPTURE_INPUT_DEVICE: Optional[str]
    CAPTURE_REQUIRE_SECURE_CONTEXT: bool
    CAPTURE_CLOUD_ENABLED: bool
    CAPTURE_CLOUD_URL: str
    CAPTURE_CLOUD_API_KEY: str
    CAPTURE_CLOUD_CONNECT_TIMEOUT_SEC: float
    CAPTURE_ONDEVICE_ENABLED: bool
    CAPTURE_ONDEVICE_MODEL: str
    CAPTURE_ONDEVICE_DEVICE: str
    CAPTURE_ONDEVICE_COMPUTE_TYPE: str
    CAPTURE_ONDEVICE_STEP_SEC: float
    CAPTURE_ONDEVICE_WINDOW_SEC: float
    CAPTURE_ONDEVICE_MAX_SESSION_SEC: float
    CAPTURE_ONDEVICE_NO_SPEECH_SEC: float
    CAPTURE_SILENCE_RMS: float
    CAPTURE_UPLOAD_URL: str
    CAPTURE_UPLOAD_API_KEY: str
    CAPTURE_CHUNK_SEC: float
    CAPTURE_UPLOAD_TIMEOUT_SEC: float
    CAPTURE_UPLOAD_MAX_ATTEMPTS: int
    CAPTURE_RESTART_DELAY_SEC: float
    CAPTURE_MIN_SESSION_MS: int
    CAPTURE_LOG_LEVEL: str

    def remote_endpoints(self) -> list[str]:
        endpoints: list[str] = []
        if self.CAPTURE_CLOUD_ENABLED and self.CAPTURE_CLOUD_URL:
            endpoints.append(self.CAPTURE_CLOUD_URL)
        if self.CAPTURE_UPLOAD_URL:
            endpoints.append(self.CAPTURE_UPLOAD_URL)
        return endpoints

    def endpoints_secure(self) -> bool:
        return all(endpoint_is_secure(url) for url in self.remote_endpoints())

    def recognizer_language(self) -> str:
        # "pt-BR" -> "pt"
        return (self.CAPTURE_LANGUAGE or "").split("-")[0].strip().lower() or "pt"


def load_config() -> CaptureConfig:
    return CaptureConfig(
        CAPTURE_LANGUAGE=_getenv_str("CAPTURE_LANGUAGE", "pt-BR"),
        CAPTURE_SAMPLE_RATE_HZ=_getenv_int("CAPTURE_SAMPLE_RATE_HZ", 16000),
        CAPTURE_FRAME_SAMPLES=_getenv_int("CAPTURE_FRAME_SAMPLES", 4096),
        CAPTURE_INPUT_DEVICE=_getenv_opt_str("CAPTURE_INPUT_DEVICE"),
        CAPTURE_REQUIRE_SECURE_CONTEXT=_getenv_bool("CAPTURE_REQUIRE_SECURE_CONTEXT", True),
        CAPTURE_CLOUD_ENABLED=_getenv_bool("CAPTURE_CLOUD_ENABLED", False),
        CAPTURE_CLOUD_URL=_getenv_str("CAPTURE_CLOUD_URL", ""),
        CAPTURE_CLOUD_API_KEY=_getenv_str("CAPTURE_CLOUD_API_KEY", ""),
        CAPTURE_CLOUD_CONNECT_TIMEOUT_SEC=_getenv_float("CAPTURE_CLOUD_CONNECT_TIMEOUT_SEC", 5.0),
        CAPTURE_ONDEVICE_ENABLED=_getenv_bool("CAPTURE_ONDEVICE_ENABLED", True),
        CAPTURE_ONDEVICE_MODEL=_getenv_str("CAPTURE_ONDEVICE_MODEL", "small"),
        CAPTURE_ONDEVICE_DEVICE=_getenv_str("CAPTURE_ONDEVICE_DEVICE", "cpu"),
        CAPTURE_ONDEVICE_COMPUTE_TYPE=_getenv_str("CAPTURE_ONDEVICE_COMPUTE_TYPE", "int8"),
        CAPTURE_ONDEVICE_STEP_SEC=_getenv_float("CAPTURE_ONDEVICE_STEP_SEC", 1.0),
        CAPTURE_ONDEVICE_WINDOW_SEC=_getenv_float("CAPTURE_ONDEVICE_WINDOW_SEC", 8.0),
        CAPTURE_ONDEVICE_MAX_SESSION_SEC=_getenv_float("CAPTURE_ONDEVICE_MAX_SESSION_SEC", 60.0),
        CAPTURE_ONDEVICE_NO_SPEECH_SEC=_getenv_float("CAPTURE_ONDEVICE_NO_SPEECH_SEC", 8.0),
        CAPTURE_SILENCE_RMS=_getenv_float("CAPTURE_SILENCE_RMS", 0.008),
        CAPTURE_UPLOAD_URL=_getenv_str("CAPTURE_UPLOAD_URL", ""),
        CAPTURE_UPLOAD_API_KEY=_getenv_str("CAPTURE_UPLOAD_API_KEY", ""),
        CAPTURE_CHUNK_SEC=_getenv_float("CAPTURE_CHUNK_SEC", 3.0),
        CAPTURE_UPLOAD_TIMEOUT_SEC=_getenv_float("CAPTURE_UPLOAD_TIMEOUT_SEC", 30.0),
        CAPTURE_UPLOAD_MAX_ATTEMPTS=_getenv_int("CAPTURE_UPLOAD_MAX_ATTEMPTS", 3),
        CAPTURE_RESTART_DELAY_SEC=_getenv_float("CAPTURE_RESTART_DELAY_SEC", 1.0),
        CAPTURE_MIN_SESSION_MS=_getenv_int("CAPTURE_MIN_SESSION_MS", 1000),
        CAPTURE_LOG_LEVEL=_getenv_str("CAPTURE_LOG_LEVEL", "INFO"),
    )
