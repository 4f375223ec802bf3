from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Literal, Optional

from ..contracts import BackendKind, TerminationEvent, TerminationReason, TranscriptEvent

logger = logging.getLogger(__name__)

AdapterPhase = Literal["idle", "running", "paused", "stopped"]

TranscriptCallback = Callable[[TranscriptEvent], None]
TerminationCallback = Callable[[TerminationEvent], None]


class CaptureError(RuntimeError):
    def __init__(self, code: str, message: str, backend: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.backend = backend


class PermissionDenied(CaptureError):
    def __init__(self, message: str = "Microphone access was denied.", backend: Optional[str] = None):
        super().__init__("permission_denied", message, backend)


class SecureContextRequired(CaptureError):
    def __init__(
        self,
        message: str = "Audio capture requires a secure (https/wss or loopback) context.",
        backend: Optional[str] = None,
    ):
        super().__init__("secure_context_required", message, backend)


class DeviceUnavailable(CaptureError):
    def __init__(self, message: str = "No audio input device is available.", backend: Optional[str] = None):
        super().__init__("device_unavailable", message, backend)


class BackendUnavailable(CaptureError):
    def __init__(self, message: str, backend: Optional[str] = None, code: str = "backend_unavailable"):
        super().__init__(code, message, backend)


class FatalAdapterFault(CaptureError):
    def __init__(self, code: str, message: str, backend: Optional[str] = None):
        super().__init__(code, message, backend)


class BackendAdapter(ABC):
    """
    Common lifecycle for transcription backends.

    Subclasses implement the `_open/_close/_suspend/_resume/_reopen` hooks; the
    base class owns the phase bookkeeping, listener fan-out and the guarantee
    that nothing is emitted unless the adapter is running.
    """

    kind: BackendKind

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._phase: AdapterPhase = "idle"
        self._session_started_at: Optional[float] = None
        self._transcript_listeners: list[TranscriptCallback] = []
        self._termination_listeners: list[TerminationCallback] = []

    @property
    def phase(self) -> AdapterPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._phase == "running"

    @property
    def is_stopped(self) -> bool:
        return self._phase == "stopped"

    def on_transcript(self, cb: TranscriptCallback) -> None:
        self._transcript_listeners.append(cb)

    def on_termination(self, cb: TerminationCallback) -> None:
        self._termination_listeners.append(cb)

    async def start(self) -> None:
        if self._phase != "idle":
            return
        try:
            await self._open()
        except BaseException:
            # A failed or cancelled open may have acquired part of its resources.
            self._phase = "stopped"
            try:
                await self._close()
            except Exception as exc:
                logger.warning("%s adapter cleanup after failed start failed: %s", self.kind, exc)
            raise
        self._session_started_at = self._clock()
        self._phase = "running"

    async def stop(self) -> None:
        if self._phase == "stopped":
            return
        was_open = self._phase != "idle"
        self._phase = "stopped"
        if not was_open:
            return
        try:
            await self._close()
        except Exception as exc:
            logger.warning("%s adapter close failed: %s", self.kind, exc)

    async def pause(self) -> None:
        if self._phase != "running":
            return
        self._phase = "paused"
        try:
            await self._suspend()
        except Exception as exc:
            logger.warning("%s adapter suspend failed: %s", self.kind, exc)

    async def resume(self) -> None:
        if self._phase != "paused":
            return
        await self._resume()
        # stop() may have won the race while _resume was awaiting.
        if self._phase == "paused":
            self._session_started_at = self._clock()
            self._phase = "running"

    async def restart(self) -> None:
        if self._phase != "running":
            return
        await self._reopen()
        if self._phase == "running":
            self._session_started_at = self._clock()

    def _session_duration_ms(self) -> Optional[int]:
        if self._session_started_at is None:
            return None
        return int(round((self._clock() - self._session_started_at) * 1000.0))

    def _emit_transcript(self, event: TranscriptEvent) -> None:
        if self._phase != "running":
            return
        for cb in list(self._transcript_listeners):
            try:
                cb(event)
            except Exception:
                logger.exception("%s transcript listener failed", self.kind)

    def _emit_termination(self, reason: TerminationReason, detail: str = "") -> None:
        if self._phase != "running":
            return
        event = TerminationEvent(
            reason=reason,
            duration_ms=self._session_duration_ms(),
            detail=detail,
            source_backend=self.kind,
        )
        logger.info(
            "%s adapter terminated reason=%s duration_ms=%s",
            self.kind,
            reason,
            event.duration_ms,
        )
        for cb in list(self._termination_listeners):
            try:
                cb(event)
            except Exception:
                logger.exception("%s termination listener failed", self.kind)

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def _close(self) -> None: ...

    @abstractmethod
    async def _suspend(self) -> None: ...

    @abstractmethod
    async def _resume(self) -> None: ...

    @abstractmethod
    async def _reopen(self) -> None: ...
