from __future__ import annotations

"""
Classify adapter terminations and schedule recovery restarts.

Design intent:
- Short-lived sessions and permission/network failures end the capture; never loop on them.
- Silence and aborts are absorbed; the backend keeps listening.
- Any other end gets exactly one delayed restart, and only one can be pending at a time.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from scribe_capture.internal_core.contracts import TerminationEvent

logger = logging.getLogger(__name__)

TRANSIENT_REASONS = frozenset({"no_speech", "aborted"})
FATAL_REASONS = frozenset(
    {"not_allowed", "service_not_allowed", "unsupported", "network", "device_lost"}
)
EXPECTED_REASONS = frozenset({"user_stop"})


class FaultClass(str, Enum):
    EXPECTED_STOP = "expected_stop"
    TRANSIENT = "transient"
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


def classify_termination(event: TerminationEvent, *, min_session_ms: int = 1000) -> FaultClass:
    if event.reason in EXPECTED_REASONS:
        return FaultClass.EXPECTED_STOP
    if event.reason in FATAL_REASONS:
        return FaultClass.FATAL
    # A session that died almost immediately would restart in a tight loop.
    if event.duration_ms is not None and event.duration_ms < min_session_ms:
        return FaultClass.FATAL
    if event.reason in TRANSIENT_REASONS:
        return FaultClass.TRANSIENT
    return FaultClass.RECOVERABLE


class RecoverySupervisor:
    """
    Scoped to one capture session. Owns a single cancellable restart timer.
    """

    def __init__(
        self,
        *,
        restart: Callable[[], Awaitable[None]],
        is_active: Callable[[], bool],
        on_fatal: Callable[[TerminationEvent, str], None],
        on_restart_scheduled: Optional[Callable[[TerminationEvent], None]] = None,
        on_restarted: Optional[Callable[[], None]] = None,
        restart_delay_sec: float = 1.0,
        min_session_ms: int = 1000,
    ) -> None:
        self._restart = restart
        self._is_active = is_active
        self._on_fatal = on_fatal
        self._on_restart_scheduled = on_restart_scheduled
        self._on_restarted = on_restarted
        self._restart_delay_sec = max(0.0, float(restart_delay_sec))
        self._min_session_ms = int(min_session_ms)
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.restarts_scheduled = 0

    @property
    def restart_pending(self) -> bool:
        return self._timer is not None

    def handle_termination(self, event: TerminationEvent) -> FaultClass:
        fault = classify_termination(event, min_session_ms=self._min_session_ms)
        if self._closed:
            return fault
        logger.info(
            "Termination classified reason=%s duration_ms=%s fault=%s",
            event.reason,
            event.duration_ms,
            fault.value,
        )
        if fault is FaultClass.FATAL:
            self.cancel()
            self._on_fatal(event, f"{event.reason}: {event.detail}".rstrip(": "))
        elif fault is FaultClass.RECOVERABLE:
            self._schedule_restart(event)
        return fault

    def _schedule_restart(self, event: TerminationEvent) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._restart_delay_sec, self._fire)
        self.restarts_scheduled += 1
        if self._on_restart_scheduled is not None:
            self._on_restart_scheduled(event)

    def _fire(self) -> None:
        self._timer = None
        if self._closed or not self._is_active():
            logger.info("Restart skipped; session no longer active")
            return
        self._task = asyncio.get_running_loop().create_task(self._run_restart())

    async def _run_restart(self) -> None:
        try:
            await self._restart()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Backend restart failed: %s", exc)
            if not self._closed:
                event = TerminationEvent(reason="recognizer_failed", detail=str(exc))
                self._on_fatal(event, f"restart_failed: {exc}")
            return
        finally:
            self._task = None
        if self._on_restarted is not None and not self._closed:
            self._on_restarted()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._task = None

    def close(self) -> None:
        self._closed = True
        self.cancel()
