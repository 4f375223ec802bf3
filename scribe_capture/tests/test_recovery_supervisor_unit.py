import asyncio

from scribe_capture.asr.recovery import FaultClass, RecoverySupervisor, classify_termination
from scribe_capture.internal_core.contracts import TerminationEvent


def _event(reason: str, duration_ms=5000) -> TerminationEvent:
    return TerminationEvent(reason=reason, duration_ms=duration_ms, source_backend="on_device")


def test_classify_termination_taxonomy() -> None:
    assert classify_termination(_event("user_stop")) is FaultClass.EXPECTED_STOP
    assert classify_termination(_event("no_speech")) is FaultClass.TRANSIENT
    assert classify_termination(_event("aborted")) is FaultClass.TRANSIENT
    for reason in ("not_allowed", "service_not_allowed", "unsupported", "network", "device_lost"):
        assert classify_termination(_event(reason)) is FaultClass.FATAL
    assert classify_termination(_event("ended")) is FaultClass.RECOVERABLE
    assert classify_termination(_event("connection_closed")) is FaultClass.RECOVERABLE


def test_short_sessions_are_fatal_regardless_of_reason() -> None:
    assert classify_termination(_event("ended", duration_ms=300)) is FaultClass.FATAL
    assert classify_termination(_event("ended", duration_ms=999)) is FaultClass.FATAL
    assert classify_termination(_event("ended", duration_ms=1000)) is FaultClass.RECOVERABLE
    assert classify_termination(_event("ended", duration_ms=400), min_session_ms=200) is FaultClass.RECOVERABLE


class _Harness:
    def __init__(self, *, active: bool = True, restart_error: Exception | None = None) -> None:
        self.active = active
        self.restart_error = restart_error
        self.restarts = 0
        self.fatal: list[tuple[str, str]] = []
        self.scheduled = 0
        self.completed = 0
        self.supervisor = RecoverySupervisor(
            restart=self._restart,
            is_active=lambda: self.active,
            on_fatal=lambda event, detail: self.fatal.append((event.reason, detail)),
            on_restart_scheduled=lambda event: self._count_scheduled(),
            on_restarted=self._count_completed,
            restart_delay_sec=0.02,
        )

    async def _restart(self) -> None:
        self.restarts += 1
        if self.restart_error is not None:
            raise self.restart_error

    def _count_scheduled(self) -> None:
        self.scheduled += 1

    def _count_completed(self) -> None:
        self.completed += 1


def test_recoverable_fault_restarts_once_after_delay() -> None:
    async def scenario() -> _Harness:
        h = _Harness()
        fault = h.supervisor.handle_termination(_event("ended", duration_ms=1500))
        assert fault is FaultClass.RECOVERABLE
        assert h.supervisor.restart_pending
        assert h.restarts == 0
        await asyncio.sleep(0.08)
        return h

    h = asyncio.run(scenario())
    assert h.restarts == 1
    assert h.completed == 1
    assert h.fatal == []


def test_repeated_terminations_keep_a_single_pending_restart() -> None:
    async def scenario() -> _Harness:
        h = _Harness()
        for _ in range(3):
            h.supervisor.handle_termination(_event("connection_closed"))
        await asyncio.sleep(0.08)
        return h

    h = asyncio.run(scenario())
    assert h.scheduled == 3
    assert h.restarts == 1


def test_restart_skipped_when_session_not_active() -> None:
    async def scenario() -> _Harness:
        h = _Harness()
        h.supervisor.handle_termination(_event("ended"))
        h.active = False
        await asyncio.sleep(0.08)
        return h

    h = asyncio.run(scenario())
    assert h.restarts == 0


def test_fatal_and_transient_faults_never_schedule_restarts() -> None:
    async def scenario() -> _Harness:
        h = _Harness()
        h.supervisor.handle_termination(_event("no_speech"))
        h.supervisor.handle_termination(_event("ended", duration_ms=300))
        h.supervisor.handle_termination(_event("user_stop"))
        assert not h.supervisor.restart_pending
        await asyncio.sleep(0.05)
        return h

    h = asyncio.run(scenario())
    assert h.restarts == 0
    assert [reason for reason, _ in h.fatal] == ["ended"]


def test_restart_failure_is_escalated_as_fatal() -> None:
    async def scenario() -> _Harness:
        h = _Harness(restart_error=RuntimeError("socket refused"))
        h.supervisor.handle_termination(_event("ended"))
        await asyncio.sleep(0.08)
        return h

    h = asyncio.run(scenario())
    assert h.restarts == 1
    assert h.completed == 0
    assert len(h.fatal) == 1
    assert "socket refused" in h.fatal[0][1]


def test_close_cancels_pending_timer_and_ignores_later_events() -> None:
    async def scenario() -> _Harness:
        h = _Harness()
        h.supervisor.handle_termination(_event("ended"))
        h.supervisor.close()
        assert not h.supervisor.restart_pending
        h.supervisor.handle_termination(_event("network"))
        await asyncio.sleep(0.05)
        return h

    h = asyncio.run(scenario())
    assert h.restarts == 0
    assert h.fatal == []
