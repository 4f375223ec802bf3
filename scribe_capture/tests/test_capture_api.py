import datetime as _dt

from fastapi.testclient import TestClient

from fakes import AdapterRecorder, FakeSource, bridge_factory_for, make_config
from scribe_capture.api.main import app
from scribe_capture.internal_core.asr.base import BackendUnavailable
from scribe_capture.internal_core.asr.controller import CaptureController
from scribe_capture.internal_core.contracts import TranscriptEntry


def _install_controller(source=None, factories=None, **cfg_overrides) -> CaptureController:
    values = {"CAPTURE_REQUIRE_SECURE_CONTEXT": False}
    values.update(cfg_overrides)
    controller = CaptureController(
        make_config(**values),
        bridge_factory=bridge_factory_for(source or FakeSource()),
        adapter_factories=factories if factories is not None else [("on_device", AdapterRecorder("on_device"))],
    )
    app.state.capture_controller = controller
    return controller


def _clear_controller() -> None:
    if hasattr(app.state, "capture_controller"):
        delattr(app.state, "capture_controller")


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_capture_lifecycle_over_http() -> None:
    recorder = AdapterRecorder("on_device")
    source = FakeSource()
    _install_controller(source, factories=[("on_device", recorder)])

    try:
        # One client context keeps every request on the same event loop.
        with TestClient(app) as client:
            status = client.get("/capture/status").json()
            assert status["state"] == "idle"
            assert status["is_transcribing"] is False

            started = client.post("/capture/start")
            assert started.status_code == 200
            assert started.json()["state"] == "active"
            assert started.json()["session"]["active_backend_kind"] == "on_device"

            again = client.post("/capture/start")
            assert again.json()["message"] == "Transcription already running."
            assert source.open_count == 1

            recorder.last.push("final", "Bom dia, o que o traz aqui?", "Clinician")
            recorder.last.push("partial", "dor de", "Patient")

            transcript = client.get("/capture/transcript", params={"include_partial": True}).json()
            assert [e["text"] for e in transcript["entries"]] == ["Bom dia, o que o traz aqui?", "dor de"]
            assert transcript["display_text"].endswith("Patient: dor de …")
            assert transcript["transcript_text"] == "Bom dia, o que o traz aqui?"

            paused = client.post("/capture/pause").json()
            assert paused["state"] == "paused"
            status = client.get("/capture/status").json()
            assert status["is_paused"] is True and status["is_transcribing"] is True

            resumed = client.post("/capture/resume").json()
            assert resumed["state"] == "active"

            stopped = client.post("/capture/stop").json()
            assert stopped["state"] == "stopped"
            assert stopped["message"] == "Transcription stopped."
            assert client.post("/capture/stop").json()["message"] == "Transcription was not running."

            final_only = client.get("/capture/transcript").json()
            assert [e["is_partial"] for e in final_only["entries"]] == [False, False]

            payload = client.get("/capture/analysis-payload").json()
            assert payload["payload"] == {"transcription": "Bom dia, o que o traz aqui? dor de"}
    finally:
        _clear_controller()

    assert source.last_stream.closed


def test_start_over_plain_http_requires_secure_context() -> None:
    source = FakeSource()
    _install_controller(source, CAPTURE_REQUIRE_SECURE_CONTEXT=True)
    try:
        with TestClient(app) as client:
            response = client.post("/capture/start")
            status = client.get("/capture/status").json()
    finally:
        _clear_controller()

    assert response.status_code == 426
    assert response.json()["detail"]["code"] == "secure_context_required"
    assert status["state"] == "error"
    assert source.open_count == 0


def test_forwarded_https_counts_as_secure() -> None:
    _install_controller(CAPTURE_REQUIRE_SECURE_CONTEXT=True)
    try:
        with TestClient(app) as client:
            response = client.post("/capture/start", headers={"x-forwarded-proto": "https"})
            client.post("/capture/stop")
    finally:
        _clear_controller()

    assert response.status_code == 200


def test_denied_microphone_returns_403() -> None:
    _install_controller(FakeSource(deny=True))
    try:
        with TestClient(app) as client:
            response = client.post("/capture/start")
    finally:
        _clear_controller()

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "permission_denied"


def test_no_backend_returns_503() -> None:
    failing = AdapterRecorder("on_device", open_error=BackendUnavailable("model missing", "on_device"))
    _install_controller(factories=[("on_device", failing)])
    try:
        with TestClient(app) as client:
            response = client.post("/capture/start")
    finally:
        _clear_controller()

    assert response.status_code == 503
    assert "model missing" in response.json()["detail"]["message"]


def test_analysis_payload_rejects_empty_transcript() -> None:
    _install_controller()
    try:
        client = TestClient(app)
        response = client.get("/capture/analysis-payload")
    finally:
        _clear_controller()

    assert response.status_code == 409
    assert "empty" in response.json()["detail"]


class _StubController:
    state = "active"

    def __init__(self, entry: TranscriptEntry) -> None:
        self.entry = entry
        self.removed = False

    def transcript_entries(self, include_partial: bool = False):
        return []

    def add_transcript_listener(self, cb):
        cb("final", self.entry)

        def _remove() -> None:
            self.removed = True

        return _remove


def test_transcript_ws_sends_snapshot_then_changes() -> None:
    entry = TranscriptEntry(
        seq=0,
        timestamp=_dt.datetime(2026, 3, 2, 14, 30, tzinfo=_dt.timezone.utc),
        speaker_label="Patient",
        text="estou com tosse",
        source_backend="cloud_streaming",
    )
    stub = _StubController(entry)
    app.state.capture_controller = stub
    try:
        client = TestClient(app)
        with client.websocket_connect("/ws/capture/transcript") as ws:
            snapshot = ws.receive_json()
            change = ws.receive_json()
    finally:
        _clear_controller()

    assert snapshot == {"type": "snapshot", "state": "active", "entries": []}
    assert change["type"] == "final"
    assert change["entry"]["text"] == "estou com tosse"
    assert change["entry"]["speaker_label"] == "Patient"
