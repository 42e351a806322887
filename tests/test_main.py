import pytest
from fastapi.testclient import TestClient

from voice_pipeline.config import PipelineConfig
from voice_pipeline.main import app
from voice_pipeline.orchestrator import VoicePipeline
from voice_pipeline.profile_store import InMemoryProfileStore

from conftest import FakeCapture, FakeClock, StaticProbe

SAMPLE = {
    "text": "I am a farmer",
    "expected_text": "I am a farmer",
    "recognized_text": "I am a farmer",
    "frequency": 180.0,
    "volume": 0.2,
    "duration": 2.0,
}


def fake_pipeline(initialize=True):
    pipeline = VoicePipeline(
        PipelineConfig(),
        probe=StaticProbe(),
        capture_factory=FakeCapture,
        profile_store=InMemoryProfileStore(),
        clock=FakeClock(),
    )
    if initialize:
        pipeline.initialize()
    return pipeline


@pytest.fixture
def client():
    with TestClient(app) as client:
        app.state.pipeline = fake_pipeline()
        yield client


def test_lifespan_builds_pipeline():
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "voice-pipeline"


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "voice-pipeline", "initialized": True}


def test_process_text(client):
    response = client.post("/process", json={"text": "switch to english", "current_language": "bn"})

    assert response.status_code == 200
    body = response.json()
    assert body["detected_language"] == "en"
    assert body["voice_command"]["command"]["id"] == "switch-to-english"
    assert body["voice_command"]["parameters"] == {"param0": "en"}


def test_process_with_samples(client):
    response = client.post("/process", json={"text": "hello", "samples": [0.1, -0.1] * 400, "sample_rate": 16000})

    body = response.json()
    assert body["voice_activity"]["volume"] == pytest.approx(0.1)
    assert body["noise_analysis"] is not None


def test_process_before_initialize(client):
    app.state.pipeline = fake_pipeline(initialize=False)
    assert client.post("/process", json={"text": "hello"}).status_code == 503


def test_status(client):
    client.post("/process", json={"text": "stop"})
    body = client.get("/status").json()

    assert body["stats"]["commands_detected"] == 1
    assert body["commands"]["total"] == 20
    assert body["features"]["language_detection"] is True


def test_command_management(client):
    assert len(client.get("/commands", params={"language": "bn"}).json()) == 10

    command = {"id": "greet", "trigger": "hello there", "action": "custom", "description": "Greeting"}
    assert client.post("/commands", json=command).json()["id"] == "greet"
    bad = {"id": "bad", "trigger": "(unclosed", "trigger_type": "pattern", "action": "custom"}
    assert client.post("/commands", json=bad).status_code == 422
    assert client.post("/process", json={"text": "hello there"}).json()["voice_command"]["command"]["id"] == "greet"

    assert "• Greeting" in client.get("/commands/help", params={"language": "en"}).json()["help"]

    assert client.delete("/commands/greet").status_code == 200
    assert client.delete("/commands/greet").status_code == 404


def test_calibration_flow(client):
    profile = client.post("/profiles", json={"name": "Rahim", "language": "en"}).json()

    assert client.get(f"/profiles/{profile['id']}/settings").status_code == 409
    assert client.get("/profiles/missing/settings").status_code == 404
    assert client.post("/profiles/missing/calibration").status_code == 404

    session = client.post(f"/profiles/{profile['id']}/calibration", json={"total_steps": 2}).json()
    assert session["total_steps"] == 2

    for expected_progress in (50.0, 100.0):
        response = client.post(f"/calibration/{session['id']}/samples", json=SAMPLE)
        assert response.status_code == 200
        assert response.json()["progress"] == expected_progress
    assert client.post(f"/calibration/{session['id']}/samples", json=SAMPLE).status_code == 409

    completed = client.post(f"/calibration/{session['id']}/complete").json()
    assert completed["recognition_accuracy"] == 1.0
    assert completed["sample_count"] == 2
    assert client.post(f"/calibration/{session['id']}/complete").status_code == 409

    settings = client.get(f"/profiles/{profile['id']}/settings").json()
    assert settings["speech_recognition"]["lang"] == "en-US"


def test_calibration_without_body_and_empty_completion(client):
    profile = client.post("/profiles", json={"name": "Amina", "language": "bn"}).json()
    session = client.post(f"/profiles/{profile['id']}/calibration").json()

    assert session["total_steps"] == 5
    assert client.post(f"/calibration/{session['id']}/complete").status_code == 400

    assert client.post(f"/calibration/{session['id']}/cancel").json() == {"session_id": session["id"], "cancelled": True}
    assert client.post("/calibration/missing/cancel").json()["cancelled"] is False


def test_config_export_and_import(client):
    client.post("/profiles", json={"name": "Rahim", "language": "en"})
    exported = client.get("/config/export").json()
    assert [p["name"] for p in exported["profiles"]] == ["Rahim"]

    app.state.pipeline = fake_pipeline()
    assert client.post("/config/import", json=exported).json() == {"status": "imported"}
    assert [p.name for p in app.state.pipeline.calibration.get_all_profiles()] == ["Rahim"]

    assert client.post("/config/import", json={"commands": [{"id": "broken"}]}).status_code == 400


def test_metrics(client):
    client.post("/process", json={"text": "hello"})
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "voice_requests_total" in response.text
