"""
HTTP tests for the FastAPI app. The brain runs for real against the bundled
knowledge base; only the OpenAI client is faked.
"""

import openai

import backend_app
import pytest
from fastapi.testclient import TestClient

from backend_app import EMPTY_TRANSCRIPT_REPLY, create_app, get_brain
from backend_brain import FixLensBrain, ProviderError
from backend_settings import Settings, get_settings
from conftest import FakeOpenAI


@pytest.fixture
def make_client():
    clients = []

    def _make(openai_client=None, settings=None):
        app = create_app()
        if openai_client is not None:
            app.dependency_overrides[get_brain] = lambda: FixLensBrain(openai_client, settings or get_settings())
        if settings is not None:
            app.dependency_overrides[get_settings] = lambda: settings
        client = TestClient(app)
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.close()


class TestHealth:
    def test_root(self, make_client):
        response = make_client().get("/")

        assert response.status_code == 200
        assert "FixLens" in response.text

    def test_health(self, make_client):
        assert make_client().get("/health").json() == {"status": "ok"}

    def test_knowledge_stats(self, make_client):
        stats = make_client().get("/api/knowledge/stats").json()

        assert stats["issues_count"] == 11
        assert stats["files_count"] == 2


class TestDiagnose:
    def test_text(self, make_client, fake_openai):
        response = make_client(fake_openai).post("/api/diagnose", json={"message": "my engine overheating badly"})

        assert response.status_code == 200
        body = response.json()
        assert body["reply"] == "fake reply"
        assert body["mode"] == "text"
        assert body["model"] == "gpt-4o-mini"
        assert body["transcript"] is None
        assert body["matches"][0] == {
            "id": "cooling_overheating",
            "title": "Engine overheating",
            "system": "cooling",
            "score": 5,
        }

    def test_user_message_alias(self, make_client, fake_openai):
        response = make_client(fake_openai).post(
            "/api/diagnose", json={"userMessage": "brakes squeaking", "uiLanguage": "English"}
        )

        assert response.status_code == 200
        assert response.json()["language"] == "English"

    def test_systems_filter(self, make_client, fake_openai):
        response = make_client(fake_openai).post(
            "/api/diagnose", json={"message": "brakes squeaking", "systems": ["dashboard"]}
        )

        assert response.json()["matches"] == []

    def test_blank_message(self, make_client, fake_openai):
        response = make_client(fake_openai).post("/api/diagnose", json={"message": "   "})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == 422
        assert fake_openai.completion_calls == []

    def test_missing_api_key(self, make_client):
        response = make_client().post("/api/diagnose", json={"message": "brakes squeaking"})

        assert response.status_code == 502
        assert response.json()["error"]["code"] == 502

    def test_provider_failure(self, make_client):
        client = make_client(FakeOpenAI(error=openai.OpenAIError("rate limited")))

        response = client.post("/api/diagnose", json={"message": "brakes squeaking"})

        assert response.status_code == 502
        assert "rate limited" in response.json()["error"]["message"]


class TestImageDiagnose:
    def test_image(self, make_client, fake_openai):
        response = make_client(fake_openai).post(
            "/api/image-diagnose",
            files={"image": ("car.jpg", b"\xff\xd8\xff\xe0data", "image/jpeg")},
            data={"description": "coolant leak under the car"},
        )

        assert response.status_code == 200
        assert response.json()["mode"] == "image"
        assert response.json()["matches"][0]["id"] == "cooling_overheating"
        content = fake_openai.completion_calls[0]["messages"][1]["content"]
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_file_field(self, make_client, fake_openai):
        response = make_client(fake_openai).post(
            "/api/image-diagnose", files={"file": ("car.png", b"\x89PNG\r\n", "image/png")}
        )

        assert response.status_code == 200
        assert response.json()["matches"] == []

    def test_missing_file(self, make_client, fake_openai):
        response = make_client(fake_openai).post("/api/image-diagnose", data={"description": "leak"})

        assert response.status_code == 400

    def test_too_large(self, make_client, fake_openai):
        settings = Settings(MAX_UPLOAD_BYTES=8)

        response = make_client(fake_openai, settings).post(
            "/api/image-diagnose", files={"image": ("car.jpg", b"\xff" * 9, "image/jpeg")}
        )

        assert response.status_code == 413
        assert fake_openai.completion_calls == []


class TestAudioDiagnose:
    def test_audio(self, make_client):
        fake = FakeOpenAI(transcript="my brakes squeaking badly")

        response = make_client(fake).post(
            "/api/audio-diagnose", files={"audio": ("note.m4a", b"\x00\x01\x02", "audio/mp4")}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["transcript"] == "my brakes squeaking badly"
        assert body["mode"] == "audio"
        assert body["matches"][0]["id"] == "brakes_squeal"
        assert fake.transcription_calls[0]["file"][0] == "audio.m4a"

    def test_empty_transcript(self, make_client):
        fake = FakeOpenAI(transcript="   ")

        response = make_client(fake).post(
            "/api/audio-diagnose", files={"file": ("note.webm", b"\x00", "audio/webm")}
        )

        assert response.status_code == 200
        assert response.json()["reply"] == EMPTY_TRANSCRIPT_REPLY
        assert response.json()["transcript"] == ""
        assert fake.completion_calls == []

    def test_missing_file(self, make_client, fake_openai):
        assert make_client(fake_openai).post("/api/audio-diagnose", data={"language": "en"}).status_code == 400

    def test_empty_upload(self, make_client, fake_openai):
        response = make_client(fake_openai).post(
            "/api/audio-diagnose", files={"audio": ("note.m4a", b"", "audio/mp4")}
        )

        assert response.status_code == 400


class TestErrorBodies:
    def test_malformed_body(self, make_client, fake_openai):
        response = make_client(fake_openai).post(
            "/api/diagnose", json={"message": "brakes", "systems": "brakes"}
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == 422
        assert "systems" in error["message"]
        assert fake_openai.completion_calls == []

    def test_wrong_method(self, make_client):
        response = make_client().get("/api/diagnose")

        assert response.status_code == 405
        assert response.json() == {"error": {"code": 405, "message": "Method Not Allowed"}}
        assert "POST" in response.headers["allow"]

    def test_unknown_route(self, make_client):
        response = make_client().get("/api/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == 404


class TestInteractionLogging:
    @pytest.fixture
    def logged(self, monkeypatch):
        calls = {"interaction": [], "error": []}
        monkeypatch.setattr(backend_app, "log_interaction", lambda **kw: calls["interaction"].append(kw))
        monkeypatch.setattr(
            backend_app, "log_error", lambda endpoint, error, payload=None: calls["error"].append((endpoint, error))
        )
        return calls

    def test_text_diagnosis_is_logged(self, make_client, fake_openai, logged):
        make_client(fake_openai).post("/api/diagnose", json={"message": "my engine overheating badly"})

        [entry] = logged["interaction"]
        assert entry["endpoint"] == "/api/diagnose"
        assert entry["mode"] == "text"
        assert entry["user_text"] == "my engine overheating badly"
        assert entry["reply"] == "fake reply"
        assert entry["matched_titles"][0] == "Engine overheating"

    def test_image_diagnosis_is_logged(self, make_client, fake_openai, logged):
        make_client(fake_openai).post(
            "/api/image-diagnose",
            files={"image": ("car.jpg", b"\xff\xd8\xff\xe0data", "image/jpeg")},
            data={"description": "coolant leak under the car"},
        )

        [entry] = logged["interaction"]
        assert entry["endpoint"] == "/api/image-diagnose"
        assert entry["mode"] == "image"
        assert entry["user_text"] == "coolant leak under the car"

    def test_audio_diagnosis_logs_transcript(self, make_client, logged):
        fake = FakeOpenAI(transcript="my brakes squeaking badly", reply="check the pads")

        make_client(fake).post("/api/audio-diagnose", files={"audio": ("note.m4a", b"\x00\x01", "audio/mp4")})

        [entry] = logged["interaction"]
        assert entry["endpoint"] == "/api/audio-diagnose"
        assert entry["user_text"] == "my brakes squeaking badly"
        assert entry["reply"] == "check the pads"
        assert "Brakes squeaking or squealing" in entry["matched_titles"]

    def test_provider_error_is_logged(self, make_client, logged):
        make_client(FakeOpenAI(error=openai.OpenAIError("rate limited"))).post(
            "/api/diagnose", json={"message": "brakes squeaking"}
        )

        assert logged["interaction"] == []
        [(endpoint, error)] = logged["error"]
        assert endpoint == "/api/diagnose"
        assert isinstance(error, ProviderError)

    def test_unhandled_error_returns_500_and_is_logged(self, logged):
        class BrokenBrain:
            def diagnose(self, *args, **kwargs):
                raise RuntimeError("index exploded")

        app = create_app()
        app.dependency_overrides[get_brain] = lambda: BrokenBrain()

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.post("/api/diagnose", json={"message": "brakes squeaking"})

        assert response.status_code == 500
        assert response.json() == {"error": {"code": 500, "message": "A server error has occurred."}}
        [(endpoint, error)] = logged["error"]
        assert endpoint == "/api/diagnose"
        assert str(error) == "index exploded"
