"""Tests for the HTTP surface."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import MODEL, USER, build_engine
from threadcast import api
from threadcast.errors import ConflictError, RelayBusyError, ThreadcastError

HEADERS = {"X-User-ID": USER}


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        events.append((fields["event"], json.loads(fields["data"])))
    return events


@pytest.fixture
def client(monkeypatch, provider):
    monkeypatch.setattr(api, "engine", build_engine(provider))
    with TestClient(api.app) as client:
        yield client


class TestHealth:
    """Test info endpoints."""

    def test_root(self, client):
        """Test the root endpoint names the service."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "Threadcast API"

    def test_health(self, client):
        """Test health reports engine counters."""
        response = client.get("/health")
        assert response.json() == {"status": "healthy", "active_generations": 0, "open_relays": 0}

    def test_models(self, client):
        """Test the catalog lists registered models."""
        response = client.get("/models")
        assert [m["id"] for m in response.json()] == [MODEL]

    def test_model_status(self, client):
        """Test remote providers report available."""
        response = client.get(f"/models/{MODEL}/status")
        assert response.status_code == 200
        assert response.json()["available"] is True

    def test_load_remote_model_rejected(self, client):
        """Test only local models can be loaded."""
        assert client.post(f"/models/{MODEL}/load").status_code == 400

    def test_unknown_model_status(self, client):
        """Test an unknown model is a bad request."""
        assert client.get("/models/nope/status").status_code == 400


class TestExchangeFlow:
    """Test a conversation end to end over HTTP."""

    def test_exchange_and_stream(self, client):
        """Test starting an exchange then streaming the reply."""
        thread = client.post("/threads", headers=HEADERS).json()

        response = client.post(
            f"/threads/{thread['id']}/exchanges",
            json={"model_id": MODEL, "text": "hello"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        started = response.json()
        assert started["title"] == "Test Thread"

        stream = client.get(f"/messages/{started['assistant_message_id']}/stream", headers=HEADERS)
        assert stream.headers["content-type"].startswith("text/event-stream")
        events = _parse_sse(stream.text)

        assert [e for e, _ in events] == ["token", "token", "end"]
        assert [d["token"] for _, d in events[:-1]] == ["Hi", " there"]
        assert events[-1][1]["status"] == "complete"
        assert events[-1][1]["total_tokens"] == 2

        messages = client.get(
            f"/threads/{thread['id']}/models/{MODEL}/messages", headers=HEADERS
        ).json()
        assert [m["role"] for m in messages] == ["user", "assistant"]

        cancel = client.post(f"/messages/{started['assistant_message_id']}/cancel", headers=HEADERS)
        assert cancel.json() == {"cancelled": False}

    def test_create_thread_with_title(self, client):
        """Test an explicit title is kept."""
        response = client.post("/threads", json={"title": "Notes"}, headers=HEADERS)
        assert response.json()["title"] == "Notes"

        listed = client.get("/threads", headers=HEADERS).json()
        assert [t["title"] for t in listed] == ["Notes"]

    def test_missing_user_header_uses_dev_user(self, client):
        """Test requests without X-User-ID fall back to the local dev user."""
        thread = client.post("/threads").json()
        assert thread["user_id"] == "local-dev-user"

    def test_unknown_model(self, client):
        """Test an unknown model is rejected before anything is stored."""
        thread = client.post("/threads", headers=HEADERS).json()

        response = client.post(
            f"/threads/{thread['id']}/exchanges",
            json={"model_id": "nope", "text": "hello"},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert client.get(f"/threads/{thread['id']}", headers=HEADERS).json()["models"] == {}

    def test_other_users_thread(self, client):
        """Test another user's thread is reported missing."""
        thread = client.post("/threads", headers=HEADERS).json()

        response = client.get(f"/threads/{thread['id']}", headers={"X-User-ID": "intruder"})

        assert response.status_code == 404

    def test_stream_unknown_message(self, client):
        """Test streaming a missing message is a 404."""
        assert client.get("/messages/nope/stream", headers=HEADERS).status_code == 404

    def test_regenerate_summary(self, client, provider):
        """Test a manual summary returns the new text and status."""
        thread = client.post("/threads", headers=HEADERS).json()
        started = client.post(
            f"/threads/{thread['id']}/exchanges",
            json={"model_id": MODEL, "text": "hello"},
            headers=HEADERS,
        ).json()
        client.get(f"/messages/{started['assistant_message_id']}/stream", headers=HEADERS)

        response = client.post(f"/threads/{thread['id']}/models/{MODEL}/summary", headers=HEADERS)

        assert response.json() == {"summary": provider.summary, "status": "complete"}


class TestHttpError:
    """Test engine errors map to HTTP status codes."""

    def test_relay_busy_sets_retry_after(self):
        """Test the relay ceiling is a 503 with a retry hint."""
        error = api.http_error(RelayBusyError())
        assert error.status_code == 503
        assert error.headers == {"Retry-After": "1"}

    def test_conflict(self):
        """Test conflicts map to 409."""
        assert api.http_error(ConflictError("already running")).status_code == 409

    def test_unclassified(self):
        """Test anything else is a 500."""
        assert api.http_error(ThreadcastError("boom")).status_code == 500
