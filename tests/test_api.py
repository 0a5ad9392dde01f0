from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from src.kbqa.api import app, format_for_messaging, get_orchestrator
from src.kbqa.errors import BedrockServiceError, MissingKnowledgeBaseError
from src.kbqa.models import NumberedReference, RagResult


@pytest.fixture
def client():
    """Create a test client with a mocked orchestrator."""
    orchestrator = MagicMock()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c, orchestrator
    app.dependency_overrides.clear()


def _result():
    return RagResult(
        answer="S3 is object storage [2].",
        citations=[NumberedReference(number=2, title="guide.pdf", filename="guide.pdf", content="...")],
        session_id="sess-1",
    )


def test_health(client):
    c, _ = client
    resp = c.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] in {"ready", "not_configured"}


def test_query_success(client):
    c, orchestrator = client
    orchestrator.query.return_value = _result()

    resp = c.post("/query", json={"question": "  What is S3?  "})

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "success"
    assert data["answer"] == "S3 is object storage [2]."
    assert data["citations"][0]["number"] == 2
    assert data["session_id"] == "sess-1"
    orchestrator.query.assert_called_once_with("What is S3?", session_id=None)


def test_query_blank(client):
    c, orchestrator = client
    resp = c.post("/query", json={"question": "   "})
    assert resp.status_code == 400
    assert resp.json() == {"message": "Question cannot be empty", "status": "error"}
    orchestrator.query.assert_not_called()


def test_query_missing_knowledge_base(client):
    c, orchestrator = client
    orchestrator.query.side_effect = MissingKnowledgeBaseError()
    resp = c.post("/query", json={"question": "What is S3?"})
    assert resp.status_code == 500
    assert resp.json()["message"] == "RAG service is not properly configured"


def test_query_service_error(client):
    c, orchestrator = client
    orchestrator.query.side_effect = BedrockServiceError("retrieval", "ThrottlingException")
    resp = c.post("/query", json={"question": "What is S3?"})
    assert resp.status_code == 502
    assert resp.json()["message"] == "Error querying knowledge base"


def test_query_unexpected_error(client):
    c, orchestrator = client
    orchestrator.query.side_effect = KeyError("boom")
    resp = c.post("/query", json={"question": "What is S3?"})
    assert resp.status_code == 500
    assert resp.json()["status"] == "error"


def test_messaging_webhook(client):
    c, orchestrator = client
    orchestrator.query.return_value = _result()

    resp = c.post("/webhooks/messaging", data={"Body": "What is S3?"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Message>S3 is object storage [2].\n\nSources: guide.pdf</Message>" in resp.text


def test_messaging_webhook_blank(client):
    c, orchestrator = client
    resp = c.post("/webhooks/messaging", data={"Body": ""})
    assert "Please send a question" in resp.text
    orchestrator.query.assert_not_called()


def test_format_for_messaging_empty_answer():
    assert format_for_messaging(RagResult(answer="  ")) == "I couldn't find an answer."


def test_format_for_messaging_without_citations():
    assert format_for_messaging(RagResult(answer="Plain answer.")) == "Plain answer."
