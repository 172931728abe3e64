from __future__ import annotations

from mediavault.config import LLMConfig
from mediavault.services.ai_suggest import ThreadSuggester
from mediavault.services.llm import OllamaClient


def test_suggestions_are_503_when_disabled(client):
    response = client.post("/api/v1/ai/threads/1/tags")
    assert response.status_code == 503
    body = response.get_json()
    assert body["error"] == "service_unavailable"
    assert "AI suggestions" in body["message"]


def test_audit_log_is_readable_without_llm(client):
    response = client.get("/api/v1/ai/audit")
    assert response.status_code == 200
    assert response.get_json()["data"] == []


def test_tag_suggestion_through_the_api(app, client, fake_http):
    store = app.config["STORE"]
    app.config["SUGGESTER"] = ThreadSuggester(
        store, OllamaClient(LLMConfig(enabled=True, base_url="http://ollama.local"), session=fake_http)
    )
    thread, _ = store.ensure_thread("https://forum.example/threads/ai.1")
    fake_http.add(
        "POST",
        "http://ollama.local/api/chat",
        json_body={"message": {"content": '{"tags": ["beach"]}'}},
    )

    response = client.post(f"/api/v1/ai/threads/{thread['id']}/tags")
    assert response.status_code == 200
    assert response.get_json()["data"] == {"thread_id": thread["id"], "tags": ["beach"]}
    assert client.post("/api/v1/ai/threads/999/tags").status_code == 404
    assert len(client.get("/api/v1/ai/audit").get_json()["data"]) == 1
