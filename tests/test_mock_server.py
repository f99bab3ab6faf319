from __future__ import annotations

from fastapi.testclient import TestClient

from codereviewer.dev.mock_ollama_server import MOCK_MODELS, app
from codereviewer.llm.response import strip_reasoning


def test_mock_generate_returns_review_with_reasoning() -> None:
    client = TestClient(app)
    resp = client.post("/api/generate", json={"model": "mock-coder:7b", "prompt": "文件：src/a.py\n变更类型：变更"})
    content = resp.json()["response"]
    assert content.startswith("<think>")
    stripped = strip_reasoning(content)
    assert stripped.startswith("## 📝 评审总结")
    assert "`src/a.py`" in stripped


def test_mock_model_listing_and_chat() -> None:
    client = TestClient(app)
    assert [m["name"] for m in client.get("/api/tags").json()["models"]] == list(MOCK_MODELS)
    resp = client.post(
        "/api/v1/chat/completions",
        json={"model": "x", "messages": [{"role": "user", "content": "Hello, please respond with 'OK' if you can see this message."}]},
    )
    assert resp.json()["choices"][0]["message"]["content"] == "OK"
