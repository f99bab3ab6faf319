from __future__ import annotations

import httpx
import pytest

from codereviewer.llm.discovery import OLLAMA_FALLBACK_MODELS, OPENROUTER_FALLBACK_MODELS, ModelDiscovery
from codereviewer.review.models import ModelConfig, Provider


def _discovery(handler: httpx.MockTransport) -> tuple[ModelDiscovery, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=handler)
    return ModelDiscovery(http_client=client), client


@pytest.mark.anyio
async def test_ollama_models_are_sorted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "qwen3:8b", "size": 1}, {"name": "llama3:8b"}]})

    discovery, client = _discovery(httpx.MockTransport(handler))
    async with client:
        models = await discovery.list_models(ModelConfig(endpoint="http://ollama.local:11434/"))
    assert models == ["llama3:8b", "qwen3:8b"]


@pytest.mark.anyio
async def test_openrouter_models_use_bearer_token() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization", "")
        return httpx.Response(200, json={"data": [{"id": "z/model"}, {"id": "a/model"}]})

    config = ModelConfig(
        provider=Provider.OPENROUTER,
        endpoint="https://openrouter.example",
        api_path="/api/v1/chat/completions",
        api_key="sk-test",
    )
    discovery, client = _discovery(httpx.MockTransport(handler))
    async with client:
        models = await discovery.list_models(config)
    assert models == ["a/model", "z/model"]
    assert seen == {"path": "/api/v1/models", "auth": "Bearer sk-test"}


@pytest.mark.anyio
async def test_http_error_falls_back_to_static_list() -> None:
    discovery, client = _discovery(httpx.MockTransport(lambda request: httpx.Response(500, text="boom")))
    async with client:
        models = await discovery.list_models(ModelConfig())
    assert models == list(OLLAMA_FALLBACK_MODELS)


@pytest.mark.anyio
async def test_connection_error_falls_back_to_static_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    config = ModelConfig(provider=Provider.OPENROUTER, api_path="/api/v1/chat/completions", api_key="k")
    discovery, client = _discovery(httpx.MockTransport(handler))
    async with client:
        models = await discovery.list_models(config)
    assert models == list(OPENROUTER_FALLBACK_MODELS)


@pytest.mark.anyio
async def test_unparseable_or_empty_list_falls_back() -> None:
    responses = iter([httpx.Response(200, text="<html>"), httpx.Response(200, json={"models": []})])
    discovery, client = _discovery(httpx.MockTransport(lambda request: next(responses)))
    async with client:
        assert await discovery.list_models(ModelConfig()) == list(OLLAMA_FALLBACK_MODELS)
        assert await discovery.list_models(ModelConfig()) == list(OLLAMA_FALLBACK_MODELS)
