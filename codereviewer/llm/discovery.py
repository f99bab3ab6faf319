"""
可用模型列表查询。

- Ollama：`GET {endpoint}/api/tags` -> `models[].name`
- OpenRouter：`GET {endpoint}/api/v1/models` -> `data[].id`

任何失败（网络 / 非 2xx / 解析 / 空列表）都返回该 provider 的静态默认列表，从不抛错：
这个列表只用于超时后的模型切换与设置页展示，不应该让评审因此失败。
"""

from __future__ import annotations

import logging

import httpx
from pydantic import BaseModel, ValidationError

from codereviewer.review.models import ModelConfig, Provider

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = httpx.Timeout(10.0, connect=5.0)

OLLAMA_FALLBACK_MODELS: tuple[str, ...] = (
    "qwen3:8b",
    "qwen:7b",
    "qwen:14b",
    "llama3:8b",
    "llama3:70b",
    "codellama:7b",
    "codellama:13b",
    "mistral:7b",
    "deepseek-coder:6.7b",
    "deepseek-coder:33b",
)

OPENROUTER_FALLBACK_MODELS: tuple[str, ...] = (
    "anthropic/claude-3.5-sonnet",
    "deepseek/deepseek-chat",
    "openai/gpt-4o-mini",
    "qwen/qwen-2.5-coder-32b-instruct",
)


class _OllamaModel(BaseModel):
    name: str


class _OllamaTags(BaseModel):
    models: list[_OllamaModel]


class _OpenRouterModel(BaseModel):
    id: str


class _OpenRouterModels(BaseModel):
    data: list[_OpenRouterModel]


def fallback_models(provider: Provider) -> list[str]:
    if provider is Provider.OPENROUTER:
        return list(OPENROUTER_FALLBACK_MODELS)
    return list(OLLAMA_FALLBACK_MODELS)


class ModelDiscovery:
    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def list_models(self, config: ModelConfig) -> list[str]:
        endpoint = config.endpoint.rstrip("/")
        headers: dict[str, str] = {}
        if config.provider is Provider.OPENROUTER:
            url = f"{endpoint}/api/v1/models"
            if config.api_key:
                headers["Authorization"] = f"Bearer {config.api_key}"
        else:
            url = f"{endpoint}/api/tags"

        try:
            resp = await self._http.get(url, headers=headers, timeout=DISCOVERY_TIMEOUT)
            resp.raise_for_status()
            if config.provider is Provider.OPENROUTER:
                names = [m.id for m in _OpenRouterModels.model_validate_json(resp.content).data]
            else:
                names = [m.name for m in _OllamaTags.model_validate_json(resp.content).models]
        except httpx.HTTPStatusError as exc:
            logger.warning(f"Model list request failed: url={url} status={exc.response.status_code}, using defaults")
            return fallback_models(config.provider)
        except httpx.HTTPError as exc:
            logger.warning(f"Model list request failed: url={url} error={type(exc).__name__}, using defaults")
            return fallback_models(config.provider)
        except ValidationError as exc:
            logger.warning(f"Model list response could not be parsed: url={url} errors={exc.error_count()}, using defaults")
            return fallback_models(config.provider)

        if not names:
            logger.warning(f"Model list is empty: url={url}, using defaults")
            return fallback_models(config.provider)

        logger.info(f"Discovered {len(names)} model(s) at {url}")
        return sorted(names)
