"""
应用配置加载。

设计目标：
- **严格**：缺少必要环境变量 / 数值非法就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 承载配置，模型参数统一落到 `ModelConfig`
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict

from codereviewer.llm.errors import ConfigurationException
from codereviewer.review.models import ModelConfig, Provider, default_api_path
from codereviewer.review.report import DEFAULT_RESULT_DIR

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class AppConfig(BaseModel):
    """应用运行所需的配置集合。"""

    model_config = ConfigDict(protected_namespaces=())

    model: ModelConfig
    failover_enabled: bool = True
    language: Literal["zh", "en"] = "zh"
    templates_dir: Path | None = None
    result_dir: str = DEFAULT_RESULT_DIR


def _get(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(environ, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(environ, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(environ, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {key}: {raw!r}")


def _parse_provider(environ: Mapping[str, str]) -> Provider:
    raw = _get(environ, "LLM_PROVIDER")
    if raw is None:
        return Provider.OLLAMA
    try:
        return Provider(raw.upper())
    except ValueError as exc:
        allowed = ", ".join(p.value.lower() for p in Provider)
        raise ValueError(f"Invalid LLM_PROVIDER {raw!r} (expected one of: {allowed})") from exc


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：必填项缺失、数值非法、模型参数越界都抛 `ValueError`
    """
    provider = _parse_provider(environ)

    required_keys: list[str] = ["LLM_ENDPOINT", "LLM_MODEL"]
    if provider is Provider.OPENROUTER:
        required_keys.append("LLM_API_KEY")
    missing = [key for key in required_keys if _get(environ, key) is None]
    if missing:
        raise ValueError(f"Missing required env vars: {', '.join(missing)}")

    model = ModelConfig(
        provider=provider,
        model_name=environ["LLM_MODEL"].strip(),
        endpoint=environ["LLM_ENDPOINT"].strip(),
        api_path=_get(environ, "LLM_API_PATH") or default_api_path(provider),
        temperature=_parse_float(environ, "LLM_TEMPERATURE", 0.7),
        max_tokens=_parse_int(environ, "LLM_MAX_TOKENS", 2048),
        timeout_ms=_parse_int(environ, "LLM_TIMEOUT_MS", 120_000),
        retry_count=_parse_int(environ, "LLM_RETRY_COUNT", 3),
        api_key=_get(environ, "LLM_API_KEY") or "",
    )
    try:
        model.ensure_valid()
    except ConfigurationException as exc:
        raise ValueError(f"{exc.message} (key: {exc.config_key})") from exc

    language = (_get(environ, "REVIEW_LANGUAGE") or "zh").lower()
    if language not in ("zh", "en"):
        raise ValueError(f"Invalid REVIEW_LANGUAGE {language!r} (expected zh or en)")

    templates_dir = _get(environ, "REVIEW_TEMPLATES_DIR")
    return AppConfig(
        model=model,
        failover_enabled=_parse_bool(environ, "LLM_FAILOVER_ENABLED", True),
        language=language,
        templates_dir=Path(templates_dir) if templates_dir else None,
        result_dir=_get(environ, "REVIEW_RESULT_DIR") or DEFAULT_RESULT_DIR,
    )
