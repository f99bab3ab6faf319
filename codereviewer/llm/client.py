"""
推理请求执行器（Ollama 走 httpx，OpenRouter 走 OpenAI SDK）。

目标：
- **有界**：总尝试次数 = max(1, retry_count)，线性退避 attempt * backoff_base（tenacity 驱动）
- **可取消**：每轮开始检查令牌；HTTP 调用与退避等待都能被令牌打断
- **可切换模型**：超时后（可选）按模型列表顺序切到下一个模型，列表每次执行只查询一次
- **日志不带正文**：只记录长度、状态码、尝试次数与耗时
"""

from __future__ import annotations

import errno
import json
import logging
import socket
import time
from collections.abc import Iterator
from dataclasses import dataclass

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from codereviewer.llm.cancellation import CancellationToken, run_cancellable
from codereviewer.llm.discovery import ModelDiscovery
from codereviewer.llm.errors import (
    CodeReviewerException,
    ConnectionRefusedException,
    HostUnreachableException,
    InferenceRequestException,
    RemoteRejectionException,
    RequestTimeoutException,
    ResponseFormatException,
    ReviewCancelledException,
    TransportException,
)
from codereviewer.review.models import ModelConfig, Provider

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 30.0
MIN_READ_TIMEOUT_S = 30.0
MAX_TEST_READ_TIMEOUT_S = 120.0
DEFAULT_BACKOFF_BASE_S = 2.0

CONNECTION_TEST_PROMPT = "Hello, please respond with 'OK' if you can see this message."
OLLAMA_TEST_MAX_TOKENS = 10
OPENROUTER_TEST_MAX_TOKENS = 4

CHAT_COMPLETIONS_SUFFIX = "/chat/completions"

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH}
_UNREACHABLE_HINTS = ("name or service not known", "nodename nor servname", "getaddrinfo failed", "no route to host")


@dataclass(frozen=True)
class ExecutionOutcome:
    """一次成功执行：原始响应体 + 实际使用的模型（可能已切换）。"""

    payload: str
    model_used: str
    attempts: int
    elapsed_ms: int


def effective_timeout_ms(timeout_ms: int) -> int:
    """实际生效的读取超时：配置值低于 30s 时按 30s 算。"""
    return max(timeout_ms, int(MIN_READ_TIMEOUT_S * 1000))


def request_timeout(timeout_ms: int) -> httpx.Timeout:
    """连接 30s；读取 max(timeout_ms, 30s)。"""
    return httpx.Timeout(effective_timeout_ms(timeout_ms) / 1000, connect=CONNECT_TIMEOUT_S)


def connection_test_timeout(timeout_ms: int) -> httpx.Timeout:
    read = min(max(timeout_ms / 1000, MIN_READ_TIMEOUT_S), MAX_TEST_READ_TIMEOUT_S)
    return httpx.Timeout(read, connect=CONNECT_TIMEOUT_S)


def _walk_causes(exc: BaseException) -> Iterator[BaseException]:
    """沿 __cause__/__context__ 展开异常链（含 ExceptionGroup 成员）。"""
    stack: list[BaseException] = [exc]
    seen: set[int] = set()
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, BaseExceptionGroup):
            stack.extend(current.exceptions)
        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                stack.append(linked)


def classify_transport_error(
    exc: BaseException,
    url: str,
    model: str,
    timeout_ms: int,
) -> InferenceRequestException:
    """把 httpx 传输层异常映射到评审核心的异常分类。"""
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutException(
            f"Request timed out after {timeout_ms} ms",
            timeout_ms=timeout_ms,
            url=url,
            model=model,
            original_error=exc,
        )

    if isinstance(exc, httpx.ConnectError):
        for cause in _walk_causes(exc):
            if isinstance(cause, ConnectionRefusedError) or (
                isinstance(cause, OSError) and cause.errno == errno.ECONNREFUSED
            ):
                return ConnectionRefusedException(
                    "Connection refused by inference endpoint", url=url, model=model, original_error=exc
                )
            if isinstance(cause, socket.gaierror) or (
                isinstance(cause, OSError) and cause.errno in _UNREACHABLE_ERRNOS
            ):
                return HostUnreachableException(
                    "Inference endpoint host is unreachable", url=url, model=model, original_error=exc
                )
        text = str(exc).lower()
        if "connection refused" in text:
            return ConnectionRefusedException(
                "Connection refused by inference endpoint", url=url, model=model, original_error=exc
            )
        if any(hint in text for hint in _UNREACHABLE_HINTS):
            return HostUnreachableException(
                "Inference endpoint host is unreachable", url=url, model=model, original_error=exc
            )

    return TransportException(
        f"Transport error: {type(exc).__name__}", url=url, model=model, original_error=exc
    )


def _ensure_json(payload: str, url: str, model: str) -> str:
    try:
        json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ResponseFormatException(
            f"Inference response is not valid JSON: {exc.msg}",
            details={"url": url, "model": model, "length": len(payload)},
            original_error=exc,
        ) from exc
    return payload


def _openai_base_url(config: ModelConfig) -> str:
    full_url = config.full_url().rstrip("/")
    return full_url[: -len(CHAT_COMPLETIONS_SUFFIX)] if full_url.endswith(CHAT_COMPLETIONS_SUFFIX) else full_url


class InferenceClient:
    """
    有界重试 + 可取消 + 超时切换模型的请求执行器。

    - http_client：复用 httpx.AsyncClient 连接池（超时按请求传入）
    - discovery：超时切换模型时使用；为 None 时不切换
    - backoff_base：线性退避的基数（秒），测试里可以调成 0
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        discovery: ModelDiscovery | None = None,
        failover_enabled: bool = True,
        backoff_base: float = DEFAULT_BACKOFF_BASE_S,
    ) -> None:
        self._http = http_client
        self._discovery = discovery
        self._failover_enabled = failover_enabled
        self._backoff_base = backoff_base

    async def execute(
        self,
        prompt: str,
        config: ModelConfig,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionOutcome:
        """
        执行一次推理。

        - 成功：返回原始响应体与实际使用的模型
        - 重试耗尽：抛出最后一次的分类异常
        - 被取消：抛 `ReviewCancelledException`（不重试）
        """
        config.ensure_valid()
        token = cancellation or CancellationToken()
        max_attempts = max(1, config.retry_count)
        current = config
        models: list[str] | None = None
        failover_pending = False
        started = time.monotonic()

        retrying = AsyncRetrying(
            sleep=token.sleep,
            stop=stop_after_attempt(max_attempts),
            wait=wait_incrementing(start=self._backoff_base, increment=self._backoff_base),
            retry=retry_if_exception_type((InferenceRequestException, ResponseFormatException)),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    token.raise_if_cancelled()
                    if failover_pending and self._discovery is not None:
                        failover_pending = False
                        current, models = await self._next_model(self._discovery, current, models, token)
                    logger.info(
                        f"Inference request: provider={current.provider.value} model={current.model_name} "
                        f"attempt={number}/{max_attempts} prompt_len={len(prompt)}"
                    )
                    try:
                        payload = await run_cancellable(
                            token, self._send, prompt, current, request_timeout(current.timeout_ms)
                        )
                    except (InferenceRequestException, ResponseFormatException) as exc:
                        logger.warning(
                            f"Inference attempt {number}/{max_attempts} failed: {type(exc).__name__} "
                            f"model={current.model_name}"
                        )
                        failover_pending = (
                            exc.triggers_failover and self._failover_enabled and self._discovery is not None
                        )
                        raise
        except (InferenceRequestException, ResponseFormatException) as exc:
            logger.error(f"Inference failed after {max_attempts} attempt(s): {type(exc).__name__}")
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Inference succeeded: model={current.model_name} attempts={number} "
            f"response_len={len(payload)} duration_ms={elapsed_ms}"
        )
        return ExecutionOutcome(payload=payload, model_used=current.model_name, attempts=number, elapsed_ms=elapsed_ms)

    async def _next_model(
        self,
        discovery: ModelDiscovery,
        current: ModelConfig,
        models: list[str] | None,
        token: CancellationToken,
    ) -> tuple[ModelConfig, list[str]]:
        if models is None:
            models = await run_cancellable(token, discovery.list_models, current)
        if len(models) <= 1:
            logger.info("Timeout failover skipped: fewer than two models available")
            return current, models

        if current.model_name in models:
            next_name = models[(models.index(current.model_name) + 1) % len(models)]
        else:
            next_name = models[0]
        logger.warning(f"Switching model after timeout: {current.model_name} -> {next_name}")
        return current.with_model(next_name), models

    async def _send(self, prompt: str, config: ModelConfig, timeout: httpx.Timeout) -> str:
        if config.provider is Provider.OPENROUTER:
            return await self._send_openrouter(prompt, config, timeout)
        return await self._send_ollama(prompt, config, timeout)

    async def _send_ollama(self, prompt: str, config: ModelConfig, timeout: httpx.Timeout) -> str:
        url = config.full_url()
        body = {
            "model": config.model_name,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": config.temperature,
                "top_p": 0.9,
                "top_k": 40,
                "num_predict": config.max_tokens,
            },
        }
        started = time.monotonic()
        try:
            resp = await self._http.post(url, json=body, timeout=timeout)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, url=url, model=config.model_name, timeout_ms=config.timeout_ms) from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Inference response: status={resp.status_code} length={len(resp.content)} duration_ms={duration_ms}")
        if not resp.is_success:
            raise RemoteRejectionException(
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                response_body=resp.text,
                url=url,
                model=config.model_name,
            )
        return _ensure_json(resp.text, url=url, model=config.model_name)

    async def _send_openrouter(self, prompt: str, config: ModelConfig, timeout: httpx.Timeout) -> str:
        url = config.full_url()
        client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=_openai_base_url(config),
            http_client=self._http,
            max_retries=0,
        )
        started = time.monotonic()
        try:
            raw = await client.chat.completions.with_raw_response.create(
                model=config.model_name,
                messages=[{"role": "user", "content": prompt}],
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout=timeout,
            )
        except APITimeoutError as exc:
            raise RequestTimeoutException(
                f"Request timed out after {config.timeout_ms} ms",
                timeout_ms=config.timeout_ms,
                url=url,
                model=config.model_name,
                original_error=exc,
            ) from exc
        except APIConnectionError as exc:
            cause = exc.__cause__ if exc.__cause__ is not None else exc
            raise classify_transport_error(cause, url=url, model=config.model_name, timeout_ms=config.timeout_ms) from exc
        except APIStatusError as exc:
            logger.info(f"Inference response: status={exc.status_code} length={len(exc.response.content)}")
            raise RemoteRejectionException(
                f"HTTP {exc.status_code}",
                status_code=exc.status_code,
                response_body=exc.response.text,
                url=url,
                model=config.model_name,
                original_error=exc,
            ) from exc
        except OpenAIError as exc:
            raise ResponseFormatException(
                f"Unexpected OpenAI client error: {type(exc).__name__}",
                details={"url": url, "model": config.model_name},
                original_error=exc,
            ) from exc

        payload = raw.http_response.text
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Inference response: status={raw.status_code} length={len(payload)} duration_ms={duration_ms}")
        return _ensure_json(payload, url=url, model=config.model_name)

    async def test_connection(self, config: ModelConfig, cancellation: CancellationToken | None = None) -> bool:
        """发一个极小的请求验证端点可用；任何失败都返回 False（取消除外）。"""
        token = cancellation or CancellationToken()
        max_tokens = OPENROUTER_TEST_MAX_TOKENS if config.provider is Provider.OPENROUTER else OLLAMA_TEST_MAX_TOKENS
        probe = config.model_copy(update={"max_tokens": max_tokens})
        try:
            probe.ensure_valid()
            await run_cancellable(
                token, self._send, CONNECTION_TEST_PROMPT, probe, connection_test_timeout(config.timeout_ms)
            )
        except ReviewCancelledException:
            raise
        except CodeReviewerException as exc:
            logger.warning(f"Connection test failed: url={config.full_url()} error={type(exc).__name__}")
            return False
        logger.info(f"Connection test succeeded: url={config.full_url()} model={config.model_name}")
        return True
