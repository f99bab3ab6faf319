"""
Review Orchestrator（核心流程编排）。

三个阶段，严格顺序执行：
- ASSEMBLING：组装 prompt（非 AI，确定性）
- DISPATCHING：交给请求执行器（重试 / 超时切换模型 / 可取消）
- PROCESSING：提取生成文本，去掉思考过程，打包成 `ReviewResult`

约定：
- `run_review` 从不抛错（宿主任务自身被取消除外），所有失败都变成 ERROR / CANCELLED 结果
- 失败信息面向用户：说明是哪个地址 / 超时值 / 模型出了问题，不暴露远端响应体
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

import anyio

from codereviewer.llm.cancellation import CancellationToken
from codereviewer.llm.client import InferenceClient, effective_timeout_ms
from codereviewer.llm.errors import (
    CodeReviewerException,
    ConfigurationException,
    ConnectionRefusedException,
    HostUnreachableException,
    InferenceRequestException,
    RemoteRejectionException,
    RequestTimeoutException,
    ResponseFormatException,
    ReviewCancelledException,
)
from codereviewer.llm.response import extract_content, strip_reasoning
from codereviewer.review.models import CodeChange, ModelConfig, ReviewResult
from codereviewer.review.prompt import assemble_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewOrchestrator:
    """Orchestrator 运行时依赖集合。"""

    inference_client: InferenceClient
    language: str = "zh"


def build_review_orchestrator(inference_client: InferenceClient, language: str = "zh") -> ReviewOrchestrator:
    return ReviewOrchestrator(inference_client=inference_client, language=language)


def describe_failure(exc: CodeReviewerException, config: ModelConfig) -> str:
    """把分类后的异常转成可操作的提示语。"""
    url = getattr(exc, "url", None) or config.full_url()
    model = getattr(exc, "model", None) or config.model_name

    if isinstance(exc, ConfigurationException):
        return f"Invalid configuration ({exc.config_key or 'unknown'}): {exc.message}"
    if isinstance(exc, RequestTimeoutException):
        waited_ms = effective_timeout_ms(config.timeout_ms)
        if waited_ms != config.timeout_ms:
            return (
                f"Request to {url} timed out after {waited_ms} ms (model {model}; configured timeout "
                f"{config.timeout_ms} ms is raised to the {waited_ms} ms minimum). Choose a smaller model."
            )
        return (
            f"Request to {url} timed out after {waited_ms} ms (model {model}). "
            "Increase the timeout or choose a smaller model."
        )
    if isinstance(exc, ConnectionRefusedException):
        return f"Connection to {url} was refused. Make sure the inference service is running at that address."
    if isinstance(exc, HostUnreachableException):
        return f"Host of {url} is unreachable. Check the endpoint address and your network connection."
    if isinstance(exc, RemoteRejectionException):
        return (
            f"Inference endpoint {url} rejected the request with HTTP {exc.status_code} (model {model}). "
            "Check the model name and API key."
        )
    if isinstance(exc, ResponseFormatException):
        return f"Inference endpoint {url} returned a malformed response (model {model})."
    if isinstance(exc, InferenceRequestException):
        return f"Request to {url} failed (model {model}): {exc.message}"
    return f"Code review failed: {exc.message}"


async def run_review(
    orchestrator: ReviewOrchestrator,
    code_changes: Sequence[CodeChange],
    template_text: str,
    template_name: str,
    config: ModelConfig,
    cancellation: CancellationToken | None = None,
) -> ReviewResult:
    """
    跑一次完整评审，返回终态 `ReviewResult`。

    - 配置非法：不发请求，直接 ERROR
    - 任意阶段观察到取消（包括拿到响应之后、打包之前）：CANCELLED
    - 模型返回空内容：ERROR
    """
    token = cancellation or CancellationToken()
    started = time.monotonic()
    result = ReviewResult.started(
        model_used=config.model_name,
        prompt_template_used=template_name,
        code_changes=list(code_changes),
    )

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    logger.info(
        f"Review {result.id} started: files={len(code_changes)} template={template_name} "
        f"provider={config.provider.value} model={config.model_name}"
    )

    try:
        config.ensure_valid()
        token.raise_if_cancelled()

        # Phase 1: ASSEMBLING（逐文件 diff 是 CPU 密集的，放到线程里跑，不占事件循环）
        prompt = await anyio.to_thread.run_sync(
            assemble_prompt,
            template_text,
            code_changes,
            template_name,
            orchestrator.language,
        )
        token.raise_if_cancelled()
        logger.info(f"Review {result.id} prompt assembled: prompt_len={len(prompt)}")

        # Phase 2: DISPATCHING
        outcome = await orchestrator.inference_client.execute(prompt=prompt, config=config, cancellation=token)

        # Phase 3: PROCESSING
        token.raise_if_cancelled()
        content = extract_content(outcome.payload)
    except ReviewCancelledException:
        logger.info(f"Review {result.id} cancelled after {elapsed_ms()} ms")
        return result.cancelled(duration_ms=elapsed_ms())
    except CodeReviewerException as exc:
        logger.error(f"Review {result.id} failed: {type(exc).__name__} after {elapsed_ms()} ms")
        return result.failed(describe_failure(exc, config), duration_ms=elapsed_ms())
    except Exception as exc:
        logger.exception(f"Review {result.id} failed with unexpected error")
        return result.failed(
            f"Code review failed unexpectedly while calling {config.full_url()} (model {config.model_name}). "
            "See the server log for details.",
            duration_ms=elapsed_ms(),
        )

    try:
        processed = strip_reasoning(content)
    except Exception:
        logger.warning(f"Review {result.id} reasoning strip failed, using raw content", exc_info=True)
        processed = content

    if token.is_cancelled:
        logger.info(f"Review {result.id} cancelled before packaging")
        return result.cancelled(duration_ms=elapsed_ms())

    if not processed.strip():
        logger.error(f"Review {result.id} failed: empty model response (model={outcome.model_used})")
        return result.failed(
            f"Model {outcome.model_used} returned an empty response. Try again or choose another model.",
            model_used=outcome.model_used,
            duration_ms=elapsed_ms(),
        )

    logger.info(
        f"Review {result.id} succeeded: model={outcome.model_used} attempts={outcome.attempts} "
        f"content_len={len(processed)} duration_ms={elapsed_ms()}"
    )
    return result.succeeded(review_content=processed, model_used=outcome.model_used, duration_ms=elapsed_ms())
