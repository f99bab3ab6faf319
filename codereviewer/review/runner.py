"""
后台评审执行（线程池）。

每个任务：
- 在工作线程里用 `anyio.run` 起一个独立事件循环
- 自带 `httpx.AsyncClient`（连接池不跨事件循环共享）
- 自带取消令牌，调用方线程可以随时 `job.cancel()`
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor

import anyio
import httpx

from codereviewer.llm.cancellation import CancellationToken
from codereviewer.llm.client import DEFAULT_BACKOFF_BASE_S, InferenceClient
from codereviewer.llm.discovery import ModelDiscovery
from codereviewer.review.models import CodeChange, ModelConfig, ReviewResult
from codereviewer.review.orchestrator import build_review_orchestrator, run_review

logger = logging.getLogger(__name__)


class ReviewJob:
    """一次已提交的评审。"""

    def __init__(self, future: Future[ReviewResult], token: CancellationToken) -> None:
        self._future = future
        self._token = token

    def cancel(self) -> None:
        self._token.cancel()

    @property
    def cancelled(self) -> bool:
        return self._token.is_cancelled

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> ReviewResult:
        return self._future.result(timeout=timeout)


class ReviewRunner:
    def __init__(
        self,
        max_workers: int = 2,
        failover_enabled: bool = True,
        language: str = "zh",
        backoff_base: float = DEFAULT_BACKOFF_BASE_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        - transport：自定义 httpx transport（测试里用 `httpx.MockTransport`）
        """
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="code-review")
        self._failover_enabled = failover_enabled
        self._language = language
        self._backoff_base = backoff_base
        self._transport = transport

    def submit(
        self,
        code_changes: Sequence[CodeChange],
        template_text: str,
        template_name: str,
        config: ModelConfig,
    ) -> ReviewJob:
        token = CancellationToken()
        future = self._executor.submit(
            anyio.run, self._run, list(code_changes), template_text, template_name, config, token
        )
        logger.info(f"Review job submitted: files={len(code_changes)} template={template_name}")
        return ReviewJob(future=future, token=token)

    async def _run(
        self,
        code_changes: list[CodeChange],
        template_text: str,
        template_name: str,
        config: ModelConfig,
        token: CancellationToken,
    ) -> ReviewResult:
        async with httpx.AsyncClient(transport=self._transport) as http_client:
            inference_client = InferenceClient(
                http_client=http_client,
                discovery=ModelDiscovery(http_client=http_client),
                failover_enabled=self._failover_enabled,
                backoff_base=self._backoff_base,
            )
            orchestrator = build_review_orchestrator(inference_client=inference_client, language=self._language)
            return await run_review(
                orchestrator=orchestrator,
                code_changes=code_changes,
                template_text=template_text,
                template_name=template_name,
                config=config,
                cancellation=token,
            )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> ReviewRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
