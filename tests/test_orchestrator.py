from __future__ import annotations

import json
import time

import anyio
import httpx
import pytest

from codereviewer.llm.cancellation import CancellationToken
from codereviewer.llm.client import InferenceClient
from codereviewer.llm.discovery import ModelDiscovery
from codereviewer.review.models import ChangeType, CodeChange, ModelConfig, ReviewResult, ReviewStatus
from codereviewer.review.orchestrator import build_review_orchestrator, run_review

CONFIG = ModelConfig(endpoint="http://ollama.local:11434", retry_count=1)
CHANGES = [CodeChange(file_path="src/app.py", old_content="a = 1", new_content="a = 2", change_type=ChangeType.MODIFIED)]
TEMPLATE = "请评审：\n{code}"

REVIEW = "## 📝 评审总结\n变更很小，只修改了一个常量的值，没有发现明显问题。\n\n## 💡 优化建议\n代码质量良好"


def _ok_review(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"response": REVIEW})


async def _run(
    handler: object,
    config: ModelConfig = CONFIG,
    cancellation: CancellationToken | None = None,
    backoff_base: float = 0,
) -> ReviewResult:
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = InferenceClient(
            http_client=http, discovery=ModelDiscovery(http_client=http), backoff_base=backoff_base
        )
        orchestrator = build_review_orchestrator(inference_client=client)
        return await run_review(
            orchestrator=orchestrator,
            code_changes=CHANGES,
            template_text=TEMPLATE,
            template_name="简洁代码评审",
            config=config,
            cancellation=cancellation,
        )


@pytest.mark.anyio
async def test_successful_review_strips_reasoning() -> None:
    prompts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        prompts.append(json.loads(request.content)["prompt"])
        return httpx.Response(200, json={"response": "<think>hmm</think>\nOkay here goes.\n" + REVIEW})

    result = await _run(handler)

    assert result.status is ReviewStatus.SUCCESS
    assert result.review_content == REVIEW
    assert result.model_used == "qwen3:8b"
    assert result.prompt_template_used == "简洁代码评审"
    assert result.duration_ms is not None
    assert "文件：src/app.py" in prompts[0]
    assert "- a = 1\n+ a = 2" in prompts[0]


@pytest.mark.anyio
async def test_each_run_gets_a_fresh_id() -> None:
    first = await _run(_ok_review)
    second = await _run(_ok_review)
    assert first.id != second.id


@pytest.mark.anyio
async def test_invalid_config_fails_without_network() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"response": REVIEW})

    result = await _run(handler, config=CONFIG.model_copy(update={"max_tokens": 0}))
    assert result.status is ReviewStatus.ERROR
    assert "max_tokens" in (result.error_message or "")
    assert calls == []


@pytest.mark.anyio
async def test_timeout_message_names_url_and_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    result = await _run(handler, config=CONFIG.model_copy(update={"timeout_ms": 45_000}))
    assert result.status is ReviewStatus.ERROR
    assert "http://ollama.local:11434/api/generate" in (result.error_message or "")
    assert "45000 ms" in (result.error_message or "")


@pytest.mark.anyio
async def test_refused_connection_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        exc = httpx.ConnectError("All connection attempts failed", request=request)
        exc.__cause__ = ConnectionRefusedError(111, "Connection refused")
        raise exc

    result = await _run(handler)
    assert result.status is ReviewStatus.ERROR
    assert "refused" in (result.error_message or "")


@pytest.mark.anyio
async def test_remote_rejection_hides_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="model qwen3:8b not found, secret-detail")

    result = await _run(handler)
    assert result.status is ReviewStatus.ERROR
    assert "HTTP 404" in (result.error_message or "")
    assert "secret-detail" not in (result.error_message or "")


@pytest.mark.anyio
async def test_malformed_response_is_error() -> None:
    result = await _run(lambda request: httpx.Response(200, text="<html>oops</html>"))
    assert result.status is ReviewStatus.ERROR
    assert "malformed" in (result.error_message or "")


@pytest.mark.anyio
async def test_empty_answer_is_error() -> None:
    result = await _run(lambda request: httpx.Response(200, json={"response": "   ", "done": True}))
    assert result.status is ReviewStatus.ERROR
    assert result.review_content == ""


@pytest.mark.anyio
async def test_cancellation_after_response_yields_cancelled() -> None:
    token = CancellationToken()

    def handler(request: httpx.Request) -> httpx.Response:
        token.cancel()
        return httpx.Response(200, json={"response": REVIEW})

    result = await _run(handler, cancellation=token)
    assert result.status is ReviewStatus.CANCELLED
    assert result.review_content == ""
    assert result.error_message


@pytest.mark.anyio
async def test_pre_cancelled_token_yields_cancelled() -> None:
    token = CancellationToken()
    token.cancel()
    result = await _run(_ok_review, cancellation=token)
    assert result.status is ReviewStatus.CANCELLED


@pytest.mark.anyio
async def test_failover_model_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen3:8b"}, {"name": "small:1b"}]})
        if json.loads(request.content)["model"] == "qwen3:8b":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"response": REVIEW})

    result = await _run(handler, config=CONFIG.model_copy(update={"retry_count": 2}))
    assert result.status is ReviewStatus.SUCCESS
    assert result.model_used == "small:1b"


@pytest.mark.anyio
async def test_timeout_message_reports_effective_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    result = await _run(handler, config=CONFIG.model_copy(update={"timeout_ms": 1_000}))
    message = result.error_message or ""
    assert "timed out after 30000 ms" in message
    assert "1000 ms" in message


class _ExplodingClient:
    async def execute(self, prompt: str, config: ModelConfig, cancellation: CancellationToken) -> object:
        raise RuntimeError("token=sk-secret leaked in traceback")


@pytest.mark.anyio
async def test_unexpected_error_message_is_generic() -> None:
    orchestrator = build_review_orchestrator(inference_client=_ExplodingClient())  # type: ignore[arg-type]
    result = await run_review(
        orchestrator=orchestrator,
        code_changes=CHANGES,
        template_text=TEMPLATE,
        template_name="简洁代码评审",
        config=CONFIG,
    )
    message = result.error_message or ""
    assert result.status is ReviewStatus.ERROR
    assert "http://ollama.local:11434/api/generate" in message
    assert "qwen3:8b" in message
    assert "sk-secret" not in message
    assert "RuntimeError" not in message


@pytest.mark.anyio
async def test_cancellation_during_second_backoff() -> None:
    token = CancellationToken(poll_interval=0.01)
    requests: list[float] = []
    cancelled_at: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(time.monotonic())
        return httpx.Response(503, text="busy")

    async def cancel_in_second_backoff() -> None:
        while len(requests) < 2:
            await anyio.sleep(0.01)
        # 第二次退避是 2 * 0.5s，取消点落在它中间
        await anyio.sleep(0.2)
        cancelled_at.append(time.monotonic())
        token.cancel()

    async with anyio.create_task_group() as tg:
        tg.start_soon(cancel_in_second_backoff)
        result = await _run(
            handler,
            config=CONFIG.model_copy(update={"retry_count": 3}),
            cancellation=token,
            backoff_base=0.5,
        )
        finished = time.monotonic()

    assert result.status is ReviewStatus.CANCELLED
    assert len(requests) == 2
    assert finished - cancelled_at[0] < 0.1
