from __future__ import annotations

import threading

import anyio
import httpx

from codereviewer.review.models import ChangeType, CodeChange, ModelConfig, ReviewStatus
from codereviewer.review.runner import ReviewRunner

CONFIG = ModelConfig(endpoint="http://ollama.local:11434", retry_count=1)
CHANGES = [CodeChange(file_path="a.py", new_content="x = 1", change_type=ChangeType.ADDED)]
REVIEW = "## 📝 评审总结\n新增文件只有一个赋值语句，结构简单，没有发现需要修改的地方。"


def test_runner_completes_review_on_worker_thread() -> None:
    threads: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        threads.append(threading.current_thread().name)
        return httpx.Response(200, json={"response": REVIEW})

    with ReviewRunner(max_workers=1, transport=httpx.MockTransport(handler), backoff_base=0) as runner:
        job = runner.submit(CHANGES, "{code}", "简洁代码评审", CONFIG)
        result = job.result(timeout=10)

    assert result.status is ReviewStatus.SUCCESS
    assert result.review_content == REVIEW
    assert job.done()
    assert threads[0].startswith("code-review")


def test_job_cancel_interrupts_in_flight_request() -> None:
    started = threading.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        started.set()
        await anyio.sleep(30)
        return httpx.Response(200, json={"response": REVIEW})

    with ReviewRunner(max_workers=1, transport=httpx.MockTransport(handler)) as runner:
        job = runner.submit(CHANGES, "{code}", "简洁代码评审", CONFIG)
        assert started.wait(timeout=10)
        job.cancel()
        result = job.result(timeout=10)

    assert job.cancelled
    assert result.status is ReviewStatus.CANCELLED
