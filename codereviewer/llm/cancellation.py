"""
显式取消令牌。

- 令牌本身是线程安全的（`threading.Event`），UI/调用方线程可以随时 `cancel()`
- 异步侧以固定间隔轮询（默认 100ms），用在两个挂起点：HTTP 调用与退避等待
- `run_cancellable` 把正在进行的请求放进 anyio cancel scope，取消时真正中断 socket
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anyio

from codereviewer.llm.errors import ReviewCancelledException

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 0.1


class CancellationToken:
    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self._event = threading.Event()
        self.poll_interval = poll_interval

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ReviewCancelledException()

    async def wait(self) -> None:
        """挂起直到被取消。"""
        while not self._event.is_set():
            await anyio.sleep(self.poll_interval)

    async def sleep(self, seconds: float) -> None:
        """可被取消的 sleep：取消后最多一个轮询间隔内抛出 `ReviewCancelledException`。"""
        with anyio.move_on_after(seconds):
            await self.wait()
        self.raise_if_cancelled()


async def run_cancellable(
    token: CancellationToken,
    func: Callable[..., Awaitable[T]],
    *args: Any,
) -> T:
    """
    执行 `func(*args)`，令牌被取消时中断它。

    - 正常结束：返回结果
    - `func` 抛错：原样抛出
    - 取消（包括结果刚好返回时已被取消）：抛 `ReviewCancelledException`
    """
    token.raise_if_cancelled()
    outcome: dict[str, Any] = {}

    async with anyio.create_task_group() as tg:

        async def watch() -> None:
            await token.wait()
            tg.cancel_scope.cancel()

        tg.start_soon(watch)
        try:
            outcome["value"] = await func(*args)
        except Exception as exc:
            outcome["error"] = exc
        finally:
            tg.cancel_scope.cancel()

    token.raise_if_cancelled()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
