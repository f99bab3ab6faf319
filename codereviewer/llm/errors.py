"""
代码评审核心的异常体系。

分类（决定重试 / 模型切换策略）：
- **配置错误**：`ConfigurationException`，发请求之前就拒绝，永不重试
- **网络瞬时故障**：超时 / 连接被拒 / 主机不可达，可重试；只有超时会触发模型切换
- **远端拒绝**：HTTP 非 2xx，可重试；响应体只进 details，不直接展示给用户
- **响应格式错误**：JSON 解析失败，本次尝试作废
- **取消**：不是错误，单独的终态，永不重试
"""

from __future__ import annotations

from typing import Any


class CodeReviewerException(Exception):
    """所有评审核心异常的基类。"""

    retryable: bool = False
    triggers_failover: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ConfigurationException(CodeReviewerException):
    """ModelConfig / 模板等配置不合法。"""

    def __init__(self, message: str, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.get("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details, kwargs.get("original_error"))
        self.config_key = config_key


class InferenceRequestException(CodeReviewerException):
    """一次推理请求失败（已分类）。"""

    retryable = True

    def __init__(self, message: str, url: str | None = None, model: str | None = None, **kwargs: Any) -> None:
        details = kwargs.get("details", {})
        if url:
            details["url"] = url
        if model:
            details["model"] = model
        super().__init__(message, details, kwargs.get("original_error"))
        self.url = url
        self.model = model


class RequestTimeoutException(InferenceRequestException):
    """读/连接超时：同一主机上换个模型可能就能跑完。"""

    triggers_failover = True

    def __init__(self, message: str, timeout_ms: int | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if timeout_ms is not None:
            details["timeout_ms"] = timeout_ms
        super().__init__(message, details=details, **kwargs)
        self.timeout_ms = timeout_ms


class ConnectionRefusedException(InferenceRequestException):
    """端口上没有服务在监听。"""


class HostUnreachableException(InferenceRequestException):
    """DNS 解析失败或路由不可达。"""


class TransportException(InferenceRequestException):
    """其他传输层错误（协议错误、连接中断等）。"""


class RemoteRejectionException(InferenceRequestException):
    """推理端点返回了非 2xx。"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        if response_body:
            details["response_body"] = response_body
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code
        self.response_body = response_body


class ResponseFormatException(CodeReviewerException):
    """响应体不是合法 JSON。"""

    retryable = True


class ReviewCancelledException(CodeReviewerException):
    """调用方通过取消令牌中止了评审。"""

    def __init__(self, message: str = "Code review was cancelled by user", **kwargs: Any) -> None:
        super().__init__(message, kwargs.get("details"), kwargs.get("original_error"))
