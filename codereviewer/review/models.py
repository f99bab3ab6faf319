"""
Review 领域模型（Pydantic）。

用途：
- 明确评审核心各阶段输入/输出的数据结构（CodeChange / ModelConfig / ReviewResult）
- 在模型层直接校验不变量，非法对象构造不出来
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from codereviewer.llm.errors import ConfigurationException


class ChangeType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


CHANGE_TYPE_LABELS: dict[ChangeType, str] = {
    ChangeType.ADDED: "新增",
    ChangeType.MODIFIED: "变更",
    ChangeType.DELETED: "删除",
}


class CodeChange(BaseModel):
    """单个文件的变更（由外部 VCS 快照对构造，不可变）。HTTP 接口里用 camelCase 字段名。"""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    file_path: str
    old_content: str | None = None
    new_content: str | None = None
    change_type: ChangeType

    @model_validator(mode="after")
    def _check_contents(self) -> CodeChange:
        if not self.file_path:
            raise ValueError("file_path must be non-empty")
        if self.old_content is None and self.new_content is None:
            raise ValueError(f"{self.file_path}: old_content and new_content cannot both be missing")
        if self.change_type is ChangeType.ADDED and self.new_content is None:
            raise ValueError(f"{self.file_path}: ADDED change requires new_content")
        if self.change_type is ChangeType.DELETED and self.old_content is None:
            raise ValueError(f"{self.file_path}: DELETED change requires old_content")
        return self

    def diff(self) -> str:
        """每次调用都重新计算，不缓存。"""
        from codereviewer.review.diff_builder import build_diff

        return build_diff(
            file_path=self.file_path,
            old_content=self.old_content,
            new_content=self.new_content,
            change_type=self.change_type,
        )

    def formatted_block(self) -> str:
        """拼进 prompt 的单文件块：文件名 + 变更类型 + diff。"""
        label = CHANGE_TYPE_LABELS[self.change_type]
        return f"文件：{self.file_path}\n变更类型：{label}\n\n{self.diff()}"


class Provider(str, Enum):
    OLLAMA = "OLLAMA"
    OPENROUTER = "OPENROUTER"


DEFAULT_ENDPOINTS: dict[Provider, str] = {
    Provider.OLLAMA: "http://localhost:11434",
    Provider.OPENROUTER: "https://openrouter.ai",
}

DEFAULT_API_PATHS: dict[Provider, str] = {
    Provider.OLLAMA: "/api/generate",
    Provider.OPENROUTER: "/api/v1/chat/completions",
}


def default_endpoint(provider: Provider) -> str:
    return DEFAULT_ENDPOINTS[provider]


def default_api_path(provider: Provider) -> str:
    return DEFAULT_API_PATHS[provider]


class ModelConfig(BaseModel):
    """
    连接/生成参数。

    注意：
    - 构造时不做范围校验，调用方在派发前必须 `ensure_valid()`（非法配置永远不会进入请求执行器）
    - 一次评审内视为不可变；模型切换用 `with_model()` 生成本地副本
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider: Provider = Provider.OLLAMA
    model_name: str = "qwen3:8b"
    endpoint: str = DEFAULT_ENDPOINTS[Provider.OLLAMA]
    api_path: str = DEFAULT_API_PATHS[Provider.OLLAMA]
    temperature: float = 0.7
    max_tokens: int = 2048
    timeout_ms: int = 120_000
    retry_count: int = 3
    api_key: str = Field(default="", repr=False)

    def full_url(self) -> str:
        return f"{self.endpoint.rstrip('/')}/{self.api_path.lstrip('/')}"

    def validation_errors(self) -> list[tuple[str, str]]:
        errors: list[tuple[str, str]] = []
        if not self.model_name.strip():
            errors.append(("model_name", "Model name must not be blank"))
        if not self.endpoint.strip():
            errors.append(("endpoint", "Endpoint URL must not be blank"))
        if not self.api_path.strip():
            errors.append(("api_path", "API path must not be blank"))
        if not 0.0 <= self.temperature <= 2.0:
            errors.append(("temperature", f"Temperature {self.temperature} is outside [0.0, 2.0]"))
        if self.max_tokens <= 0:
            errors.append(("max_tokens", f"Max tokens must be > 0 (got {self.max_tokens})"))
        if self.timeout_ms <= 0:
            errors.append(("timeout_ms", f"Timeout must be > 0 ms (got {self.timeout_ms})"))
        if self.retry_count < 0:
            errors.append(("retry_count", f"Retry count must be >= 0 (got {self.retry_count})"))
        if self.provider is Provider.OPENROUTER and not self.api_key.strip():
            errors.append(("api_key", "OpenRouter API key is required"))
        if self.provider is Provider.OPENROUTER and not self.api_path.rstrip("/").endswith("/chat/completions"):
            errors.append(("api_path", "OpenRouter API path must end with /chat/completions"))
        return errors

    def is_valid(self) -> bool:
        return not self.validation_errors()

    def ensure_valid(self) -> None:
        errors = self.validation_errors()
        if errors:
            config_key, message = errors[0]
            raise ConfigurationException(
                message=f"Invalid model configuration: {message}",
                config_key=config_key,
                details={"problems": [m for _, m in errors]},
            )

    def with_model(self, model_name: str) -> ModelConfig:
        return self.model_copy(update={"model_name": model_name})


class ReviewStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    IN_PROGRESS = "IN_PROGRESS"
    CANCELLED = "CANCELLED"


class ReviewResult(BaseModel):
    """
    一次编排的结果。

    不变量（由 validator 保证）：
    - SUCCESS：review_content 非空，且没有 error_message
    - ERROR / CANCELLED：review_content 为空，且必须带 error_message
    - IN_PROGRESS：两者都为空

    终态化不会修改原对象，而是生成一个新的、重新校验过的对象。
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=(), alias_generator=to_camel, populate_by_name=True)

    id: str
    review_content: str = ""
    model_used: str
    prompt_template_used: str
    code_changes: list[CodeChange] = Field(default_factory=list)
    status: ReviewStatus = ReviewStatus.IN_PROGRESS
    error_message: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    duration_ms: int | None = None

    @model_validator(mode="after")
    def _check_status_invariant(self) -> ReviewResult:
        if self.status is ReviewStatus.SUCCESS:
            if not self.review_content:
                raise ValueError("SUCCESS result requires non-empty review_content")
            if self.error_message is not None:
                raise ValueError("SUCCESS result must not carry error_message")
        elif self.status in (ReviewStatus.ERROR, ReviewStatus.CANCELLED):
            if self.review_content:
                raise ValueError(f"{self.status.value} result must have empty review_content")
            if not self.error_message:
                raise ValueError(f"{self.status.value} result requires error_message")
        elif self.review_content or self.error_message is not None:
            raise ValueError("IN_PROGRESS result must not carry content or error_message")
        return self

    @classmethod
    def started(
        cls,
        model_used: str,
        prompt_template_used: str,
        code_changes: list[CodeChange],
        run_id: str | None = None,
    ) -> ReviewResult:
        return cls(
            id=run_id or str(uuid.uuid4()),
            model_used=model_used,
            prompt_template_used=prompt_template_used,
            code_changes=list(code_changes),
        )

    def _finish(self, **updates: object) -> ReviewResult:
        data = self.model_dump()
        data.update(updates)
        return ReviewResult.model_validate(data)

    def succeeded(self, review_content: str, model_used: str, duration_ms: int | None = None) -> ReviewResult:
        return self._finish(
            status=ReviewStatus.SUCCESS,
            review_content=review_content,
            model_used=model_used,
            error_message=None,
            duration_ms=duration_ms,
        )

    def failed(self, error_message: str, model_used: str | None = None, duration_ms: int | None = None) -> ReviewResult:
        return self._finish(
            status=ReviewStatus.ERROR,
            review_content="",
            model_used=model_used or self.model_used,
            error_message=error_message,
            duration_ms=duration_ms,
        )

    def cancelled(
        self,
        error_message: str = "Code review was cancelled by user",
        duration_ms: int | None = None,
    ) -> ReviewResult:
        return self._finish(
            status=ReviewStatus.CANCELLED,
            review_content="",
            error_message=error_message,
            duration_ms=duration_ms,
        )

    @property
    def is_successful(self) -> bool:
        return self.status is ReviewStatus.SUCCESS

    def display_title(self) -> str:
        return f"Review {self.id[:8]} - {self.created_at.date().isoformat()}"
