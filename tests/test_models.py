from __future__ import annotations

import pytest
from pydantic import ValidationError

from codereviewer.llm.errors import ConfigurationException
from codereviewer.review.models import ChangeType, CodeChange, ModelConfig, Provider, ReviewResult, ReviewStatus


def test_code_change_requires_some_content() -> None:
    with pytest.raises(ValidationError):
        CodeChange(file_path="a.py", change_type=ChangeType.MODIFIED)
    with pytest.raises(ValidationError):
        CodeChange(file_path="a.py", old_content="x", change_type=ChangeType.ADDED)
    with pytest.raises(ValidationError):
        CodeChange(file_path="", new_content="x", change_type=ChangeType.ADDED)


def test_code_change_accepts_camel_case_payload() -> None:
    change = CodeChange.model_validate({"filePath": "a.py", "newContent": "x", "changeType": "ADDED"})
    assert change.file_path == "a.py"
    assert change.diff() == "+++ a.py\n+ x"
    assert change.formatted_block() == "文件：a.py\n变更类型：新增\n\n+++ a.py\n+ x"


def test_full_url_joins_with_single_slash() -> None:
    assert ModelConfig(endpoint="http://h:1/", api_path="/api/generate").full_url() == "http://h:1/api/generate"
    assert ModelConfig(endpoint="http://h:1", api_path="api/generate").full_url() == "http://h:1/api/generate"


def test_default_config_is_valid() -> None:
    assert ModelConfig().is_valid()


@pytest.mark.parametrize(
    ("updates", "key"),
    [
        ({"model_name": " "}, "model_name"),
        ({"endpoint": ""}, "endpoint"),
        ({"temperature": -0.1}, "temperature"),
        ({"temperature": 2.1}, "temperature"),
        ({"max_tokens": 0}, "max_tokens"),
        ({"timeout_ms": 0}, "timeout_ms"),
        ({"retry_count": -1}, "retry_count"),
        ({"provider": Provider.OPENROUTER, "api_path": "/api/v1/chat/completions"}, "api_key"),
    ],
)
def test_invalid_config_names_offending_key(updates: dict[str, object], key: str) -> None:
    config = ModelConfig(**updates)
    assert not config.is_valid()
    with pytest.raises(ConfigurationException) as exc_info:
        config.ensure_valid()
    assert exc_info.value.config_key == key


def test_with_model_does_not_mutate_original() -> None:
    config = ModelConfig(model_name="a")
    switched = config.with_model("b")
    assert config.model_name == "a"
    assert switched.model_name == "b"
    assert switched.endpoint == config.endpoint


def test_api_key_is_hidden_from_repr() -> None:
    config = ModelConfig(provider=Provider.OPENROUTER, api_key="sk-secret")
    assert "sk-secret" not in repr(config)


def _started() -> ReviewResult:
    return ReviewResult.started(model_used="m", prompt_template_used="t", code_changes=[])


def test_result_lifecycle_produces_new_records() -> None:
    started = _started()
    assert started.status is ReviewStatus.IN_PROGRESS

    done = started.succeeded(review_content="ok", model_used="m2", duration_ms=5)
    assert done.is_successful
    assert done.model_used == "m2"
    assert done.id == started.id
    assert started.status is ReviewStatus.IN_PROGRESS

    failed = started.failed("boom")
    assert failed.status is ReviewStatus.ERROR
    assert failed.review_content == ""

    cancelled = started.cancelled()
    assert cancelled.status is ReviewStatus.CANCELLED
    assert cancelled.error_message == "Code review was cancelled by user"


def test_result_invariant_is_enforced() -> None:
    started = _started()
    with pytest.raises(ValidationError):
        started.succeeded(review_content="", model_used="m")
    with pytest.raises(ValidationError):
        started.failed("")
    with pytest.raises(ValidationError):
        ReviewResult(id="x", model_used="m", prompt_template_used="t", status=ReviewStatus.SUCCESS)


def test_display_title() -> None:
    result = _started()
    assert result.display_title().startswith(f"Review {result.id[:8]} - ")
