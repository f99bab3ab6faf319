from __future__ import annotations

import json

import pytest

from codereviewer.llm.errors import ResponseFormatException
from codereviewer.llm.response import (
    ChatEnvelope,
    CompletionEnvelope,
    GenerateEnvelope,
    UnrecognizedEnvelope,
    decode_envelope,
    extract_content,
    strip_reasoning,
)

REVIEW_BODY = (
    "## 📝 评审总结\n"
    "整体代码质量良好，但缺少对空输入的处理。\n\n"
    "## 🔍 发现的问题\n"
    "- parse() 在空字符串时会抛出 IndexError\n\n"
    "## 💡 优化建议\n"
    "- 在入口处校验参数"
)


def test_decode_envelope_variants() -> None:
    assert decode_envelope({"response": "a", "done": True}) == GenerateEnvelope(text="a")
    assert decode_envelope({"message": {"role": "assistant", "content": "b"}}) == ChatEnvelope(text="b")
    assert decode_envelope({"choices": [{"message": {"content": "c"}}]}) == CompletionEnvelope(text="c")
    assert isinstance(decode_envelope({"choices": []}), UnrecognizedEnvelope)
    assert isinstance(decode_envelope(["not", "an", "object"]), UnrecognizedEnvelope)


def test_generate_shape_wins_over_chat_shape() -> None:
    payload = {"response": "generate", "message": {"content": "chat"}}
    assert decode_envelope(payload).text == "generate"


def test_extract_content_missing_fields_is_empty() -> None:
    assert extract_content(json.dumps({"model": "qwen3:8b", "done": True})) == ""


def test_extract_content_rejects_malformed_json() -> None:
    with pytest.raises(ResponseFormatException):
        extract_content("{not json")


def test_strip_removes_think_block_and_preamble() -> None:
    text = "<think>\nThe user wants a review.\n</think>\nSure, here it is.\n" + REVIEW_BODY
    assert strip_reasoning(text) == REVIEW_BODY


def test_strip_detects_heading_without_space() -> None:
    body = REVIEW_BODY.replace("## ", "##")
    text = "Okay, I looked through the whole diff and here are my notes.\n" + body
    assert strip_reasoning(text) == body


def test_strip_keeps_text_when_remainder_is_short() -> None:
    text = "Some thoughts about the code that go on for a while.\n## 总结\n很好"
    assert strip_reasoning(text) == text


def test_strip_drops_narrative_paragraphs_without_markers() -> None:
    text = (
        "Let me look at this change carefully.\n"
        "It touches the parser module.\n"
        "\n"
        "The function handles empty input poorly and may crash on production data sets.\n"
        "Adding a guard clause at the top would make the behaviour explicit and testable."
    )
    result = strip_reasoning(text)
    assert not result.startswith("Let me")
    assert "It touches the parser module." not in result
    assert result.startswith("The function handles empty input poorly")


def test_strip_preserves_problem_lines_inside_narrative() -> None:
    text = (
        "让我先看一下这个改动。\n"
        "这里有一个问题：缺少空值判断。\n"
        "然后继续分析。\n"
        "\n"
        "整体结构清晰，命名规范，测试覆盖也比较完整，可以合并。"
    )
    result = strip_reasoning(text)
    assert "这里有一个问题：缺少空值判断。" in result
    assert "然后继续分析。" not in result


def test_strip_abandons_when_too_much_is_removed() -> None:
    text = "Let me think about this for a long while and keep writing narrative text here.\nok"
    assert strip_reasoning(text) == text


@pytest.mark.parametrize(
    "text",
    [
        "<think>a</think>Intro line\n" + REVIEW_BODY,
        "Let me start.\nmore narrative\n\nThe actual review content that matters a lot here.",
        "   \n\n",
        "",
        "plain answer with no structure",
        "<thi<think>x</think>nk>hidden</think>" + REVIEW_BODY,
    ],
)
def test_strip_is_idempotent(text: str) -> None:
    once = strip_reasoning(text)
    assert strip_reasoning(once) == once
