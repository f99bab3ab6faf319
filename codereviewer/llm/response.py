"""
推理响应处理。

两步：
- **提取**：从 JSON 外壳中拿出生成的文本（Ollama generate / Ollama chat / OpenAI chat completion）
- **清洗**：去掉模型暴露出来的“思考过程”，只留下结构化的评审内容
"""

from __future__ import annotations

import json
import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from codereviewer.llm.errors import ResponseFormatException

logger = logging.getLogger(__name__)


class GenerateEnvelope(BaseModel):
    kind: Literal["generate"] = "generate"
    text: str


class ChatEnvelope(BaseModel):
    kind: Literal["chat"] = "chat"
    text: str


class CompletionEnvelope(BaseModel):
    kind: Literal["completion"] = "completion"
    text: str


class UnrecognizedEnvelope(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    text: str = ""


ResponseEnvelope = Annotated[
    Union[GenerateEnvelope, ChatEnvelope, CompletionEnvelope, UnrecognizedEnvelope],
    Field(discriminator="kind"),
]


class _GenerateWire(BaseModel):
    response: str


class _WireMessage(BaseModel):
    content: str


class _ChatWire(BaseModel):
    message: _WireMessage


class _WireChoice(BaseModel):
    message: _WireMessage


class _CompletionWire(BaseModel):
    choices: list[_WireChoice] = Field(min_length=1)


def decode_envelope(payload: Any) -> ResponseEnvelope:
    """按顺序尝试三种外壳，第一个匹配的胜出；都不匹配时返回 `UnrecognizedEnvelope`。"""
    try:
        return GenerateEnvelope(text=_GenerateWire.model_validate(payload).response)
    except ValidationError:
        pass
    try:
        return ChatEnvelope(text=_ChatWire.model_validate(payload).message.content)
    except ValidationError:
        pass
    try:
        return CompletionEnvelope(text=_CompletionWire.model_validate(payload).choices[0].message.content)
    except ValidationError:
        pass
    return UnrecognizedEnvelope()


def extract_content(raw_json: str) -> str:
    """
    从原始响应体中提取生成文本。

    - JSON 非法：抛 `ResponseFormatException`
    - 字段缺失：返回空字符串（由上游决定空回答如何处理）
    """
    try:
        payload = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise ResponseFormatException(
            f"Inference response is not valid JSON: {exc.msg}",
            details={"length": len(raw_json), "position": exc.pos},
            original_error=exc,
        ) from exc

    envelope = decode_envelope(payload)
    if isinstance(envelope, UnrecognizedEnvelope):
        logger.warning(f"Unrecognized response envelope ({len(raw_json)} chars), no generated text found")
    return envelope.text


_THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)

_MARKER_RE = re.compile(
    r"^\s*(?:"
    r"#{2,}\s*\S"
    r"|(?:\*\*)?\W{0,3}\s*(?:summary|issues found|suggestions)\b"
    r"|(?:\*\*)?\W{0,3}\s*(?:评审总结|发现的问题|优化建议|问题描述)"
    r")",
    re.IGNORECASE,
)

_NARRATIVE_OPENERS: tuple[str, ...] = (
    "let me",
    "let's",
    "i will",
    "i'll",
    "i need to",
    "i'm going to",
    "first, i",
    "first i",
    "now i",
    "okay, so",
    "ok, so",
    "alright,",
    "让我",
    "我将",
    "我会",
    "我需要",
    "我来",
    "首先我",
    "首先，我",
    "接下来我",
    "好的，我",
)

_PRESERVE_MARKERS: tuple[str, ...] = ("problem", "issue", "suggest", "问题", "建议", "```")

MIN_CONTENT_AFTER_MARKER = 50
MIN_KEPT_RATIO = 0.2


def _remove_think_blocks(text: str) -> str:
    # 嵌套/拼接出来的标签需要重复删除直到稳定
    while True:
        cleaned = _THINK_BLOCK_RE.sub("", text)
        if cleaned == text:
            return cleaned
        text = cleaned


def _is_marker_line(line: str) -> bool:
    return bool(_MARKER_RE.match(line))


def _is_narrative_opener(line: str) -> bool:
    return line.strip().lower().startswith(_NARRATIVE_OPENERS)


def _should_preserve(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in _PRESERVE_MARKERS)


def _drop_narrative_paragraphs(lines: list[str]) -> list[str]:
    kept: list[str] = []
    skipping = False
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            skipping = False
            kept.append(line)
            continue
        if _is_narrative_opener(line):
            skipping = True
        if not skipping or _should_preserve(line):
            kept.append(line)
    return kept


def strip_reasoning(text: str) -> str:
    """
    去掉评审正文之前的“思考过程”。

    规则：
    - 先删除完整的 `<think>…</think>` 块
    - 找到第一行结构标记（`##` 标题 / 总结 / 问题 / 建议），丢弃它之前的内容；
      剩余内容不超过 50 字符时放弃裁剪，原样返回
    - 没有结构标记时，按段落删除以第一人称叙述开头的内容（空行/标题行重置），
      包含问题/建议/代码块标记的行保留；结果不足原文 20% 时放弃，原样返回

    幂等：对输出再调用一次结果不变。
    """
    cleaned = _remove_think_blocks(text)
    lines = cleaned.split("\n")

    marker_index = next((i for i, line in enumerate(lines) if _is_marker_line(line)), None)
    if marker_index is not None:
        remainder = "\n".join(lines[marker_index:]).strip()
        if len(remainder) > MIN_CONTENT_AFTER_MARKER:
            if marker_index:
                logger.info(f"Stripped {marker_index} preamble line(s) before first section marker")
            return remainder
        return cleaned

    filtered = "\n".join(_drop_narrative_paragraphs(lines)).strip()
    if len(filtered) < MIN_KEPT_RATIO * len(cleaned):
        logger.info(
            f"Narrative filter kept {len(filtered)}/{len(cleaned)} chars, below threshold; keeping original"
        )
        return cleaned
    return filtered
