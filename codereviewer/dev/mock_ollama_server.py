"""
本地 Mock 推理服务（Ollama generate + OpenAI-compatible chat completions）。

用途：
- 在没有真实模型的情况下，本地跑通评审闭环（包括去思考过程的逻辑）
- `LLM_ENDPOINT=http://127.0.0.1:11435` 即可指向它

启动：
  python -m codereviewer.dev.mock_ollama_server
"""

from __future__ import annotations

import re
from typing import Any

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel, Field

MOCK_MODELS: tuple[str, ...] = ("mock-coder:7b", "mock-coder:14b")

_FILE_LINE_RE = re.compile(r"^文件：(.+)$", re.MULTILINE)


class GenerateRequest(BaseModel):
    model: str
    prompt: str
    stream: bool = False
    options: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[ChatMessage] = Field(default_factory=list)
    max_tokens: int | None = None


def _extract_changed_paths(prompt: str) -> list[str]:
    """从 prompt 的文件块里取出 `文件：<path>` 行。"""
    return [m.group(1).strip() for m in _FILE_LINE_RE.finditer(prompt)]


def _build_mock_review(prompt: str) -> str:
    """带一段思考前言的评审，用来演示思考过程会被去掉。"""
    paths = _extract_changed_paths(prompt)
    lines = [
        "<think>",
        "Let me look at the diff first.",
        "</think>",
        "",
        "## 📝 评审总结",
        f"[MOCK] 共评审 {len(paths)} 个文件，未发现阻塞性问题。",
        "",
        "## 🔍 发现的问题",
    ]
    if paths:
        lines.extend(f"- `{path}`：建议补充更严格的错误处理与边界校验。" for path in paths)
    else:
        lines.append("未发现明显问题")
    lines.extend(["", "## 💡 优化建议", "为关键逻辑添加单元测试。"])
    return "\n".join(lines)


def _decide_mock_response(prompt: str) -> str:
    if "please respond with 'OK'" in prompt:
        return "OK"
    return _build_mock_review(prompt)


app = FastAPI(title="Mock inference server", version="0.1.0")


@app.get("/api/tags")
async def tags() -> dict[str, Any]:
    return {"models": [{"name": name} for name in MOCK_MODELS]}


@app.post("/api/generate")
async def generate(req: GenerateRequest) -> dict[str, Any]:
    return {"model": req.model, "response": _decide_mock_response(req.prompt), "done": True}


@app.get("/api/v1/models")
async def openrouter_models() -> dict[str, Any]:
    return {"data": [{"id": name} for name in MOCK_MODELS]}


@app.post("/api/v1/chat/completions")
async def chat_completions(req: ChatCompletionRequest) -> dict[str, Any]:
    prompt = "\n".join(m.content for m in req.messages if m.role == "user")
    return {
        "id": "mock-completion",
        "object": "chat.completion",
        "model": req.model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": _decide_mock_response(prompt)}}],
    }


def main() -> None:
    uvicorn.run(app, host="127.0.0.1", port=11435)


if __name__ == "__main__":
    main()
