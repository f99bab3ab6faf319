"""
Prompt 组装（确定性，不依赖 LLM）。

流程：
- 每个 CodeChange 生成一个文件块（文件名 + 变更类型 + diff），文件之间用 `---` 分隔
- 把模板里所有 `{code}` 替换成拼好的代码块
- 前后各加一段输出格式约束（语言 / 不要代码块包裹 / 不要思考过程 / 按模板结构输出）

为什么约束要重复两遍：
- 小的本地模型对长上下文开头的指令很容易“忘记”，结尾再重申一遍更稳
"""

from __future__ import annotations

from collections.abc import Sequence

from codereviewer.llm.errors import ConfigurationException
from codereviewer.review.models import CodeChange

CODE_PLACEHOLDER = "{code}"
FILE_SEPARATOR = "\n\n---\n\n"

_NO_CHANGES: dict[str, str] = {
    "zh": "没有需要评审的代码变更。",
    "en": "No code changes to review.",
}


def _format_directives(template_name: str, language: str) -> str:
    if language == "en":
        return (
            "[Output requirements - must be followed]\n"
            "- Respond in English only\n"
            "- Output Markdown directly; never wrap the whole answer in a ``` code block\n"
            "- Do not output any thinking process, analysis steps or narration (e.g. \"Let me...\")\n"
            f"- Follow the output structure of the \"{template_name}\" template exactly\n"
        )
    return (
        "【输出要求（必须遵守）】\n"
        "- 只使用简体中文回答\n"
        "- 直接输出 Markdown 内容，不要用 ``` 代码块包裹整个回答\n"
        "- 不要输出思考过程、分析步骤或任何“让我……”之类的叙述\n"
        f"- 严格按照「{template_name}」模板规定的结构输出\n"
    )


def build_code_content(code_changes: Sequence[CodeChange], language: str = "zh") -> str:
    """把所有文件块拼在一起；没有变更时返回固定提示语。"""
    if not code_changes:
        return _NO_CHANGES.get(language, _NO_CHANGES["en"])
    return FILE_SEPARATOR.join(change.formatted_block() for change in code_changes)


def assemble_prompt(
    template_text: str,
    code_changes: Sequence[CodeChange],
    template_name: str,
    language: str = "zh",
) -> str:
    """
    生成最终发送给模型的 prompt。

    注意：这里不校验占位符是否存在（那是保存模板时的检查，见 `validate_template`），
    所以组装本身永远不会因为模板问题失败。
    """
    code_content = build_code_content(code_changes=code_changes, language=language)
    body = template_text.replace(CODE_PLACEHOLDER, code_content)
    directives = _format_directives(template_name=template_name, language=language)
    return f"{directives}\n# {template_name}\n{body}\n\n{directives}"


def validate_template(template_text: str) -> None:
    """保存用户模板时调用：模板必须包含 `{code}` 占位符。"""
    if not template_text.strip():
        raise ConfigurationException("Prompt template must not be empty", config_key="template")
    if CODE_PLACEHOLDER not in template_text:
        raise ConfigurationException(
            f"Prompt template must contain the {CODE_PLACEHOLDER} placeholder",
            config_key="template",
        )
