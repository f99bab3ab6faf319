"""
Prompt 模板管理。

来源（后者覆盖前者，按名称合并）：
- 内置模板（DEFAULT / 详细 / 后端 / 前端 / 开发手册）
- 模板目录下的 `*.md` 文件（文件名即模板名）

保存模板时必须包含 `{code}` 占位符（见 `validate_template`），这是配置错误，不是运行时错误。
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel

from codereviewer.llm.errors import ConfigurationException
from codereviewer.review.prompt import validate_template

logger = logging.getLogger(__name__)


class PromptTemplate(BaseModel):
    name: str
    template: str
    description: str = ""
    is_default: bool = False


_CONCISE_REQUIREMENTS = """要求：
1. 简洁明了，只指出重要问题
2. 每个问题控制在3-4句话内
3. 优化建议要具体可执行
4. 如果代码质量良好，简单说明即可
5. 避免过度解释和冗长描述
6. 返回结果过滤思考过程

输出格式（Markdown），不要出现代码包裹：
## 📝 评审总结
[一句话简短总结代码质量（100字以内），关注重点问题]

## 🔍 发现的问题
[如果有问题，用简短条目列出，没有问题则写"未发现明显问题"]

## 💡 优化建议
[针对问题的具体建议，没有则写"代码质量良好"]
"""

DEFAULT_TEMPLATE = PromptTemplate(
    name="简洁代码评审",
    template=f"对以下代码变更进行快速评审，重点关注关键问题。\n\n{_CONCISE_REQUIREMENTS}\n代码变更：\n{{code}}",
    description="快速简洁的代码评审，专注关键问题",
    is_default=True,
)

DETAILED_TEMPLATE = PromptTemplate(
    name="详细代码评审",
    template=(
        "请对以下代码变更进行详细的代码审查，关注代码质量、安全性、性能、最佳实践等方面。请提供具体的改进建议。\n\n"
        "输出格式：\n"
        "请以Markdown格式输出代码审查报告，不要附带额外信息，不要使用markdown包裹，包含以下内容：\n"
        "- 问题描述和优化建议(如果有)：列出代码中存在的问题，简要说明其影响，并给出优化建议；\n"
        "- 没有问题就不要赘述；\n"
        "- 直接返回Markdown内容，不要出现代码包裹；\n\n"
        "代码变更：\n{code}"
    ),
    description="传统详细的代码评审，适合需要全面分析的场景",
    is_default=True,
)

BACKEND_TEMPLATE = PromptTemplate(
    name="后端代码评审",
    template=(
        "你是一位资深的软件开发工程师，专注于代码的规范性、功能性、安全性和稳定性。本次任务是对员工的代码进行审查，具体要求如下：\n"
        "1. 检查是否遵循统一的代码规范，类、方法、变量命名是否规范、语义清晰，缩进、空格、注释等格式是否统一。\n"
        "2. 检查包结构是否合理，分层是否清晰，是否存在职责不清的类或方法，是否有重复代码。\n"
        "3. 检查接口参数、返回值是否规范，是否有统一的响应结构。\n"
        "4. 检查Service层是否只处理业务逻辑，事务边界是否合理，业务异常是否有统一处理。\n"
        "5. 检查SQL语句是否安全、性能合理，是否防止SQL注入。\n"
        "6. 检查是否防止常见安全漏洞（如XSS、CSRF、SQL注入等），日志中是否避免敏感信息泄露。\n"
        "7. 检查缓存、异步处理、限流、降级、批量处理、分页查询等措施是否合理。\n"
        "8. 检查代码是否易读、易维护，日志记录是否规范，便于问题追踪。\n\n"
        f"{_CONCISE_REQUIREMENTS}\n代码变更如下：\n{{code}}"
    ),
    description="后端代码评审",
    is_default=True,
)

FRONTEND_TEMPLATE = PromptTemplate(
    name="前端代码评审",
    template=(
        "你是一位前端开发工程师，负责审查前端代码的质量、性能和安全性。本次任务是对员工的代码进行审查，具体要求如下：\n"
        "1. 检查代码是否符合前端开发规范，包括HTML、CSS、JavaScript等。\n"
        "2. 检查代码是否存在性能问题，如页面加载速度、资源占用等。\n"
        "3. 检查代码是否存在安全问题，如XSS、CSRF等。\n"
        "4. 检查代码是否存在可维护性问题，如代码重复、冗余、注释不足等。\n"
        "5. 检查代码结构是否清晰、模块是否合理划分。\n"
        "6. 检查 Props、data、computed、methods 等属性的使用是否合理。\n\n"
        f"{_CONCISE_REQUIREMENTS}\n代码变更如下：\n{{code}}"
    ),
    description="前端代码评审",
    is_default=True,
)

DOC_TEMPLATE = PromptTemplate(
    name="开发手册评审",
    template=(
        "你是一位资深的软件开发文档撰写专家，专注于文档审查。本次任务是对员工的文档进行审查，具体要求如下：\n"
        "1. 内容规范：术语统一，有背景说明，功能、接口、参数、返回值、异常、边界情况描述详细，示例丰富。\n"
        "2. 表达规范：语言简洁准确，中英文规范，代码注释简明，图片有标题和说明。\n"
        "3. 技术规范：接口文档完整，配置项说明含义、默认值、可选项，列出依赖，安全与性能需特别说明。\n\n"
        f"{_CONCISE_REQUIREMENTS}\n代码变更如下：\n{{code}}"
    ),
    description="开发手册评审",
    is_default=True,
)

BUILTIN_TEMPLATES: tuple[PromptTemplate, ...] = (
    DEFAULT_TEMPLATE,
    BACKEND_TEMPLATE,
    FRONTEND_TEMPLATE,
    DOC_TEMPLATE,
    DETAILED_TEMPLATE,
)


def _check_template_name(name: str) -> None:
    """模板名直接当文件名用：不能为空，也不能带路径分隔符。"""
    if not name.strip():
        raise ConfigurationException("Template name is required", config_key="template_name")
    if any(sep in name for sep in ("/", "\\")) or name in (".", ".."):
        raise ConfigurationException(
            f"Template name must not contain path separators: {name!r}",
            config_key="template_name",
        )


class TemplateStore:
    """内置模板 + 模板目录（`<name>.md`）。目录为 None 时只有内置模板。"""

    def __init__(self, templates_dir: Path | None = None) -> None:
        self._templates_dir = templates_dir

    def _load_directory(self) -> list[PromptTemplate]:
        if self._templates_dir is None or not self._templates_dir.is_dir():
            return []
        loaded: list[PromptTemplate] = []
        for path in sorted(self._templates_dir.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning(f"Failed to read template file {path}: {exc}")
                continue
            loaded.append(PromptTemplate(name=path.stem, template=content))
        return loaded

    def list_templates(self) -> list[PromptTemplate]:
        merged: dict[str, PromptTemplate] = {t.name: t for t in BUILTIN_TEMPLATES}
        for template in self._load_directory():
            base = merged.get(template.name)
            if base is not None:
                # 文件覆盖同名内置模板：保留描述与内置标记
                template = template.model_copy(update={"description": base.description, "is_default": True})
            merged[template.name] = template
        return list(merged.values())

    def find(self, name: str) -> PromptTemplate | None:
        return next((t for t in self.list_templates() if t.name == name), None)

    def get(self, name: str | None) -> PromptTemplate:
        """找不到（或未指定）时回落到默认模板。"""
        if name:
            found = self.find(name)
            if found is not None:
                return found
            logger.warning(f"Template '{name}' not found, falling back to '{DEFAULT_TEMPLATE.name}'")
        return DEFAULT_TEMPLATE

    def save(self, template: PromptTemplate) -> Path:
        _check_template_name(template.name)
        validate_template(template.template)
        if self._templates_dir is None:
            raise ConfigurationException("Templates directory is not configured", config_key="templates_dir")

        self._templates_dir.mkdir(parents=True, exist_ok=True)
        path = self._templates_dir / f"{template.name}.md"
        path.write_text(template.template, encoding="utf-8")
        logger.info(f"Saved prompt template '{template.name}' to {path} ({len(template.template)} chars)")
        return path

    def delete(self, name: str) -> bool:
        """删除自定义模板文件；内置模板（未被覆盖时）不可删除。"""
        _check_template_name(name)
        path = self._templates_dir / f"{name}.md" if self._templates_dir is not None else None
        if path is None or not path.is_file():
            if any(t.name == name for t in BUILTIN_TEMPLATES):
                raise ConfigurationException(f"Built-in template '{name}' cannot be deleted", config_key="template_name")
            return False
        path.unlink()
        logger.info(f"Deleted prompt template '{name}' ({path})")
        return True
