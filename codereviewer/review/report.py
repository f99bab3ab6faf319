"""
评审报告（Markdown 文件）。

注意：
- 这里是**确定性输出**（不依赖 LLM），同一个结果 + 同一个时间戳总是得到同样的文本
- 文件名按分钟粒度：`ai-code-review-YYYYMMDD-HHMM.md`，同一分钟内的报告会覆盖
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from codereviewer.review.models import CHANGE_TYPE_LABELS, ReviewResult, ReviewStatus

logger = logging.getLogger(__name__)

DEFAULT_RESULT_DIR = ".ai-codereview"

STATUS_LABELS: dict[ReviewStatus, str] = {
    ReviewStatus.SUCCESS: "✅ 成功",
    ReviewStatus.ERROR: "❌ 失败",
    ReviewStatus.IN_PROGRESS: "⏳ 处理中",
    ReviewStatus.CANCELLED: "❎ 已取消",
}


def format_review_report(result: ReviewResult, now: datetime | None = None) -> str:
    """
    拼出报告正文。

    - 成功：直接放评审内容（已经去掉思考过程）
    - 其他终态：失败块 + 错误信息 + 排查提示
    """
    timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines: list[str] = [
        "# AI代码评审报告",
        "",
        f"**生成时间**: {timestamp}",
        f"**评审ID**: {result.id}",
        f"**使用模型**: {result.model_used}",
        f"**使用模板**: {result.prompt_template_used}",
        f"**评审状态**: {STATUS_LABELS[result.status]}",
    ]
    if result.duration_ms is not None:
        lines.append(f"**耗时**: {result.duration_ms} ms")
    lines.extend(["", "---", ""])

    if result.status is ReviewStatus.SUCCESS:
        lines.append(result.review_content)
    else:
        lines.append("## ❌ 评审失败")
        lines.append("")
        lines.append(f"**错误信息**: {result.error_message or '未知错误'}")
        lines.append("")
        lines.append("请检查AI服务配置或网络连接，然后重试。")

    lines.extend(["", "---", ""])

    if result.code_changes:
        lines.append("## 📁 评审文件")
        lines.append("")
        for change in result.code_changes:
            lines.append(f"- `{change.file_path}`（{CHANGE_TYPE_LABELS[change.change_type]}）")
        lines.append("")

    return "\n".join(lines)


def resolve_report_path(output_dir: str | Path, base_dir: Path, now: datetime | None = None) -> Path:
    """相对目录按项目根目录解析。"""
    directory = Path(output_dir or DEFAULT_RESULT_DIR)
    if not directory.is_absolute():
        directory = base_dir / directory
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M")
    return directory / f"ai-code-review-{stamp}.md"


def save_review_report(
    result: ReviewResult,
    output_dir: str | Path,
    base_dir: Path,
    now: datetime | None = None,
) -> Path:
    now = now or datetime.now()
    path = resolve_report_path(output_dir=output_dir, base_dir=base_dir, now=now)
    path.parent.mkdir(parents=True, exist_ok=True)
    body = format_review_report(result=result, now=now)
    path.write_text(body, encoding="utf-8")
    logger.info(f"Review report saved: id={result.id} status={result.status.value} path={path} length={len(body)}")
    return path
