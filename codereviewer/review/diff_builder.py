"""
Diff 构建（非 AI，确定性）。

把一对（可选的）旧/新文件内容转换成带文件头的 diff 文本：
- 新增文件：`+++ path` + 每行 `+ `
- 删除文件：`--- path` + 每行 `- `
- 修改文件：Myers O(ND) 最小编辑脚本，**整文件上下文**（不截断 hunk），
  因为模型看到完整文件比看到最小 hunk 更能给出靠谱建议
"""

from __future__ import annotations

from typing import Literal

from codereviewer.review.models import ChangeType

EditOp = tuple[Literal["equal", "delete", "insert"], str]

CONTEXT_PREFIX = "  "
DELETE_PREFIX = "- "
INSERT_PREFIX = "+ "


def split_lines(text: str) -> list[str]:
    """
    CRLF/CR 归一化为 LF 后按行切分。

    - 空字符串 -> 0 行
    - 末尾换行保留为最后一个空行，这样 `"\\n".join()` 可以精确还原
    """
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    if not normalized:
        return []
    return normalized.split("\n")


def myers_edit_script(a: list[str], b: list[str]) -> list[EditOp]:
    """
    Myers O(ND) 最短编辑脚本（equal/delete/insert），线性空间版本。

    - 先剥掉公共前缀/后缀
    - 两侧没有任何公共行时直接「全删 + 全增」，这就是最短脚本
    - 否则用双向搜索找到中间分割点，两半递归
    """
    ops: list[EditOp] = []
    _diff_into(a, b, ops)
    return ops


def _diff_into(a: list[str], b: list[str], ops: list[EditOp]) -> None:
    prefix = 0
    while prefix < len(a) and prefix < len(b) and a[prefix] == b[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < len(a) - prefix
        and suffix < len(b) - prefix
        and a[len(a) - 1 - suffix] == b[len(b) - 1 - suffix]
    ):
        suffix += 1

    ops.extend(("equal", line) for line in a[:prefix])
    mid_a = a[prefix : len(a) - suffix]
    mid_b = b[prefix : len(b) - suffix]

    if not mid_a or not mid_b or set(mid_a).isdisjoint(mid_b):
        ops.extend(("delete", line) for line in mid_a)
        ops.extend(("insert", line) for line in mid_b)
    else:
        x, y = _middle_split(mid_a, mid_b)
        _diff_into(mid_a[:x], mid_b[:y], ops)
        _diff_into(mid_a[x:], mid_b[y:], ops)

    ops.extend(("equal", line) for line in a[len(a) - suffix :])


def _middle_split(a: list[str], b: list[str]) -> tuple[int, int]:
    """
    前向/反向同时推进 D 路径，第一次重叠处就是某条最短路径上的点。

    两个 frontier 都是定长列表（O(N+M)），不保存历史。
    调用方保证 a、b 非空、首尾不同且至少有一个公共行。
    """
    n, m = len(a), len(b)
    max_d = (n + m + 1) // 2
    offset = max_d
    size = 2 * max_d + 2
    forward = [-1] * size
    backward = [-1] * size
    forward[offset + 1] = 0
    backward[offset + 1] = 0
    delta = n - m
    odd = delta % 2 != 0
    # 跑出图外的对角线不再推进
    f_start = f_end = b_start = b_end = 0

    for d in range(max_d):
        for k in range(-d + f_start, d + 1 - f_end, 2):
            i = offset + k
            if k == -d or (k != d and forward[i - 1] < forward[i + 1]):
                x = forward[i + 1]
            else:
                x = forward[i - 1] + 1
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            forward[i] = x
            if x > n:
                f_end += 2
            elif y > m:
                f_start += 2
            elif odd:
                j = offset + delta - k
                if 0 <= j < size and backward[j] != -1 and x >= n - backward[j]:
                    return x, y

        for k in range(-d + b_start, d + 1 - b_end, 2):
            i = offset + k
            if k == -d or (k != d and backward[i - 1] < backward[i + 1]):
                x = backward[i + 1]
            else:
                x = backward[i - 1] + 1
            y = x - k
            while x < n and y < m and a[n - 1 - x] == b[m - 1 - y]:
                x += 1
                y += 1
            backward[i] = x
            if x > n:
                b_end += 2
            elif y > m:
                b_start += 2
            elif not odd:
                j = offset + delta - k
                if 0 <= j < size and forward[j] != -1:
                    fx = forward[j]
                    fy = fx - (delta - k)
                    if fx >= n - x:
                        return fx, fy

    raise AssertionError("Myers search did not find an overlapping path")


def _added_diff(file_path: str, new_content: str) -> str:
    lines = [f"+++ {file_path}"]
    lines.extend(f"{INSERT_PREFIX}{line}" for line in split_lines(new_content))
    return "\n".join(lines)


def _deleted_diff(file_path: str, old_content: str) -> str:
    lines = [f"--- {file_path}"]
    lines.extend(f"{DELETE_PREFIX}{line}" for line in split_lines(old_content))
    return "\n".join(lines)


def _modified_diff(file_path: str, old_content: str, new_content: str) -> str:
    old_lines = split_lines(old_content)
    new_lines = split_lines(new_content)
    prefixes = {"equal": CONTEXT_PREFIX, "delete": DELETE_PREFIX, "insert": INSERT_PREFIX}

    lines = [
        f"--- {file_path}",
        f"+++ {file_path}",
        f"@@ -1,{len(old_lines)} +1,{len(new_lines)} @@",
    ]
    for op, line in myers_edit_script(old_lines, new_lines):
        lines.append(f"{prefixes[op]}{line}")
    return "\n".join(lines)


def build_diff(
    file_path: str,
    old_content: str | None,
    new_content: str | None,
    change_type: ChangeType,
) -> str:
    """
    生成单个文件的 diff 文本。

    - MODIFIED 只有一侧内容时，退化为新增/删除的单侧格式
    - 新旧内容完全相同：只有上下文行，这是合法输出而不是错误
    """
    if change_type is ChangeType.ADDED or (change_type is ChangeType.MODIFIED and old_content is None):
        if new_content is None:
            raise ValueError(f"{file_path}: new_content is required for an added file")
        return _added_diff(file_path, new_content)

    if change_type is ChangeType.DELETED or (change_type is ChangeType.MODIFIED and new_content is None):
        if old_content is None:
            raise ValueError(f"{file_path}: old_content is required for a deleted file")
        return _deleted_diff(file_path, old_content)

    return _modified_diff(file_path, old_content or "", new_content or "")


def apply_diff(diff_text: str) -> str:
    """
    从整文件上下文 diff 还原新文件内容（上下文行 + 新增行）。

    只认 `build_diff` 产出的格式：文件头与 `@@` 行被跳过，其余每行前两个字符是前缀。
    """
    lines = diff_text.split("\n")
    body_start = 0
    while body_start < len(lines) and lines[body_start].startswith(("--- ", "+++ ", "@@ ")):
        body_start += 1

    new_lines: list[str] = []
    for line in lines[body_start:]:
        prefix, content = line[:2], line[2:]
        if prefix in (CONTEXT_PREFIX, INSERT_PREFIX):
            new_lines.append(content)
        elif prefix != DELETE_PREFIX:
            raise ValueError(f"Invalid diff line: {line!r}")
    return "\n".join(new_lines)
