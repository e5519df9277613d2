"""代理命令构建器

模板使用 {{ name }} 占位符，只允许固定集合中的名字。
构造时即解析模板，出现未知占位符立刻抛出 ValueError；
构建时每个值都经 shlex.quote 转义，占位符之外的文本原样保留（由运维编写）。
"""

import re
import shlex

from okaydokki.core.models.task import Task

# 捕获 {{ }} 内的任意文本，名字是否合法由构造时校验
_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^}]*?)\s*\}\}")

ALLOWED_PLACEHOLDERS: frozenset[str] = frozenset(
    {"task_id", "intent", "repo", "branch", "base_branch", "trigger_user", "agent"}
)


class AgentCommandBuilder:
    """将任务字段填入代理命令模板"""

    def __init__(self, template: str) -> None:
        if not template.strip():
            raise ValueError("agent command template is empty")
        unknown = sorted(
            {name for name in _PLACEHOLDER_RE.findall(template)} - ALLOWED_PLACEHOLDERS
        )
        if unknown:
            raise ValueError(f"Unknown template key: {', '.join(unknown)}")
        self._template = template

    @property
    def template(self) -> str:
        return self._template

    def build(self, task: Task) -> str:
        """生成可交给 sh -lc 执行的命令字符串"""
        values = {
            "task_id": task.task_id,
            "intent": task.intent,
            "repo": task.repo,
            "branch": task.branch,
            "base_branch": task.base_branch,
            "trigger_user": task.trigger_user,
            "agent": task.agent,
        }
        return _PLACEHOLDER_RE.sub(lambda m: shlex.quote(values[m.group(1)]), self._template)
