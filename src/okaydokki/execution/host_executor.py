"""Host Agent Executor -- 在快照的一次性副本上执行代理命令并计算 diff

工作区布局（每次运行独占，任何退出路径都会删除）：

    <workspace_root>/okd-host-<task_id>-XXXX/
        base -> <snapshot>   (符号链接，只读使用)
        work/                (快照副本，即 candidate)
        out/                 (agent.log / agent.meta.json)

diff 在工作区目录中以相对路径执行，头部形如 base/<path> 与 work/<path>。
"""

import asyncio
import json
import os
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from okaydokki.core.models.task import Task

from .exceptions import AgentExecutionError
from .process import run_process, tail

log = structlog.get_logger()

AGENT_LOG_FILENAME = "agent.log"
AGENT_META_FILENAME = "agent.meta.json"


@dataclass
class HostExecutionResult:
    """代理执行产出，调用方负责在不再需要 candidate 后调用 cleanup"""

    diff: str
    candidate_path: Path
    cleanup: Callable[[], None]
    agent_logs: list[str] = field(default_factory=list)
    agent_meta: dict[str, str] = field(default_factory=dict)


def read_text_if_exists(path: Path) -> str | None:
    """读取可选文件，不存在或不可读返回 None"""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def read_flat_meta(path: Path) -> dict[str, str]:
    """读取扁平字符串映射；非字符串值丢弃，格式错误返回空映射"""
    raw = read_text_if_exists(path)
    if raw is None:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("agent_meta_malformed", path=str(path))
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {k: v for k, v in parsed.items() if isinstance(k, str) and isinstance(v, str)}


def _make_cleanup(temp_dir: Path) -> Callable[[], None]:
    def cleanup() -> None:
        shutil.rmtree(temp_dir, ignore_errors=True)

    return cleanup


class HostAgentExecutor:
    """宿主机代理执行器"""

    def __init__(
        self,
        workspace_root: str | Path | None = None,
        timeout_s: float | None = None,
        diff_bin: str = "diff",
    ) -> None:
        self._workspace_root = Path(workspace_root) if workspace_root else None
        self._timeout_s = timeout_s
        self._diff_bin = diff_bin

    async def run(self, task: Task, snapshot_path: Path, command: str) -> HostExecutionResult:
        """复制快照、执行代理命令、计算 diff

        Raises:
            AgentExecutionError: 快照缺失、命令失败或 diff 无法生成
            ExecutionError: 进程启动失败或超时
        """
        if not snapshot_path.is_dir():
            raise AgentExecutionError(f"Repo snapshot not found: {snapshot_path}")

        if self._workspace_root is not None:
            self._workspace_root.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(
            tempfile.mkdtemp(
                prefix=f"okd-host-{task.task_id}-",
                dir=str(self._workspace_root) if self._workspace_root else None,
            )
        )
        cleanup = _make_cleanup(temp_dir)
        work_dir = temp_dir / "work"
        out_dir = temp_dir / "out"

        try:
            out_dir.mkdir()
            (temp_dir / "base").symlink_to(snapshot_path.resolve(), target_is_directory=True)
            await asyncio.to_thread(shutil.copytree, snapshot_path, work_dir, symlinks=True)

            env = {
                **os.environ,
                "OKD_TASK_ID": task.task_id,
                "OKD_REPO": task.repo,
                "OKD_BRANCH": task.branch,
                "OKD_BASE_BRANCH": task.base_branch,
                "OKD_TRIGGER_USER": task.trigger_user,
                "OKD_INTENT": task.intent,
                "OKD_AGENT": task.agent,
                "OKD_WORKDIR": str(work_dir),
                "OKD_OUTDIR": str(out_dir),
            }
            result = await run_process(
                ["sh", "-lc", command],
                cwd=work_dir,
                env=env,
                timeout_s=self._timeout_s,
            )
            if result.returncode != 0:
                details = "\n".join(
                    part for part in (tail(result.stderr), tail(result.stdout)) if part
                )
                raise AgentExecutionError(
                    f"agent command exited with {result.returncode}"
                    + (f": {details}" if details else "")
                )

            diff = await self._diff(temp_dir)
        except BaseException:
            # 包括取消在内的任何异常都不保留工作区
            cleanup()
            raise

        agent_log = read_text_if_exists(out_dir / AGENT_LOG_FILENAME)
        agent_meta = read_flat_meta(out_dir / AGENT_META_FILENAME)

        log.info(
            "agent_run_completed",
            task_id=task.task_id,
            diff_bytes=len(diff.encode("utf-8")),
            has_agent_log=bool(agent_log),
            meta_keys=sorted(agent_meta),
        )
        return HostExecutionResult(
            diff=diff,
            candidate_path=work_dir,
            cleanup=cleanup,
            agent_logs=[agent_log] if agent_log else [],
            agent_meta=agent_meta,
        )

    async def _diff(self, temp_dir: Path) -> str:
        """diff 退出码 1 表示存在差异，不是错误"""
        result = await run_process(
            [self._diff_bin, "-ruN", "-x", ".git", "base", "work"],
            cwd=temp_dir,
        )
        if result.returncode in (0, 1):
            return result.stdout
        raise AgentExecutionError(
            f"failed to produce diff (exit {result.returncode}): {tail(result.stderr)}"
        )
