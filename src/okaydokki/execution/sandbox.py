"""Sandbox Validator -- 在断网容器中验证 candidate

容器挂载：
  /repo       原始快照（只读）
  /candidate  代理产出的工作区（只读）
  /work       合并后的工作副本（唯一可写的代码目录）
  /out        test.log / test.exit

测试命令必须是白名单中的字面量，否则在启动容器之前失败。
容器未能跑完（docker 缺失、daemon 崩溃、缺少 test.exit）属于沙箱错误，
与测试本身非零退出是两类不同结果。
"""

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

import structlog

from okaydokki.core.models.task import Task
from okaydokki.core.repo_runtime import RepoRuntimeResolver

from .exceptions import SandboxError
from .process import run_process, tail

log = structlog.get_logger()

# candidate 后复制，冲突时以 candidate 为准
SANDBOX_SCRIPT = "\n".join(
    [
        "set -eu",
        "tar -C /repo --exclude=.git -cf - . | tar -C /work -xf -",
        "tar -C /candidate --exclude=.git -cf - . | tar -C /work -xf -",
        "cd /work",
        "TEST_STATUS=0",
        'if [ -n "${TEST_CMD:-}" ]; then',
        '  sh -lc "$TEST_CMD" > /out/test.log 2>&1 || TEST_STATUS=$?',
        "else",
        '  echo "test skipped" > /out/test.log',
        "fi",
        'echo "$TEST_STATUS" > /out/test.exit',
    ]
)


@dataclass(frozen=True)
class SandboxResult:
    """沙箱测试结果"""

    test_exit_code: int
    test_log: str


def assert_allowed_test_command(command: str, allowed_commands: list[str]) -> str:
    """测试命令必须与白名单中某一项完全相同"""
    if command not in allowed_commands:
        raise SandboxError(f"Test command is not allowed: {command}")
    return command


class DockerSandbox:
    """Docker 沙箱验证器"""

    def __init__(
        self,
        resolver: RepoRuntimeResolver,
        workspace_root: str | Path | None = None,
        docker_bin: str = "docker",
        timeout_s: float | None = None,
    ) -> None:
        self._resolver = resolver
        self._workspace_root = Path(workspace_root) if workspace_root else None
        self._docker_bin = docker_bin
        self._timeout_s = timeout_s

    def build_argv(
        self,
        snapshot_path: Path,
        candidate_path: Path,
        work_dir: Path,
        out_dir: Path,
        image: str,
        test_command: str,
    ) -> list[str]:
        """生成 docker run 参数列表"""
        return [
            self._docker_bin,
            "run",
            "--rm",
            "--network",
            "none",
            "-v",
            f"{snapshot_path}:/repo:ro",
            "-v",
            f"{candidate_path}:/candidate:ro",
            "-v",
            f"{work_dir}:/work",
            "-v",
            f"{out_dir}:/out",
            "-e",
            f"TEST_CMD={test_command}",
            image,
            "sh",
            "-lc",
            SANDBOX_SCRIPT,
        ]

    async def run_validation(self, task: Task, candidate_path: Path) -> SandboxResult:
        """在容器中运行测试命令

        Raises:
            SandboxError: 测试命令不在白名单、快照缺失或容器未能完成运行
            ExecutionError: docker 无法启动或超时
        """
        runtime = self._resolver.resolve(task.repo)
        if not runtime.snapshot_exists:
            raise SandboxError(f"Repo snapshot not found: {runtime.repo_path}")
        test_command = assert_allowed_test_command(
            runtime.test_command, runtime.allowed_test_commands
        )

        if self._workspace_root is not None:
            self._workspace_root.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(
            tempfile.mkdtemp(
                prefix=f"okd-sbx-{task.task_id}-",
                dir=str(self._workspace_root) if self._workspace_root else None,
            )
        )
        try:
            work_dir = temp_dir / "work"
            out_dir = temp_dir / "out"
            work_dir.mkdir()
            out_dir.mkdir()

            argv = self.build_argv(
                runtime.repo_path,
                candidate_path,
                work_dir,
                out_dir,
                runtime.sandbox_image,
                test_command,
            )
            result = await run_process(argv, timeout_s=self._timeout_s)
            if result.returncode != 0:
                raise SandboxError(
                    f"Docker sandbox execution failed (exit {result.returncode}): "
                    f"{tail(result.stderr)}"
                )

            exit_file = out_dir / "test.exit"
            try:
                raw_exit = exit_file.read_text(encoding="utf-8").strip()
            except OSError as e:
                raise SandboxError("sandbox did not record a test exit code") from e
            try:
                test_exit_code = int(raw_exit)
            except ValueError as e:
                raise SandboxError(f"invalid test exit code: {raw_exit!r}") from e

            try:
                test_log = (out_dir / "test.log").read_text(encoding="utf-8", errors="replace")
            except OSError:
                test_log = ""
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        log.info(
            "sandbox_run_completed",
            task_id=task.task_id,
            image=runtime.sandbox_image,
            test_exit_code=test_exit_code,
            test_log_bytes=len(test_log),
        )
        return SandboxResult(test_exit_code=test_exit_code, test_log=test_log)
