"""交付协作者 -- 将 candidate 变为已提交分支并创建 Draft PR

GitHubPrCreator 在快照仓库上开一个临时 git worktree 完成全部操作，
快照自身的工作树始终不被修改：

  rolling   从快照当前 HEAD 切出任务分支
  isolated  尽力 fetch origin/<base>，从 origin/<base>（失败时退回本地 <base>）切出
"""

import shutil
import tempfile
from pathlib import Path
from typing import Protocol

import structlog

from okaydokki.core.models.enums import DeliveryStrategy
from okaydokki.core.models.run import DeliverySummary
from okaydokki.core.models.task import Task
from okaydokki.core.repo_runtime import RepoRuntimeResolver

from .exceptions import DeliveryError, ExecutionError
from .process import ProcessResult, run_process, tail

log = structlog.get_logger()

BOT_NAME = "OkayDokki Bot"
BOT_EMAIL = "okaydokki-bot@local"


class DeliveryCollaborator(Protocol):
    """交付协作者接口"""

    async def create_draft_pr(
        self,
        task: Task,
        candidate_path: Path,
        summary: DeliverySummary,
    ) -> str:
        """创建 Draft PR，返回链接；失败抛出 DeliveryError"""
        ...


def mirror_tree(source: Path, target: Path) -> None:
    """用 source 的内容替换 target（两侧 .git 均不动）"""
    for entry in target.iterdir():
        if entry.name == ".git":
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()

    for entry in source.iterdir():
        if entry.name == ".git":
            continue
        destination = target / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(entry, destination, symlinks=True)
        else:
            shutil.copy2(entry, destination, follow_symlinks=False)


def build_pr_body(
    task: Task,
    summary: DeliverySummary,
    parent_branch: str,
    merge_order: str,
) -> str:
    """生成 PR 描述"""
    lines = [
        "Automated by OkayDokki.",
        "",
        f"Task ID: {task.task_id}",
        f"Trigger user: {task.trigger_user}",
        "",
        "Stack:",
        f"- Strategy: {task.delivery_strategy.value}",
        f"- Parent branch: {parent_branch}",
        f"- Merge order: {merge_order}",
        "",
        f"Tests: {summary.tests_result.value}",
        "",
        "Changed files:",
    ]
    lines.extend(f"- {path}" for path in summary.changed_files)
    if not summary.changed_files:
        lines.append("- (none)")
    lines.extend(["", "Policy checks: " + (", ".join(summary.policy_checks) or "none")])
    return "\n".join(lines)


class GitHubPrCreator:
    """基于 git + gh CLI 的交付实现"""

    def __init__(
        self,
        resolver: RepoRuntimeResolver,
        workspace_root: str | Path | None = None,
        git_bin: str = "git",
        gh_bin: str = "gh",
        timeout_s: float | None = None,
    ) -> None:
        self._resolver = resolver
        self._workspace_root = Path(workspace_root) if workspace_root else None
        self._git_bin = git_bin
        self._gh_bin = gh_bin
        self._timeout_s = timeout_s

    async def create_draft_pr(
        self,
        task: Task,
        candidate_path: Path,
        summary: DeliverySummary,
    ) -> str:
        """提交 candidate 并创建 Draft PR

        Raises:
            DeliveryError: 快照缺失、无可提交改动、git 失败或 gh 输出为空
        """
        repo_path = self._resolver.snapshot_path(task.repo)
        if not repo_path.is_dir():
            raise DeliveryError(f"Repo snapshot not found: {repo_path}")

        if self._workspace_root is not None:
            self._workspace_root.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(
            tempfile.mkdtemp(
                prefix=f"okd-pr-{task.task_id}-",
                dir=str(self._workspace_root) if self._workspace_root else None,
            )
        )
        tree = temp_dir / "tree"
        worktree_added = False

        try:
            start_point, parent_branch = await self._resolve_start_point(repo_path, task)
            await self._git(
                repo_path, ["worktree", "add", "-B", task.branch, str(tree), start_point]
            )
            worktree_added = True

            mirror_tree(candidate_path, tree)
            await self._git(tree, ["add", "-A"])

            staged = await self._run(self._git_bin, tree, ["diff", "--cached", "--quiet"])
            if staged.returncode == 0:
                raise DeliveryError("no staged changes to commit")

            title = f"chore(agent): {task.intent}"
            await self._git(
                tree,
                [
                    "-c",
                    f"user.name={BOT_NAME}",
                    "-c",
                    f"user.email={BOT_EMAIL}",
                    "commit",
                    "-m",
                    title,
                ],
            )
            await self._git(tree, ["push", "-u", "origin", task.branch])

            if task.delivery_strategy == DeliveryStrategy.ISOLATED:
                merge_order = f"{task.branch} -> {task.base_branch}"
            else:
                merge_order = f"{parent_branch} -> {task.branch} -> {task.base_branch}"

            pr = await self._run(
                self._gh_bin,
                tree,
                [
                    "pr",
                    "create",
                    "--draft",
                    "--base",
                    task.base_branch,
                    "--head",
                    task.branch,
                    "--title",
                    title,
                    "--body",
                    build_pr_body(task, summary, parent_branch, merge_order),
                ],
            )
            if pr.returncode != 0:
                raise DeliveryError(f"gh pr create failed: {tail(pr.stderr)}")
            lines = [line.strip() for line in pr.stdout.splitlines() if line.strip()]
            if not lines:
                raise DeliveryError("gh pr create returned empty output")
            link = lines[-1]
        finally:
            if worktree_added:
                await self._git_best_effort(repo_path, ["worktree", "remove", "--force", str(tree)])
            shutil.rmtree(temp_dir, ignore_errors=True)
            await self._git_best_effort(repo_path, ["worktree", "prune"])

        log.info(
            "draft_pr_created",
            task_id=task.task_id,
            branch=task.branch,
            strategy=task.delivery_strategy.value,
            pr_link=link,
        )
        return link

    async def _resolve_start_point(self, repo_path: Path, task: Task) -> tuple[str, str]:
        """返回 (worktree 起点, 父分支名)"""
        if task.delivery_strategy == DeliveryStrategy.ISOLATED:
            base = task.base_branch
            await self._git_best_effort(repo_path, ["fetch", "origin", base])
            remote = await self._run(
                self._git_bin,
                repo_path,
                ["rev-parse", "--verify", "--quiet", f"origin/{base}^{{commit}}"],
            )
            if remote.returncode == 0:
                return f"origin/{base}", base
            return base, base

        current = await self._run(
            self._git_bin, repo_path, ["rev-parse", "--abbrev-ref", "HEAD"]
        )
        parent = current.stdout.strip() if current.returncode == 0 else ""
        return "HEAD", parent or "unknown"

    async def _run(self, binary: str, cwd: Path, args: list[str]) -> ProcessResult:
        try:
            return await run_process([binary, *args], cwd=cwd, timeout_s=self._timeout_s)
        except ExecutionError as e:
            raise DeliveryError(f"{binary} {args[0]} failed: {e}") from e

    async def _git(self, cwd: Path, args: list[str]) -> ProcessResult:
        result = await self._run(self._git_bin, cwd, args)
        if result.returncode != 0:
            raise DeliveryError(
                f"git {' '.join(args[:2])} failed (exit {result.returncode}): "
                f"{tail(result.stderr)}"
            )
        return result

    async def _git_best_effort(self, cwd: Path, args: list[str]) -> None:
        try:
            result = await self._run(self._git_bin, cwd, args)
        except DeliveryError as e:
            log.warning("git_best_effort_failed", command=args[0], error=str(e))
            return
        if result.returncode != 0:
            log.warning(
                "git_best_effort_failed",
                command=args[0],
                returncode=result.returncode,
            )
