"""TaskRunner -- 严格顺序的执行流水线

agent -> sandbox -> policy -> delivery，前一阶段失败则后续阶段不执行。
各阶段组件异常在此边界统一重新抛出为 TaskRunnerError，错误码只有四种：
AGENT_FAILED / SANDBOX_FAILED / POLICY_VIOLATION / PR_CREATE_FAILED。
候选工作区在 agent 阶段之后的任何退出路径上都会被清理。
"""

import hashlib
import time
from collections.abc import Awaitable, Callable

import structlog

from okaydokki.core.config import DiffPolicyConfig
from okaydokki.core.diff_policy import evaluate_diff_policy, extract_changed_files, policy_checks
from okaydokki.core.models.enums import ErrorCode, ProgressStage, TestsResult
from okaydokki.core.models.run import DeliverySummary, TaskRunResult
from okaydokki.core.models.task import Task
from okaydokki.core.repo_runtime import RepoRuntimeResolver

from .agent_command import AgentCommandBuilder
from .delivery import DeliveryCollaborator
from .exceptions import ExecutionError, TaskRunnerError
from .host_executor import HostAgentExecutor, HostExecutionResult
from .sandbox import DockerSandbox, SandboxResult

log = structlog.get_logger()

ProgressCallback = Callable[[ProgressStage], Awaitable[None]]


def compute_diff_hash(diff: str) -> str:
    """diff 文本的 SHA-256"""
    return hashlib.sha256(diff.encode("utf-8")).hexdigest()


class TaskRunner:
    """任务执行编排器"""

    def __init__(
        self,
        command_builder: AgentCommandBuilder,
        host_executor: HostAgentExecutor,
        sandbox: DockerSandbox,
        delivery: DeliveryCollaborator,
        resolver: RepoRuntimeResolver,
        policy: DiffPolicyConfig,
    ) -> None:
        self._command_builder = command_builder
        self._host_executor = host_executor
        self._sandbox = sandbox
        self._delivery = delivery
        self._resolver = resolver
        self._policy = policy

    async def run(
        self,
        task: Task,
        on_progress: ProgressCallback | None = None,
    ) -> TaskRunResult:
        """执行一次任务

        Raises:
            TaskRunnerError: 任一阶段失败
        """
        start = time.monotonic()

        async def report(stage: ProgressStage) -> None:
            log.info("task_run_stage", task_id=task.task_id, stage=stage.value)
            if on_progress is not None:
                await on_progress(stage)

        await report(ProgressStage.AGENT_RUNNING)
        host = await self._run_agent(task)

        try:
            await report(ProgressStage.SANDBOX_TESTING)
            sandbox = await self._run_sandbox(task, host)

            diff_hash = compute_diff_hash(host.diff)
            has_diff = bool(host.diff.strip())
            changed_files = extract_changed_files(host.diff) if has_diff else []

            if has_diff:
                violations = evaluate_diff_policy(host.diff, self._policy)
                if violations:
                    raise TaskRunnerError(
                        "Diff policy violation: " + "; ".join(violations),
                        ErrorCode.POLICY_VIOLATION,
                    )

            tests_result = TestsResult.PASS if sandbox.test_exit_code == 0 else TestsResult.FAIL

            pr_link: str | None = None
            if has_diff:
                await report(ProgressStage.CREATING_PR)
                summary = DeliverySummary(
                    tests_result=tests_result,
                    changed_files=changed_files,
                    policy_checks=policy_checks(self._policy),
                )
                try:
                    pr_link = await self._delivery.create_draft_pr(
                        task, host.candidate_path, summary
                    )
                except (ExecutionError, OSError, ValueError) as e:
                    raise TaskRunnerError(
                        f"PR creation failed: {e}", ErrorCode.PR_CREATE_FAILED
                    ) from e
        finally:
            host.cleanup()

        log.info(
            "task_run_completed",
            task_id=task.task_id,
            tests_result=tests_result.value,
            has_diff=has_diff,
            changed_files=len(changed_files),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return TaskRunResult(
            tests_result=tests_result,
            test_log=sandbox.test_log,
            diff_hash=diff_hash,
            has_diff=has_diff,
            changed_files=changed_files,
            agent_logs=host.agent_logs,
            agent_meta=host.agent_meta,
            pr_link=pr_link,
        )

    async def _run_agent(self, task: Task) -> HostExecutionResult:
        try:
            command = self._command_builder.build(task)
            snapshot_path = self._resolver.snapshot_path(task.repo)
            return await self._host_executor.run(task, snapshot_path, command)
        except (ExecutionError, OSError, ValueError) as e:
            raise TaskRunnerError(
                f"Agent execution failed: {e}", ErrorCode.AGENT_FAILED
            ) from e

    async def _run_sandbox(self, task: Task, host: HostExecutionResult) -> SandboxResult:
        try:
            return await self._sandbox.run_validation(task, host.candidate_path)
        except (ExecutionError, OSError, ValueError) as e:
            raise TaskRunnerError(
                f"Sandbox validation failed: {e}", ErrorCode.SANDBOX_FAILED
            ) from e
