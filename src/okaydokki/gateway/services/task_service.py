"""TaskService -- 任务生命周期的唯一推进者

职责：
1. 创建任务：解析快照与运行时配置，决定 WAIT_APPROVE_WRITE 或 WAIT_CLARIFY
2. 应用动作：retry / approve / reject，沿状态机合法边推进
3. approve 时在单飞槽位保护下调用 TaskRunner，并把结果落到状态与审计日志
4. 失败路径总是：置 FAILED（带 error_code）-> 写 FAILED 审计 -> 抛出 TaskServiceError

每次状态写入都在返回前提交，每次流转都写审计记录；
审计校验失败（AuditValidationError）直接向上传播，不允许无审计地继续。
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog
from okaydokki.core.audit_logger import AuditLogger
from okaydokki.core.config import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT
from okaydokki.core.models import (
    ApprovalDecision,
    AuditEventType,
    AuditRecord,
    ClarifyReason,
    DeliveryStrategy,
    ErrorCode,
    ProgressStage,
    Task,
    TaskAction,
    TaskRunResult,
    TaskStatus,
    TERMINAL_STATES,
    TestsResult,
    branch_for_task,
)
from okaydokki.core.reconcile import reconcile_interrupted_runs
from okaydokki.core.repo_runtime import RepoRuntimeResolver
from okaydokki.core.store.protocols import TaskStore
from okaydokki.core.store.task_store import TaskStatusConflictError
from okaydokki.execution.exceptions import TaskRunnerError
from okaydokki.execution.runner import TaskRunner
from ulid import ULID

from .run_registry import RunRegistry
from .sse_hub import SSEHub, StreamMessage

log = structlog.get_logger()

ProgressListener = Callable[[str, ProgressStage], Awaitable[None]]


class TaskServiceError(Exception):
    """服务层错误 -- 携带 HTTP 状态码与稳定错误码"""

    def __init__(self, message: str, status_code: int, code: ErrorCode) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


@dataclass
class CreateTaskResult:
    """创建（或重跑）任务的结果"""

    task: Task
    needs_clarify: bool
    clarify_reason: ClarifyReason | None = None
    missing_fields: list[str] | None = None
    expected_path: str | None = None


@dataclass
class ApplyActionResult:
    """动作执行结果，仅 approve 成功时带 run_result"""

    task: Task
    run_result: TaskRunResult | None = None


def _now() -> datetime:
    return datetime.now(UTC)


class TaskService:
    """任务业务服务 -- 进程内单例，由 gateway lifespan 构建"""

    def __init__(
        self,
        task_store: TaskStore,
        audit_logger: AuditLogger,
        runner: TaskRunner,
        resolver: RepoRuntimeResolver,
        registry: RunRegistry | None = None,
        sse_hub: SSEHub | None = None,
        default_agent: str = "codex",
        default_strategy: DeliveryStrategy = DeliveryStrategy.ROLLING,
        default_base_branch: str = "main",
        on_progress: ProgressListener | None = None,
    ) -> None:
        self._tasks = task_store
        self._audit = audit_logger
        self._runner = runner
        self._resolver = resolver
        self._registry = registry if registry is not None else RunRegistry()
        self._sse_hub = sse_hub
        self._default_agent = default_agent
        self._default_strategy = default_strategy
        self._default_base_branch = default_base_branch
        self._on_progress = on_progress

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    # ============================================================
    # 创建 / 查询
    # ============================================================

    async def create_task(
        self,
        trigger_user: str,
        repo: str,
        intent: str,
        source: str = "api",
        agent: str | None = None,
        delivery_strategy: DeliveryStrategy | None = None,
        base_branch: str | None = None,
    ) -> CreateTaskResult:
        """创建任务并写入 REQUEST 审计

        Raises:
            TaskServiceError: repo 标识非法（400 VALIDATION_ERROR）
        """
        try:
            runtime = self._resolver.resolve(repo)
        except ValueError as e:
            raise TaskServiceError(str(e), 400, ErrorCode.VALIDATION_ERROR) from e

        clarify_reason: ClarifyReason | None = None
        expected_path: str | None = None
        if not runtime.snapshot_exists:
            clarify_reason = ClarifyReason.SNAPSHOT_MISSING
            expected_path = str(runtime.repo_path)
        elif runtime.missing_fields:
            clarify_reason = ClarifyReason.RUNTIME_CONFIG_MISSING
            expected_path = str(runtime.config_path)

        status = (
            TaskStatus.WAIT_CLARIFY if clarify_reason else TaskStatus.WAIT_APPROVE_WRITE
        )

        now = _now()
        task_id = str(ULID())
        task = Task(
            task_id=task_id,
            source=source,
            trigger_user=trigger_user,
            repo=repo,
            branch=branch_for_task(task_id),
            base_branch=base_branch or self._default_base_branch,
            delivery_strategy=delivery_strategy or self._default_strategy,
            intent=intent,
            agent=agent or self._default_agent,
            status=status,
            created_at=now,
            updated_at=now,
            clarify_reason=clarify_reason,
            missing_fields=list(runtime.missing_fields) if clarify_reason else [],
        )
        await self._tasks.create_task(task)
        await self._append_audit(
            task,
            AuditEventType.REQUEST,
            timestamp=now,
            message=task.intent,
        )

        log.info(
            "task_created",
            task_id=task_id,
            repo=repo,
            status=status.value,
            clarify_reason=clarify_reason.value if clarify_reason else None,
        )
        return CreateTaskResult(
            task=task,
            needs_clarify=clarify_reason is not None,
            clarify_reason=clarify_reason,
            missing_fields=list(task.missing_fields),
            expected_path=expected_path,
        )

    async def get_task(self, task_id: str) -> Task:
        """查询任务

        Raises:
            TaskServiceError: 任务不存在（404）
        """
        task = await self._tasks.get_task(task_id)
        if task is None:
            raise TaskServiceError(
                f"Task not found: {task_id}", 404, ErrorCode.TASK_NOT_FOUND
            )
        return task

    async def list_tasks(self, limit: int | None = None) -> list[Task]:
        """最近任务，按创建时间倒序；limit 限制在 1..100"""
        effective = DEFAULT_LIST_LIMIT if limit is None else limit
        effective = max(1, min(MAX_LIST_LIMIT, effective))
        return await self._tasks.list_tasks(effective)

    async def get_task_history(self, task_id: str) -> list[AuditRecord]:
        """任务的审计历史（文件顺序）"""
        return await asyncio.to_thread(self._audit.read_task_history, task_id)

    def get_progress(self, task_id: str) -> ProgressStage | None:
        """最近一次进度阶段"""
        return self._registry.get_stage(task_id)

    async def rerun_task(
        self,
        task_id: str,
        actor: str,
        source: str = "api",
    ) -> CreateTaskResult:
        """克隆原任务（新 task_id、新触发者），不是续跑"""
        original = await self.get_task(task_id)
        result = await self.create_task(
            trigger_user=actor,
            repo=original.repo,
            intent=original.intent,
            source=source,
            agent=original.agent,
            delivery_strategy=original.delivery_strategy,
            base_branch=original.base_branch,
        )
        log.info("task_rerun", original_task_id=task_id, task_id=result.task.task_id)
        return result

    # ============================================================
    # 动作
    # ============================================================

    async def apply_action(
        self,
        task_id: str,
        action: TaskAction | str,
        actor: str,
    ) -> ApplyActionResult:
        """应用用户动作

        Raises:
            TaskServiceError: 400 非法动作 / 404 任务不存在 / 409 状态冲突 / 500 运行失败
        """
        parsed = action if isinstance(action, TaskAction) else TaskAction.parse(action)
        if parsed is None:
            raise TaskServiceError(
                f"Invalid action: {action}. Expected one of: retry, approve, reject.",
                400,
                ErrorCode.INVALID_ACTION,
            )

        if parsed == TaskAction.RETRY:
            return await self._retry(task_id, actor)
        if parsed == TaskAction.REJECT:
            return await self._reject(task_id, actor)
        return await self._approve(task_id, actor)

    async def _retry(self, task_id: str, actor: str) -> ApplyActionResult:
        task = await self.get_task(task_id)
        if task.status != TaskStatus.WAIT_CLARIFY:
            raise TaskServiceError(
                f"Task {task_id} is {task.status.value}, retry is not available.",
                409,
                ErrorCode.STATE_CONFLICT,
            )

        try:
            runtime = self._resolver.resolve(task.repo)
        except ValueError as e:
            raise TaskServiceError(str(e), 400, ErrorCode.VALIDATION_ERROR) from e

        if not runtime.snapshot_exists:
            raise TaskServiceError(
                f"Snapshot still missing for '{task.repo}'. Expected path: {runtime.repo_path}",
                409,
                ErrorCode.SNAPSHOT_MISSING,
            )
        if runtime.missing_fields:
            raise TaskServiceError(
                f"Runtime config still incomplete for '{task.repo}'. "
                f"Missing: {', '.join(runtime.missing_fields)}. "
                f"Expected path: {runtime.config_path}",
                409,
                ErrorCode.RUNTIME_CONFIG_MISSING,
            )

        updated = await self._transition(
            task, TaskStatus.WAIT_APPROVE_WRITE, clear_clarify=True
        )
        await self._append_audit(updated, AuditEventType.RETRY, message=f"Retry by {actor}")
        return ApplyActionResult(task=updated)

    async def _reject(self, task_id: str, actor: str) -> ApplyActionResult:
        task = await self.get_task(task_id)
        if task.status not in (TaskStatus.WAIT_CLARIFY, TaskStatus.WAIT_APPROVE_WRITE):
            raise TaskServiceError(
                f"Task {task_id} is {task.status.value}, "
                "reject is only allowed in pending states.",
                409,
                ErrorCode.STATE_CONFLICT,
            )

        updated = await self._transition(task, TaskStatus.FAILED)
        await self._append_audit(
            updated,
            AuditEventType.REJECT,
            approval_decision=ApprovalDecision.REJECT,
            message=f"Rejected by {actor}",
        )
        await self._broadcast_status(updated)
        return ApplyActionResult(task=updated)

    async def _approve(self, task_id: str, actor: str) -> ApplyActionResult:
        # 同步检查并占位，先于任何挂起点
        if not self._registry.try_acquire(task_id):
            raise TaskServiceError(
                f"Task {task_id} is already running.",
                409,
                ErrorCode.STATE_CONFLICT,
            )

        try:
            task = await self.get_task(task_id)
            if task.status != TaskStatus.WAIT_APPROVE_WRITE:
                raise TaskServiceError(
                    f"Task {task_id} is {task.status.value}, "
                    "only WAIT_APPROVE_WRITE can be approved.",
                    409,
                    ErrorCode.STATE_CONFLICT,
                )

            running = await self._transition(task, TaskStatus.RUNNING, approved_by=actor)
            await self._append_audit(
                running,
                AuditEventType.APPROVE,
                approval_decision=ApprovalDecision.APPROVE,
                message=f"Approved by {actor}",
            )
            log.info("task_approved", task_id=task_id, approved_by=actor)
            return await self._execute(running)
        finally:
            self._registry.release(task_id)

    async def _execute(self, task: Task) -> ApplyActionResult:
        """执行已批准任务并记录结果"""

        async def forward_progress(stage: ProgressStage) -> None:
            self._registry.set_stage(task.task_id, stage)
            await self._broadcast(
                task.task_id,
                StreamMessage(
                    kind="progress",
                    data={"task_id": task.task_id, "stage": stage.value},
                ),
            )
            if self._on_progress is not None:
                await self._on_progress(task.task_id, stage)

        try:
            result = await self._runner.run(task, on_progress=forward_progress)
        except TaskRunnerError as e:
            await self._mark_failed(task, e.code, e.message)
            raise TaskServiceError(
                f"Task {task.task_id} failed: {e.message}", 500, e.code
            ) from e
        except Exception as e:
            # 未分类异常统一记为 RUN_FAILED
            log.exception("task_run_unclassified_error", task_id=task.task_id)
            await self._mark_failed(task, ErrorCode.RUN_FAILED, str(e) or type(e).__name__)
            raise TaskServiceError(
                f"Task {task.task_id} failed: {e}", 500, ErrorCode.RUN_FAILED
            ) from e

        await self._append_audit(
            task,
            AuditEventType.RUN,
            diff_hash=result.diff_hash,
            agent_logs=result.agent_logs,
            tests_result=result.tests_result,
            pr_link=result.pr_link,
            message=(
                f"agent_meta={json.dumps(result.agent_meta, ensure_ascii=False)}"
                if result.agent_meta
                else None
            ),
        )

        if result.tests_result != TestsResult.PASS:
            message = f"Tests failed for task {task.task_id}"
            if result.pr_link:
                # 测试失败时交付仍会开出草稿 PR，链接随失败记录与响应一并返回
                message = f"{message}; draft PR: {result.pr_link}"
            await self._mark_failed(task, ErrorCode.TEST_FAILED, message)
            raise TaskServiceError(message, 500, ErrorCode.TEST_FAILED)

        current = task
        if result.pr_link:
            current = await self._transition(current, TaskStatus.PR_CREATED)
            await self._append_audit(
                current,
                AuditEventType.PR_CREATED,
                pr_link=result.pr_link,
            )

        completed = await self._transition(current, TaskStatus.COMPLETED)
        await self._broadcast_status(completed)
        log.info(
            "task_completed",
            task_id=task.task_id,
            has_diff=result.has_diff,
            pr_link=result.pr_link,
        )
        return ApplyActionResult(task=completed, run_result=result)

    async def _mark_failed(self, task: Task, code: ErrorCode, message: str) -> Task:
        """置 FAILED（同一次写入带 error_code）并写 FAILED 审计"""
        current = await self._tasks.get_task(task.task_id)
        expected = current.status if current is not None else task.status
        failed = await self._transition(
            task.model_copy(update={"status": expected}),
            TaskStatus.FAILED,
            error_code=code,
        )
        await self._append_audit(
            failed,
            AuditEventType.FAILED,
            error_code=code,
            message=message,
        )
        await self._broadcast_status(failed)
        log.warning(
            "task_run_failed",
            task_id=task.task_id,
            error_code=code.value,
        )
        return failed

    # ============================================================
    # 对账
    # ============================================================

    async def reconcile_interrupted_runs(self) -> list[Task]:
        """将不在本进程运行登记表中的 RUNNING/PR_CREATED 任务置为 FAILED"""
        reconciled = await reconcile_interrupted_runs(
            self._tasks,
            self._audit,
            is_running=self._registry.is_running,
        )
        for task in reconciled:
            await self._broadcast_status(task)
        return reconciled

    # ============================================================
    # 内部工具
    # ============================================================

    async def _transition(
        self,
        task: Task,
        status: TaskStatus,
        *,
        approved_by: str | None = None,
        error_code: ErrorCode | None = None,
        clear_clarify: bool = False,
    ) -> Task:
        """CAS 状态流转；并发落败映射为 409 STATE_CONFLICT"""
        try:
            updated = await self._tasks.update_task_status(
                task.task_id,
                status,
                task.status,
                _now(),
                approved_by=approved_by,
                error_code=error_code,
                clear_clarify=clear_clarify,
            )
        except TaskStatusConflictError as e:
            raise TaskServiceError(str(e), 409, ErrorCode.STATE_CONFLICT) from e

        log.info(
            "task_status_changed",
            task_id=task.task_id,
            from_status=task.status.value,
            to_status=status.value,
        )
        # 终态在对应审计写入之后由调用方广播，订阅端收到 final 时历史已完整
        if updated.status not in TERMINAL_STATES:
            await self._broadcast_status(updated)
        return updated

    async def _append_audit(
        self,
        task: Task,
        event_type: AuditEventType,
        timestamp: datetime | None = None,
        **fields: Any,
    ) -> AuditRecord:
        record = self._audit.append(
            {
                "timestamp": (timestamp or _now()).isoformat(),
                "task_id": task.task_id,
                "trigger_user": task.trigger_user,
                "event_type": event_type,
                **{k: v for k, v in fields.items() if v is not None},
            }
        )
        await self._broadcast(
            task.task_id,
            StreamMessage(
                kind="audit",
                data=record.model_dump(mode="json", by_alias=True, exclude_none=True),
            ),
        )
        return record

    async def _broadcast_status(self, task: Task) -> None:
        final = task.status in TERMINAL_STATES
        await self._broadcast(
            task.task_id,
            StreamMessage(
                kind="status",
                data={
                    "task_id": task.task_id,
                    "status": task.status.value,
                    "error_code": task.error_code.value if task.error_code else None,
                    "final": final,
                },
                final=final,
            ),
        )

    async def _broadcast(self, task_id: str, message: StreamMessage) -> None:
        if self._sse_hub is not None:
            await self._sse_hub.broadcast(task_id, message)
