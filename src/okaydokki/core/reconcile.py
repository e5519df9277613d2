"""中断运行对账

进程崩溃或重启时，处于 RUNNING / PR_CREATED 的任务已不可能继续推进。
启动时（以及 CLI reconcile 命令）把所有不在当前进程运行登记表中的此类任务
置为 FAILED（RUN_FAILED），并补写 FAILED 审计记录。
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .audit_logger import AuditLogger
from .models.enums import IN_FLIGHT_STATES, AuditEventType, ErrorCode, TaskStatus
from .models.task import Task
from .store.protocols import TaskStore
from .store.task_store import TaskStatusConflictError

log = structlog.get_logger()

INTERRUPTED_RUN_MESSAGE = "run interrupted before completion"


async def reconcile_interrupted_runs(
    task_store: TaskStore,
    audit_logger: AuditLogger,
    is_running: Callable[[str], bool] = lambda _task_id: False,
) -> list[Task]:
    """将中断的运行标记为失败

    Args:
        task_store: 任务存储
        audit_logger: 审计日志
        is_running: 判断任务是否仍由当前进程持有运行槽位

    Returns:
        被置为 FAILED 的任务列表
    """
    start = time.monotonic()
    reconciled: list[Task] = []

    for task in await task_store.list_tasks_by_statuses(IN_FLIGHT_STATES):
        if is_running(task.task_id):
            continue
        now = datetime.now(UTC)
        try:
            updated = await task_store.update_task_status(
                task.task_id,
                TaskStatus.FAILED,
                task.status,
                now,
                error_code=ErrorCode.RUN_FAILED,
            )
        except TaskStatusConflictError:
            # 期间被其他写者推进，跳过
            log.info("reconcile_task_skipped", task_id=task.task_id)
            continue

        audit_logger.append(
            {
                "timestamp": now.isoformat(),
                "task_id": task.task_id,
                "trigger_user": task.trigger_user,
                "event_type": AuditEventType.FAILED,
                "error_code": ErrorCode.RUN_FAILED,
                "message": INTERRUPTED_RUN_MESSAGE,
            }
        )
        reconciled.append(updated)
        log.warning(
            "interrupted_run_failed",
            task_id=task.task_id,
            previous_status=task.status.value,
        )

    log.info(
        "reconcile_completed",
        reconciled_count=len(reconciled),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    return reconciled
