"""TaskStore SQLite 实现

tasks 表保存任务的当前状态。状态更新是基于 expected_status 的 CAS：
并发调用方中只有一个能把任务从同一状态推走，落败方得到 TaskStatusConflictError。
每次写入在返回前提交。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.enums import ErrorCode, TaskStatus, validate_transition
from ..models.task import Task


class TaskStatusConflictError(Exception):
    """状态 CAS 失败或状态流转非法"""

    def __init__(
        self,
        task_id: str,
        expected_status: TaskStatus,
        actual_status: TaskStatus | None,
        target_status: TaskStatus,
    ) -> None:
        self.task_id = task_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.target_status = target_status
        super().__init__(
            f"Task {task_id} status conflict: expected {expected_status.value}, "
            f"found {actual_status.value if actual_status else 'none'}, "
            f"target {target_status.value}"
        )


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        await self._conn.execute(
            """
            INSERT INTO tasks (task_id, source, trigger_user, repo, branch, base_branch,
                               delivery_strategy, intent, agent, status, created_at,
                               updated_at, approved_by, clarify_reason, missing_fields,
                               error_code)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.source,
                task.trigger_user,
                task.repo,
                task.branch,
                task.base_branch,
                task.delivery_strategy.value,
                task.intent,
                task.agent,
                task.status.value,
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
                task.approved_by,
                task.clarify_reason.value if task.clarify_reason else None,
                json.dumps(task.missing_fields),
                task.error_code.value if task.error_code else None,
            ),
        )
        await self._conn.commit()

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_tasks(
        self,
        limit: int,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        """查询最近任务，支持按状态筛选，按 created_at 倒序"""
        if status:
            cursor = await self._conn.execute(
                """
                SELECT * FROM tasks WHERE status = ?
                ORDER BY created_at DESC, task_id DESC LIMIT ?
                """,
                (status.value, limit),
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM tasks ORDER BY created_at DESC, task_id DESC LIMIT ?",
                (limit,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_tasks_by_statuses(self, statuses: set[TaskStatus]) -> list[Task]:
        """查询处于给定状态集合中的全部任务（按创建顺序）"""
        if not statuses:
            return []
        values = sorted(s.value for s in statuses)
        placeholders = ", ".join("?" for _ in values)
        cursor = await self._conn.execute(
            f"SELECT * FROM tasks WHERE status IN ({placeholders}) ORDER BY created_at",
            values,
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        expected_status: TaskStatus,
        updated_at: datetime,
        *,
        approved_by: str | None = None,
        error_code: ErrorCode | None = None,
        clear_clarify: bool = False,
    ) -> Task:
        """CAS 更新任务状态

        Args:
            task_id: 任务 ID
            status: 目标状态
            expected_status: 调用方读到的当前状态
            updated_at: 更新时间
            approved_by: 审批人（仅 WAIT_APPROVE_WRITE -> RUNNING 时写入）
            error_code: 失败错误码（与 FAILED 同一次写入）
            clear_clarify: 清空 clarify_reason / missing_fields

        Returns:
            更新后的 Task

        Raises:
            TaskStatusConflictError: 流转非法，或任务已不在 expected_status
        """
        if not validate_transition(expected_status, status):
            raise TaskStatusConflictError(task_id, expected_status, expected_status, status)

        assignments = ["status = ?", "updated_at = ?"]
        params: list = [status.value, updated_at.isoformat()]
        if approved_by is not None:
            # approved_by 只写一次
            assignments.append("approved_by = COALESCE(approved_by, ?)")
            params.append(approved_by)
        if error_code is not None:
            assignments.append("error_code = ?")
            params.append(error_code.value)
        if clear_clarify:
            assignments.append("clarify_reason = NULL")
            assignments.append("missing_fields = '[]'")

        params.extend([task_id, expected_status.value])
        cursor = await self._conn.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = ? AND status = ?",
            params,
        )
        await self._conn.commit()

        if cursor.rowcount != 1:
            current = await self.get_task(task_id)
            raise TaskStatusConflictError(
                task_id,
                expected_status,
                current.status if current else None,
                status,
            )

        updated = await self.get_task(task_id)
        if updated is None:
            # 提交后记录已被删除
            raise TaskStatusConflictError(task_id, expected_status, None, status)
        return updated

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row["task_id"],
            source=row["source"],
            trigger_user=row["trigger_user"],
            repo=row["repo"],
            branch=row["branch"],
            base_branch=row["base_branch"],
            delivery_strategy=row["delivery_strategy"],
            intent=row["intent"],
            agent=row["agent"],
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            approved_by=row["approved_by"],
            clarify_reason=row["clarify_reason"],
            missing_fields=json.loads(row["missing_fields"] or "[]"),
            error_code=row["error_code"],
        )
