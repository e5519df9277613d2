"""Store Protocol 接口定义

使用 Python Protocol 实现结构化子类型（duck typing），
TaskService 只依赖此接口，测试可替换为内存实现。
"""

from datetime import datetime
from typing import Protocol

from ..models.enums import ErrorCode, TaskStatus
from ..models.task import Task


class TaskStore(Protocol):
    """Task 存储接口"""

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def list_tasks(
        self,
        limit: int,
        status: TaskStatus | None = None,
    ) -> list[Task]:
        """查询最近任务，按 created_at 倒序"""
        ...

    async def list_tasks_by_statuses(self, statuses: set[TaskStatus]) -> list[Task]:
        """查询处于给定状态集合中的全部任务"""
        ...

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
        """CAS 更新任务状态，返回更新后的任务"""
        ...
