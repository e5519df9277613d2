"""任务路由 -- /api/v1/tasks

POST /api/v1/tasks: 创建任务
GET  /api/v1/tasks: 最近任务列表
GET  /api/v1/tasks/{task_id}: 任务详情（含进度阶段与审计历史）
POST /api/v1/tasks/{task_id}/actions: retry / approve / reject
POST /api/v1/tasks/{task_id}/rerun: 以新身份克隆任务

TaskServiceError 与请求校验错误由 main 中注册的异常处理器统一转为
{"error": ..., "error_code": ...}。
"""

from fastapi import APIRouter, Depends, Query
from okaydokki.core.models import DeliveryStrategy
from pydantic import BaseModel, Field

from ..deps import get_task_service
from ..services.task_service import CreateTaskResult, TaskService

router = APIRouter(prefix="/api/v1")


class CreateTaskRequest(BaseModel):
    """创建任务请求体"""

    trigger_user: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    intent: str = Field(min_length=1)
    agent: str | None = None
    delivery_strategy: DeliveryStrategy | None = None
    base_branch: str | None = None
    source: str | None = None


class ActionRequest(BaseModel):
    """动作请求体 -- action 的合法性由 TaskService 在查询任务之前判定"""

    action: str = Field(min_length=1)
    actor: str = Field(min_length=1)


class RerunRequest(BaseModel):
    """重跑请求体"""

    actor: str = Field(min_length=1)
    source: str | None = None


def _create_response(result: CreateTaskResult) -> dict:
    return {
        "task": result.task.to_api_dict(),
        "next_status": result.task.status.value,
        "needs_clarify": result.needs_clarify,
        "clarify_reason": result.clarify_reason.value if result.clarify_reason else None,
        "missing_fields": list(result.missing_fields or []),
        "expected_path": result.expected_path,
    }


@router.post("/tasks", status_code=201)
async def create_task(
    body: CreateTaskRequest,
    service: TaskService = Depends(get_task_service),
):
    """创建任务，快照或运行时配置缺失时进入 WAIT_CLARIFY"""
    result = await service.create_task(
        trigger_user=body.trigger_user,
        repo=body.repo,
        intent=body.intent,
        source=body.source or "api",
        agent=body.agent,
        delivery_strategy=body.delivery_strategy,
        base_branch=body.base_branch,
    )
    return _create_response(result)


@router.get("/tasks")
async def list_tasks(
    limit: int | None = Query(default=None, description="返回条数，1..100"),
    service: TaskService = Depends(get_task_service),
):
    tasks = await service.list_tasks(limit)
    return {"tasks": [t.to_api_dict() for t in tasks]}


@router.get("/tasks/{task_id}")
async def get_task_detail(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    task = await service.get_task(task_id)
    history = await service.get_task_history(task_id)
    stage = service.get_progress(task_id)
    return {
        "task": task.to_api_dict(),
        "progress_stage": stage.value if stage else None,
        "audit": [r.model_dump(mode="json", by_alias=True, exclude_none=True) for r in history],
    }


@router.post("/tasks/{task_id}/actions")
async def apply_action(
    task_id: str,
    body: ActionRequest,
    service: TaskService = Depends(get_task_service),
):
    """应用动作；approve 会同步执行整条流水线"""
    result = await service.apply_action(task_id, body.action, body.actor)
    return {
        "task": result.task.to_api_dict(),
        "run_result": result.run_result.to_api_dict() if result.run_result else None,
    }


@router.post("/tasks/{task_id}/rerun", status_code=201)
async def rerun_task(
    task_id: str,
    body: RerunRequest,
    service: TaskService = Depends(get_task_service),
):
    result = await service.rerun_task(task_id, body.actor, source=body.source or "api")
    return _create_response(result)
