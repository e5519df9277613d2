"""SSE 任务流路由

GET /api/v1/stream/task/{task_id}:
1. 先推送审计历史（audit 事件）
2. 任务已在终态且收尾审计已写入：推送 final status 后结束
3. 否则实时推送 audit / progress / status 事件
4. 终态 status 事件携带 final: true，推送后结束
5. 心跳保活
"""

import asyncio
import json

from fastapi import APIRouter, Depends
from okaydokki.core import config
from okaydokki.core.models import (
    TERMINAL_STATES,
    AuditEventType,
    AuditRecord,
    Task,
    TaskStatus,
)
from sse_starlette.sse import EventSourceResponse

from ..deps import get_sse_hub, get_task_service
from ..services.sse_hub import SSEHub, StreamMessage
from ..services.task_service import TaskService

router = APIRouter(prefix="/api/v1")

# FAILED 的收尾审计在状态落库之后写入
_CLOSING_EVENTS = frozenset({AuditEventType.FAILED, AuditEventType.REJECT})


def _sse(kind: str, data: dict) -> dict:
    return {"event": kind, "data": json.dumps(data, ensure_ascii=False)}


def _audit_key(data: dict) -> tuple:
    return (data.get("timestamp"), data.get("eventType"), data.get("message"))


def _audit_data(record: AuditRecord) -> dict:
    return record.model_dump(mode="json", by_alias=True, exclude_none=True)


def _final_status(task: Task) -> dict:
    return _sse(
        "status",
        {
            "task_id": task.task_id,
            "status": task.status.value,
            "error_code": task.error_code.value if task.error_code else None,
            "final": True,
        },
    )


def _history_closed(task: Task, history: list[AuditRecord]) -> bool:
    """终态任务的审计历史是否已包含收尾记录"""
    if task.status not in TERMINAL_STATES:
        return False
    if task.status != TaskStatus.FAILED:
        return True
    return any(record.event_type in _CLOSING_EVENTS for record in history)


@router.get("/stream/task/{task_id}")
async def stream_task(
    task_id: str,
    service: TaskService = Depends(get_task_service),
    sse_hub: SSEHub = Depends(get_sse_hub),
):
    """任务 SSE 流端点"""
    # 不存在时抛出 404
    await service.get_task(task_id)

    async def event_generator():
        # 先订阅再读历史，历史与实时之间不丢消息
        queue = await sse_hub.subscribe(task_id)
        seen: set[tuple] = set()

        async def replay_history():
            records = await service.get_task_history(task_id)
            for record in records:
                data = _audit_data(record)
                key = _audit_key(data)
                if key in seen:
                    continue
                seen.add(key)
                yield record, _sse("audit", data)

        try:
            # 先读状态再读历史：状态为终态时历史至少包含落库前的全部记录
            task = await service.get_task(task_id)
            history: list[AuditRecord] = []
            async for record, event in replay_history():
                history.append(record)
                yield event

            if _history_closed(task, history):
                yield _final_status(task)
                return

            while True:
                try:
                    message: StreamMessage = await asyncio.wait_for(
                        queue.get(), timeout=config.SSE_HEARTBEAT_INTERVAL
                    )
                except TimeoutError:
                    yield {"comment": "heartbeat"}
                    # 收尾审计可能由不经过本进程广播的写者补写（如 CLI reconcile）
                    task = await service.get_task(task_id)
                    if task.status in TERMINAL_STATES:
                        async for record, event in replay_history():
                            history.append(record)
                            yield event
                        if _history_closed(task, history):
                            yield _final_status(task)
                            return
                    continue

                if message.kind == "audit":
                    key = _audit_key(message.data)
                    if key in seen:
                        continue
                    seen.add(key)
                yield _sse(message.kind, message.data)
                if message.final:
                    return
        finally:
            await sse_hub.unsubscribe(task_id, queue)

    return EventSourceResponse(event_generator())
