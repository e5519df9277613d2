"""TraceMiddleware -- 为任务相关请求绑定 trace_id

从 /api/v1/tasks/{task_id}... 与 /api/v1/stream/task/{task_id} 中提取 task_id，
绑定 trace_id=trace-<task_id>，贯穿该请求触发的全部执行日志。
"""

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ULID 长度
_TASK_ID_LENGTH = 26


def extract_task_id(path: str) -> str | None:
    """从请求路径中提取 task_id，没有则返回 None"""
    parts = path.split("/")
    for i, part in enumerate(parts):
        if part in ("tasks", "task") and i + 1 < len(parts):
            candidate = parts[i + 1]
            if len(candidate) == _TASK_ID_LENGTH and candidate.isalnum():
                return candidate
    return None


class TraceMiddleware(BaseHTTPMiddleware):
    """任务级追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        task_id = extract_task_id(request.url.path)
        if task_id:
            structlog.contextvars.bind_contextvars(trace_id=f"trace-{task_id}")

        return await call_next(request)
