"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭、审计日志、执行组件与 TaskService 装配、
启动对账、路由与异常处理器注册。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from okaydokki import __version__
from okaydokki.core.audit_logger import AuditLogger
from okaydokki.core.config import (
    get_audit_log_path,
    get_db_path,
    get_repo_snapshot_root,
    get_workspace_root,
    load_diff_policy,
    load_execution_config,
    load_runtime_defaults,
)
from okaydokki.core.models import ErrorCode
from okaydokki.core.repo_runtime import RepoRuntimeResolver
from okaydokki.core.store import create_store_group
from okaydokki.execution import (
    AgentCommandBuilder,
    DockerSandbox,
    GitHubPrCreator,
    HostAgentExecutor,
    TaskRunner,
)
from starlette.responses import JSONResponse

from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import health, stream, tasks
from .services.run_registry import RunRegistry
from .services.sse_hub import SSEHub
from .services.task_service import TaskService, TaskServiceError

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理：启动时装配组件并对账中断运行，关闭时清理连接"""
    store_group = await create_store_group(get_db_path())
    app.state.store_group = store_group

    audit_logger = AuditLogger(get_audit_log_path())
    app.state.audit_logger = audit_logger

    diff_policy = load_diff_policy()
    execution_config = load_execution_config()
    resolver = RepoRuntimeResolver(get_repo_snapshot_root(), load_runtime_defaults())
    workspace_root = get_workspace_root()
    app.state.diff_policy = diff_policy
    app.state.resolver = resolver

    runner = TaskRunner(
        command_builder=AgentCommandBuilder(execution_config.agent_cli_template),
        host_executor=HostAgentExecutor(
            workspace_root=workspace_root,
            timeout_s=execution_config.agent_timeout_s,
        ),
        sandbox=DockerSandbox(
            resolver,
            workspace_root=workspace_root,
            docker_bin=execution_config.docker_bin,
            timeout_s=execution_config.sandbox_timeout_s,
        ),
        delivery=GitHubPrCreator(
            resolver,
            workspace_root=workspace_root,
            git_bin=execution_config.git_bin,
            gh_bin=execution_config.gh_bin,
            timeout_s=execution_config.delivery_timeout_s,
        ),
        resolver=resolver,
        policy=diff_policy,
    )

    app.state.sse_hub = SSEHub()
    task_service = TaskService(
        task_store=store_group.task_store,
        audit_logger=audit_logger,
        runner=runner,
        resolver=resolver,
        registry=RunRegistry(),
        sse_hub=app.state.sse_hub,
        default_agent=execution_config.default_agent,
        default_strategy=execution_config.delivery_strategy,
        default_base_branch=execution_config.base_branch,
    )
    app.state.task_service = task_service

    # 新进程的运行登记表为空，遗留的 RUNNING/PR_CREATED 都是上一进程中断的运行
    await task_service.reconcile_interrupted_runs()

    log.info(
        "gateway_started",
        snapshot_root=str(resolver.snapshot_root),
        audit_log=str(audit_logger.path),
        delivery_strategy=execution_config.delivery_strategy.value,
    )

    yield

    # 关闭：清理数据库连接
    if hasattr(app.state, "store_group") and app.state.store_group:
        await app.state.store_group.conn.close()


async def task_service_error_handler(request: Request, exc: TaskServiceError) -> JSONResponse:
    """TaskServiceError -> {"error", "error_code"}"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "error_code": exc.code.value},
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """请求校验失败统一映射为 400 VALIDATION_ERROR"""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query"))
        message = f"{field or 'request'}: {first.get('msg', 'invalid value')}"
    else:
        message = "invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": message, "error_code": ErrorCode.VALIDATION_ERROR.value},
    )


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="OkayDokki Gateway",
        version=__version__,
        description="人工审批的 AI 编码代理任务编排 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(TaskServiceError, task_service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # 初始化日志
    setup_logging()
    setup_logfire(app)

    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
