"""gateway 测试配置 -- TaskService 装配 + 绕过 lifespan 的 app/client fixture"""

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from okaydokki.core.audit_logger import AuditLogger
from okaydokki.core.config import DiffPolicyConfig
from okaydokki.core.repo_runtime import RepoRuntimeResolver
from okaydokki.core.store import StoreGroup
from okaydokki.gateway.services.run_registry import RunRegistry
from okaydokki.gateway.services.sse_hub import SSEHub
from okaydokki.gateway.services.task_service import TaskService


@pytest.fixture
def sse_hub() -> SSEHub:
    return SSEHub()


@pytest.fixture
def make_service(
    store_group: StoreGroup,
    audit_logger: AuditLogger,
    resolver: RepoRuntimeResolver,
    sse_hub: SSEHub,
    fake_runner,
) -> Callable[..., TaskService]:
    """构建 TaskService；runner 缺省为默认成功的 FakeRunner"""

    def _make(runner=None, **kwargs) -> TaskService:
        return TaskService(
            task_store=store_group.task_store,
            audit_logger=audit_logger,
            runner=runner or fake_runner,
            resolver=resolver,
            registry=RunRegistry(),
            sse_hub=sse_hub,
            **kwargs,
        )

    return _make


@pytest.fixture
def task_service(make_service) -> TaskService:
    return make_service()


@pytest_asyncio.fixture
async def test_app(
    monkeypatch: pytest.MonkeyPatch,
    store_group: StoreGroup,
    audit_logger: AuditLogger,
    resolver: RepoRuntimeResolver,
    diff_policy: DiffPolicyConfig,
    sse_hub: SSEHub,
    task_service: TaskService,
):
    """创建测试用 FastAPI app"""
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")

    from okaydokki.gateway.main import create_app

    app = create_app()

    # 手动初始化（绕过 lifespan）
    app.state.store_group = store_group
    app.state.audit_logger = audit_logger
    app.state.diff_policy = diff_policy
    app.state.resolver = resolver
    app.state.sse_hub = sse_hub
    app.state.task_service = task_service
    return app


@pytest_asyncio.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac
