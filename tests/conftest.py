"""全局 pytest 配置 -- 临时 SQLite/审计日志/快照目录 fixture + 执行协作者替身"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest
import pytest_asyncio
import yaml
from okaydokki.core.audit_logger import AuditLogger
from okaydokki.core.config import DiffPolicyConfig, RuntimeDefaults
from okaydokki.core.models import (
    DeliverySummary,
    ProgressStage,
    Task,
    TaskRunResult,
    TestsResult,
)
from okaydokki.core.repo_runtime import RepoRuntimeResolver
from okaydokki.core.store import StoreGroup, create_store_group

DEFAULT_RUNTIME_CONFIG = {
    "sandbox_image": "node:22-bookworm-slim",
    "test_command": "npm test",
    "allowed_test_commands": ["npm test"],
}


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "test.db"


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """提供已初始化的临时 Store 实例组"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.conn.close()


@pytest.fixture
def audit_logger(tmp_path: Path) -> AuditLogger:
    """提供临时审计日志"""
    return AuditLogger(tmp_path / "audit" / "audit.jsonl")


@pytest.fixture
def snapshot_root(tmp_path: Path) -> Path:
    """提供空的快照根目录"""
    root = tmp_path / "repos"
    root.mkdir()
    return root


@pytest.fixture
def make_snapshot(snapshot_root: Path) -> Callable[..., Path]:
    """创建仓库快照；runtime_config=None 表示不写 okaydokki.yaml"""

    def _make(
        name: str = "org/app",
        runtime_config: dict | None = DEFAULT_RUNTIME_CONFIG,
        files: dict[str, str] | None = None,
    ) -> Path:
        repo_path = snapshot_root / name
        repo_path.mkdir(parents=True, exist_ok=True)
        for rel, content in (files or {"README.md": "hello\n"}).items():
            target = repo_path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if runtime_config is not None:
            (repo_path / "okaydokki.yaml").write_text(
                yaml.safe_dump(runtime_config), encoding="utf-8"
            )
        return repo_path

    return _make


@pytest.fixture
def resolver(snapshot_root: Path) -> RepoRuntimeResolver:
    return RepoRuntimeResolver(snapshot_root, RuntimeDefaults())


@pytest.fixture
def diff_policy() -> DiffPolicyConfig:
    return DiffPolicyConfig()


def make_run_result(**overrides) -> TaskRunResult:
    """构建默认成功的运行结果"""
    values = {
        "tests_result": TestsResult.PASS,
        "test_log": "ok",
        "diff_hash": "a" * 64,
        "has_diff": True,
        "changed_files": ["src/app.ts"],
        "agent_logs": ["agent done"],
        "agent_meta": {},
        "pr_link": "https://github.com/org/app/pull/1",
    }
    values.update(overrides)
    return TaskRunResult(**values)


class FakeRunner:
    """TaskRunner 替身 -- 返回预设结果或抛出预设异常

    gate 不为空时在 AGENT_RUNNING 之后等待 gate 被 set，用于模拟长时间运行。
    """

    def __init__(
        self,
        result: TaskRunResult | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.result = result or make_run_result()
        self.error = error
        self.gate = gate
        self.calls: list[Task] = []

    async def run(self, task: Task, on_progress=None) -> TaskRunResult:
        self.calls.append(task)
        if on_progress is not None:
            await on_progress(ProgressStage.AGENT_RUNNING)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if on_progress is not None:
            await on_progress(ProgressStage.SANDBOX_TESTING)
            if self.result.has_diff:
                await on_progress(ProgressStage.CREATING_PR)
        return self.result


class FakeSandbox:
    """DockerSandbox 替身"""

    def __init__(self, exit_code: int = 0, log: str = "tests ok", error: Exception | None = None):
        self.exit_code = exit_code
        self.log = log
        self.error = error
        self.calls: list[tuple[Task, Path]] = []

    async def run_validation(self, task: Task, candidate_path: Path):
        from okaydokki.execution.sandbox import SandboxResult

        self.calls.append((task, candidate_path))
        if self.error is not None:
            raise self.error
        return SandboxResult(test_exit_code=self.exit_code, test_log=self.log)


class FakeDelivery:
    """交付协作者替身 -- 记录调用时 candidate 中的文件"""

    def __init__(self, link: str = "https://github.com/org/app/pull/7", error: Exception | None = None):
        self.link = link
        self.error = error
        self.calls: list[tuple[Task, Path, DeliverySummary]] = []
        self.candidate_files: list[list[str]] = []

    async def create_draft_pr(self, task: Task, candidate_path: Path, summary: DeliverySummary) -> str:
        self.calls.append((task, candidate_path, summary))
        self.candidate_files.append(
            sorted(str(p.relative_to(candidate_path)) for p in candidate_path.rglob("*") if p.is_file())
        )
        if self.error is not None:
            raise self.error
        return self.link


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_runner_cls() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture
def fake_sandbox_cls() -> type[FakeSandbox]:
    return FakeSandbox


@pytest.fixture
def fake_delivery_cls() -> type[FakeDelivery]:
    return FakeDelivery


@pytest.fixture
def run_result_factory() -> Callable[..., TaskRunResult]:
    return make_run_result
