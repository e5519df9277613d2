"""SqliteTaskStore 测试 -- CRUD、列表排序、CAS 状态更新"""

from datetime import UTC, datetime, timedelta

import pytest
from okaydokki.core.models import (
    ClarifyReason,
    ErrorCode,
    Task,
    TaskStatus,
)
from okaydokki.core.store import StoreGroup, TaskStatusConflictError, verify_wal_mode

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _task(task_id: str, status: TaskStatus = TaskStatus.WAIT_APPROVE_WRITE, **overrides) -> Task:
    values = {
        "task_id": task_id,
        "trigger_user": "alice",
        "repo": "org/app",
        "branch": f"agent/{task_id.lower()}",
        "intent": "fix login",
        "status": status,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }
    values.update(overrides)
    return Task(**values)


class TestTaskStoreCrud:
    async def test_wal_mode_enabled(self, store_group: StoreGroup):
        assert await verify_wal_mode(store_group.conn)

    async def test_create_and_get(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(
            _task(
                "T1",
                status=TaskStatus.WAIT_CLARIFY,
                clarify_reason=ClarifyReason.RUNTIME_CONFIG_MISSING,
                missing_fields=["test_command"],
            )
        )

        loaded = await store.get_task("T1")
        assert loaded is not None
        assert loaded.status == TaskStatus.WAIT_CLARIFY
        assert loaded.clarify_reason == ClarifyReason.RUNTIME_CONFIG_MISSING
        assert loaded.missing_fields == ["test_command"]
        assert loaded.created_at == BASE_TIME
        assert loaded.approved_by is None

    async def test_get_missing_returns_none(self, store_group: StoreGroup):
        assert await store_group.task_store.get_task("missing") is None

    async def test_list_newest_first_with_limit(self, store_group: StoreGroup):
        store = store_group.task_store
        for i in range(5):
            created = BASE_TIME + timedelta(minutes=i)
            await store.create_task(_task(f"T{i}", created_at=created, updated_at=created))

        tasks = await store.list_tasks(limit=3)
        assert [t.task_id for t in tasks] == ["T4", "T3", "T2"]

    async def test_list_filters_by_status(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("A", status=TaskStatus.WAIT_CLARIFY))
        await store.create_task(_task("B"))

        tasks = await store.list_tasks(limit=10, status=TaskStatus.WAIT_CLARIFY)
        assert [t.task_id for t in tasks] == ["A"]

    async def test_list_by_statuses(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("A", status=TaskStatus.RUNNING))
        await store.create_task(_task("B", status=TaskStatus.PR_CREATED))
        await store.create_task(_task("C", status=TaskStatus.COMPLETED))

        tasks = await store.list_tasks_by_statuses({TaskStatus.RUNNING, TaskStatus.PR_CREATED})
        assert sorted(t.task_id for t in tasks) == ["A", "B"]
        assert await store.list_tasks_by_statuses(set()) == []


class TestTaskStoreStatusUpdate:
    async def test_cas_update_succeeds(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("T1"))
        later = BASE_TIME + timedelta(seconds=5)

        updated = await store.update_task_status(
            "T1",
            TaskStatus.RUNNING,
            TaskStatus.WAIT_APPROVE_WRITE,
            later,
            approved_by="bob",
        )
        assert updated.status == TaskStatus.RUNNING
        assert updated.approved_by == "bob"
        assert updated.updated_at == later

    async def test_stale_expected_status_conflicts(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("T1"))
        await store.update_task_status(
            "T1", TaskStatus.RUNNING, TaskStatus.WAIT_APPROVE_WRITE, BASE_TIME
        )

        with pytest.raises(TaskStatusConflictError) as exc_info:
            await store.update_task_status(
                "T1", TaskStatus.RUNNING, TaskStatus.WAIT_APPROVE_WRITE, BASE_TIME
            )
        assert exc_info.value.actual_status == TaskStatus.RUNNING
        assert exc_info.value.expected_status == TaskStatus.WAIT_APPROVE_WRITE

    async def test_illegal_transition_rejected_without_write(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("T1", status=TaskStatus.COMPLETED))

        with pytest.raises(TaskStatusConflictError):
            await store.update_task_status(
                "T1", TaskStatus.RUNNING, TaskStatus.COMPLETED, BASE_TIME
            )
        loaded = await store.get_task("T1")
        assert loaded.status == TaskStatus.COMPLETED

    async def test_missing_task_conflicts(self, store_group: StoreGroup):
        with pytest.raises(TaskStatusConflictError) as exc_info:
            await store_group.task_store.update_task_status(
                "missing", TaskStatus.RUNNING, TaskStatus.WAIT_APPROVE_WRITE, BASE_TIME
            )
        assert exc_info.value.actual_status is None

    async def test_row_vanishing_after_update_conflicts(
        self, store_group: StoreGroup, monkeypatch: pytest.MonkeyPatch
    ):
        store = store_group.task_store
        await store.create_task(_task("T1"))

        async def _gone(task_id: str):
            return None

        monkeypatch.setattr(store, "get_task", _gone)
        with pytest.raises(TaskStatusConflictError) as exc_info:
            await store.update_task_status(
                "T1", TaskStatus.RUNNING, TaskStatus.WAIT_APPROVE_WRITE, BASE_TIME
            )
        assert exc_info.value.actual_status is None
        assert exc_info.value.target_status == TaskStatus.RUNNING

    async def test_approved_by_written_once(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("T1", status=TaskStatus.RUNNING, approved_by="bob"))

        updated = await store.update_task_status(
            "T1", TaskStatus.PR_CREATED, TaskStatus.RUNNING, BASE_TIME, approved_by="mallory"
        )
        assert updated.approved_by == "bob"

    async def test_failed_with_error_code(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(_task("T1", status=TaskStatus.RUNNING))

        updated = await store.update_task_status(
            "T1",
            TaskStatus.FAILED,
            TaskStatus.RUNNING,
            BASE_TIME,
            error_code=ErrorCode.SANDBOX_FAILED,
        )
        assert updated.status == TaskStatus.FAILED
        assert updated.error_code == ErrorCode.SANDBOX_FAILED

    async def test_clear_clarify(self, store_group: StoreGroup):
        store = store_group.task_store
        await store.create_task(
            _task(
                "T1",
                status=TaskStatus.WAIT_CLARIFY,
                clarify_reason=ClarifyReason.SNAPSHOT_MISSING,
                missing_fields=["okaydokki.yaml"],
            )
        )

        updated = await store.update_task_status(
            "T1",
            TaskStatus.WAIT_APPROVE_WRITE,
            TaskStatus.WAIT_CLARIFY,
            BASE_TIME,
            clear_clarify=True,
        )
        assert updated.clarify_reason is None
        assert updated.missing_fields == []
