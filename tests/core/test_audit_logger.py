"""审计日志测试 -- 校验、追加、并发写入与历史读取"""

import asyncio
import json
import threading
from pathlib import Path

import pytest
from okaydokki.core.audit_logger import AuditLogger, AuditValidationError
from okaydokki.core.models import AuditEventType


def _record(**overrides) -> dict:
    values = {
        "timestamp": "2026-01-02T03:04:05+00:00",
        "task_id": "task-1",
        "trigger_user": "alice",
        "event_type": AuditEventType.REQUEST,
        "message": "fix login",
    }
    values.update(overrides)
    return values


def _lines(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestAuditAppend:
    def test_creates_parent_directory(self, tmp_path: Path):
        logger = AuditLogger(tmp_path / "nested" / "dir" / "audit.jsonl")
        logger.append(_record())
        assert (tmp_path / "nested" / "dir" / "audit.jsonl").exists()

    def test_writes_one_camel_case_line(self, audit_logger: AuditLogger):
        audit_logger.append(_record())
        assert _lines(audit_logger.path) == [
            {
                "auditVersion": "1.0",
                "timestamp": "2026-01-02T03:04:05+00:00",
                "taskId": "task-1",
                "triggerUser": "alice",
                "eventType": "REQUEST",
                "message": "fix login",
            }
        ]

    def test_accepts_camel_case_keys(self, audit_logger: AuditLogger):
        record = audit_logger.append(
            {
                "timestamp": "2026-01-02T03:04:05Z",
                "taskId": "task-1",
                "triggerUser": "alice",
                "eventType": "APPROVE",
                "approvalDecision": "APPROVE",
            }
        )
        assert record.approval_decision.value == "APPROVE"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"timestamp": "not-a-date"},
            {"event_type": "DEPLOY"},
            {"approval_decision": "MAYBE"},
            {"agent_logs": ["ok", 3]},
            {"agent_logs": "not-a-list"},
            {"task_id": ""},
            {"trigger_user": ""},
        ],
    )
    def test_invalid_records_raise_and_write_nothing(
        self, audit_logger: AuditLogger, overrides: dict
    ):
        with pytest.raises(AuditValidationError):
            audit_logger.append(_record(**overrides))
        assert not audit_logger.path.exists() or audit_logger.path.read_text() == ""

    def test_missing_required_field_raises(self, audit_logger: AuditLogger):
        record = _record()
        del record["trigger_user"]
        with pytest.raises(AuditValidationError) as exc_info:
            audit_logger.append(record)
        assert "triggerUser" in str(exc_info.value)

    def test_validation_error_is_value_error(self):
        assert issubclass(AuditValidationError, ValueError)

    def test_concurrent_threads_do_not_interleave(self, audit_logger: AuditLogger):
        long_message = "x" * 8192

        def worker(n: int) -> None:
            for i in range(25):
                audit_logger.append(_record(task_id=f"task-{n}", message=f"{i}-{long_message}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = _lines(audit_logger.path)
        assert len(lines) == 200
        for n in range(8):
            messages = [r["message"].split("-")[0] for r in lines if r["taskId"] == f"task-{n}"]
            assert messages == [str(i) for i in range(25)]

    async def test_concurrent_tasks_append_complete_lines(self, audit_logger: AuditLogger):
        async def worker(n: int) -> None:
            for i in range(10):
                await asyncio.to_thread(
                    audit_logger.append, _record(task_id=f"t{n}", message=str(i))
                )

        await asyncio.gather(*(worker(n) for n in range(5)))
        assert len(_lines(audit_logger.path)) == 50


class TestReadTaskHistory:
    def test_missing_file_returns_empty(self, audit_logger: AuditLogger):
        assert audit_logger.read_task_history("nope") == []

    def test_filters_by_task_and_keeps_file_order(self, audit_logger: AuditLogger):
        audit_logger.append(_record(event_type="REQUEST"))
        audit_logger.append(_record(task_id="other"))
        audit_logger.append(_record(event_type="APPROVE", approval_decision="APPROVE"))
        audit_logger.append(_record(event_type="RUN", tests_result="PASS"))

        history = audit_logger.read_task_history("task-1")
        assert [r.event_type.value for r in history] == ["REQUEST", "APPROVE", "RUN"]

    def test_skips_malformed_lines(self, audit_logger: AuditLogger):
        audit_logger.append(_record())
        with audit_logger.path.open("a", encoding="utf-8") as f:
            f.write("{not json\n")
            f.write('{"taskId": "task-1", "eventType": "BOGUS"}\n')
            f.write("\n")
        audit_logger.append(_record(event_type="RETRY"))

        history = audit_logger.read_task_history("task-1")
        assert [r.event_type.value for r in history] == ["REQUEST", "RETRY"]
