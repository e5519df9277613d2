"""CLI 测试 -- 审计时间线与对账命令"""

from pathlib import Path

import pytest
from okaydokki.core.__main__ import audit_task, format_audit_line, main
from okaydokki.core.audit_logger import AuditLogger
from okaydokki.core.models import AuditRecord


@pytest.fixture
def audit_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "audit.jsonl"
    monkeypatch.setenv("OKAYDOKKI_AUDIT_LOG_PATH", str(path))
    return path


class TestFormatAuditLine:
    def test_full_record(self):
        record = AuditRecord(
            timestamp="2026-01-01T00:00:00+00:00",
            task_id="T1",
            trigger_user="alice",
            event_type="FAILED",
            error_code="TEST_FAILED",
            tests_result="FAIL",
            message="Tests failed",
        )
        assert format_audit_line(record) == (
            "2026-01-01T00:00:00+00:00 | FAILED | code=TEST_FAILED | tests=FAIL | pr=- | "
            "msg=Tests failed"
        )

    def test_empty_fields_render_as_dash(self):
        record = AuditRecord(
            timestamp="2026-01-01T00:00:00+00:00",
            task_id="T1",
            trigger_user="alice",
            event_type="REQUEST",
        )
        assert format_audit_line(record).endswith("code=- | tests=- | pr=- | msg=-")


class TestAuditTaskCommand:
    def test_prints_timeline(self, audit_path: Path, capsys: pytest.CaptureFixture):
        logger = AuditLogger(audit_path)
        logger.append(
            {
                "timestamp": "2026-01-01T00:00:00+00:00",
                "task_id": "T1",
                "trigger_user": "alice",
                "event_type": "REQUEST",
                "message": "fix login",
            }
        )
        logger.append(
            {
                "timestamp": "2026-01-01T00:01:00+00:00",
                "task_id": "T1",
                "trigger_user": "bob",
                "event_type": "APPROVE",
                "approval_decision": "APPROVE",
            }
        )

        assert audit_task("T1") == 0
        out = capsys.readouterr().out
        assert "REQUEST" in out
        assert "APPROVE" in out
        assert out.index("REQUEST") < out.index("APPROVE")

    def test_unknown_task_exits_nonzero(self, audit_path: Path):
        assert audit_task("missing") == 1

    def test_main_dispatch(self, audit_path: Path):
        with pytest.raises(SystemExit) as exc_info:
            main(["audit-task", "missing"])
        assert exc_info.value.code == 1

    def test_main_without_args_prints_usage(self, capsys: pytest.CaptureFixture):
        with pytest.raises(SystemExit):
            main([])
        assert "audit-task" in capsys.readouterr().out

    def test_unknown_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["frobnicate"])
        assert exc_info.value.code == 1


class TestReconcileCommand:
    def test_reconcile_on_empty_db(
        self,
        tmp_path: Path,
        audit_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture,
    ):
        monkeypatch.setenv("OKAYDOKKI_DB_PATH", str(tmp_path / "sqlite" / "cli.db"))
        main(["reconcile"])
        assert "0" in capsys.readouterr().out
