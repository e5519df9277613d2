"""AuditLogger -- append-only NDJSON 审计日志

写入前校验：timestamp 必须是合法 ISO 时间；eventType 必须是七种之一；
approvalDecision 仅限 APPROVE/REJECT；agentLogs 必须是字符串列表；
taskId 与 triggerUser 必填非空。

校验失败同步抛出 AuditValidationError，调用方（TaskService）必须视为致命错误，
不可审计的状态流转不允许静默继续。
"""

import json
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from .models.audit import AUDIT_VERSION, AuditRecord

log = structlog.get_logger()


class AuditValidationError(ValueError):
    """审计记录校验失败"""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class AuditLogger:
    """审计日志追加器

    同一实例内的追加互斥，每条记录一次 write 调用写入完整一行，
    并发调用方不会产生交错的半行。
    """

    def __init__(self, file_path: str | Path) -> None:
        self._path = Path(file_path).resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: Mapping[str, Any] | AuditRecord) -> AuditRecord:
        """校验并追加一条审计记录

        Args:
            record: 记录字段（snake_case 或 camelCase 键均可），auditVersion 缺省为 "1.0"

        Returns:
            校验后的 AuditRecord

        Raises:
            AuditValidationError: 记录不符合 schema
        """
        if isinstance(record, AuditRecord):
            data: dict[str, Any] = record.model_dump(by_alias=True, exclude_none=True)
        else:
            data = dict(record)
        if data.get("auditVersion") is None and data.get("audit_version") is None:
            data["audit_version"] = AUDIT_VERSION

        try:
            validated = AuditRecord.model_validate(data)
        except ValidationError as e:
            details = e.errors(include_url=False)
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in details)
            raise AuditValidationError(
                f"invalid audit record: {fields or 'unknown field'}",
                errors=details,
            ) from e

        line = validated.to_json_line() + "\n"
        with self._lock:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

        log.debug(
            "audit_appended",
            task_id=validated.task_id,
            event_type=validated.event_type.value,
        )
        return validated

    def read_task_history(self, task_id: str) -> list[AuditRecord]:
        """按文件顺序返回指定任务的全部审计记录（跳过损坏行）"""
        if not self._path.exists():
            return []

        records: list[AuditRecord] = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_no, raw in enumerate(f, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    log.warning("audit_line_malformed", line_no=line_no)
                    continue
                if not isinstance(data, dict) or data.get("taskId") != task_id:
                    continue
                try:
                    records.append(AuditRecord.model_validate(data))
                except ValidationError:
                    log.warning("audit_line_invalid", line_no=line_no, task_id=task_id)
        return records
