"""Audit Record Domain Model

每个事件一行不可变 JSON（camelCase 键）。同一 taskId 的有序记录即任务的完整历史。
记录创建后不允许修改或删除。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator
from pydantic.alias_generators import to_camel

from .enums import ApprovalDecision, AuditEventType, ErrorCode, TestsResult

AUDIT_VERSION = "1.0"


class AuditRecord(BaseModel):
    """审计记录 -- 序列化为 NDJSON 的一行"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    audit_version: str = Field(default=AUDIT_VERSION, min_length=1)
    timestamp: str = Field(description="ISO-8601 时间戳")
    task_id: str = Field(min_length=1)
    trigger_user: str = Field(min_length=1)
    event_type: AuditEventType
    error_code: ErrorCode | None = None
    diff_hash: str | None = None
    agent_logs: list[StrictStr] | None = None
    approval_decision: ApprovalDecision | None = None
    tests_result: TestsResult | None = None
    pr_link: str | None = None
    message: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_is_iso(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value)
        except ValueError as e:
            raise ValueError("timestamp must be a valid ISO datetime") from e
        return value

    def to_json_line(self) -> str:
        """序列化为单行 JSON（省略空字段）"""
        return self.model_dump_json(by_alias=True, exclude_none=True)
