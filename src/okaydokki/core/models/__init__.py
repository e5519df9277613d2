"""OkayDokki Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .audit import AUDIT_VERSION, AuditRecord
from .enums import (
    IN_FLIGHT_STATES,
    RUNNER_ERROR_CODES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ApprovalDecision,
    AuditEventType,
    ClarifyReason,
    DeliveryStrategy,
    ErrorCode,
    ProgressStage,
    TaskAction,
    TaskStatus,
    TestsResult,
    validate_transition,
)
from .run import DeliverySummary, TaskRunResult
from .task import Task, branch_for_task

__all__ = [
    # 枚举
    "TaskStatus",
    "AuditEventType",
    "ApprovalDecision",
    "TaskAction",
    "ProgressStage",
    "DeliveryStrategy",
    "TestsResult",
    "ClarifyReason",
    "ErrorCode",
    "RUNNER_ERROR_CODES",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "IN_FLIGHT_STATES",
    "validate_transition",
    # Task
    "Task",
    "branch_for_task",
    # Run
    "TaskRunResult",
    "DeliverySummary",
    # Audit
    "AuditRecord",
    "AUDIT_VERSION",
]
