"""枚举定义 -- 任务状态机、审计事件、动作与进度阶段

包含 TaskStatus 状态机、AuditEventType、TaskAction、ProgressStage、ErrorCode 等枚举，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机"""

    CREATED = "CREATED"
    WAIT_CLARIFY = "WAIT_CLARIFY"
    WAIT_APPROVE_WRITE = "WAIT_APPROVE_WRITE"
    RUNNING = "RUNNING"
    PR_CREATED = "PR_CREATED"

    # 终态
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# 合法状态流转（有向边）
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {
        TaskStatus.WAIT_CLARIFY,
        TaskStatus.WAIT_APPROVE_WRITE,
        TaskStatus.FAILED,
    },
    TaskStatus.WAIT_CLARIFY: {TaskStatus.WAIT_APPROVE_WRITE, TaskStatus.FAILED},
    TaskStatus.WAIT_APPROVE_WRITE: {TaskStatus.RUNNING, TaskStatus.FAILED},
    TaskStatus.RUNNING: {
        TaskStatus.PR_CREATED,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.PR_CREATED: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
}

# 已获批准、执行中（或交付中）的状态；进程重启后需要对账
IN_FLIGHT_STATES: set[TaskStatus] = {
    TaskStatus.RUNNING,
    TaskStatus.PR_CREATED,
}


class AuditEventType(StrEnum):
    """审计事件类型"""

    REQUEST = "REQUEST"
    RETRY = "RETRY"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RUN = "RUN"
    PR_CREATED = "PR_CREATED"
    FAILED = "FAILED"


class ApprovalDecision(StrEnum):
    """审批决定"""

    APPROVE = "APPROVE"
    REJECT = "REJECT"


class TaskAction(StrEnum):
    """用户动作 -- 在边界处一次性解码，内部不再做字符串匹配"""

    RETRY = "retry"
    APPROVE = "approve"
    REJECT = "reject"

    @classmethod
    def parse(cls, value: str) -> "TaskAction | None":
        """将外部字符串解码为 TaskAction，非法值返回 None"""
        try:
            return cls(value)
        except ValueError:
            return None


class ProgressStage(StrEnum):
    """TaskRunner 执行进度阶段"""

    AGENT_RUNNING = "AGENT_RUNNING"
    SANDBOX_TESTING = "SANDBOX_TESTING"
    CREATING_PR = "CREATING_PR"


class DeliveryStrategy(StrEnum):
    """交付策略

    rolling: 基于快照当前 HEAD 叠加新分支
    isolated: 从 base 分支全新切出
    """

    ROLLING = "rolling"
    ISOLATED = "isolated"


class TestsResult(StrEnum):
    """沙箱测试结果"""

    __test__ = False

    PASS = "PASS"
    FAIL = "FAIL"


class ClarifyReason(StrEnum):
    """进入 WAIT_CLARIFY 的原因"""

    SNAPSHOT_MISSING = "SNAPSHOT_MISSING"
    RUNTIME_CONFIG_MISSING = "RUNTIME_CONFIG_MISSING"


class ErrorCode(StrEnum):
    """稳定错误码"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    INVALID_ACTION = "INVALID_ACTION"
    STATE_CONFLICT = "STATE_CONFLICT"
    SNAPSHOT_MISSING = "SNAPSHOT_MISSING"
    RUNTIME_CONFIG_MISSING = "RUNTIME_CONFIG_MISSING"
    AGENT_FAILED = "AGENT_FAILED"
    SANDBOX_FAILED = "SANDBOX_FAILED"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    TEST_FAILED = "TEST_FAILED"
    PR_CREATE_FAILED = "PR_CREATE_FAILED"
    RUN_FAILED = "RUN_FAILED"


# TaskRunner 只允许抛出的四种错误码
RUNNER_ERROR_CODES: set[ErrorCode] = {
    ErrorCode.AGENT_FAILED,
    ErrorCode.SANDBOX_FAILED,
    ErrorCode.POLICY_VIOLATION,
    ErrorCode.PR_CREATE_FAILED,
}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
