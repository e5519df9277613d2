"""Execution 异常体系

组件级异常（代理执行、沙箱、交付）在 TaskRunner 边界被捕获，
并统一重新抛出为携带四种错误码之一的 TaskRunnerError。
"""

from okaydokki.core.models.enums import RUNNER_ERROR_CODES, ErrorCode


class ExecutionError(Exception):
    """Execution 包基础异常"""


class ProcessSpawnError(ExecutionError):
    """外部进程无法启动（可执行文件缺失、权限不足等）"""

    def __init__(self, argv0: str, original_error: OSError) -> None:
        super().__init__(f"failed to spawn {argv0}: {original_error}")
        self.argv0 = argv0
        self.original_error = original_error


class ProcessTimeoutError(ExecutionError):
    """外部进程超时，已被终止"""

    def __init__(self, argv0: str, timeout_s: float) -> None:
        super().__init__(f"{argv0} timed out after {timeout_s}s")
        self.argv0 = argv0
        self.timeout_s = timeout_s


class AgentExecutionError(ExecutionError):
    """代理命令执行失败或 diff 计算失败"""


class SandboxError(ExecutionError):
    """沙箱未能完成运行（不同于测试本身失败）"""


class DeliveryError(ExecutionError):
    """PR 交付失败"""


class TaskRunnerError(ExecutionError):
    """TaskRunner 对外唯一异常类型

    code 只能是 AGENT_FAILED / SANDBOX_FAILED / POLICY_VIOLATION / PR_CREATE_FAILED。
    """

    def __init__(self, message: str, code: ErrorCode) -> None:
        if code not in RUNNER_ERROR_CODES:
            raise ValueError(f"unsupported runner error code: {code}")
        super().__init__(message)
        self.message = message
        self.code = code
