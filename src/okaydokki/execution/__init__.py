"""OkayDokki Execution -- 代理执行、沙箱验证、PR 交付与执行编排"""

from .agent_command import ALLOWED_PLACEHOLDERS, AgentCommandBuilder
from .delivery import DeliveryCollaborator, GitHubPrCreator
from .exceptions import (
    AgentExecutionError,
    DeliveryError,
    ExecutionError,
    ProcessSpawnError,
    ProcessTimeoutError,
    SandboxError,
    TaskRunnerError,
)
from .host_executor import HostAgentExecutor, HostExecutionResult
from .process import ProcessResult, run_process
from .runner import ProgressCallback, TaskRunner, compute_diff_hash
from .sandbox import DockerSandbox, SandboxResult

__all__ = [
    "ALLOWED_PLACEHOLDERS",
    "AgentCommandBuilder",
    "AgentExecutionError",
    "DeliveryCollaborator",
    "DeliveryError",
    "DockerSandbox",
    "ExecutionError",
    "GitHubPrCreator",
    "HostAgentExecutor",
    "HostExecutionResult",
    "ProcessResult",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProgressCallback",
    "SandboxError",
    "SandboxResult",
    "TaskRunner",
    "TaskRunnerError",
    "compute_diff_hash",
    "run_process",
]
