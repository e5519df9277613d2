"""Task Domain Model

Task 是工作单元。状态只能沿 VALID_TRANSITIONS 的有向边流转，
由 TaskService 独占推进；approved_by 仅在 WAIT_APPROVE_WRITE -> RUNNING 时写入一次。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import ClarifyReason, DeliveryStrategy, ErrorCode, TaskStatus


class Task(BaseModel):
    """Task 数据模型"""

    task_id: str = Field(description="唯一标识，ULID 格式")
    source: str = Field(default="api", description="来源渠道标识")
    trigger_user: str = Field(description="触发者")
    repo: str = Field(description="逻辑仓库标识（相对快照根目录）")
    branch: str = Field(description="任务分支，每个任务唯一")
    base_branch: str = Field(default="main", description="PR 目标分支")
    delivery_strategy: DeliveryStrategy = Field(
        default=DeliveryStrategy.ROLLING,
        description="交付策略",
    )
    intent: str = Field(description="自由文本目标")
    agent: str = Field(default="codex", description="执行后端标识")
    status: TaskStatus = Field(default=TaskStatus.CREATED, description="当前状态")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    approved_by: str | None = Field(default=None, description="审批人，审批前为空")
    clarify_reason: ClarifyReason | None = Field(
        default=None,
        description="WAIT_CLARIFY 原因",
    )
    missing_fields: list[str] = Field(
        default_factory=list,
        description="缺失的快照/运行时配置字段",
    )
    error_code: ErrorCode | None = Field(default=None, description="失败错误码")

    def to_api_dict(self) -> dict:
        """序列化为网关响应结构（snake_case）"""
        return {
            "task_id": self.task_id,
            "source": self.source,
            "trigger_user": self.trigger_user,
            "repo": self.repo,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "delivery_strategy": self.delivery_strategy.value,
            "intent": self.intent,
            "agent": self.agent,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "approved_by": self.approved_by,
            "clarify_reason": self.clarify_reason.value if self.clarify_reason else None,
            "missing_fields": list(self.missing_fields),
            "error_code": self.error_code.value if self.error_code else None,
        }


def branch_for_task(task_id: str) -> str:
    """根据 task_id 派生唯一任务分支名"""
    return f"agent/{task_id.lower()}"
