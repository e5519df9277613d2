"""Run Result Domain Model -- 一次 TaskRunner 调用的产出"""

from pydantic import BaseModel, Field

from .enums import TestsResult


class TaskRunResult(BaseModel):
    """TaskRunner 聚合结果"""

    tests_result: TestsResult = Field(description="沙箱测试结果 PASS/FAIL")
    test_log: str = Field(default="", description="测试输出")
    diff_hash: str = Field(description="候选 diff 的 SHA-256")
    has_diff: bool = Field(description="是否存在改动")
    changed_files: list[str] = Field(default_factory=list, description="变更文件列表")
    agent_logs: list[str] = Field(default_factory=list, description="代理日志")
    agent_meta: dict[str, str] = Field(default_factory=dict, description="代理元数据（扁平字符串映射）")
    pr_link: str | None = Field(default=None, description="PR 链接，无 diff 时为空")

    def to_api_dict(self) -> dict:
        """序列化为网关响应结构"""
        return {
            "tests_result": self.tests_result.value,
            "test_log": self.test_log,
            "diff_hash": self.diff_hash,
            "has_diff": self.has_diff,
            "changed_files": list(self.changed_files),
            "agent_logs": list(self.agent_logs),
            "agent_meta": dict(self.agent_meta),
            "pr_link": self.pr_link,
        }


class DeliverySummary(BaseModel):
    """交付摘要 -- 传递给 PR 创建协作者"""

    tests_result: TestsResult
    changed_files: list[str] = Field(default_factory=list)
    policy_checks: list[str] = Field(default_factory=list)
