"""OkayDokki -- 人工审批驱动的 AI 编码代理执行平台

core: 领域模型、状态机、持久化、审计与 Diff 策略
execution: 代理执行、沙箱验证、PR 交付与 TaskRunner 编排
gateway: FastAPI 网关与 TaskService 状态机服务
"""

__version__ = "0.1.0"
