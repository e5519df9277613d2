"""OkayDokki Core -- 领域模型、配置、任务存储、审计日志与 Diff 策略"""
