"""CLI 入口模块 -- python -m okaydokki.core <command>

支持的命令：
  audit-task <task_id>  打印任务的审计时间线
  reconcile             将中断的 RUNNING/PR_CREATED 任务置为 FAILED（需在网关停止时执行）
"""

import asyncio
import sys

from .audit_logger import AuditLogger
from .config import get_audit_log_path, get_db_path
from .models.audit import AuditRecord

_USAGE = """用法: python -m okaydokki.core <command>
命令:
  audit-task <task_id>  打印任务的审计时间线
  reconcile             将中断的运行置为 FAILED"""


def main(argv: list[str] | None = None) -> None:
    """CLI 主入口"""
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print(_USAGE)
        sys.exit(1)

    command = args[0]

    if command == "audit-task":
        if len(args) < 2:
            print("用法: python -m okaydokki.core audit-task <task_id>")
            sys.exit(1)
        sys.exit(audit_task(args[1]))
    elif command == "reconcile":
        asyncio.run(reconcile())
    else:
        print(f"未知命令: {command}")
        print("可用命令: audit-task, reconcile")
        sys.exit(1)


def format_audit_line(record: AuditRecord) -> str:
    """格式化单条审计记录为时间线中的一行"""
    return " | ".join(
        [
            record.timestamp,
            record.event_type.value,
            f"code={record.error_code.value if record.error_code else '-'}",
            f"tests={record.tests_result.value if record.tests_result else '-'}",
            f"pr={record.pr_link or '-'}",
            f"msg={record.message or '-'}",
        ]
    )


def audit_task(task_id: str) -> int:
    """打印审计时间线，返回退出码"""
    audit_path = get_audit_log_path()
    records = AuditLogger(audit_path).read_task_history(task_id)
    if not records:
        print(f"未找到任务 {task_id} 的审计记录 ({audit_path})")
        return 1

    print(f"任务 {task_id}，共 {len(records)} 条审计记录")
    for record in records:
        print(format_audit_line(record))
    return 0


async def reconcile() -> None:
    """执行中断运行对账"""
    from .reconcile import reconcile_interrupted_runs
    from .store import create_store_group

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store_group = await create_store_group(db_path)
    try:
        reconciled = await reconcile_interrupted_runs(
            store_group.task_store,
            AuditLogger(get_audit_log_path()),
        )
        print(f"对账完成，{len(reconciled)} 个任务被置为 FAILED")
        for task in reconciled:
            print(f"  {task.task_id} ({task.repo})")
    finally:
        await store_group.conn.close()


if __name__ == "__main__":
    main()
