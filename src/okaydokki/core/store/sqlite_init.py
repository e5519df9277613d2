"""SQLite 数据库初始化

PRAGMA 配置 + tasks 表 DDL + 索引创建。
使用 aiosqlite 异步操作。审计历史不入库，由 NDJSON 审计日志承载。
"""

import aiosqlite

# tasks 表 DDL
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id           TEXT PRIMARY KEY,
    source            TEXT NOT NULL DEFAULT 'api',
    trigger_user      TEXT NOT NULL,
    repo              TEXT NOT NULL,
    branch            TEXT NOT NULL,
    base_branch       TEXT NOT NULL DEFAULT 'main',
    delivery_strategy TEXT NOT NULL DEFAULT 'rolling',
    intent            TEXT NOT NULL,
    agent             TEXT NOT NULL DEFAULT 'codex',
    status            TEXT NOT NULL DEFAULT 'CREATED',
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    approved_by       TEXT,
    clarify_reason    TEXT,
    missing_fields    TEXT NOT NULL DEFAULT '[]',
    error_code        TEXT
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_TASKS_DDL)
    for idx_sql in _TASKS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
