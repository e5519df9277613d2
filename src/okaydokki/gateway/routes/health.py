"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性、审计日志目录、快照根目录、磁盘空间，
            以及当前生效的 Diff 策略与契约版本。
"""

import os
import shutil

import structlog
from fastapi import APIRouter, Request
from okaydokki.core.models import AUDIT_VERSION
from starlette.responses import JSONResponse

log = structlog.get_logger()

router = APIRouter()

CONTRACT_VERSIONS = {
    "task_lifecycle": "v1",
    "gateway_api": "v1",
    "audit_log": AUDIT_VERSION,
}


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request):
    """Readiness 检查 -- 验证核心依赖可用性

    检查项：
    1. sqlite: 数据库连通性
    2. audit_log: 审计日志目录存在且可写
    3. repo_snapshot_root: 快照根目录存在
    4. disk_space_mb: 磁盘剩余空间
    """
    checks: dict = {}
    all_ok = True

    # 1. SQLite 连通性检查
    try:
        store_group = request.app.state.store_group
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        checks["sqlite"] = "ok"
    except Exception as e:
        log.warning("ready_check_failed", check="sqlite", error=str(e))
        checks["sqlite"] = f"error: {e}"
        all_ok = False

    # 2. 审计日志目录
    audit_dir = request.app.state.audit_logger.path.parent
    if audit_dir.is_dir() and os.access(audit_dir, os.W_OK):
        checks["audit_log"] = "ok"
    else:
        checks["audit_log"] = "error: directory missing or not writable"
        all_ok = False

    # 3. 快照根目录
    snapshot_root = request.app.state.resolver.snapshot_root
    if snapshot_root.is_dir():
        checks["repo_snapshot_root"] = "ok"
    else:
        checks["repo_snapshot_root"] = "error: directory does not exist"
        all_ok = False

    # 4. 磁盘空间检查
    try:
        disk_usage = shutil.disk_usage(audit_dir if audit_dir.exists() else "/")
        checks["disk_space_mb"] = disk_usage.free // (1024 * 1024)
    except OSError:
        checks["disk_space_mb"] = 0
        all_ok = False

    policy = request.app.state.diff_policy
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ready" if all_ok else "not_ready",
            "checks": checks,
            "policy": {
                "blocked_path_prefixes": list(policy.blocked_path_prefixes),
                "max_changed_files": policy.max_changed_files,
                "max_diff_bytes": policy.max_diff_bytes,
                "disallow_binary_patch": policy.disallow_binary_patch,
            },
            "contracts": CONTRACT_VERSIONS,
        },
    )
