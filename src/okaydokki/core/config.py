"""配置模块 -- 可通过环境变量覆盖

包含数据库/审计日志/快照根目录路径、Diff 策略、运行时回退值与执行参数。
数值型环境变量解析失败时记录 warning 并回退默认值，不阻塞启动。
"""

import os
import tempfile
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .models.enums import DeliveryStrategy

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("OKAYDOKKI_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "OKAYDOKKI_DB_PATH",
        str(_get_base_dir() / "sqlite" / "okaydokki.db"),
    )


def get_audit_log_path() -> Path:
    """获取审计日志（NDJSON）路径"""
    return Path(
        os.environ.get(
            "OKAYDOKKI_AUDIT_LOG_PATH",
            str(_get_base_dir() / "audit.jsonl"),
        )
    )


def get_repo_snapshot_root() -> Path:
    """获取仓库快照根目录"""
    return Path(os.environ.get("OKAYDOKKI_REPO_SNAPSHOT_ROOT", "repos"))


def get_workspace_root() -> Path:
    """获取临时工作区根目录（默认系统临时目录）"""
    return Path(os.environ.get("OKAYDOKKI_WORKSPACE_ROOT", tempfile.gettempdir()))


# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = int(
    os.environ.get("OKAYDOKKI_SSE_HEARTBEAT_INTERVAL", "15")
)

# 审计/列表等的默认分页大小
DEFAULT_LIST_LIMIT: int = 20
MAX_LIST_LIMIT: int = 100

# 每个仓库快照根目录下的运行时配置文件名
RUNTIME_CONFIG_FILENAME: str = "okaydokki.yaml"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    return default


def _read_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(
            "invalid_int_config",
            env_var=name,
            value=raw,
            fallback=default,
        )
        return default


class DiffPolicyConfig(BaseModel):
    """Diff 策略配置 -- 启动时加载一次，进程生命周期内只读

    环境变量:
        OKAYDOKKI_BLOCKED_PATH_PREFIXES: 逗号分隔的禁止修改路径前缀
        OKAYDOKKI_MAX_CHANGED_FILES: 最大变更文件数
        OKAYDOKKI_MAX_DIFF_BYTES: diff 最大字节数
        OKAYDOKKI_DISALLOW_BINARY_PATCH: 是否禁止二进制补丁
    """

    model_config = ConfigDict(frozen=True)

    blocked_path_prefixes: tuple[str, ...] = Field(
        default=(".github/workflows/", "secrets/"),
        description="禁止修改的路径前缀",
    )
    max_changed_files: int = Field(default=200, ge=0, description="最大变更文件数")
    max_diff_bytes: int = Field(default=500_000, ge=0, description="diff 最大字节数")
    disallow_binary_patch: bool = Field(default=True, description="禁止二进制补丁")


def load_diff_policy() -> DiffPolicyConfig:
    """从环境变量加载 Diff 策略配置"""
    kwargs: dict = {}

    if (val := os.environ.get("OKAYDOKKI_BLOCKED_PATH_PREFIXES")) is not None:
        kwargs["blocked_path_prefixes"] = tuple(_split_csv(val))

    kwargs["max_changed_files"] = _read_int_env("OKAYDOKKI_MAX_CHANGED_FILES", 200)
    kwargs["max_diff_bytes"] = _read_int_env("OKAYDOKKI_MAX_DIFF_BYTES", 500_000)
    kwargs["disallow_binary_patch"] = _parse_bool(
        os.environ.get("OKAYDOKKI_DISALLOW_BINARY_PATCH"), True
    )

    return DiffPolicyConfig(**kwargs)


class RuntimeDefaults(BaseModel):
    """仓库运行时回退配置 -- 仅在仓库自身 okaydokki.yaml 缺字段时使用

    环境变量:
        OKAYDOKKI_SANDBOX_IMAGE: 沙箱镜像
        OKAYDOKKI_DEFAULT_TEST_COMMAND: 默认测试命令
        OKAYDOKKI_ALLOWED_TEST_COMMANDS: 逗号分隔的测试命令白名单
    """

    model_config = ConfigDict(frozen=True)

    sandbox_image: str = "node:22-bookworm-slim"
    test_command: str = "npm test"
    allowed_test_commands: tuple[str, ...] = ("npm test",)


def load_runtime_defaults() -> RuntimeDefaults:
    """从环境变量加载仓库运行时回退配置"""
    kwargs: dict = {}

    if val := os.environ.get("OKAYDOKKI_SANDBOX_IMAGE"):
        kwargs["sandbox_image"] = val

    if val := os.environ.get("OKAYDOKKI_DEFAULT_TEST_COMMAND"):
        kwargs["test_command"] = val

    if val := os.environ.get("OKAYDOKKI_ALLOWED_TEST_COMMANDS"):
        kwargs["allowed_test_commands"] = tuple(_split_csv(val))

    return RuntimeDefaults(**kwargs)


DEFAULT_AGENT_CLI_TEMPLATE = (
    "printf 'agent placeholder for %s\\n' \"$OKD_INTENT\" "
    "&& touch .okaydokki-agent "
    "&& printf '{\"engine\":\"codex\",\"protocol\":\"v1\"}\\n' > \"$OKD_OUTDIR/agent.meta.json\""
)


class ExecutionConfig(BaseModel):
    """执行层配置 -- 代理命令模板、交付默认值、外部进程超时

    环境变量:
        OKAYDOKKI_AGENT_CLI_TEMPLATE: 代理命令模板（{{ placeholder }} 语法）
        OKAYDOKKI_DEFAULT_AGENT: 默认执行后端
        OKAYDOKKI_DELIVERY_STRATEGY: 默认交付策略 rolling/isolated
        OKAYDOKKI_BASE_BRANCH: 默认 PR 目标分支
        OKAYDOKKI_AGENT_TIMEOUT_S / OKAYDOKKI_SANDBOX_TIMEOUT_S / OKAYDOKKI_DELIVERY_TIMEOUT_S
        OKAYDOKKI_DOCKER_BIN / OKAYDOKKI_GIT_BIN / OKAYDOKKI_GH_BIN
    """

    model_config = ConfigDict(frozen=True)

    agent_cli_template: str = DEFAULT_AGENT_CLI_TEMPLATE
    default_agent: str = "codex"
    delivery_strategy: DeliveryStrategy = DeliveryStrategy.ROLLING
    base_branch: str = "main"
    agent_timeout_s: int = Field(default=1800, ge=1)
    sandbox_timeout_s: int = Field(default=1800, ge=1)
    delivery_timeout_s: int = Field(default=300, ge=1)
    docker_bin: str = "docker"
    git_bin: str = "git"
    gh_bin: str = "gh"


def load_execution_config() -> ExecutionConfig:
    """从环境变量加载执行层配置"""
    kwargs: dict = {}

    if val := os.environ.get("OKAYDOKKI_AGENT_CLI_TEMPLATE"):
        kwargs["agent_cli_template"] = val

    if val := os.environ.get("OKAYDOKKI_DEFAULT_AGENT"):
        kwargs["default_agent"] = val

    if val := os.environ.get("OKAYDOKKI_DELIVERY_STRATEGY"):
        try:
            kwargs["delivery_strategy"] = DeliveryStrategy(val.strip().lower())
        except ValueError:
            log.warning(
                "invalid_delivery_strategy_config",
                env_var="OKAYDOKKI_DELIVERY_STRATEGY",
                value=val,
                fallback=DeliveryStrategy.ROLLING.value,
            )

    if val := os.environ.get("OKAYDOKKI_BASE_BRANCH"):
        kwargs["base_branch"] = val

    kwargs["agent_timeout_s"] = _read_int_env("OKAYDOKKI_AGENT_TIMEOUT_S", 1800)
    kwargs["sandbox_timeout_s"] = _read_int_env("OKAYDOKKI_SANDBOX_TIMEOUT_S", 1800)
    kwargs["delivery_timeout_s"] = _read_int_env("OKAYDOKKI_DELIVERY_TIMEOUT_S", 300)

    for field_name, env_var in (
        ("docker_bin", "OKAYDOKKI_DOCKER_BIN"),
        ("git_bin", "OKAYDOKKI_GIT_BIN"),
        ("gh_bin", "OKAYDOKKI_GH_BIN"),
    ):
        if val := os.environ.get(env_var):
            kwargs[field_name] = val

    return ExecutionConfig(**kwargs)
