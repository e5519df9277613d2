"""仓库快照定位 + 运行时配置解析

快照位于 <snapshot_root>/<repo>，运行时配置位于快照根目录下的 okaydokki.yaml：

    sandbox_image: node:22-bookworm-slim
    test_command: npm test
    allowed_test_commands:
      - npm test

每次调用都重新读取文件（不缓存），配置修改在下一次 retry/approve 时即生效。
"""

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field

from .config import RUNTIME_CONFIG_FILENAME, RuntimeDefaults

log = structlog.get_logger()


class RepoRuntimeResolution(BaseModel):
    """仓库运行时解析结果"""

    repo_path: Path
    config_path: Path
    snapshot_exists: bool
    config_exists: bool
    missing_fields: list[str] = Field(default_factory=list)
    sandbox_image: str
    test_command: str
    allowed_test_commands: list[str] = Field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        """快照存在且运行时配置完整"""
        return self.snapshot_exists and self.config_exists and not self.missing_fields


def resolve_repo_snapshot_path(snapshot_root: str | Path, repo: str) -> Path:
    """解析仓库快照路径

    Raises:
        ValueError: repo 为空或逃逸出快照根目录
    """
    if not repo or not repo.strip():
        raise ValueError("Invalid repo path: empty")
    root = Path(snapshot_root).resolve()
    resolved = (root / repo).resolve()
    if resolved == root or not resolved.is_relative_to(root):
        raise ValueError(f"Invalid repo path: {repo}")
    return resolved


def repo_snapshot_exists(snapshot_root: str | Path, repo: str) -> bool:
    """快照目录是否存在"""
    return resolve_repo_snapshot_path(snapshot_root, repo).is_dir()


def _as_non_empty_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _load_runtime_file(config_path: Path) -> dict[str, Any]:
    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        log.warning(
            "runtime_config_parse_failed",
            config_path=str(config_path),
            error_type=type(e).__name__,
        )
        return {}
    return parsed if isinstance(parsed, dict) else {}


class RepoRuntimeResolver:
    """仓库运行时解析器 -- TaskService 与 SandboxValidator 共用"""

    def __init__(self, snapshot_root: str | Path, defaults: RuntimeDefaults | None = None) -> None:
        self._snapshot_root = Path(snapshot_root)
        self._defaults = defaults or RuntimeDefaults()

    @property
    def snapshot_root(self) -> Path:
        return self._snapshot_root

    def snapshot_path(self, repo: str) -> Path:
        return resolve_repo_snapshot_path(self._snapshot_root, repo)

    def resolve(self, repo: str) -> RepoRuntimeResolution:
        """解析快照是否存在、配置文件是否存在以及 (image, test_command, allowlist)

        缺失的必填项按字段名列入 missing_fields；配置文件本身缺失时为 ["okaydokki.yaml"]。
        """
        repo_path = self.snapshot_path(repo)
        snapshot_exists = repo_path.is_dir()
        config_path = repo_path / RUNTIME_CONFIG_FILENAME
        config_exists = snapshot_exists and config_path.is_file()

        sandbox_image = self._defaults.sandbox_image
        test_command = self._defaults.test_command
        allowed_test_commands = list(self._defaults.allowed_test_commands)
        missing_fields: list[str] = []

        if not config_exists:
            missing_fields.append(RUNTIME_CONFIG_FILENAME)
        else:
            parsed = _load_runtime_file(config_path)

            parsed_image = _as_non_empty_str(parsed.get("sandbox_image"))
            if parsed_image is None:
                missing_fields.append("sandbox_image")
            else:
                sandbox_image = parsed_image

            parsed_command = _as_non_empty_str(parsed.get("test_command"))
            if parsed_command is None:
                missing_fields.append("test_command")
            else:
                test_command = parsed_command

            parsed_allowed = _as_str_list(parsed.get("allowed_test_commands"))
            if not parsed_allowed:
                missing_fields.append("allowed_test_commands")
            else:
                allowed_test_commands = parsed_allowed

        return RepoRuntimeResolution(
            repo_path=repo_path,
            config_path=config_path,
            snapshot_exists=snapshot_exists,
            config_exists=config_exists,
            missing_fields=missing_fields,
            sandbox_image=sandbox_image,
            test_command=test_command,
            allowed_test_commands=allowed_test_commands,
        )
