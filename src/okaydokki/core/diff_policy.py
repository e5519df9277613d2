"""Diff 策略评估 -- 纯函数，无外部依赖

同时支持 git 风格（diff --git a/... b/...）与 POSIX unified diff（diff -ruN）头部，
将路径归一化为相对工作根目录的形式（去除 a/ b/ work/ 及临时目录前缀），
保证同一逻辑文件无论由哪种工具生成都能被识别。

四项检查相互独立、全部执行（不短路），所有违规一并返回。
"""

import re

from .config import DiffPolicyConfig

_GIT_HEADER_RE = re.compile(r"^diff --git a/(.+) b/(.+)$")
_BINARY_FILES_RE = re.compile(r"^Binary files (.+) and (.+) differ$")
_GIT_BINARY_PATCH = "GIT binary patch"
_HUNK_HEADER_RE = re.compile(r"^@@ -\d+(?:,(\d+))? \+\d+(?:,(\d+))? @@")

# 宿主执行器临时工作区（.../okd-host-<id>-xxxx/work/<path>）或容器内 /work/<path>
_HOST_WORKSPACE_RE = re.compile(r"^.*/okd-host-[^/]+/(?:work|base)/(.+)$")
_CONTAINER_WORK_RE = re.compile(r"^/(?:work|candidate|repo)/(.+)$")

_DEV_NULL = "/dev/null"


def normalize_diff_path(raw: str) -> str | None:
    """将 diff 头部中的路径归一化为仓库相对路径

    - 去除制表符后的时间戳
    - 绝对路径：去除宿主临时工作区 / 容器挂载点前缀
    - 相对路径：去除第一层根目录（git 的 a/ b/，diff -ruN 的 base/ work/）

    Returns:
        归一化路径；/dev/null 或空值返回 None
    """
    token = raw.split("\t", 1)[0].strip()
    if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
        token = token[1:-1]
    if not token or token == _DEV_NULL:
        return None

    if token.startswith("/"):
        for pattern in (_HOST_WORKSPACE_RE, _CONTAINER_WORK_RE):
            match = pattern.match(token)
            if match:
                return _strip_dot_slash(match.group(1))
        return _strip_dot_slash(token.lstrip("/"))

    token = _strip_dot_slash(token)
    _, sep, rest = token.partition("/")
    if sep and rest:
        return rest
    return token or None


def _strip_dot_slash(value: str) -> str:
    while value.startswith("./"):
        value = value[2:]
    return value


def _normalize_prefix(prefix: str) -> str:
    return _strip_dot_slash(prefix.strip()).lstrip("/")


def _split_binary_files_line(line: str) -> str | None:
    """从 "Binary files X and Y differ" 中提取文件名，存在歧义时返回 None"""
    match = _BINARY_FILES_RE.match(line)
    if match is None:
        return None
    # 文件名中含有 " and " 时无法无歧义拆分
    if line.count(" and ") != 1:
        return None
    right = normalize_diff_path(match.group(2))
    if right is not None:
        return right
    return normalize_diff_path(match.group(1))


def _hunk_line_counts(line: str) -> tuple[int, int] | None:
    """解析 "@@ -a,b +c,d @@"，返回 (旧侧行数, 新侧行数)；省略的行数为 1"""
    match = _HUNK_HEADER_RE.match(line)
    if match is None:
        return None
    old_count, new_count = match.group(1), match.group(2)
    return (
        int(old_count) if old_count is not None else 1,
        int(new_count) if new_count is not None else 1,
    )


def extract_changed_files(diff: str) -> list[str]:
    """提取 diff 中所有变更文件（去重、排序）

    hunk 按头部声明的行数消费，hunk 内以 "--- " / "+++ " 开头的内容行不会被当作文件头。
    """
    files: set[str] = set()
    pending_minus: str | None = None
    old_left = new_left = 0

    for raw_line in diff.split("\n"):
        line = raw_line.rstrip("\r")

        git_match = _GIT_HEADER_RE.match(line)
        if git_match:
            path = _strip_dot_slash(git_match.group(2))
            if path and path != _DEV_NULL:
                files.add(path)
            pending_minus = None
            old_left = new_left = 0
            continue

        if old_left > 0 or new_left > 0:
            if line.startswith("-"):
                old_left -= 1
            elif line.startswith("+"):
                new_left -= 1
            elif line.startswith(" ") or line == "":
                old_left -= 1
                new_left -= 1
            elif line.startswith("diff "):
                # 新文件的 diff 命令行，hunk 行数不足时以此收尾
                old_left = new_left = 0
            continue

        counts = _hunk_line_counts(line)
        if counts is not None:
            old_left, new_left = counts
            pending_minus = None
            continue

        if line.startswith("--- "):
            pending_minus = line[4:]
            continue

        # 只有紧跟在 "--- " 之后的 "+++ " 才是文件头，避免误判 hunk 内容
        if line.startswith("+++ ") and pending_minus is not None:
            path = normalize_diff_path(line[4:])
            if path is None:
                path = normalize_diff_path(pending_minus)
            if path:
                files.add(path)
            pending_minus = None
            continue

        pending_minus = None
        if line.startswith("Binary files "):
            binary_path = _split_binary_files_line(line)
            if binary_path:
                files.add(binary_path)

    return sorted(files)


def detect_binary_patches(diff: str) -> tuple[bool, list[str]]:
    """检测二进制补丁标记

    Returns:
        (是否存在二进制补丁, 可无歧义识别的文件名列表)
    """
    found = False
    names: set[str] = set()
    current_git_file: str | None = None

    for raw_line in diff.split("\n"):
        line = raw_line.rstrip("\r")

        git_match = _GIT_HEADER_RE.match(line)
        if git_match:
            current_git_file = _strip_dot_slash(git_match.group(2))
            continue

        if line.startswith(_GIT_BINARY_PATCH):
            found = True
            if current_git_file:
                names.add(current_git_file)
            continue

        if line.startswith("Binary files ") and _BINARY_FILES_RE.match(line):
            found = True
            binary_path = _split_binary_files_line(line)
            if binary_path:
                names.add(binary_path)

    return found, sorted(names)


def policy_checks(policy: DiffPolicyConfig) -> list[str]:
    """返回当前策略实际启用的检查项名称（用于交付摘要）"""
    checks = ["max_diff_bytes", "max_changed_files", "blocked_path_prefixes"]
    if policy.disallow_binary_patch:
        checks.append("disallow_binary_patch")
    return checks


def evaluate_diff_policy(diff: str, policy: DiffPolicyConfig) -> list[str]:
    """评估 diff 是否违反策略

    Args:
        diff: git 或 POSIX unified diff 文本
        policy: Diff 策略配置

    Returns:
        违规描述列表；空列表表示通过
    """
    violations: list[str] = []

    diff_bytes = len(diff.encode("utf-8"))
    if diff_bytes > policy.max_diff_bytes:
        violations.append(
            f"diff size {diff_bytes} exceeds max_diff_bytes {policy.max_diff_bytes}"
        )

    changed_files = extract_changed_files(diff)
    if len(changed_files) > policy.max_changed_files:
        violations.append(
            f"changed file count {len(changed_files)} exceeds "
            f"max_changed_files {policy.max_changed_files}"
        )

    prefixes = [p for p in (_normalize_prefix(x) for x in policy.blocked_path_prefixes) if p]
    for file in changed_files:
        matched = next((p for p in prefixes if file.startswith(p)), None)
        if matched is not None:
            violations.append(f"blocked path modified: {file} (prefix: {matched})")

    if policy.disallow_binary_patch:
        has_binary, binary_files = detect_binary_patches(diff)
        if has_binary:
            if binary_files:
                violations.append(
                    "binary patch content is not allowed: " + ", ".join(binary_files)
                )
            else:
                violations.append("binary patch content is not allowed")

    return violations
