"""外部进程执行层

不经过 shell 直接 exec，捕获 stdout/stderr，超时或调用方被取消时 kill。
代理命令、沙箱与交付步骤的时间上限都由这一层保证。
"""

import asyncio
import contextlib
import os
import signal
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from .exceptions import ProcessSpawnError, ProcessTimeoutError

log = structlog.get_logger()


@dataclass(frozen=True)
class ProcessResult:
    """进程执行结果"""

    returncode: int
    stdout: str
    stderr: str


async def run_process(
    argv: list[str],
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_s: float | None = None,
) -> ProcessResult:
    """执行外部进程并等待结束

    Args:
        argv: 参数列表，argv[0] 为可执行文件
        cwd: 工作目录
        env: 完整环境变量（None 表示继承当前进程）
        timeout_s: 超时秒数（None 表示不限）

    Raises:
        ProcessSpawnError: 进程无法启动
        ProcessTimeoutError: 超时（进程已被 kill）
    """
    start = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except OSError as e:
        raise ProcessSpawnError(argv[0], e) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except asyncio.CancelledError:
        await _kill(process)
        log.warning("process_cancelled", argv0=argv[0])
        raise
    except TimeoutError:
        await _kill(process)
        log.warning("process_timeout", argv0=argv[0], timeout_s=timeout_s)
        raise ProcessTimeoutError(argv[0], timeout_s or 0) from None

    returncode = process.returncode if process.returncode is not None else -1
    log.debug(
        "process_exited",
        argv0=argv[0],
        returncode=returncode,
        stdout_bytes=len(stdout),
        stderr_bytes=len(stderr),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    return ProcessResult(
        returncode=returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    """kill 子进程所在进程组并回收；进程已退出时忽略"""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


def tail(text: str, limit: int = 2000) -> str:
    """截取输出尾部用于错误信息"""
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return "..." + stripped[-limit:]
