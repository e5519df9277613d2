"""structlog 配置模块

dev 模式：pretty print 可读输出
json 模式：结构化 JSON 输出，每条事件带 service/version，便于与审计日志对照
Logfire APM：LOGFIRE_SEND_TO_LOGFIRE 环境变量控制，false 时降级为纯本地日志。

代理、沙箱与交付步骤会把进程输出写进日志字段，超长字段在渲染前截断，
完整内容以审计日志与任务运行结果为准。
"""

import logging
import os
from collections.abc import MutableMapping
from typing import Any

import structlog
from okaydokki import __version__

SERVICE_NAME = "okaydokki"

# 可能携带大段进程输出或用户文本的字段
LONG_TEXT_FIELDS = ("stdout", "stderr", "test_log", "diff", "intent", "details")
DEFAULT_MAX_FIELD_CHARS = 2000

# 每次 SQL 操作都会打 DEBUG 的第三方 logger
_NOISY_LOGGERS = ("aiosqlite", "asyncio")


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """附加服务名与版本"""
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("version", __version__)
    return event_dict


def truncate_long_fields(max_chars: int) -> structlog.types.Processor:
    """构造截断长文本字段的 processor，保留尾部（错误信息通常在末尾）"""

    def processor(
        logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        for key in LONG_TEXT_FIELDS:
            value = event_dict.get(key)
            if isinstance(value, str) and len(value) > max_chars:
                event_dict[key] = f"...[{len(value) - max_chars} chars]" + value[-max_chars:]
        return event_dict

    return processor


def _max_field_chars() -> int:
    raw = os.environ.get("OKAYDOKKI_LOG_MAX_FIELD_CHARS", "")
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_MAX_FIELD_CHARS
    return value if value > 0 else DEFAULT_MAX_FIELD_CHARS


def setup_logging() -> None:
    """初始化 structlog 配置

    根据 OKAYDOKKI_LOG_FORMAT 环境变量选择渲染模式：
    - "json": 结构化 JSON 输出（生产环境）
    - "dev" (默认): pretty print 可读输出
    """
    log_format = os.environ.get("OKAYDOKKI_LOG_FORMAT", "dev")
    log_level = os.environ.get("OKAYDOKKI_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        truncate_long_fields(_max_field_chars()),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        shared_processors.insert(0, add_service_context)
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_logfire(app: Any = None) -> None:
    """Logfire 可选初始化，传入 app 时同时接入 FastAPI 请求追踪

    LOGFIRE_SEND_TO_LOGFIRE 环境变量控制：
    - "true": 启用 Logfire APM（需要 LOGFIRE_TOKEN，安装 okaydokki[apm]）
    - "false" (默认): 纯本地日志
    """
    send_to_logfire = os.environ.get("LOGFIRE_SEND_TO_LOGFIRE", "false").lower()
    if send_to_logfire != "true":
        return
    try:
        import logfire

        logfire.configure(service_name=SERVICE_NAME, service_version=__version__)
        if app is not None:
            logfire.instrument_fastapi(app)
    except Exception:
        # 初始化失败不影响系统运行
        structlog.get_logger().warning(
            "logfire_init_failed",
            message="Logfire 初始化失败，降级为纯本地日志",
        )
