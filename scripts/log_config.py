#!/usr/bin/env python3
"""
singbox-manager 日志配置

通过环境变量控制日志级别：
- LOG_LEVEL: 管理器自身的日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: 未设置 LOG_LEVEL 时，"1"/"true" 等价于 DEBUG

sing-box 进程自身的日志级别由 state.json 中的 server.logLevel 决定，与此无关。

使用方式：
    from log_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 这些库最低只输出 WARNING
NOISY_LOGGERS = ("urllib3", "requests", "httpx", "uvicorn.access")

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

_logging_configured = False


def get_log_level() -> int:
    """从环境变量解析日志级别

    优先级：LOG_LEVEL > DEBUG 标志 > 默认 INFO。无法识别的值按 INFO 处理。
    """
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL

    return _LEVEL_MAP.get(level_str, logging.INFO)


def setup_logging(
    name: Optional[str] = None,
    level: Optional[int] = None,
    detailed: bool = False,
    force: bool = False
) -> logging.Logger:
    """配置 root logger（每个进程一次）

    Args:
        name: 返回的 logger 名称，None 表示 root logger
        level: 日志级别，None 表示从环境变量获取
        detailed: 是否在格式中包含文件名和行号
        force: 已配置过时是否重新配置

    Returns:
        Logger 实例
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger(name)

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=force or not _logging_configured
    )

    for lib_logger in NOISY_LOGGERS:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger(name)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """获取命名 logger，必要时先完成全局配置"""
    if not _logging_configured:
        setup_logging()
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """运行时调整 root logger 级别（CLI --verbose 使用）"""
    logging.getLogger().setLevel(level)
    logging.getLogger(__name__).debug(f"Log level changed to: {logging.getLevelName(level)}")
