"""
日志配置模块

日志在配置文件之前初始化（config模块本身也要写日志），
因此目录和级别通过环境变量 HEYIT_LOG_DIR / HEYIT_LOG_LEVEL 调整。
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_DIR = Path(os.environ.get("HEYIT_LOG_DIR", "logs"))
LOG_LEVEL = logging.getLevelName(os.environ.get("HEYIT_LOG_LEVEL", "INFO").upper())

# 单个日志文件上限与保留份数
MAX_LOG_BYTES = 20 * 1024 * 1024
LOG_BACKUPS = 5

# 这些库在每次请求、每次上传时都会输出INFO日志
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "minio", "PIL", "asyncio")


def setup_logger(name: str = "heyit", level=LOG_LEVEL, log_file: bool = True) -> logging.Logger:
    """
    创建应用日志记录器：标准输出 + 按大小滚动的文件

    重复调用返回同一个已配置的记录器
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            LOG_DIR / f"{name}.log",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def suppress_third_party_logs(level: int = logging.WARNING):
    """第三方库只保留WARNING及以上级别"""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
    # uvicorn访问日志默认保留，需要时在这里调高级别
    # logging.getLogger("uvicorn.access").setLevel(level)


logger = setup_logger()
suppress_third_party_logs()
