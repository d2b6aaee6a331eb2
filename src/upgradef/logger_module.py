"""
日志模块 - 配置 Loguru 日志系统
"""
import os
import sys
from datetime import datetime
from pathlib import Path

from loguru import logger

# 默认日志根目录
DEFAULT_LOG_ROOT = Path.home() / ".upgradef" / "logs"


def setup_logger(app_name="upgradef", log_root=None, console_output=True, verbose=False):
    """配置 Loguru 日志系统

    Args:
        app_name: 应用名称，用于日志目录
        log_root: 日志根目录，默认为 ~/.upgradef/logs
        console_output: 是否输出到控制台，默认为True
        verbose: 控制台是否输出 DEBUG 级别日志

    Returns:
        tuple: (logger, config_info)
            - logger: 配置好的 logger 实例
            - config_info: 包含日志配置信息的字典
    """
    if log_root is None:
        log_root = DEFAULT_LOG_ROOT

    # 清除默认处理器
    logger.remove()

    if console_output:
        logger.add(
            sys.stdout,
            level="DEBUG" if verbose else "INFO",
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level.icon} {level: <8}</level> | <level>{message}</level>"
        )

    # 使用 datetime 构建日志路径
    current_time = datetime.now()
    date_str = current_time.strftime("%Y-%m-%d")
    hour_str = current_time.strftime("%H")
    minute_str = current_time.strftime("%M%S")

    log_dir = os.path.join(log_root, app_name, date_str, hour_str)
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{minute_str}.log")

    # 文件处理器记录完整的 DEBUG 信息，便于事后排查
    logger.add(
        log_file,
        level="DEBUG",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {elapsed} | {level.icon} {level: <8} | {name}:{function}:{line} - {message}",
        enqueue=True,
    )

    config_info = {
        'log_file': log_file,
    }

    logger.info(f"日志系统已初始化，应用名称: {app_name}")
    return logger, config_info
