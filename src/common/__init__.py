# src/common/__init__.py
"""
Общие утилиты: логирование, константы, ошибки.
"""

from src.common.constants import TypeMsg
from src.common.logger import get_logger, log_debug, log_error, log_info, log_warning

__all__ = [
    "TypeMsg",
    "get_logger",
    "log_debug",
    "log_error",
    "log_info",
    "log_warning",
]
