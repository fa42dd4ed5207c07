"""
Centralized logging utilities for transcode_queue

Provides consistent logging patterns with configurable debug levels:
- [INFO] for general information
- [WARN] for warnings
- [ERROR] for errors
- [RESULT] for final results
- [DEBUG] for debug information
- [CALIBRATE] for quality calibration messages
- [WORKER] for worker pool / scheduler messages
- [CLEANUP] for cleanup operations

Usage:
    from transcode_queue.utils.logging import get_logger, set_debug_mode

    set_debug_mode(True)  # Enable debug messages

    logger = get_logger("worker_pool")
    logger.info("This is an info message")
    logger.debug("This is a debug message")  # Only shows if debug enabled
    logger.calibration("Attempt 1/3 with quality=30")
"""

import os
import threading
from enum import Enum
from typing import Optional

from tqdm import tqdm

# Global logging configuration
_DEBUG_ENABLED = False
_QUIET_MODE = False
_LOG_LEVEL = "INFO"

# Workers log from several threads; keep lines whole
_PRINT_LOCK = threading.Lock()


class LogLevel(Enum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3


def _init_debug_mode():
    global _DEBUG_ENABLED
    if os.getenv('DEBUG', '').lower() in ('1', 'true', 'yes'):
        _DEBUG_ENABLED = True


_init_debug_mode()


def set_debug_mode(enabled: bool):
    """Enable or disable debug mode globally"""
    global _DEBUG_ENABLED
    _DEBUG_ENABLED = enabled


def set_quiet_mode(enabled: bool):
    """Enable or disable quiet mode (suppress INFO and DEBUG messages)"""
    global _QUIET_MODE
    _QUIET_MODE = enabled


def set_log_level(level: str):
    """Set the global log level: DEBUG, INFO, WARN, ERROR"""
    global _LOG_LEVEL
    _LOG_LEVEL = level.upper()


def get_debug_mode() -> bool:
    """Get current debug mode setting"""
    return _DEBUG_ENABLED


def _emit(line: str):
    # tqdm.write keeps active progress bars intact
    with _PRINT_LOCK:
        tqdm.write(line)


class Logger:
    """Centralized logger with consistent formatting and configurable output"""

    def __init__(self, module_name: str = ""):
        self.module_name = module_name
        self.prefix = f"[{module_name}] " if module_name else ""

    def _should_log(self, level: LogLevel) -> bool:
        """Check if message should be logged based on current settings"""
        if _QUIET_MODE and level in (LogLevel.DEBUG, LogLevel.INFO):
            return False

        level_hierarchy = {
            "DEBUG": LogLevel.DEBUG,
            "INFO": LogLevel.INFO,
            "WARN": LogLevel.WARN,
            "ERROR": LogLevel.ERROR
        }

        current_level = level_hierarchy.get(_LOG_LEVEL, LogLevel.INFO)
        return level.value >= current_level.value

    def _log(self, level: str, message: str):
        log_level = LogLevel[level]
        if not self._should_log(log_level):
            return
        _emit(f"[{level}] {self.prefix}{message}")

    def debug(self, message: str):
        """Log debug message (only if debug mode enabled)"""
        if _DEBUG_ENABLED:
            self._log("DEBUG", message)

    def info(self, message: str):
        self._log("INFO", message)

    def warn(self, message: str):
        self._log("WARN", message)

    def error(self, message: str):
        self._log("ERROR", message)

    def result(self, message: str):
        """Log result message"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[RESULT] {self.prefix}{message}")

    # Domain-specific logging methods
    def calibration(self, message: str):
        """Log quality calibration message"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[CALIBRATE] {message}")

    def calibration_debug(self, message: str):
        if _DEBUG_ENABLED and self._should_log(LogLevel.DEBUG):
            _emit(f"[CALIBRATE-DEBUG] {message}")

    def worker(self, message: str):
        """Log worker pool / scheduler message"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[WORKER] {message}")

    def vmaf(self, message: str):
        if self._should_log(LogLevel.INFO):
            _emit(f"[VMAF] {message}")

    def cmd(self, message: str):
        """Log command execution message"""
        if _DEBUG_ENABLED and self._should_log(LogLevel.DEBUG):
            _emit(f"[CMD] {message}")

    def cleanup(self, message: str):
        """Log cleanup operation"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[CLEANUP] {message}")

    def discovery(self, message: str):
        """Log file discovery message"""
        if self._should_log(LogLevel.INFO):
            _emit(f"[DISCOVERY] {message}")


def get_logger(module_name: str = "") -> Logger:
    """Get a logger instance for a module"""
    return Logger(module_name)


def create_progress_bar(total: Optional[float] = None, desc: str = "", unit: str = "it",
                        position: Optional[int] = None, leave: bool = True) -> tqdm:
    """Create a progress bar with consistent styling"""
    return tqdm(total=total, desc=desc, unit=unit, position=position, leave=leave,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {postfix}")


def print_section_header(title: str, width: int = 90):
    """Print a section header with consistent formatting"""
    print("=" * width)
    print(title)
    print("=" * width)


def format_duration(seconds: float) -> str:
    """Format duration in seconds to a human-readable string"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def format_size(bytes_size: int) -> str:
    """Format file size in bytes to human-readable string"""
    size = float(bytes_size)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"
