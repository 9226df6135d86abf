"""
Logging setup and configuration for GitLab LDAP Sync.

This module configures the root logger once per process: a daily rotated log file with
a retention policy, an optional console handler, the NOTICE level used for phase
milestones, and a filter that scrubs credentials from every handler's output.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any
from datetime import datetime, timedelta

NOTICE = 25
logging.addLevelName(NOTICE, 'NOTICE')

LOG_FILE_NAME = 'gitlab-ldap-sync.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'private_token',
        'secret', 'authorization', 'api_key', 'access_token'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        msg = record.getMessage() if record.args else str(record.msg)

        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
            # "key": "value" and 'key': 'value'
            msg = re.sub(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', r'\1****\2', msg, flags=re.IGNORECASE)

        msg = re.sub(r'(PRIVATE-TOKEN["\']?\s*:\s*["\']?)[^\s,"\'}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
        msg = re.sub(r'(Bearer\s+)[^\s,"\'}}\]]+', r'\1****', msg, flags=re.IGNORECASE)

        record.msg = msg
        record.args = None
        return True


class LoggingManager:
    """
    Manages logging configuration for GitLab LDAP Sync.

    Provides file-based logging with rotation and retention plus console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: logging section of the configuration
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = _level(logging_config.get('level', 'INFO'))
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = _level(logging_config.get('console_level', 'INFO'))

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(min(log_level, console_level) if console_enabled else log_level)
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(console_level)
            console_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s',
                                                           datefmt='%H:%M:%S'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={logging.getLevelName(log_level)}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting.

        Args:
            rotation: 'daily', 'midnight' or 'none'

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Forget the previous configuration so setup_logging applies again."""
        self.configured = False


def _level(name: Any) -> int:
    if isinstance(name, int):
        return name
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: logging section of the configuration
    """
    _logging_manager.setup_logging(config)


def cleanup_logs() -> None:
    """Force cleanup of old log files."""
    _logging_manager._cleanup_old_logs()
