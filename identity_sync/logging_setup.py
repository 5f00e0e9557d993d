"""
Logging setup for Identity Sync.

setup_logging() configures the root logger once per process: a daily
rotated app.log in the configured directory, an optional console handler,
and a filter that masks secrets and tokens on every record. Audit events
go to the separate ``security`` logger.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

LOG_FILE_NAME = 'app.log'
FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d [%(threadName)s] - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
MASK = '****'


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


class SensitiveDataFilter(logging.Filter):
    """Masks passwords, the Basic secret and access tokens in log messages."""

    SENSITIVE_KEYWORDS = [
        'bind_password', 'smtp_password', 'truststore_password', 'password', 'basic_secret',
        'secret', 'access_token', 'token', 'credential', 'pwd', 'authorization'
    ]

    def __init__(self, keywords: Optional[List[str]] = None):
        super().__init__()
        names = '|'.join(re.escape(keyword) for keyword in (keywords or self.SENSITIVE_KEYWORDS))
        self.patterns = [
            # key=value
            (re.compile(rf'((?:{names})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), rf'\1{MASK}'),
            # "key": "value"
            (re.compile(rf'("(?:{names})"\s*:\s*")[^"]*(")', re.IGNORECASE), rf'\1{MASK}\2'),
            # "key": 123456
            (re.compile(rf'("(?:{names})"\s*:\s*)[^",}}\s]+(\s*[,}}\]])', re.IGNORECASE), rf'\1{MASK}\2'),
            # Authorization header values
            (re.compile(r'((?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE), rf'\1{MASK}'),
        ]

    def scrub(self, message: str) -> str:
        for pattern, replacement in self.patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """Owns the root logger configuration for the process."""

    def __init__(self):
        self.configured = False
        self.log_dir: Optional[str] = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Configure the root logger. Later calls are ignored until reset().

        Args:
            config: The ``logging`` section of the configuration

        Raises:
            OSError: If the log directory cannot be created or opened
        """
        if self.configured:
            return

        config = config or {}
        level = _level(config.get('level', 'INFO'), logging.INFO)
        self.log_dir = config.get('log_dir', 'logs')
        self.retention_days = int(config.get('retention_days', 7))
        console_output = config.get('console_output', True)

        os.makedirs(self.log_dir, exist_ok=True)

        handlers = [self._file_handler(config.get('rotation', 'daily'), level)]
        if console_output:
            handlers.append(self._console_handler(_level(config.get('console_level', 'WARNING'), logging.WARNING)))

        scrubber = SensitiveDataFilter()
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        for handler in handlers:
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)
        self.configured = True

        logger.info(f"Logging configured: level={logging.getLevelName(level)}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_output}")
        self._remove_expired_logs()

    def _file_handler(self, rotation: str, level: int) -> logging.Handler:
        """Daily rotation at midnight keeps retention_days backups; 'none' writes one file."""
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8'
            )
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    @staticmethod
    def _console_handler(level: int) -> logging.Handler:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
        return handler

    def _remove_expired_logs(self) -> None:
        """Delete rotated files whose last write is older than the retention period."""
        if self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for path in glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
                    logger.info(f"Removed expired log file {path}")
            except OSError as e:
                logger.warning(f"Could not remove expired log file {path}: {e}")

    def reset(self) -> None:
        """Close and detach root handlers so setup_logging can run again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process-wide logging from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class SecurityAuditLogger:
    """Audit trail for token requests, user creations and configuration loads."""

    def __init__(self, name: str = 'security'):
        self.logger = logging.getLogger(name)

    @staticmethod
    def _outcome(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_authentication_attempt(self, system: str, username: str, success: bool):
        self.logger.info(f"Authentication {self._outcome(success)}: {system} user={username}")

    def log_user_operation(self, operation: str, user_id: str, target: str, success: bool):
        self.logger.info(f"User operation {self._outcome(success)}: {operation} user={user_id} target={target}")

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


security_logger = SecurityAuditLogger()
