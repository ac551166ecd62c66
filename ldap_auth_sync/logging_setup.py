"""
Logging setup and configuration for LDAP Auth Sync.

Configures the root logger with a rotating application log, an optional console
stream and a separate rotating audit log fed by the ``security`` logger. Every
handler scrubs credentials before a record is written.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List
from datetime import datetime, timedelta

AUDIT_LOGGER_NAME = 'security'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'credential',
        'pass', 'pwd', 'authorization', 'bearer'
    ]

    # key=value assignments and 'key': 'value' pairs of dumped dictionaries
    ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    QUOTED_PATTERNS = [
        re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    PASSWORD_HASH_PATTERN = re.compile(r'\$scrypt\$[A-Za-z0-9+/=$]+')

    def filter(self, record):
        """Scrub the record message in place; records are never dropped."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern in self.ASSIGNMENT_PATTERNS + self.QUOTED_PATTERNS:
                msg = pattern.sub(r'\1****\2', msg)
            record.msg = self.PASSWORD_HASH_PATTERN.sub('$scrypt$****', msg)
        return True


class LoggingManager:
    """
    Manages logging configuration for LDAP Auth Sync.

    Recognized settings: ``level``, ``log_dir``, ``log_file``, ``rotation``,
    ``retention_days``, ``console_output``, ``console_level`` and ``audit_log``.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self.log_files: List[str] = []

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config or {}
        log_level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)
        rotation = logging_config.get('rotation', 'daily')
        self.log_dir = logging_config.get('log_dir', 'logs')
        self.retention_days = logging_config.get('retention_days', 7)
        self._ensure_log_directory()

        sensitive_filter = SensitiveDataFilter()
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.handlers.clear()

        app_handler = self._create_file_handler(logging_config.get('log_file', 'ldap-auth-sync.log'), rotation)
        app_handler.setLevel(log_level)
        app_handler.setFormatter(file_formatter)
        app_handler.addFilter(sensitive_filter)
        root_logger.addHandler(app_handler)

        if logging_config.get('console_output', True):
            console_level = str(logging_config.get('console_level', 'WARNING')).upper()
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s',
                                                           datefmt='%H:%M:%S'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # Audit records go to their own file and still reach the root handlers
        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()
        if logging_config.get('audit_log', True):
            audit_handler = self._create_file_handler('audit.log', rotation)
            audit_handler.setLevel(logging.INFO)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
            audit_handler.addFilter(sensitive_filter)
            audit_logger.addHandler(audit_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={logging.getLevelName(log_level)}, dir={self.log_dir}, "
            f"files={', '.join(os.path.basename(f) for f in self.log_files)}, "
            f"retention={self.retention_days} days"
        )

    def _ensure_log_directory(self) -> None:
        """Create the log directory, falling back to the working directory."""
        if not self.log_dir:
            self.log_dir = '.'
            return
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: Could not create log directory {self.log_dir}: {e}")
            print("Falling back to current directory for logs")
            self.log_dir = '.'

    def _create_file_handler(self, filename: str, rotation: str) -> logging.Handler:
        """Create a midnight-rotating handler, or a plain file handler when rotation is off."""
        log_file = os.path.join(self.log_dir, filename)
        self.log_files.append(log_file)

        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(log_file, encoding='utf-8')

    def _cleanup_old_logs(self) -> None:
        """Remove rotated files of the configured logs older than the retention period."""
        if self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for log_file in self.log_files:
            for rotated in glob.glob(f"{log_file}.*"):
                try:
                    if datetime.fromtimestamp(os.path.getmtime(rotated)) < cutoff:
                        os.remove(rotated)
                except OSError as e:
                    print(f"Warning: Could not remove old log file {rotated}: {e}")

    def reset(self) -> None:
        """Allow ``setup_logging`` to run again, e.g. after a configuration reload."""
        self.configured = False
        self.log_files = []


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure logging once per process from the ``logging`` configuration section."""
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Audit trail of authentication attempts and local record changes."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_authentication_attempt(self, username: str, success: bool, diagnostic: str = ''):
        status = "SUCCESS" if success else "FAILURE"
        message = f"Authentication {status}: user={username}"
        if diagnostic:
            message += f" reason={diagnostic}"
        self.logger.info(message)

    def log_record_operation(self, operation: str, table: str, uid: int, dn: str):
        self.logger.info(f"Record {operation}: table={table} uid={uid} dn={dn}")


# Global security logger instance
security_logger = SecurityAuditLogger()
