"""
Custom logging handlers for keeping recent logs in memory and in rotating files.

Archive operations attach context to their records with
``logger.info(..., extra={"context": {"moref": ..., "generation_id": ...}})``;
the in-memory handler keeps those fields so a caller can filter by machine.
"""
import logging
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler as BaseRotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List

APP_LOGGER = "vmarchive"


class InMemoryLogHandler(logging.Handler):
    """
    Custom log handler that stores recent log entries in memory.
    Thread-safe circular buffer with a maximum size.
    """

    def __init__(self, max_records: int = 1000):
        """
        Initialize the in-memory log handler.

        Args:
            max_records: Maximum number of log records to keep in memory
        """
        super().__init__()
        self.max_records = max_records
        self.records = deque(maxlen=max_records)
        self._records_lock = Lock()

    def emit(self, record: logging.LogRecord):
        """
        Store a log record in memory.

        Args:
            record: LogRecord to store
        """
        try:
            context = getattr(record, "context", None) or {}
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "funcName": record.funcName,
                "lineno": record.lineno,
                "moref": context.get("moref"),
                "generation_id": context.get("generation_id"),
            }

            if record.exc_info:
                log_entry["exception"] = (
                    self.formatter.formatException(record.exc_info)
                    if self.formatter else str(record.exc_info)
                )

            with self._records_lock:
                self.records.append(log_entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: str = None,
        logger: str = None,
        moref: str = None,
        search: str = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Get filtered log entries, newest first.

        Args:
            level: Filter by log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            logger: Filter by logger name (partial match)
            moref: Filter by machine the record was logged for
            search: Search in log messages (case-insensitive)
            limit: Maximum number of records to return
            offset: Number of records to skip from the end

        Returns:
            List of log entry dictionaries
        """
        with self._records_lock:
            logs = list(self.records)

        if level:
            logs = [log for log in logs if log["level"] == level.upper()]

        if logger:
            logs = [log for log in logs if logger.lower() in log["logger"].lower()]

        if moref:
            logs = [log for log in logs if log["moref"] == moref]

        if search:
            search_lower = search.lower()
            logs = [log for log in logs if search_lower in log["message"].lower()]

        logs.reverse()
        return logs[offset:offset + limit]

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about stored logs.

        Returns:
            Dictionary with log statistics
        """
        with self._records_lock:
            logs = list(self.records)

        level_counts = {
            "DEBUG": 0,
            "INFO": 0,
            "WARNING": 0,
            "ERROR": 0,
            "CRITICAL": 0,
        }
        for log in logs:
            if log["level"] in level_counts:
                level_counts[log["level"]] += 1

        return {
            "total": len(logs),
            "max_records": self.max_records,
            "by_level": level_counts,
        }

    def clear(self):
        """Clear all stored log records."""
        with self._records_lock:
            self.records.clear()


# Global instance
_log_handler = None


def get_log_handler() -> InMemoryLogHandler:
    """Get the global in-memory log handler instance."""
    global _log_handler
    if _log_handler is None:
        _log_handler = InMemoryLogHandler(max_records=2000)
        _log_handler.setFormatter(logging.Formatter('%(levelname)s - %(name)s - %(message)s'))
    return _log_handler


def _attach(handler: logging.Handler, level: str) -> bool:
    app_logger = logging.getLogger(APP_LOGGER)
    if handler in app_logger.handlers:
        return False
    app_logger.addHandler(handler)
    if app_logger.level == logging.NOTSET:
        app_logger.setLevel(level)
    return True


def setup_logging(level: str = "INFO") -> InMemoryLogHandler:
    """
    Attach the in-memory handler to the application logger.

    Only the ``vmarchive`` logger is touched; the root logger is left to the
    embedding program.
    """
    log_handler = get_log_handler()
    _attach(log_handler, level)
    return log_handler


# Global file handler instance
_file_log_handler = None


def get_file_log_handler(
    log_dir: str = "/var/log/vmarchive",
    max_bytes: int = 100 * 1024 * 1024,  # 100 MB
    backup_count: int = 10
) -> BaseRotatingFileHandler:
    """Get the global file log handler instance."""
    global _file_log_handler
    if _file_log_handler is None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        _file_log_handler = BaseRotatingFileHandler(
            filename=str(log_path / "vmarchive.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        _file_log_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    return _file_log_handler


def setup_file_logging(
    log_dir: str = "/var/log/vmarchive",
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10,
    level: str = "INFO"
) -> bool:
    """Setup file logging with rotation."""
    try:
        file_handler = get_file_log_handler(log_dir, max_bytes, backup_count)
    except OSError as e:
        logging.getLogger(APP_LOGGER).warning(f"Failed to setup file logging in {log_dir}: {e}")
        return False
    _attach(file_handler, level)
    return True


def configure_from_settings(settings) -> InMemoryLogHandler:
    """Apply the logging section of a Settings instance."""
    handler = setup_logging(settings.LOG_LEVEL)
    if settings.LOG_DIR:
        setup_file_logging(
            settings.LOG_DIR,
            settings.LOG_MAX_BYTES,
            settings.LOG_BACKUP_COUNT,
            settings.LOG_LEVEL,
        )
    return handler
