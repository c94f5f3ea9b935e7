"""
Log file handler setup and log retention.
"""
from __future__ import annotations

from pathlib import Path
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
import logging


_FILE_HANDLER_NAME = "t212_dashboard_file_handler"
LOG_FILE_NAME = "trading212-dashboard.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def configure_file_logging(log_directory: str, level: int = logging.INFO) -> Path:
    """Attach a rotating file handler to the root logger, replacing any previous one."""
    log_dir = Path(log_directory).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root_logger = logging.getLogger()
    existing = next((h for h in root_logger.handlers if getattr(h, "name", "") == _FILE_HANDLER_NAME), None)
    if existing:
        root_logger.removeHandler(existing)
        existing.close()

    file_handler = RotatingFileHandler(
        log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
    )
    file_handler.name = _FILE_HANDLER_NAME
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root_logger.addHandler(file_handler)
    if root_logger.level > level:
        root_logger.setLevel(level)
    return log_dir


def cleanup_old_files(directory: str, retention_days: int) -> int:
    """Delete files older than retention_days in directory. Returns deleted file count."""
    target_dir = Path(directory).expanduser().resolve()
    if not target_dir.exists():
        return 0

    cutoff = datetime.now() - timedelta(days=max(0, retention_days))
    deleted = 0
    for path in target_dir.iterdir():
        if not path.is_file():
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime)
            if modified < cutoff:
                path.unlink(missing_ok=True)
                deleted += 1
        except OSError as exc:
            logging.getLogger(__name__).warning("Could not remove old log file %s: %s", path, exc)
    return deleted
