# partner_portal/utils/logging_config.py
"""
Application logging setup.

Console and rotating-file handlers are attached to ``app.logger`` based on
``LOG_LEVEL``, ``ENABLE_CONSOLE_LOGGING``, ``ENABLE_FILE_LOGGING`` and
``LOG_DIR``. Structured ``extra={...}`` fields prefixed ``sync_`` are
appended to each line.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s%(sync_fields)s"
LOG_FILENAME = "partner_portal.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "sync_fields"}


class SyncFieldsFormatter(logging.Formatter):
    """Render ``sync_*`` extras as ``key=value`` pairs after the message."""

    def format(self, record):
        extras = sorted(
            (key, value)
            for key, value in record.__dict__.items()
            if key.startswith("sync_") and key not in _STANDARD_ATTRS
        )
        record.sync_fields = "".join(f" {key}={value}" for key, value in extras)
        return super().format(record)


def get_log_level(level_str):
    """Convert a level name to a logging constant, defaulting to INFO"""
    level = logging.getLevelName(str(level_str or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _handler_tag(handler):
    return getattr(handler, "_partner_portal_handler", None)


def setup_logging(app):
    """Configure app.logger; safe to call again after config changes"""
    level = get_log_level(app.config.get("LOG_LEVEL", "INFO"))
    formatter = SyncFieldsFormatter(LOG_FORMAT)

    # Replace handlers from a previous call
    for handler in list(app.logger.handlers):
        if _handler_tag(handler):
            app.logger.removeHandler(handler)
            handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        console_handler._partner_portal_handler = "console"
        app.logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = Path(app.config.get("LOG_DIR") or "logs")
        if not log_dir.is_absolute():
            log_dir = Path(app.root_path) / log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        file_handler._partner_portal_handler = "file"
        app.logger.addHandler(file_handler)

    app.logger.setLevel(level)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return app.logger
