# src/entity_repository/core/logging/handlers.py
"""
Handler factories for logging.dictConfig.

Each helper returns a handler configuration dict; the builder registers it
under a name ("console", "file", ...). They are pure functions of `Settings`.
"""

from pathlib import Path

from entity_repository.config.settings import Settings

_FILTERS = ["correlation_id", "redact"]


def get_console_handler(settings: Settings) -> dict:
    """
    Stream handler (stderr) using the "json" or "standard" formatter
    depending on `settings.LOG_FORMAT`.
    """
    return {
        "class": "logging.StreamHandler",
        "formatter": "json" if settings.LOG_FORMAT == "json" else "standard",
        "level": settings.LOG_LEVEL,
        "filters": list(_FILTERS),
    }


def get_file_handler(settings: Settings) -> dict:
    file_path = str(Path(settings.LOG_DIR) / "repository.log")
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "json" if settings.LOG_FORMAT == "json" else "standard",
        "level": settings.LOG_LEVEL,
        "filename": file_path,
        "maxBytes": settings.LOG_MAX_BYTES,
        "backupCount": settings.LOG_BACKUP_COUNT,
        "encoding": "utf-8",
        "filters": list(_FILTERS),
    }


# Error-specific rotating file, always structured.
def get_error_file_handler(settings: Settings) -> dict:
    error_file_path = str(Path(settings.LOG_DIR) / "errors.log")
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "json",
        "level": "ERROR",
        "filename": error_file_path,
        "maxBytes": settings.LOG_MAX_BYTES,
        "backupCount": settings.LOG_BACKUP_COUNT,
        "encoding": "utf-8",
        "filters": list(_FILTERS),
    }


def get_error_console_handler(settings: Settings) -> dict:
    return {
        "class": "logging.StreamHandler",
        "formatter": "json",
        "level": "ERROR",
        "filters": list(_FILTERS),
    }
