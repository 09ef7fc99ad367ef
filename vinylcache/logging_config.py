import os
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any

FORMAT = "%(asctime)s %(levelname)s %(name)s [%(process)d]: %(message)s"

# Follow LOG_LEVEL; everything else inherits from root.
APP_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "vinylcache")
# One INFO line per upstream request; controlled by HTTPX_LOG_LEVEL.
HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")

_configured = False


def _build_dict_config(
    log_file: str | None, level: str, http_client_level: str = "WARNING"
) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "std",
        }
    }
    if log_file:
        # WatchedFileHandler reopens the file after logrotate moves it.
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": log_file,
            "formatter": "std",
        }

    loggers: Dict[str, Any] = {name: {"level": level} for name in APP_LOGGERS}
    loggers.update({name: {"level": http_client_level} for name in HTTP_CLIENT_LOGGERS})

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"std": {"format": FORMAT}},
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": level, "handlers": list(handlers)},
    }


def configure_logging() -> None:
    """Configure stdout (and LOG_FILE_PATH, when set) logging once per process.

    LOG_LEVEL applies to root and the app/server loggers; HTTPX_LOG_LEVEL
    (default WARNING) applies to the upstream HTTP client.
    """
    global _configured
    if _configured:
        return

    logging.config.dictConfig(
        _build_dict_config(
            os.getenv("LOG_FILE_PATH") or None,
            os.getenv("LOG_LEVEL", "INFO").upper(),
            os.getenv("HTTPX_LOG_LEVEL", "WARNING").upper(),
        )
    )
    _configured = True
