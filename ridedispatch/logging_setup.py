import logging
from pathlib import Path

from .config import settings

# third-party loggers that drown dispatch events at DEBUG
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def configure_logging(log_file: str | None = None, level: int | str | None = None):
    """Configure file logging for the dispatch service and its tools.

    Writes to `ridedispatch/logs/ridedispatch.log` unless `log_file` names
    another file (relative names land in the same directory). `level`
    defaults to the LOG_LEVEL setting.
    """
    logs_dir = Path(settings.LOG_DIR) if settings.LOG_DIR else Path(__file__).resolve().parent / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    path = Path(log_file) if log_file else Path("ridedispatch.log")
    if not path.is_absolute():
        path = logs_dir / path

    logging.basicConfig(
        filename=str(path),
        level=level if level is not None else settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
