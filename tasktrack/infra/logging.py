from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from tasktrack.config import PROJECT_ROOT, SETTINGS, Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(settings: Settings = SETTINGS, *, console: bool = True) -> None:
    log_dir = PROJECT_ROOT / settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        RotatingFileHandler(log_dir / "tasktrack.log", maxBytes=2_000_000, backupCount=3)
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)

    level = settings.log_level.upper()
    logging.basicConfig(level=level, handlers=handlers)
    # SQL echo only when explicitly debugging.
    if level != "DEBUG":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
