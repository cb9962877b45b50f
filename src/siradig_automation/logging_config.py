import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Libraries that log every protocol frame at DEBUG/INFO.
NOISY_LOGGERS = ("playwright", "asyncio")


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,  # configure_logging() runs again once the config file is loaded
    )

    quiet_level = os.getenv("NOISY_LOG_LEVEL", "WARNING").upper()
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(quiet_level)
