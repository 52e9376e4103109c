import logging
import sys
from pathlib import Path
from typing import Optional

from stockledger.config import LOG_LEVEL


def setup_logging(log_level: str | None = None, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure root logging for the API process and the audit CLI."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, (log_level or LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger("stockledger")
