import logging
from pathlib import Path
from typing import Optional

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = {
    # Request URLs carry OAuth query params
    "httpx": logging.WARNING,
    "googleapiclient.discovery_cache": logging.ERROR,
    "apscheduler.executors.default": logging.WARNING,
}


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = False,
    logs_dir: Optional[Path] = None,
) -> None:
    """Configure root logging for mailtasks processes (CLI and scheduler)."""
    log_format = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
    handlers = [logging.StreamHandler()]

    if log_to_file:
        logs_dir = logs_dir or Path("logs")
        logs_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logs_dir / "mailtasks.log"))

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=handlers,
    )

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, noisy_level))
