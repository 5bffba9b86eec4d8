"""Logging configuration for the banking backend.

Every module logs through ``logging.getLogger(__name__)``; this module wires
the root logger once at startup.
"""

import logging
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from backend.config import Settings, get_settings


@dataclass
class LoggingConfig:
    """Configuration settings for application logging."""

    level: str = "INFO"
    format_string: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_to_file: bool = False
    log_file_path: Path = Path("logs/banking.log")
    max_file_size_mb: int = 50
    backup_count: int = 5
    force_reconfigure: bool = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LoggingConfig":
        settings = settings or get_settings()
        return cls(
            level=settings.log_level.upper(),
            log_to_file=settings.log_to_file,
            log_file_path=Path(settings.log_file_path),
        )


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Set up the root logger with a console handler and optional rotating file.

    Args:
        config: Logging configuration. Loaded from settings when None.
    """
    if config is None:
        config = LoggingConfig.from_settings()

    level = getattr(logging, config.level, logging.INFO)
    formatter = logging.Formatter(config.format_string)

    handlers: List[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if config.log_to_file:
        config.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=config.force_reconfigure)

    # Request lines from httpx carry full URLs; keep them out of INFO output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
