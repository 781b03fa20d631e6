import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "videoconverter.log"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

def setup_logging(
    log_dir: Path,
    level: str = "INFO",
    debug: bool = False,
    log_path: Optional[Path] = None,
    rotation_size: int = 10 * 1024 * 1024,
    retention_days: int = 14,
    console: bool = True,
) -> logging.Logger:
    """
    Setup logging configuration for the service.

    Creates the log directory and a size-rotated videoconverter.log file.
    Returns configured logger instance.

    Args:
        log_dir: Directory where the log file is written
        level: Level name from the service config
        debug: If True, force DEBUG level regardless of `level`
        log_path: Optional path to log file (overrides log_dir)
        rotation_size: Rotate the log file once it reaches this many bytes
        retention_days: Number of rotated files kept (one per day of retention)
        console: Also log to stderr (journald picks this up under systemd)
    """
    log_file = Path(log_path) if log_path else (Path(log_dir) / LOG_FILE_NAME)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    resolved_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    handlers = [
        RotatingFileHandler(log_file, maxBytes=rotation_size, backupCount=retention_days),
    ]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    logging.basicConfig(
        level=resolved_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging initialized: {log_file} "
        f"(level={logging.getLevelName(resolved_level)}, rotation={rotation_size}B x{retention_days})"
    )

    return logger
