import logging
import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "panopticon" / "logs"

def setup_logging(level: Optional[str] = None, log_dir: Optional[Path] = None) -> logging.Logger:
    """Set up logging for the panopticon package with environment-based levels.

    Called once by the entry point; importing the package configures nothing.
    """
    # Environment wins over the configured level
    env_level = os.getenv('PANOPTICON_LOG_LEVEL', '').upper()
    is_debug = os.getenv('PANOPTICON_DEBUG', '').lower() in ('1', 'true', 'yes')

    if is_debug:
        console_level = logging.DEBUG
    elif env_level:
        console_level = getattr(logging, env_level, logging.WARNING)
    elif level:
        console_level = getattr(logging, level.upper(), logging.WARNING)
    else:
        console_level = logging.WARNING  # Default: warnings and errors only

    log_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    log_format = '[%(asctime)s] %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    detailed_formatter = logging.Formatter(log_format, date_format)
    console_formatter = logging.Formatter(
        '%(levelname)-8s [%(name)s] %(message)s' if is_debug
        else '%(levelname)s: %(message)s'
    )

    # File handler (always detailed)
    file_handler = logging.FileHandler(log_dir / "panopticon.log")
    file_handler.setFormatter(detailed_formatter)
    file_handler.setLevel(logging.DEBUG)

    # Console handler goes to stderr so command output stays clean
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(console_level)

    logger = logging.getLogger('panopticon')
    logger.setLevel(logging.DEBUG)  # Logger accepts all, handlers filter
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    logger.propagate = False

    return logger

def get_logger(name: Optional[str] = None, root: Optional[logging.Logger] = None) -> logging.Logger:
    """Get a logger for a specific component below the given root."""
    root = root or logging.getLogger('panopticon')
    if name:
        return root.getChild(name)
    return root
