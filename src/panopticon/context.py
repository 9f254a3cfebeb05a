"""
PanopticonContext - the one object every component receives at construction.

It replaces module level config and logger singletons: whoever builds the
engine decides which config, logger and clock the components see.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import Config
from .logs import get_logger

Clock = Callable[[], datetime]

def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)

def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC, the zone every event is stamped in."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

class PanopticonContext:
    """Configuration, logging and time source shared by all components."""

    def __init__(self, config: Optional[Config] = None, logger: Optional[logging.Logger] = None,
                 clock: Optional[Clock] = None):
        self.config = config or Config()
        self.logger = logger or get_logger()
        self.clock = clock or utc_now

    def get_logger(self, name: str) -> logging.Logger:
        return get_logger(name, root=self.logger)

    def now(self) -> datetime:
        return self.clock()
