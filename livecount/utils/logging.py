"""
Category-aware logging for livecount

Every module logger belongs to one category: auth (OAuth flow), stream_event_sub
(WebSocket session and registrations), snapshot (baseline totals) or system.
Setting LOG_CATEGORIES=auth,snapshot silences the others.
"""

import logging
from typing import FrozenSet, Optional
from livecount.config import settings


LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

DEFAULT_CATEGORY = "system"


def parse_categories(raw: Optional[str]) -> Optional[FrozenSet[str]]:
    """'auth, Snapshot' -> {'auth', 'snapshot'}; empty means no filtering."""
    if not raw:
        return None
    categories = frozenset(cat.strip().lower() for cat in raw.split(",") if cat.strip())
    return categories or None


class CategoryFilter(logging.Filter):
    """Tags records with the logger's category and drops categories not enabled."""

    def __init__(
        self,
        category: Optional[str] = None,
        allowed: Optional[FrozenSet[str]] = None,
    ):
        super().__init__()
        self.category = category.lower() if category else DEFAULT_CATEGORY
        self.allowed = allowed

    def filter(self, record: logging.LogRecord) -> bool:
        record.category = self.category
        return self.allowed is None or self.category in self.allowed


def get_logger(name: str, category: Optional[str] = None) -> logging.Logger:
    """
    Get a module logger at LOG_LEVEL, filtered by LOG_CATEGORIES.

    Args:
        name: Logger name (typically __name__)
        category: One of auth, stream_event_sub, snapshot, system (default)
    """
    logger = logging.getLogger(name)
    logger.setLevel(LOG_LEVELS.get(settings.log_level.upper(), logging.INFO))

    # get_logger may be called twice for one name; keep a single category filter
    logger.filters = [f for f in logger.filters if not isinstance(f, CategoryFilter)]
    logger.addFilter(CategoryFilter(category, parse_categories(settings.log_categories)))
    return logger
