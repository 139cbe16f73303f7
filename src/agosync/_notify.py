"""Delivery of user-visible notices."""

from __future__ import annotations

import logging
from collections.abc import Callable

from agosync.models.notice import Notice, NoticeLevel

_logger = logging.getLogger(__name__)

NoticeSink = Callable[[Notice], None]

_LOG_LEVELS: dict[NoticeLevel, int] = {
    NoticeLevel.SUCCESS: logging.INFO,
    NoticeLevel.INFO: logging.INFO,
    NoticeLevel.WARNING: logging.WARNING,
    NoticeLevel.ERROR: logging.ERROR,
}


def log_notice(notice: Notice) -> None:
    """Default sink: write the notice to the library log."""
    _logger.log(_LOG_LEVELS.get(notice.level, logging.INFO), "%s", notice.message)


def emit(sink: NoticeSink | None, message: str, level: NoticeLevel = NoticeLevel.SUCCESS) -> Notice:
    """Build a notice and hand it to *sink*; a failing sink is logged, not raised."""
    notice = Notice(message=message, level=level)
    target = sink or log_notice
    try:
        target(notice)
    except Exception:
        _logger.exception("Notice sink failed for %r", message)
    return notice
