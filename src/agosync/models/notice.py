"""User-visible notices attached to operation outcomes."""

from __future__ import annotations

from enum import StrEnum

from agosync.models._base import AgoBaseModel


class NoticeLevel(StrEnum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Notice(AgoBaseModel):
    message: str
    level: NoticeLevel = NoticeLevel.SUCCESS
