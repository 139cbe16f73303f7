"""Data models for agosync."""

from agosync.models._base import AgoBaseModel, AgoTimestamp, parse_timestamp, utcnow
from agosync.models.connection import ConnectionState, ConnectionStatus
from agosync.models.device import DeviceProgram, UploadRecord, UploadResult
from agosync.models.notice import Notice, NoticeLevel
from agosync.models.recipe import (
    RECIPE_EDITABLE_FIELDS,
    STEP_EDITABLE_FIELDS,
    Recipe,
    Step,
    apply_recipe_patch,
    apply_step_patch,
)

__all__ = [
    "RECIPE_EDITABLE_FIELDS",
    "STEP_EDITABLE_FIELDS",
    "AgoBaseModel",
    "AgoTimestamp",
    "ConnectionState",
    "ConnectionStatus",
    "DeviceProgram",
    "Notice",
    "NoticeLevel",
    "Recipe",
    "Step",
    "UploadRecord",
    "UploadResult",
    "apply_recipe_patch",
    "apply_step_patch",
    "parse_timestamp",
    "utcnow",
]
