"""Payloads exchanged with the AGO's file API."""

from __future__ import annotations

from pydantic import Field

from agosync.models._base import AgoBaseModel, AgoTimestamp, utcnow


class DeviceProgram(AgoBaseModel):
    """A custom program file stored on the device."""

    filename: str
    display_name: str


class UploadResult(AgoBaseModel):
    """Outcome of a successful upload."""

    message: str
    device_filename: str


class UploadRecord(AgoBaseModel):
    """Local bookkeeping row for a program uploaded to the device."""

    id: str
    recipe_id: str | None = None
    filename: str
    display_name: str
    uploaded_at: AgoTimestamp = Field(default_factory=utcnow)
