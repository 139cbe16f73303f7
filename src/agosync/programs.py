"""Custom program operations on the AGO.

Every operation requires the connectivity manager to report
``connected``. Device rejections and transport failures are reported as
error notices and are not retried.
"""

from __future__ import annotations

import logging
import uuid

from agosync import ago_format
from agosync._notify import NoticeSink, emit
from agosync._transport import DeviceApi
from agosync.connectivity import ConnectivityManager
from agosync.exceptions import AgoPersistenceError, AgoTransportError
from agosync.models.device import DeviceProgram, UploadRecord, UploadResult
from agosync.models.notice import NoticeLevel
from agosync.models.recipe import Recipe
from agosync.store import RecipeStore

_logger = logging.getLogger(__name__)

_NOT_CONNECTED = "Connect to AGO WiFi first"


class ProgramService:
    """List, delete and upload custom programs.

    Parameters
    ----------
    api : DeviceApi
        Device file API.
    connectivity : ConnectivityManager
        Source of the connection status and the device address.
    store : RecipeStore, optional
        Records uploads and supplies their display names for listings.
    notify : callable, optional
        Receives user-visible notices.
    """

    def __init__(
        self,
        api: DeviceApi,
        connectivity: ConnectivityManager,
        *,
        store: RecipeStore | None = None,
        notify: NoticeSink | None = None,
    ) -> None:
        self._api = api
        self._connectivity = connectivity
        self._store = store
        self._notify = notify

    @property
    def available(self) -> bool:
        """Whether device operations are currently allowed."""
        return self._connectivity.status.is_connected

    def _require_connection(self) -> bool:
        if self.available:
            return True
        emit(self._notify, _NOT_CONNECTED, NoticeLevel.ERROR)
        return False

    async def _uploaded_names(self) -> dict[str, str]:
        if self._store is None:
            return {}
        try:
            records = await self._store.fetch_uploads()
        except AgoPersistenceError as exc:
            _logger.warning("Reading upload history failed: %s", exc)
            return {}
        names: dict[str, str] = {}
        # Newest first; keep the latest name per file.
        for record in records:
            names.setdefault(record.filename, record.display_name)
        return names

    async def list_programs(self) -> list[DeviceProgram] | None:
        """Return the custom programs stored on the device, or ``None`` on failure."""
        if not self._require_connection():
            return None
        try:
            programs = await self._api.list_programs(self._connectivity.config.ip)
        except AgoTransportError as exc:
            _logger.debug("Listing programs failed: %s", exc)
            emit(self._notify, f"Failed to list programs: {exc}", NoticeLevel.ERROR)
            return None

        names = await self._uploaded_names()
        return [
            program.model_copy(update={"display_name": names[program.filename]})
            if program.display_name == program.filename and program.filename in names
            else program
            for program in programs
        ]

    async def delete_program(self, filename: str) -> bool:
        if not self._require_connection():
            return False
        try:
            await self._api.delete_program(self._connectivity.config.ip, filename)
        except AgoTransportError as exc:
            _logger.debug("Deleting %s failed: %s", filename, exc)
            emit(self._notify, f"Delete failed: {exc}", NoticeLevel.ERROR)
            return False
        emit(self._notify, "Program deleted from AGO")
        return True

    async def upload_recipe(self, recipe: Recipe) -> UploadResult | None:
        """Upload *recipe* as a custom program and record the upload."""
        if not self._require_connection():
            return None
        config = self._connectivity.config
        filename = ago_format.generate_ago_filename(recipe)
        try:
            result = await self._api.upload_program(
                config.ip,
                endpoint=config.upload_endpoint,
                field_name=config.upload_field,
                filename=filename,
                content=ago_format.dumps_recipe(recipe),
                metadata=ago_format.UploadMetadata.from_recipe(recipe),
            )
        except AgoTransportError as exc:
            _logger.debug("Uploading %s failed: %s", filename, exc)
            emit(self._notify, f"Upload failed: {exc}", NoticeLevel.ERROR)
            return None

        _logger.info("%s", result.message)
        if self._store is not None:
            record = UploadRecord(
                id=str(uuid.uuid4()),
                recipe_id=recipe.id,
                filename=result.device_filename,
                display_name=recipe.name or recipe.film_stock or "Custom Program",
            )
            try:
                await self._store.insert_upload(record)
            except AgoPersistenceError as exc:
                _logger.warning("Recording upload of %s failed: %s", result.device_filename, exc)
                emit(self._notify, "Uploaded, but failed to record the upload", NoticeLevel.WARNING)
                return result
        emit(self._notify, "Recipe uploaded to AGO")
        return result
