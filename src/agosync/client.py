"""High-level async client for the AGO film processor."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiohttp

from agosync._notify import NoticeSink
from agosync._transport import AgoTransport
from agosync.config import AgoConfig
from agosync.connectivity import ConnectivityManager, StatusListener
from agosync.exceptions import AgoError
from agosync.models.connection import ConnectionStatus
from agosync.models.device import DeviceProgram, UploadResult
from agosync.models.recipe import Recipe
from agosync.programs import ProgramService
from agosync.state.coalescer import Scheduler
from agosync.state.engine import PersistenceEngine
from agosync.store import RecipeStore, SqliteRecipeStore
from agosync.wifi import WifiBackend, default_backend

_logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "ago_recipes.db"

# Fields of AgoConfig that the settings table does not carry.
_RUNTIME_FIELDS: tuple[str, ...] = (
    "interface",
    "poll_interval",
    "write_debounce",
    "probe_timeout",
    "command_timeout",
    "http_timeout",
)


class AgoClient:
    """Async client wiring connectivity, device programs and the recipe store.

    Usage::

        async with AgoClient(AgoConfig.from_env()) as client:
            await client.connect()
            recipe = await client.recipes.create_recipe()
            await client.programs.upload_recipe(recipe)

    Once the settings table is loaded, the device address, password and
    upload options come from it; timings and the forced interface stay as
    given in *config*. Pass ``detect_wifi=False`` (and no *wifi*) to run in
    IP-probe-only mode.
    """

    def __init__(
        self,
        config: AgoConfig | None = None,
        *,
        db_path: Path | str = DEFAULT_DB_PATH,
        session: aiohttp.ClientSession | None = None,
        store: RecipeStore | None = None,
        wifi: WifiBackend | None = None,
        detect_wifi: bool = True,
        notify: NoticeSink | None = None,
        scheduler: Scheduler | None = None,
        poll: bool = True,
    ) -> None:
        self._config = config or AgoConfig()
        self._external_session = session is not None
        self._http_session = session
        self._owns_store = store is None
        self._store: RecipeStore = store if store is not None else SqliteRecipeStore(db_path)
        if wifi is None and detect_wifi:
            wifi = default_backend(timeout=self._config.command_timeout)
        self._wifi = wifi
        self._notify = notify
        self._poll = poll
        self._transport: AgoTransport | None = None
        self._connectivity: ConnectivityManager | None = None
        self._programs: ProgramService | None = None
        self._engine = PersistenceEngine(
            self._store,
            notify=notify,
            delay=self._config.write_debounce,
            scheduler=scheduler,
        )
        self._engine.add_settings_listener(self._on_settings_changed)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> AgoClient:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        self._transport = AgoTransport(
            self._http_session,
            probe_timeout=self._config.probe_timeout,
            http_timeout=self._config.http_timeout,
        )
        self._connectivity = ConnectivityManager(self._config, self._wifi, self._transport, notify=self._notify)
        self._programs = ProgramService(self._transport, self._connectivity, store=self._store, notify=self._notify)
        if isinstance(self._store, SqliteRecipeStore) and self._owns_store:
            await self._store.open()
        await self._engine.load()
        if self._poll:
            self._connectivity.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._connectivity is not None:
            await self._connectivity.stop()
        await self._engine.aclose()
        if self._owns_store and isinstance(self._store, SqliteRecipeStore):
            await self._store.close()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _require_started(self) -> tuple[ConnectivityManager, ProgramService]:
        if self._connectivity is None or self._programs is None:
            raise AgoError("Client not started. Use 'async with AgoClient(...) as client:'")
        return self._connectivity, self._programs

    @property
    def config(self) -> AgoConfig:
        return self._config

    @property
    def recipes(self) -> PersistenceEngine:
        return self._engine

    @property
    def connectivity(self) -> ConnectivityManager:
        return self._require_started()[0]

    @property
    def programs(self) -> ProgramService:
        return self._require_started()[1]

    def _on_settings_changed(self, settings: dict[str, str]) -> None:
        runtime = {name: getattr(self._config, name) for name in _RUNTIME_FIELDS}
        self._config = AgoConfig.from_settings(settings, **runtime)
        _logger.debug("Device settings: ip=%s ssid=%s", self._config.ip, self._config.ssid)
        if self._connectivity is not None:
            self._connectivity.reconfigure(self._config)

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self.connectivity.status

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        return self.connectivity.add_listener(listener)

    async def connect(self) -> ConnectionStatus:
        return await self.connectivity.connect()

    async def disconnect(self) -> ConnectionStatus:
        return await self.connectivity.disconnect()

    async def refresh_status(self) -> ConnectionStatus:
        """Run one poll tick now."""
        return await self.connectivity.poll_once()

    async def list_programs(self) -> list[DeviceProgram] | None:
        return await self.programs.list_programs()

    async def upload_recipe(self, recipe_id: str) -> UploadResult | None:
        """Upload the recipe *recipe_id* as currently shown in the projection."""
        recipe: Recipe | None = self._engine.get_recipe(recipe_id)
        if recipe is None:
            raise KeyError(recipe_id)
        return await self.programs.upload_recipe(recipe)
