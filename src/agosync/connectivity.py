"""Connection state machine for the AGO access point.

The manager owns a three-state machine (disconnected, connecting,
connected) and is the only writer of the current and previous network
names. It is driven by a repeating poll tick plus explicit
:meth:`ConnectivityManager.connect` / :meth:`ConnectivityManager.disconnect`
requests.

Poll tick decision table:

================  =====================  ==========================
adapter           network name read      outcome
================  =====================  ==========================
absent            n/a                    IP probe decides
present           matches target         connected
present           other / empty          IP probe decides
present           read failed            name cleared, IP probe decides
================  =====================  ==========================

Connectivity is best-effort: every probe or command failure degrades to
``disconnected`` (or a retry on the next tick) and never propagates.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

from agosync import ssid as ssid_matcher
from agosync._notify import NoticeSink, emit
from agosync._transport import DeviceProbe
from agosync.config import AgoConfig
from agosync.models.connection import ConnectionState, ConnectionStatus
from agosync.models.notice import NoticeLevel
from agosync.wifi import WifiBackend

_logger = logging.getLogger(__name__)

T = TypeVar("T")

StatusListener = Callable[[ConnectionStatus], None]


class PollStep(StrEnum):
    CONNECTED = "connected"
    PROBE_IP = "probe_ip"


def poll_step(interface: str | None, network_name: str | None, target_ssid: str) -> PollStep:
    """Decide the next step of a poll tick.

    *network_name* is ``None`` when reading it failed.
    """
    if interface and network_name and ssid_matcher.matches(network_name, target_ssid):
        return PollStep.CONNECTED
    return PollStep.PROBE_IP


def state_for_reachability(reachable: bool) -> ConnectionState:
    return ConnectionState.CONNECTED if reachable else ConnectionState.DISCONNECTED


class ConnectivityManager:
    """Detect, join and leave the AGO network.

    Parameters
    ----------
    config : AgoConfig
        Device address and timings.
    wifi : WifiBackend or None
        OS WiFi capability. ``None`` runs in IP-probe-only mode.
    probe : DeviceProbe
        Reachability probe for the device IP.
    notify : callable, optional
        Receives user-visible :class:`~agosync.models.Notice` objects.
    """

    def __init__(
        self,
        config: AgoConfig,
        wifi: WifiBackend | None,
        probe: DeviceProbe,
        *,
        notify: NoticeSink | None = None,
    ) -> None:
        self._config = config
        self._wifi = wifi
        self._probe = probe
        self._notify = notify
        self._state = ConnectionState.DISCONNECTED
        self._current_ssid = ""
        self._previous_ssid = ""
        self._interface: str | None = config.interface
        self._interface_notice_sent = False
        self._listeners: list[StatusListener] = []
        self._command_lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            current_ssid=self._current_ssid,
            previous_ssid=self._previous_ssid,
            interface=self._interface,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def config(self) -> AgoConfig:
        return self._config

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener* for status changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def reconfigure(self, config: AgoConfig) -> None:
        """Swap the device address and timings; takes effect on the next tick."""
        if config.interface and config.interface != self._interface:
            self._interface = config.interface
        self._config = config

    def _publish(self, before: ConnectionStatus) -> None:
        after = self.status
        if after == before:
            return
        if after.state != before.state:
            _logger.info("AGO connection %s -> %s", before.state, after.state)
        for listener in list(self._listeners):
            try:
                listener(after)
            except Exception:
                _logger.exception("Connection status listener failed")

    def _update(
        self,
        *,
        state: ConnectionState | None = None,
        current_ssid: str | None = None,
        previous_ssid: str | None = None,
    ) -> None:
        before = self.status
        if state is not None:
            self._state = state
        if current_ssid is not None:
            self._current_ssid = current_ssid
        if previous_ssid is not None:
            self._previous_ssid = previous_ssid
        self._publish(before)

    # ------------------------------------------------------------------
    # Capability wrappers (never raise)
    # ------------------------------------------------------------------

    async def _bounded(self, awaitable: Awaitable[T], timeout: float) -> T:
        return await asyncio.wait_for(awaitable, timeout=timeout)

    async def _ensure_interface(self) -> str | None:
        if self._wifi is None:
            return None
        if self._interface:
            return self._interface
        try:
            self._interface = await self._bounded(self._wifi.detect_interface(), self._config.command_timeout)
        except Exception as exc:
            _logger.debug("WiFi interface detection failed: %s", exc)
            self._interface = None
        if self._interface is None and not self._interface_notice_sent:
            self._interface_notice_sent = True
            emit(
                self._notify,
                "WiFi interface not detected. Make sure WiFi is enabled; falling back to IP probing.",
                NoticeLevel.INFO,
            )
        return self._interface

    async def _probe_ip(self) -> bool:
        try:
            # The probe carries its own timeout; this bound only guards misbehaving probes.
            return bool(await self._bounded(self._probe.probe(self._config.ip), self._config.probe_timeout + 1.0))
        except Exception:
            _logger.debug("Probe of %s failed", self._config.ip, exc_info=True)
            return False

    async def _read_network(self, interface: str) -> str | None:
        assert self._wifi is not None  # noqa: S101
        try:
            name = await self._bounded(self._wifi.current_network(interface), self._config.command_timeout)
        except Exception as exc:
            _logger.debug("Reading current network on %s failed: %s", interface, exc)
            return None
        return name or ""

    # ------------------------------------------------------------------
    # Poll tick
    # ------------------------------------------------------------------

    async def poll_once(self) -> ConnectionStatus:
        """Run one poll tick and return the resulting status.

        A tick that lands while a connect/disconnect command runs leaves the
        state alone; the command owns the transition.
        """
        if self._command_lock.locked():
            return self.status

        interface = await self._ensure_interface()
        if interface is None:
            reachable = await self._probe_ip()
            if self._command_lock.locked():
                return self.status
            self._update(
                state=state_for_reachability(reachable),
                current_ssid=None if reachable else "",
            )
            return self.status

        network_name = await self._read_network(interface)
        if self._command_lock.locked():
            return self.status
        if poll_step(interface, network_name, self._config.ssid) == PollStep.CONNECTED:
            self._update(state=ConnectionState.CONNECTED, current_ssid=network_name)
            return self.status

        reachable = await self._probe_ip()
        if self._command_lock.locked():
            return self.status
        self._update(
            state=state_for_reachability(reachable),
            current_ssid=network_name if network_name is not None else "",
        )
        return self.status

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.exception("Connectivity poll tick failed")
            await asyncio.sleep(self._config.poll_interval)

    def start(self) -> None:
        """Start the repeating poll tick (first tick runs immediately)."""
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name="agosync-connectivity-poll")

    async def stop(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionStatus:
        """Join the AGO network, remembering the network being left."""
        async with self._command_lock:
            await self._connect_locked()
        return self.status

    async def _connect_locked(self) -> None:
        target = self._config.ssid
        interface = await self._ensure_interface()

        if interface is None:
            if await self._probe_ip():
                self._update(state=ConnectionState.CONNECTED)
                emit(self._notify, "AGO is reachable")
                return
            self._update(state=ConnectionState.DISCONNECTED)
            emit(self._notify, "WiFi interface not found", NoticeLevel.ERROR)
            return

        current = await self._read_network(interface)
        if current is not None:
            self._update(current_ssid=current)

        if ssid_matcher.matches(self._current_ssid, target):
            self._update(state=ConnectionState.CONNECTED)
            emit(self._notify, "Already connected to AGO")
            return

        if await self._probe_ip():
            self._update(state=ConnectionState.CONNECTED)
            emit(self._notify, "AGO is reachable")
            return

        # The only place the previous network is recorded; never the AGO itself.
        if self._current_ssid and not ssid_matcher.matches(self._current_ssid, target):
            self._update(previous_ssid=self._current_ssid)

        self._update(state=ConnectionState.CONNECTING)
        assert self._wifi is not None  # noqa: S101
        try:
            await self._bounded(
                self._wifi.join(interface, target, self._config.password),
                self._config.command_timeout,
            )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            _logger.debug("Joining %s failed: %s", target, error)
            # The join may have succeeded despite a benign error.
            current = await self._read_network(interface)
            if current is not None:
                self._update(current_ssid=current)
                if ssid_matcher.matches(current, target):
                    self._update(state=ConnectionState.CONNECTED)
                    emit(self._notify, "Connected to AGO")
                    return
            if await self._probe_ip():
                self._update(state=ConnectionState.CONNECTED)
                emit(self._notify, "Connected to AGO")
                return
            self._update(state=ConnectionState.DISCONNECTED)
            emit(self._notify, f"Connection failed: {error}", NoticeLevel.ERROR)
            return

        # The next poll tick confirms the join.
        emit(self._notify, "Connected to AGO")

    async def disconnect(self) -> ConnectionStatus:
        """Leave the AGO network, rejoining the previous network when enabled."""
        if self._wifi is None:
            return self.status
        async with self._command_lock:
            interface = await self._ensure_interface()
            if interface is None:
                return self.status

            self._update(state=ConnectionState.CONNECTING)
            previous = self._previous_ssid
            if self._config.auto_reconnect and previous:
                try:
                    await self._bounded(self._wifi.rejoin(interface, previous), self._config.command_timeout)
                except Exception as exc:
                    _logger.debug("Rejoining %s failed: %s", previous, exc)
                    emit(self._notify, "Failed to reconnect", NoticeLevel.ERROR)
                else:
                    emit(self._notify, f"Reconnected to {previous}")
            else:
                emit(self._notify, "Disconnected from AGO. Reconnect to your WiFi manually.", NoticeLevel.INFO)
            self._update(state=ConnectionState.DISCONNECTED)
        return self.status
