"""Connection status published by the connectivity manager."""

from __future__ import annotations

from enum import StrEnum

from agosync.models._base import AgoBaseModel


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionStatus(AgoBaseModel):
    """Snapshot of the connection state machine.

    ``previous_ssid`` is the non-AGO network that was joined before the last
    ``connect()`` switched networks; it is what ``disconnect()`` restores.
    """

    state: ConnectionState = ConnectionState.DISCONNECTED
    current_ssid: str = ""
    previous_ssid: str = ""
    interface: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED
