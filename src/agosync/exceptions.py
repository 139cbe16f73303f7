"""Custom exception hierarchy for agosync.

None of these are allowed to escape the connectivity poll loop, the
coalesced write path or the device program operations; those layers catch
them and turn them into a state value plus a :class:`~agosync.models.Notice`.
"""

from __future__ import annotations


class AgoError(Exception):
    """Base exception for all agosync errors."""


class AgoConfigError(AgoError):
    """Invalid configuration value (e.g. a non-numeric ``AGO_*_TIMEOUT``).

    A missing wireless adapter is not a configuration error; the
    connectivity manager reports it with an informational notice and falls
    back to IP probing.
    """


class AgoWifiError(AgoError):
    """An OS-level WiFi command failed or timed out.

    Treated as a transient network failure: the next poll tick retries.
    """


class AgoTransportError(AgoError):
    """HTTP-level failure talking to the device (network, timeout, bad body)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class AgoDeviceCommandError(AgoTransportError):
    """The device rejected a file operation (list, delete, upload).

    Surfaced to the user once; never retried automatically.
    """


class AgoPersistenceError(AgoError):
    """Durable store read or write failed.

    In-memory state is preserved; the next successful flush or reload heals.
    """
