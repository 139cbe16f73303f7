"""OS-level WiFi capabilities.

The connectivity manager only needs four primitives: find the wireless
adapter, read the joined network name, join a network with a password and
rejoin a network whose credentials the OS already knows. Two backends
implement them by shelling out asynchronously:

* :class:`NetworksetupBackend` – macOS ``networksetup``
* :class:`NmcliBackend` – Linux NetworkManager ``nmcli``

Every failure (missing binary, non-zero exit, timeout) is raised as
:class:`~agosync.exceptions.AgoWifiError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from agosync._constants import DEFAULT_COMMAND_TIMEOUT_S
from agosync._redact import redact_argv
from agosync.exceptions import AgoWifiError

_logger = logging.getLogger(__name__)


class WifiBackend(Protocol):
    """Structural interface consumed by the connectivity manager."""

    async def detect_interface(self) -> str | None:
        ...

    async def current_network(self, interface: str) -> str:
        ...

    async def join(self, interface: str, ssid: str, password: str) -> None:
        ...

    async def rejoin(self, interface: str, ssid: str) -> None:
        ...


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return f"{self.stdout} {self.stderr}".strip()


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float = DEFAULT_COMMAND_TIMEOUT_S,
    secrets: Sequence[str | None] = (),
) -> CommandResult:
    """Run *argv* without a shell and capture its output.

    A non-zero exit status is returned, not raised; only a missing binary or
    a timeout raise :class:`AgoWifiError`.
    """
    _logger.debug("exec %s", redact_argv(argv, secrets))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise AgoWifiError(f"{argv[0]} command unavailable") from exc
    except OSError as exc:
        raise AgoWifiError(f"Failed to run {argv[0]}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.wait()
        raise AgoWifiError(f"{argv[0]} command timed out") from exc

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def _already_joined(text: str) -> bool:
    lowered = text.lower()
    return "already associated" in lowered or "already connected" in lowered


class NetworksetupBackend:
    """Drive the macOS ``networksetup`` tool."""

    def __init__(self, *, timeout: float = DEFAULT_COMMAND_TIMEOUT_S, binary: str = "networksetup") -> None:
        self._timeout = timeout
        self._binary = binary

    async def _run(self, *args: str, secrets: Sequence[str | None] = ()) -> CommandResult:
        return await run_command([self._binary, *args], timeout=self._timeout, secrets=secrets)

    async def detect_interface(self) -> str | None:
        result = await self._run("-listallhardwareports")
        return parse_hardware_ports(result.stdout)

    async def current_network(self, interface: str) -> str:
        result = await self._run("-getairportnetwork", interface)
        line = result.stdout.strip()
        lowered = line.lower()

        if (
            "not associated" in lowered
            or "not a wi-fi interface" in lowered
            or "error obtaining wireless information" in lowered
        ):
            return ""

        # Typical format: "Current Wi-Fi Network: <SSID>"
        if ":" in line:
            return line.split(":", 1)[1].strip().strip('"')

        if result.ok:
            return ""
        raise AgoWifiError(f"Failed to read current network: {result.stdout.strip()} {result.stderr.strip()}")

    async def join(self, interface: str, ssid: str, password: str) -> None:
        args = ["-setairportnetwork", interface, ssid]
        if password:
            args.append(password)
        first = await self._run(*args, secrets=[password])
        if first.ok or _already_joined(first.combined):
            return

        # Networks stored in the keychain may refuse an explicit password.
        if password:
            second = await self._run("-setairportnetwork", interface, ssid)
            if second.ok or _already_joined(second.combined):
                return

        raise AgoWifiError(f"Failed to connect: {first.stdout.strip()} {first.stderr.strip()}".strip())

    async def rejoin(self, interface: str, ssid: str) -> None:
        result = await self._run("-setairportnetwork", interface, ssid)
        if not result.ok:
            raise AgoWifiError(f"Failed to reconnect to {ssid}")


def parse_hardware_ports(output: str) -> str | None:
    """Return the device of the Wi-Fi/AirPort port in ``-listallhardwareports`` output."""
    found_wifi = False
    for line in output.splitlines():
        if "Wi-Fi" in line or "AirPort" in line:
            found_wifi = True
            continue
        if found_wifi and line.startswith("Device:"):
            device = line.removeprefix("Device:").strip()
            return device or None
        if found_wifi and line.startswith("Hardware Port:"):
            found_wifi = False
    return None


class NmcliBackend:
    """Interact with NetworkManager via nmcli commands."""

    def __init__(self, *, timeout: float = DEFAULT_COMMAND_TIMEOUT_S, binary: str = "nmcli") -> None:
        self._timeout = timeout
        self._binary = binary

    async def _run(self, *args: str, secrets: Sequence[str | None] = ()) -> str:
        result = await run_command([self._binary, *args], timeout=self._timeout, secrets=secrets)
        if not result.ok:
            raise AgoWifiError(result.stderr.strip() or result.stdout.strip() or f"nmcli exited with {result.returncode}")
        return result.stdout

    @staticmethod
    def _unescape_field(value: str) -> str:
        """Best effort unescaping for nmcli's colon-delimited output."""
        if "\\" not in value:
            return value
        return value.replace("\\\\", "\\").replace("\\:", ":")

    @staticmethod
    def _split_terse(line: str) -> list[str]:
        """Split a terse nmcli line on unescaped colons."""
        parts: list[str] = []
        current: list[str] = []
        escaped = False
        for char in line:
            if escaped:
                current.append("\\" + char)
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == ":":
                parts.append("".join(current))
                current = []
            else:
                current.append(char)
        parts.append("".join(current))
        return parts

    async def detect_interface(self) -> str | None:
        output = await self._run("-t", "-f", "DEVICE,TYPE,STATE", "device")
        for line in output.splitlines():
            if not line.strip():
                continue
            parts = line.split(":")
            if len(parts) < 3:
                continue
            device, dev_type, state = parts[:3]
            if dev_type.strip() == "wifi" and state.strip() != "unavailable":
                return device.strip() or None
        return None

    async def current_network(self, interface: str) -> str:
        output = await self._run(
            "-t", "-f", "ACTIVE,SSID", "device", "wifi", "list", "ifname", interface, "--rescan", "no"
        )
        for line in output.splitlines():
            parts = self._split_terse(line)
            if len(parts) < 2:
                continue
            if parts[0].strip().lower() in {"yes", "*"}:
                return self._unescape_field(parts[1]).strip()
        return ""

    async def join(self, interface: str, ssid: str, password: str) -> None:
        args = ["device", "wifi", "connect", ssid]
        if password:
            args.extend(["password", password])
        args.extend(["ifname", interface])
        try:
            await self._run(*args, secrets=[password])
        except AgoWifiError as exc:
            if _already_joined(str(exc)):
                return
            raise

    async def rejoin(self, interface: str, ssid: str) -> None:
        # A previously joined network has a saved profile named after it.
        try:
            await self._run("connection", "up", "id", ssid, "ifname", interface)
        except AgoWifiError:
            await self._run("device", "wifi", "connect", ssid, "ifname", interface)


def default_backend(*, timeout: float = DEFAULT_COMMAND_TIMEOUT_S) -> WifiBackend:
    """Pick the WiFi backend for the running platform."""
    if sys.platform == "darwin":
        return NetworksetupBackend(timeout=timeout)
    return NmcliBackend(timeout=timeout)
