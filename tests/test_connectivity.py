from __future__ import annotations

import asyncio

import pytest

from agosync.config import AgoConfig
from agosync.connectivity import ConnectivityManager, PollStep, poll_step, state_for_reachability
from agosync.exceptions import AgoWifiError
from agosync.models import ConnectionState, ConnectionStatus, Notice, NoticeLevel


class FakeWifi:
    def __init__(
        self,
        *,
        interface: str | None = "en0",
        network: str = "",
        join_error: Exception | None = None,
        join_connects: bool = True,
        rejoin_error: Exception | None = None,
    ) -> None:
        self.interface = interface
        self.network = network
        self.network_error: Exception | None = None
        self.join_error = join_error
        self.join_connects = join_connects
        self.rejoin_error = rejoin_error
        self.join_gate: asyncio.Event | None = None
        self.joins: list[tuple[str, str, str]] = []
        self.rejoins: list[tuple[str, str]] = []

    async def detect_interface(self) -> str | None:
        return self.interface

    async def current_network(self, interface: str) -> str:
        if self.network_error is not None:
            raise self.network_error
        return self.network

    async def join(self, interface: str, ssid: str, password: str) -> None:
        self.joins.append((interface, ssid, password))
        if self.join_gate is not None:
            await self.join_gate.wait()
        if self.join_connects:
            self.network = ssid
        if self.join_error is not None:
            raise self.join_error

    async def rejoin(self, interface: str, ssid: str) -> None:
        self.rejoins.append((interface, ssid))
        if self.rejoin_error is not None:
            raise self.rejoin_error
        self.network = ssid


class FakeProbe:
    def __init__(self, reachable: bool = False) -> None:
        self.reachable = reachable
        self.calls: list[str] = []

    async def probe(self, ip: str) -> bool:
        self.calls.append(ip)
        return self.reachable


def _manager(
    wifi: FakeWifi | None,
    probe: FakeProbe,
    notices: list[Notice],
    **config: object,
) -> ConnectivityManager:
    return ConnectivityManager(AgoConfig(**config), wifi, probe, notify=notices.append)  # type: ignore[arg-type]


def test_poll_step_decision_table() -> None:
    assert poll_step("en0", "AGO", "AGO") == PollStep.CONNECTED
    assert poll_step("en0", '"ago-5g"', "AGO") == PollStep.CONNECTED
    assert poll_step("en0", "HomeWiFi", "AGO") == PollStep.PROBE_IP
    assert poll_step("en0", "", "AGO") == PollStep.PROBE_IP
    assert poll_step("en0", None, "AGO") == PollStep.PROBE_IP
    assert poll_step(None, "AGO", "AGO") == PollStep.PROBE_IP


def test_state_for_reachability() -> None:
    assert state_for_reachability(True) == ConnectionState.CONNECTED
    assert state_for_reachability(False) == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_tick_unreachable_then_manual_join_connects_without_join_command() -> None:
    wifi = FakeWifi(network="")
    probe = FakeProbe(reachable=False)
    notices: list[Notice] = []
    manager = _manager(wifi, probe, notices)

    status = await manager.poll_once()
    assert status.state == ConnectionState.DISCONNECTED
    assert status.current_ssid == ""
    assert probe.calls == ["10.10.10.1"]

    wifi.network = "AGO"
    status = await manager.poll_once()
    assert status.state == ConnectionState.CONNECTED
    assert status.current_ssid == "AGO"
    assert wifi.joins == []


@pytest.mark.asyncio
async def test_tick_clears_current_name_when_read_fails() -> None:
    wifi = FakeWifi(network="AGO")
    manager = _manager(wifi, FakeProbe(reachable=False), [])

    assert (await manager.poll_once()).current_ssid == "AGO"

    wifi.network_error = AgoWifiError("airport busy")
    status = await manager.poll_once()
    assert status.state == ConnectionState.DISCONNECTED
    assert status.current_ssid == ""


@pytest.mark.asyncio
async def test_tick_on_other_network_uses_ip_probe() -> None:
    wifi = FakeWifi(network="HomeWiFi")
    manager = _manager(wifi, FakeProbe(reachable=True), [])

    status = await manager.poll_once()
    assert status.state == ConnectionState.CONNECTED
    assert status.current_ssid == "HomeWiFi"


@pytest.mark.asyncio
async def test_connect_on_matched_network_never_sets_previous() -> None:
    wifi = FakeWifi(network='"AGO"')
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(), notices)

    status = await manager.connect()

    assert status.state == ConnectionState.CONNECTED
    assert status.previous_ssid == ""
    assert wifi.joins == []
    assert notices[-1].message == "Already connected to AGO"


@pytest.mark.asyncio
async def test_connect_from_home_network_records_previous_and_disconnect_rejoins() -> None:
    wifi = FakeWifi(network="HomeWiFi")
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(reachable=False), notices)

    status = await manager.connect()
    assert wifi.joins == [("en0", "AGO", "12345678")]
    assert status.previous_ssid == "HomeWiFi"
    assert status.state == ConnectionState.CONNECTING
    assert notices[-1].message == "Connected to AGO"

    status = await manager.poll_once()
    assert status.state == ConnectionState.CONNECTED
    assert status.previous_ssid == "HomeWiFi"

    status = await manager.disconnect()
    assert wifi.rejoins == [("en0", "HomeWiFi")]
    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1] == Notice(message="Reconnected to HomeWiFi", level=NoticeLevel.SUCCESS)


@pytest.mark.asyncio
async def test_disconnect_ends_disconnected_when_rejoin_fails() -> None:
    wifi = FakeWifi(network="HomeWiFi", rejoin_error=AgoWifiError("no profile"))
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(), notices)

    await manager.connect()
    status = await manager.disconnect()

    assert wifi.rejoins == [("en0", "HomeWiFi")]
    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1] == Notice(message="Failed to reconnect", level=NoticeLevel.ERROR)


@pytest.mark.asyncio
async def test_unexpected_rejoin_error_still_ends_disconnected() -> None:
    wifi = FakeWifi(network="HomeWiFi", rejoin_error=OSError("boom"))
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(), notices)

    await manager.connect()
    status = await manager.disconnect()

    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1] == Notice(message="Failed to reconnect", level=NoticeLevel.ERROR)


@pytest.mark.asyncio
async def test_unexpected_join_error_ends_disconnected() -> None:
    wifi = FakeWifi(network="HomeWiFi", join_connects=False, join_error=RuntimeError("driver crashed"))
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(reachable=False), notices)

    status = await manager.connect()

    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1] == Notice(message="Connection failed: driver crashed", level=NoticeLevel.ERROR)


@pytest.mark.asyncio
async def test_unexpected_network_read_error_falls_back_to_probe() -> None:
    wifi = FakeWifi(network="AGO")
    wifi.network_error = OSError("permission denied")
    probe = FakeProbe(reachable=True)
    manager = _manager(wifi, probe, [])

    status = await manager.poll_once()

    assert status.state == ConnectionState.CONNECTED
    assert status.current_ssid == ""
    assert probe.calls == ["10.10.10.1"]


@pytest.mark.asyncio
async def test_disconnect_without_auto_reconnect_only_informs() -> None:
    wifi = FakeWifi(network="HomeWiFi")
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(), notices, auto_reconnect=False)

    await manager.connect()
    status = await manager.disconnect()

    assert wifi.rejoins == []
    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1].level == NoticeLevel.INFO


@pytest.mark.asyncio
async def test_join_failure_ends_disconnected_with_error_notice() -> None:
    wifi = FakeWifi(network="HomeWiFi", join_connects=False, join_error=AgoWifiError("wrong password"))
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(reachable=False), notices)

    status = await manager.connect()

    assert status.state == ConnectionState.DISCONNECTED
    assert status.current_ssid == "HomeWiFi"
    assert notices[-1] == Notice(message="Connection failed: wrong password", level=NoticeLevel.ERROR)


@pytest.mark.asyncio
async def test_join_error_after_successful_association_counts_as_connected() -> None:
    wifi = FakeWifi(network="HomeWiFi", join_connects=True, join_error=AgoWifiError("exit status 1"))
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(reachable=False), notices)

    status = await manager.connect()

    assert status.state == ConnectionState.CONNECTED
    assert status.current_ssid == "AGO"
    assert notices[-1].message == "Connected to AGO"


@pytest.mark.asyncio
async def test_join_timeout_is_a_failure() -> None:
    wifi = FakeWifi(network="HomeWiFi", join_connects=False)
    wifi.join_gate = asyncio.Event()
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(reachable=False), notices, command_timeout=0.01)

    status = await manager.connect()

    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1].level == NoticeLevel.ERROR
    assert notices[-1].message.startswith("Connection failed:")


@pytest.mark.asyncio
async def test_connect_short_circuits_when_device_reachable() -> None:
    wifi = FakeWifi(network="HomeWiFi")
    notices: list[Notice] = []
    manager = _manager(wifi, FakeProbe(reachable=True), notices)

    status = await manager.connect()

    assert status.state == ConnectionState.CONNECTED
    assert status.previous_ssid == ""
    assert wifi.joins == []
    assert notices[-1].message == "AGO is reachable"


@pytest.mark.asyncio
async def test_missing_adapter_falls_back_to_ip_probe_and_informs_once() -> None:
    wifi = FakeWifi(interface=None)
    probe = FakeProbe(reachable=True)
    notices: list[Notice] = []
    manager = _manager(wifi, probe, notices)

    assert (await manager.poll_once()).state == ConnectionState.CONNECTED
    probe.reachable = False
    assert (await manager.poll_once()).state == ConnectionState.DISCONNECTED

    info = [n for n in notices if n.level == NoticeLevel.INFO]
    assert len(info) == 1
    assert manager.status.interface is None


@pytest.mark.asyncio
async def test_ip_only_mode_connect_and_disconnect() -> None:
    notices: list[Notice] = []
    manager = _manager(None, FakeProbe(reachable=False), notices)

    status = await manager.connect()
    assert status.state == ConnectionState.DISCONNECTED
    assert notices[-1] == Notice(message="WiFi interface not found", level=NoticeLevel.ERROR)

    before = len(notices)
    assert (await manager.disconnect()).state == ConnectionState.DISCONNECTED
    assert len(notices) == before


@pytest.mark.asyncio
async def test_tick_during_connect_leaves_state_alone() -> None:
    wifi = FakeWifi(network="HomeWiFi")
    wifi.join_gate = asyncio.Event()
    probe = FakeProbe(reachable=False)
    manager = _manager(wifi, probe, [])

    task = asyncio.create_task(manager.connect())
    while manager.state != ConnectionState.CONNECTING:
        await asyncio.sleep(0)

    probe.reachable = True
    status = await manager.poll_once()
    assert status.state == ConnectionState.CONNECTING

    wifi.join_gate.set()
    await task
    assert (await manager.poll_once()).state == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_listeners_receive_changes_only_until_removed() -> None:
    wifi = FakeWifi(network="AGO")
    manager = _manager(wifi, FakeProbe(), [])
    seen: list[ConnectionStatus] = []
    remove = manager.add_listener(seen.append)

    await manager.poll_once()
    await manager.poll_once()
    assert [s.state for s in seen] == [ConnectionState.CONNECTED]

    remove()
    wifi.network = ""
    await manager.poll_once()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_reconfigure_changes_target_address() -> None:
    wifi = FakeWifi(network="AGO-Lab")
    probe = FakeProbe(reachable=False)
    manager = _manager(wifi, probe, [], ssid="Other")

    assert (await manager.poll_once()).state == ConnectionState.DISCONNECTED

    manager.reconfigure(AgoConfig(ssid="AGO-Lab", ip="192.168.4.1"))
    assert (await manager.poll_once()).state == ConnectionState.CONNECTED
    assert probe.calls == ["10.10.10.1"]


@pytest.mark.asyncio
async def test_poll_loop_runs_until_stopped() -> None:
    wifi = FakeWifi(network="AGO")
    manager = _manager(wifi, FakeProbe(), [], poll_interval=0.01)

    manager.start()
    assert manager.is_polling
    for _ in range(100):
        if manager.state == ConnectionState.CONNECTED:
            break
        await asyncio.sleep(0.01)
    await manager.stop()

    assert manager.state == ConnectionState.CONNECTED
    assert not manager.is_polling
