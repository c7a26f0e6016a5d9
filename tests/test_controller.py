"""Tests for controller module."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from bluez_hci.connection import Connection
from bluez_hci.const import ControllerConfig
from bluez_hci.controller import DiscoverySession, InterfaceController
from bluez_hci.errors import LoopStoppedError, ServiceError, Timeout

ADAPTER = "/org/bluez/hci0"
DEV_A = "/org/bluez/hci0/dev_AA_AA_AA_AA_AA_AA"
DEV_B = "/org/bluez/hci0/dev_BB_BB_BB_BB_BB_BB"
DEV_C = "/org/bluez/hci0/dev_CC_CC_CC_CC_CC_CC"


def _device(address: str, name: str | None = None, rssi: int = 0, connected: bool = False):
    props = {"Address": address, "RSSI": rssi, "Connected": connected}
    if name is not None:
        props["Name"] = name
    return props


def _lescan_in_thread(controller: InterfaceController, timeout: float):
    result: dict = {}

    def _run():
        result["devices"] = controller.lescan(timeout)

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread, result


# ── DiscoverySession ──────────────────────────────────────────────


def test_discovery_session_records_unknown_name():
    session = DiscoverySession(2.0)
    session.add("AA:AA:AA:AA:AA:AA", None)
    session.add("BB:BB:BB:BB:BB:BB", "Sensor")
    assert session.devices == {
        "AA:AA:AA:AA:AA:AA": "unknown",
        "BB:BB:BB:BB:BB:BB": "Sensor",
    }
    assert session.result is None


def test_discovery_session_keeps_first_name():
    session = DiscoverySession(2.0)
    session.add("AA:AA:AA:AA:AA:AA", "First")
    session.add("AA:AA:AA:AA:AA:AA", "Second")
    assert session.devices["AA:AA:AA:AA:AA:AA"] == "First"


# ── construction ──────────────────────────────────────────────────


def test_controller_starts_event_loop(controller):
    assert controller.name == "hci0"
    assert controller.path == ADAPTER
    assert controller.event_loop.is_running


# ── up() ──────────────────────────────────────────────────────────


def test_up_is_idempotent(controller, fake_client):
    fake_client.powered = True

    controller.up()
    controller.up()

    assert fake_client.count("set_powered") == 0


def test_up_starts_le_discovery(controller, fake_client):
    fake_client.powered = True

    controller.up()

    assert ("set_discovery_filter", ADAPTER, {"Transport": "le"}) in fake_client.calls
    assert fake_client.discovering is True


def test_up_does_not_restart_running_discovery(controller, fake_client):
    fake_client.powered = True
    fake_client.discovering = True

    controller.up()

    assert fake_client.count("set_discovery_filter") == 0
    assert fake_client.count("start_discovery") == 0


def test_up_ignores_start_discovery_failure(controller, fake_client):
    fake_client.start_discovery = MagicMock(
        side_effect=ServiceError("Resource Not Ready", dbus_error="org.bluez.Error.NotReady")
    )

    controller.up()

    assert fake_client.powered is True


def test_up_powers_on_when_filter_rejected_while_off(controller, fake_client):
    assert fake_client.powered is False
    fake_client.set_discovery_filter = MagicMock(
        side_effect=ServiceError("Resource Not Ready", dbus_error="org.bluez.Error.NotReady")
    )

    controller.up()

    assert ("set_powered", ADAPTER, True) in fake_client.calls
    assert fake_client.powered is True
    assert fake_client.count("start_discovery") == 0


def test_up_returns_on_third_poll(controller, fake_client):
    fake_client.power_follows = False
    # pre-check, then three polls
    fake_client.powered_script = [False, False, False, True]

    controller.up()

    assert fake_client.calls.count(("set_powered", ADAPTER, True)) == 1
    assert fake_client.count("get_powered") == 1 + 3


def test_up_times_out_after_five_attempts(controller, fake_client):
    fake_client.power_follows = False

    with pytest.raises(Timeout, match="hci0"):
        controller.up()

    assert fake_client.count("get_powered") == 1 + 5


def test_up_timeout_is_builtin_timeout_error(controller, fake_client):
    fake_client.power_follows = False

    with pytest.raises(TimeoutError):
        controller.up()


def test_up_wait_is_bounded(fake_client):
    fake_client.power_follows = False
    cfg = ControllerConfig(power_attempts=3, power_delay=0.05)
    ctrl = InterfaceController("hci0", config=cfg, client=fake_client, classic=MagicMock())
    try:
        start = time.monotonic()
        with pytest.raises(Timeout):
            ctrl.up()
        assert time.monotonic() - start < 1.0
    finally:
        ctrl.close()


# ── down() ────────────────────────────────────────────────────────


def test_down_powers_off(controller, fake_client):
    fake_client.powered = True

    controller.down()

    assert ("set_powered", ADAPTER, False) in fake_client.calls
    assert fake_client.powered is False


def test_down_is_idempotent(controller, fake_client):
    controller.down()
    controller.down()

    assert fake_client.count("set_powered") == 0


def test_down_times_out(controller, fake_client):
    fake_client.powered = True
    fake_client.power_follows = False

    with pytest.raises(Timeout):
        controller.down()


def test_down_unblocks_lescan(controller, fake_client):
    fake_client.powered = True

    start = time.monotonic()
    thread, result = _lescan_in_thread(controller, 30.0)
    assert fake_client.discovery_started.wait(2.0)
    time.sleep(0.1)

    controller.down()
    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert result["devices"] == {}
    assert time.monotonic() - start < 5.0


# ── reset() ───────────────────────────────────────────────────────


def test_reset_runs_down_then_up(controller, fake_client):
    fake_client.powered = True

    controller.reset()

    power_requests = [call[2] for call in fake_client.calls if call[0] == "set_powered"]
    assert power_requests == [False, True]


def test_reset_calls_each_half_once(controller):
    order = []
    controller.down = MagicMock(side_effect=lambda: order.append("down"))
    controller.up = MagicMock(side_effect=lambda: order.append("up"))

    controller.reset()

    assert order == ["down", "up"]


# ── is_up() ───────────────────────────────────────────────────────


def test_is_up_reads_live_state(controller, fake_client):
    fake_client.powered = True
    assert controller.is_up() is True
    fake_client.powered = False
    assert controller.is_up() is False


# ── lescan() ──────────────────────────────────────────────────────


def test_lescan_filters_zero_rssi(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", rssi=5)
    fake_client.devices[DEV_B] = _device("BB:BB:BB:BB:BB:BB", "B", rssi=0)

    found = controller.lescan(0.05)

    assert found == {"AA:AA:AA:AA:AA:AA": "A"}


def test_lescan_negative_rssi_is_visible(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", rssi=-70)

    assert controller.lescan(0.05) == {"AA:AA:AA:AA:AA:AA": "A"}


def test_lescan_unknown_name(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", None, rssi=-40)

    assert controller.lescan(0.05) == {"AA:AA:AA:AA:AA:AA": "unknown"}


def test_lescan_ignores_other_adapters(controller, fake_client):
    fake_client.devices["/org/bluez/hci1/dev_AA_AA_AA_AA_AA_AA"] = _device(
        "AA:AA:AA:AA:AA:AA", "other", rssi=-40
    )
    fake_client.devices["/org/bluez/hci01/dev_BB_BB_BB_BB_BB_BB"] = _device(
        "BB:BB:BB:BB:BB:BB", "prefix", rssi=-40
    )

    assert controller.lescan(0.05) == {}


def test_lescan_skips_failing_known_device(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", rssi=-40)
    fake_client.devices[DEV_B] = {"RSSI": -40}  # no Address

    original = fake_client.get_address

    def _get_address(path):
        if path == DEV_B:
            raise ServiceError("object vanished")
        return original(path)

    fake_client.get_address = _get_address

    assert controller.lescan(0.05) == {"AA:AA:AA:AA:AA:AA": "A"}


def test_lescan_skips_device_whose_rssi_lookup_fails(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", rssi=-40)
    fake_client.devices[DEV_B] = _device("BB:BB:BB:BB:BB:BB", "B", rssi=-40)

    original = fake_client.get_rssi

    def _get_rssi(path):
        if path == DEV_B:
            raise ServiceError("object vanished")
        return original(path)

    fake_client.get_rssi = _get_rssi

    assert controller.lescan(0.05) == {"AA:AA:AA:AA:AA:AA": "A"}


def test_lescan_merges_announced_devices(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", rssi=-40)

    thread, result = _lescan_in_thread(controller, 0.5)
    assert fake_client.subscribed.wait(2.0)

    # BlueZ creates the object, then announces it
    fake_client.devices[DEV_C] = _device("CC:CC:CC:CC:CC:CC", "C", rssi=-60)
    fake_client.announce(
        controller, DEV_C, {"Address": "CC:CC:CC:CC:CC:CC", "Name": "C", "RSSI": -60}
    )
    thread.join(timeout=3.0)

    assert not thread.is_alive()
    assert result["devices"] == {
        "AA:AA:AA:AA:AA:AA": "A",
        "CC:CC:CC:CC:CC:CC": "C",
    }


def test_lescan_ignores_malformed_announcement(controller, fake_client):
    thread, result = _lescan_in_thread(controller, 0.3)
    assert fake_client.subscribed.wait(2.0)

    fake_client.announce(controller, DEV_C, {"Name": "no address"})
    fake_client.announce(
        controller,
        "/org/bluez/hci1/dev_CC_CC_CC_CC_CC_CC",
        {"Address": "CC:CC:CC:CC:CC:CC"},
    )
    thread.join(timeout=3.0)

    assert result["devices"] == {}


def test_lescan_announced_but_gone_is_dropped(controller, fake_client):
    thread, result = _lescan_in_thread(controller, 0.3)
    assert fake_client.subscribed.wait(2.0)

    fake_client.devices[DEV_B] = _device("BB:BB:BB:BB:BB:BB", "B", rssi=0)
    fake_client.announce(controller, DEV_B, {"Address": "BB:BB:BB:BB:BB:BB", "Name": "B"})
    thread.join(timeout=3.0)

    assert result["devices"] == {}


def test_lescan_unsubscribes_and_leaves_discovery_running(controller, fake_client):
    controller.lescan(0.05)

    assert fake_client.subscribers == {}
    assert fake_client.count("unsubscribe") == 1
    assert fake_client.discovering is True
    assert fake_client.count("stop_discovery") == 0


def test_lescan_returns_within_timeout(controller, fake_client):
    start = time.monotonic()
    controller.lescan(0.2)
    elapsed = time.monotonic() - start

    assert 0.15 <= elapsed < 1.5


def test_lescan_unsubscribes_on_discovery_failure(controller, fake_client):
    fake_client.set_discovery_filter = MagicMock(side_effect=ServiceError("rejected"))

    with pytest.raises(ServiceError):
        controller.lescan(0.05)

    assert fake_client.subscribers == {}


def test_lescan_tolerates_unsubscribe_after_loop_stopped(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", rssi=-40)
    fake_client.unsubscribe = MagicMock(
        side_effect=LoopStoppedError("event loop for hci0 is not running")
    )

    assert controller.lescan(0.05) == {"AA:AA:AA:AA:AA:AA": "A"}
    fake_client.unsubscribe.assert_called_once()


# ── connect() ─────────────────────────────────────────────────────


def test_connect_issues_connect(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A")

    conn = controller.connect("aa:aa:aa:aa:aa:aa", 7.5)

    assert ("connect", DEV_A, 7.5) in fake_client.calls
    assert isinstance(conn, Connection)
    assert conn.adapter == "hci0"
    assert conn.address == "AA:AA:AA:AA:AA:AA"
    assert conn.path == DEV_A
    assert conn.timeout == 7.5


def test_connect_already_connected(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A", connected=True)

    conn = controller.connect("AA:AA:AA:AA:AA:AA", 5.0)

    assert fake_client.count("connect") == 0
    assert conn.is_connected() is True


def test_connect_error_is_raised_without_retry(controller, fake_client):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A")
    fake_client.connect_error = ServiceError(
        "Software caused connection abort", dbus_error="org.bluez.Error.Failed"
    )

    with pytest.raises(ServiceError) as exc_info:
        controller.connect("AA:AA:AA:AA:AA:AA", 5.0)

    assert exc_info.value.dbus_error == "org.bluez.Error.Failed"
    assert fake_client.count("connect") == 1


def test_connect_unknown_device(controller):
    with pytest.raises(ServiceError):
        controller.connect("AA:AA:AA:AA:AA:AA", 5.0)


def test_connect_rejects_bad_address(controller):
    with pytest.raises(ValueError):
        controller.connect("not-an-address", 5.0)


# ── classic delegation ────────────────────────────────────────────


def test_classic_operations_are_delegated(fake_client, config):
    classic = MagicMock()
    classic.scan.return_value = {"AA:AA:AA:AA:AA:AA": "Phone"}
    classic.detect.return_value = True
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=classic)
    try:
        assert ctrl.scan() == {"AA:AA:AA:AA:AA:AA": "Phone"}
        assert ctrl.detect("AA:AA:AA:AA:AA:AA") is True
        assert ctrl.info() is classic.info.return_value
        classic.detect.assert_called_once_with("AA:AA:AA:AA:AA:AA")
    finally:
        ctrl.close()


# ── close() ───────────────────────────────────────────────────────


def test_close_stops_discovery_and_loop(fake_client, config):
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock())
    fake_client.discovering = True

    ctrl.close()

    assert fake_client.count("stop_discovery") == 1
    assert not ctrl.event_loop.is_running
    assert ctrl.closed
    # injected clients are not closed by the controller
    assert fake_client.count("close") == 0


def test_close_is_idempotent(fake_client, config):
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock())
    ctrl.close()
    ctrl.close()
    assert fake_client.count("get_discovering") == 1


def test_close_swallows_errors(fake_client, config):
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock())
    fake_client.get_discovering = MagicMock(side_effect=ServiceError("bus gone"))

    ctrl.close()  # must not raise

    assert not ctrl.event_loop.is_running


def test_close_unblocks_lescan(fake_client, config):
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock())

    start = time.monotonic()
    thread, result = _lescan_in_thread(ctrl, 3.0)
    assert fake_client.discovery_started.wait(2.0)
    time.sleep(0.1)

    ctrl.close()
    thread.join(timeout=2.0)

    assert not thread.is_alive()
    assert result["devices"] == {}
    assert time.monotonic() - start < 1.0


def test_context_manager_closes(fake_client, config):
    with InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock()) as ctrl:
        assert ctrl.event_loop.is_running
    assert not ctrl.event_loop.is_running


def test_connection_survives_close(fake_client, config):
    fake_client.devices[DEV_A] = _device("AA:AA:AA:AA:AA:AA", "A")
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock())
    conn = ctrl.connect("AA:AA:AA:AA:AA:AA", 5.0)

    ctrl.close()

    assert conn.address == "AA:AA:AA:AA:AA:AA"
    assert conn.ble_device.details["path"] == DEV_A
