"""Shared fixtures: an in-memory stand-in for the BlueZ management client."""

from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock

import pytest

from bluez_hci.const import ControllerConfig
from bluez_hci.controller import InterfaceController
from bluez_hci.errors import ServiceError


class FakeClient:
    """Mimics :class:`bluez_hci.bluez.BluezClient` without D-Bus.

    ``powered_script`` (if set) feeds successive ``get_powered`` results;
    once exhausted, ``powered`` is returned.  With ``power_follows``
    the adapter adopts every requested power state immediately.
    """

    def __init__(self) -> None:
        self.powered = False
        self.powered_script: list[bool] = []
        self.power_follows = True
        self.discovering = False
        self.devices: dict[str, dict[str, Any]] = {}
        self.connect_error: ServiceError | None = None
        self.calls: list[tuple[Any, ...]] = []
        self.subscribers: dict[int, Any] = {}
        self.subscribed = threading.Event()
        self.discovery_started = threading.Event()
        self._next_handle = 1

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def _device(self, path: str) -> dict[str, Any]:
        if path not in self.devices:
            raise ServiceError(
                f"{path}: Method GetAll doesn't exist",
                dbus_error="org.freedesktop.DBus.Error.UnknownObject",
            )
        return self.devices[path]

    # adapter
    def get_powered(self, path: str) -> bool:
        self.calls.append(("get_powered", path))
        if self.powered_script:
            return self.powered_script.pop(0)
        return self.powered

    def set_powered(self, path: str, powered: bool) -> None:
        self.calls.append(("set_powered", path, powered))
        if self.power_follows:
            self.powered = powered

    def get_discovering(self, path: str) -> bool:
        self.calls.append(("get_discovering", path))
        return self.discovering

    def set_discovery_filter(self, path: str, filters: dict[str, Any]) -> None:
        self.calls.append(("set_discovery_filter", path, dict(filters)))

    def start_discovery(self, path: str) -> None:
        self.calls.append(("start_discovery", path))
        self.discovering = True
        self.discovery_started.set()

    def stop_discovery(self, path: str) -> None:
        self.calls.append(("stop_discovery", path))
        self.discovering = False

    # devices
    def list_objects(self, interface: str) -> list[str]:
        self.calls.append(("list_objects", interface))
        return sorted(self.devices)

    def get_address(self, path: str) -> str:
        return self._device(path)["Address"]

    def get_name(self, path: str) -> str | None:
        return self._device(path).get("Name")

    def get_rssi(self, path: str) -> int:
        self.calls.append(("get_rssi", path))
        return self._device(path).get("RSSI", 0)

    def get_connected(self, path: str) -> bool:
        return self._device(path).get("Connected", False)

    def connect(self, path: str, timeout: float) -> None:
        self.calls.append(("connect", path, timeout))
        if self.connect_error is not None:
            raise self.connect_error
        self._device(path)["Connected"] = True

    def disconnect(self, path: str) -> None:
        self.calls.append(("disconnect", path))
        self._device(path)["Connected"] = False

    # notifications
    def subscribe_devices_added(self, callback: Any) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self.subscribers[handle] = callback
        self.subscribed.set()
        return handle

    def unsubscribe(self, handle: int) -> None:
        self.calls.append(("unsubscribe", handle))
        self.subscribers.pop(handle, None)

    def announce(self, controller: InterfaceController, path: str, props: dict[str, Any]) -> None:
        """Deliver an ``InterfacesAdded`` notification on the controller's loop."""
        done = threading.Event()

        def _dispatch() -> None:
            try:
                for callback in list(self.subscribers.values()):
                    callback(path, props)
            finally:
                done.set()

        controller.event_loop.call_soon(_dispatch)
        assert done.wait(2.0)

    def close(self) -> None:
        self.calls.append(("close",))


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def config() -> ControllerConfig:
    return ControllerConfig(power_attempts=5, power_delay=0.01)


@pytest.fixture
def controller(fake_client, config):
    ctrl = InterfaceController("hci0", config=config, client=fake_client, classic=MagicMock())
    yield ctrl
    ctrl.close()
