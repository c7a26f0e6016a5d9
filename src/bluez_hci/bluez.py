"""BlueZ D-Bus management client.

Provides the object-path helpers used to address adapters and devices
on the ``org.bluez`` service, and :class:`BluezClient`, a synchronous
facade over ``dbus-fast`` that the controller uses for every adapter
and device operation.

All D-Bus traffic runs on a single :class:`~bluez_hci.loop.EventLoopThread`
through one long-lived ``MessageBus`` connection to the system bus.
Caller threads block on the result of each call, bounded by the
client's call timeout.  The connection is created lazily on first use
and re-created if it drops.

Every call goes through raw ``bus.call(Message(...))`` rather than
proxy objects, which skips the ``Introspect`` round trip per object and
keeps the message flow explicit.

``InterfacesAdded`` signals are delivered to subscribers registered
with :meth:`BluezClient.subscribe_devices_added`.  Subscriber callbacks
run on the event loop thread and must not block.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from dbus_fast import Message, MessageType, Variant

from .const import (
    ADAPTER_INTERFACE,
    BLUEZ_NAMESPACE,
    BLUEZ_SERVICE,
    DEFAULT_CALL_TIMEOUT,
    DEVICE_INTERFACE,
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
)
from .errors import ServiceError
from .loop import EventLoopThread

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

_ADDRESS_RE = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")

_DBUS_SERVICE = "org.freedesktop.DBus"
_DBUS_PATH = "/org/freedesktop/DBus"

_INTERFACES_ADDED_MATCH = (
    f"type='signal',sender='{BLUEZ_SERVICE}',"
    f"interface='{OBJECT_MANAGER_INTERFACE}',member='InterfacesAdded'"
)

DeviceAddedCallback = Callable[[str, dict[str, Any]], None]


def normalize_address(address: str) -> str:
    """Return *address* upper-cased, raising ``ValueError`` if malformed.

    Example::

        >>> normalize_address("aa:bb:cc:dd:ee:ff")
        'AA:BB:CC:DD:EE:FF'
    """
    normalized = address.strip().upper()
    if not _ADDRESS_RE.match(normalized):
        raise ValueError(f"invalid Bluetooth address: {address!r}")
    return normalized


def adapter_path(adapter: str) -> str:
    """Return the BlueZ object path of *adapter*.

    Example::

        >>> adapter_path("hci0")
        '/org/bluez/hci0'
    """
    return f"{BLUEZ_NAMESPACE}/{adapter}"


def address_to_bluez_path(address: str, adapter: str = "hci0") -> str:
    """Convert a BLE address + adapter to a BlueZ D-Bus object path.

    Example::

        >>> address_to_bluez_path("AA:BB:CC:DD:EE:FF", "hci0")
        '/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF'
    """
    dev_part = f"dev_{address.upper().replace(':', '_')}"
    return f"{adapter_path(adapter)}/{dev_part}"


def is_adapter_child(path: str, adapter: str) -> bool:
    """Return whether *path* names an object owned by *adapter*.

    ``/org/bluez/hci1/dev_...`` does not belong to ``hci10`` and vice
    versa; only exact path-segment prefixes match.
    """
    return path.startswith(adapter_path(adapter) + "/")


def _unwrap(value: Any) -> Any:
    """Strip ``dbus_fast.Variant`` wrappers from a property value."""
    if isinstance(value, Variant):
        return value.value
    return value


def _unwrap_props(props: dict[str, Any]) -> dict[str, Any]:
    return {name: _unwrap(value) for name, value in props.items()}


class BluezClient:
    """Synchronous facade over the ``org.bluez`` D-Bus API.

    Each public method runs one coroutine on *loop* and blocks the
    caller until it completes.  The ``async_*`` coroutines can also be
    awaited directly from code already running on the loop.

    Parameters
    ----------
    loop:
        The running event loop thread that owns the D-Bus connection.
    call_timeout:
        Seconds a caller waits for a single call before it is cancelled
        and reported as :class:`~bluez_hci.errors.ServiceError`.
    """

    def __init__(
        self,
        loop: EventLoopThread,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        self._loop = loop
        self._call_timeout = call_timeout
        self._bus: Any = None  # dbus_fast.aio.MessageBus, only touched on the loop
        self._signal_bus: Any = None  # the bus our InterfacesAdded handler is on
        self._subscriptions: dict[int, DeviceAddedCallback] = {}
        self._next_handle = 1

    def _run(self, coro: Coroutine[Any, Any, _T], timeout: float | None = None) -> _T:
        return self._loop.run(coro, timeout=timeout or self._call_timeout)

    # ── Bus handling (loop thread only) ────────────────────────────

    async def _get_bus(self) -> Any:
        """Get the system bus connection, connecting or reconnecting as needed."""
        from dbus_fast.aio import MessageBus
        from dbus_fast.constants import BusType

        if self._bus is not None:
            if self._bus.connected:
                return self._bus
            _LOGGER.debug("System D-Bus connection dropped, reconnecting")

        try:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        except Exception as exc:
            self._bus = None
            raise ServiceError(f"cannot connect to the system D-Bus: {exc}") from exc
        _LOGGER.debug("System D-Bus connected")

        if self._subscriptions:
            await self._install_signal_handler(self._bus)
        return self._bus

    async def _call(self, message: Message, context: str) -> Message:
        """Send *message* and return the reply, raising on error replies."""
        bus = await self._get_bus()
        try:
            reply = await bus.call(message)
        except Exception as exc:
            raise ServiceError(f"{context}: {exc}") from exc
        if reply is None:
            raise ServiceError(f"{context}: no reply")
        if reply.message_type == MessageType.ERROR:
            raise ServiceError.from_reply(reply, context)
        return reply

    async def _call_method(
        self,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list[Any] | None = None,
    ) -> Message:
        return await self._call(
            Message(
                destination=BLUEZ_SERVICE,
                path=path,
                interface=interface,
                member=member,
                signature=signature,
                body=body or [],
            ),
            f"{interface}.{member} on {path}",
        )

    async def _get_property(self, path: str, interface: str, name: str) -> Any:
        reply = await self._call_method(
            path, PROPERTIES_INTERFACE, "Get", "ss", [interface, name]
        )
        return _unwrap(reply.body[0])

    async def _get_all(self, path: str, interface: str) -> dict[str, Any]:
        reply = await self._call_method(
            path, PROPERTIES_INTERFACE, "GetAll", "s", [interface]
        )
        return _unwrap_props(reply.body[0])

    async def _install_signal_handler(self, bus: Any) -> None:
        if self._signal_bus is bus:
            return
        bus.add_message_handler(self._on_message)
        try:
            await self._call(
                Message(
                    destination=_DBUS_SERVICE,
                    path=_DBUS_PATH,
                    interface=_DBUS_SERVICE,
                    member="AddMatch",
                    signature="s",
                    body=[_INTERFACES_ADDED_MATCH],
                ),
                "AddMatch InterfacesAdded",
            )
        except ServiceError:
            bus.remove_message_handler(self._on_message)
            raise
        self._signal_bus = bus

    async def _remove_signal_handler(self) -> None:
        bus = self._signal_bus
        if bus is None:
            return
        self._signal_bus = None
        bus.remove_message_handler(self._on_message)
        if not bus.connected:
            return
        try:
            await self._call(
                Message(
                    destination=_DBUS_SERVICE,
                    path=_DBUS_PATH,
                    interface=_DBUS_SERVICE,
                    member="RemoveMatch",
                    signature="s",
                    body=[_INTERFACES_ADDED_MATCH],
                ),
                "RemoveMatch InterfacesAdded",
            )
        except ServiceError:
            _LOGGER.debug("RemoveMatch for InterfacesAdded failed", exc_info=True)

    def _on_message(self, message: Message) -> None:
        """Dispatch ``InterfacesAdded`` signals for device objects."""
        if (
            message.message_type != MessageType.SIGNAL
            or message.interface != OBJECT_MANAGER_INTERFACE
            or message.member != "InterfacesAdded"
            or len(message.body) < 2
        ):
            return None

        path, interfaces = message.body[0], message.body[1]
        if not isinstance(interfaces, dict) or DEVICE_INTERFACE not in interfaces:
            return None

        props = _unwrap_props(interfaces[DEVICE_INTERFACE])
        for callback in list(self._subscriptions.values()):
            try:
                callback(path, props)
            except Exception:
                _LOGGER.debug(
                    "InterfacesAdded subscriber failed for %s", path, exc_info=True
                )
        return None

    # ── Coroutines ─────────────────────────────────────────────────

    async def async_get_powered(self, path: str) -> bool:
        return bool(await self._get_property(path, ADAPTER_INTERFACE, "Powered"))

    async def async_set_powered(self, path: str, powered: bool) -> None:
        await self._call_method(
            path,
            PROPERTIES_INTERFACE,
            "Set",
            "ssv",
            [ADAPTER_INTERFACE, "Powered", Variant("b", powered)],
        )

    async def async_get_discovering(self, path: str) -> bool:
        return bool(await self._get_property(path, ADAPTER_INTERFACE, "Discovering"))

    async def async_set_discovery_filter(self, path: str, filters: dict[str, Any]) -> None:
        variants = {
            key: value if isinstance(value, Variant) else Variant("s", str(value))
            for key, value in filters.items()
        }
        await self._call_method(
            path, ADAPTER_INTERFACE, "SetDiscoveryFilter", "a{sv}", [variants]
        )

    async def async_start_discovery(self, path: str) -> None:
        await self._call_method(path, ADAPTER_INTERFACE, "StartDiscovery")

    async def async_stop_discovery(self, path: str) -> None:
        await self._call_method(path, ADAPTER_INTERFACE, "StopDiscovery")

    async def async_list_objects(self, interface: str) -> list[str]:
        reply = await self._call_method(
            "/", OBJECT_MANAGER_INTERFACE, "GetManagedObjects"
        )
        objects: dict[str, dict[str, Any]] = reply.body[0]
        return sorted(path for path, ifaces in objects.items() if interface in ifaces)

    async def async_get_device_properties(self, path: str) -> dict[str, Any]:
        return await self._get_all(path, DEVICE_INTERFACE)

    async def async_connect(self, path: str, timeout: float) -> None:
        try:
            await asyncio.wait_for(
                self._call_method(path, DEVICE_INTERFACE, "Connect"),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ServiceError(
                f"{DEVICE_INTERFACE}.Connect on {path}: timed out after {timeout:.1f} s"
            ) from exc

    async def async_disconnect(self, path: str) -> None:
        await self._call_method(path, DEVICE_INTERFACE, "Disconnect")

    async def async_subscribe_devices_added(self, callback: DeviceAddedCallback) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._subscriptions[handle] = callback
        try:
            await self._install_signal_handler(await self._get_bus())
        except ServiceError:
            del self._subscriptions[handle]
            raise
        return handle

    async def async_unsubscribe(self, handle: int) -> None:
        self._subscriptions.pop(handle, None)
        if not self._subscriptions:
            await self._remove_signal_handler()

    async def async_close(self) -> None:
        self._subscriptions.clear()
        await self._remove_signal_handler()
        if self._bus is not None:
            try:
                self._bus.disconnect()
            except Exception:
                _LOGGER.debug("System D-Bus disconnect failed", exc_info=True)
            self._bus = None

    # ── Synchronous facade ─────────────────────────────────────────

    def get_powered(self, path: str) -> bool:
        return self._run(self.async_get_powered(path))

    def set_powered(self, path: str, powered: bool) -> None:
        self._run(self.async_set_powered(path, powered))

    def get_discovering(self, path: str) -> bool:
        return self._run(self.async_get_discovering(path))

    def set_discovery_filter(self, path: str, filters: dict[str, Any]) -> None:
        self._run(self.async_set_discovery_filter(path, filters))

    def start_discovery(self, path: str) -> None:
        self._run(self.async_start_discovery(path))

    def stop_discovery(self, path: str) -> None:
        self._run(self.async_stop_discovery(path))

    def list_objects(self, interface: str) -> list[str]:
        """Return the paths of every managed object implementing *interface*."""
        return self._run(self.async_list_objects(interface))

    def get_device_properties(self, path: str) -> dict[str, Any]:
        return self._run(self.async_get_device_properties(path))

    def get_address(self, path: str) -> str:
        props = self.get_device_properties(path)
        address = props.get("Address")
        if not isinstance(address, str):
            raise ServiceError(f"{path} reports no Address")
        return address

    def get_name(self, path: str) -> str | None:
        name = self.get_device_properties(path).get("Name")
        return name if isinstance(name, str) else None

    def get_rssi(self, path: str) -> int:
        """Return the cached RSSI of a device, ``0`` when BlueZ has none."""
        rssi = self.get_device_properties(path).get("RSSI", 0)
        return int(rssi) if isinstance(rssi, int) else 0

    def get_connected(self, path: str) -> bool:
        return bool(self.get_device_properties(path).get("Connected", False))

    def connect(self, path: str, timeout: float) -> None:
        """Call ``Device1.Connect``, bounded by *timeout* seconds."""
        self._run(self.async_connect(path, timeout), timeout=timeout + self._call_timeout)

    def disconnect(self, path: str) -> None:
        self._run(self.async_disconnect(path))

    def subscribe_devices_added(self, callback: DeviceAddedCallback) -> int:
        """Register *callback* for new ``Device1`` objects.

        The callback receives the object path and its unwrapped
        ``Device1`` properties, and runs on the event loop thread.
        Returns a handle for :meth:`unsubscribe`.
        """
        return self._run(self.async_subscribe_devices_added(callback))

    def unsubscribe(self, handle: int) -> None:
        """Remove a subscription.

        Runs on the event loop, so once this returns no callback for
        *handle* is executing or will execute.
        """
        self._run(self.async_unsubscribe(handle))

    def close(self) -> None:
        """Drop subscriptions and disconnect the bus (no-op once the loop stopped)."""
        if not self._loop.is_running:
            self._subscriptions.clear()
            self._bus = None
            return
        self._run(self.async_close())
