"""Per-adapter orchestrator: power lifecycle, BLE discovery and connect.

:class:`InterfaceController` owns one adapter for its whole lifetime.
It starts an :class:`~bluez_hci.loop.EventLoopThread` at construction
(the only thread that receives D-Bus notifications) and stops it in
:meth:`InterfaceController.close`.

Locking discipline
------------------

- **status lock** serializes ``up()`` / ``down()`` (and so both halves
  of ``reset()``).
- **discovering lock** serializes the "is discovery running? then
  start / stop it" checks.  It is independent of the status lock
  because both ``lescan()`` and ``down()`` need it.
- **wait condition** parks a caller inside ``lescan()`` for the scan
  duration.  ``down()`` broadcasts it before powering off and
  ``close()`` before teardown, so neither waits out an in-progress scan.

The device map of a :class:`DiscoverySession` has no lock of its own.
The notification callback writes to it on the loop thread only while
the caller is parked; the caller unsubscribes (a call that itself runs
on the loop thread) before reading the map, so writes and reads never
overlap.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from .bluez import (
    BluezClient,
    adapter_path,
    address_to_bluez_path,
    is_adapter_child,
    normalize_address,
)
from .connection import Connection
from .const import DEVICE_INTERFACE, UNKNOWN_NAME, ControllerConfig
from .errors import LoopStoppedError, ServiceError, Timeout
from .hci import ClassicHelper
from .loop import EventLoopThread

if TYPE_CHECKING:
    from .hci import HciInfo

_LOGGER = logging.getLogger(__name__)


class DiscoverySession:
    """State of one bounded-time BLE scan.

    Created by :meth:`InterfaceController.lescan` and dropped when it
    returns.  *devices* only grows; *result* is filled once, after the
    wait is over.
    """

    __slots__ = ("timeout", "devices", "result")

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self.devices: dict[str, str] = {}
        self.result: dict[str, str] | None = None

    def add(self, address: str, name: str | None) -> None:
        self.devices.setdefault(address, name or UNKNOWN_NAME)


class InterfaceController:
    """Control one BlueZ adapter over D-Bus.

    Parameters
    ----------
    name:
        Adapter name (e.g. ``"hci0"``).
    config:
        Power-change retry policy, discovery transport and timeouts.
    client:
        Management client.  Defaults to a :class:`~bluez_hci.bluez.BluezClient`
        bound to this controller's event loop, which the controller then
        also closes.  Injected clients are left open.
    classic:
        Helper for non-BLE operations (``scan``, ``info``, ``detect``).
        Defaults to :class:`~bluez_hci.hci.ClassicHelper`.
    """

    def __init__(
        self,
        name: str,
        config: ControllerConfig | None = None,
        client: Any = None,
        classic: Any = None,
    ) -> None:
        self._name = name
        self._path = adapter_path(name)
        self._config = config or ControllerConfig()
        self._status_lock = threading.Lock()
        self._discovering_lock = threading.Lock()
        self._wait_condition = threading.Condition()
        self._closed = False

        self._loop = EventLoopThread(name)
        self._loop.start()

        self._owns_client = client is None
        self._client = client or BluezClient(self._loop, self._config.call_timeout)
        self._classic = classic or ClassicHelper(name)

    def __repr__(self) -> str:
        return f"InterfaceController({self._name!r})"

    def __enter__(self) -> InterfaceController:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> str:
        return self._path

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def event_loop(self) -> EventLoopThread:
        return self._loop

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Power lifecycle ────────────────────────────────────────────

    def is_up(self) -> bool:
        """Read the adapter's ``Powered`` property live."""
        return self._client.get_powered(self._path)

    def up(self) -> None:
        """Power the adapter on and wait until BlueZ reports it powered.

        No-op when the adapter is already powered.  Raises
        :class:`~bluez_hci.errors.Timeout` if the power state does not
        follow within the configured attempts.
        """
        _LOGGER.debug("bringing up %s", self._name)

        with self._status_lock:
            # Some adapters only report ready while scanning.  bluetoothd
            # answers NotReady to both calls while the adapter is off.
            try:
                self._start_discovery(self._config.transport)
            except ServiceError as exc:
                _LOGGER.debug(
                    "%s: discovery not started before power-on: %s", self._name, exc
                )

            if self._client.get_powered(self._path):
                return

            self._client.set_powered(self._path, True)
            self._wait_until_powered(True)

    def down(self) -> None:
        """Power the adapter off and wait until BlueZ reports it unpowered.

        Any caller parked in :meth:`lescan` is woken first.  No-op when
        the adapter is already off.
        """
        _LOGGER.debug("switching down %s", self._name)

        with self._status_lock:
            with self._wait_condition:
                self._wait_condition.notify_all()

            if not self._client.get_powered(self._path):
                return

            self._client.set_powered(self._path, False)
            self._wait_until_powered(False)

    def reset(self) -> None:
        """Power-cycle the adapter: ``down()`` then ``up()``.

        Each half takes the status lock separately; another thread may
        run ``up()`` or ``down()`` in between.
        """
        self.down()
        self.up()

    def _wait_until_powered(self, powered: bool) -> None:
        attempts = self._config.power_attempts
        for attempt in range(1, attempts + 1):
            if self._client.get_powered(self._path) == powered:
                _LOGGER.debug(
                    "%s: Powered=%s after %d attempt(s)", self._name, powered, attempt
                )
                return
            if attempt < attempts:
                time.sleep(self._config.power_delay)

        raise Timeout(f"failed to change power of interface {self._name}")

    # ── Discovery control ──────────────────────────────────────────

    def _start_discovery(self, transport: str) -> None:
        with self._discovering_lock:
            if self._client.get_discovering(self._path):
                return

            self._client.set_discovery_filter(self._path, {"Transport": transport})
            try:
                self._client.start_discovery(self._path)
            except ServiceError as exc:
                # e.g. org.bluez.Error.NotReady while the adapter is off
                _LOGGER.debug(
                    "%s: StartDiscovery failed: %s", self._name, exc
                )

    def stop_discovery(self) -> None:
        """Stop discovery if the adapter reports it is running."""
        with self._discovering_lock:
            if not self._client.get_discovering(self._path):
                return
            self._client.stop_discovery(self._path)

    # ── Classic (non-BLE) operations ───────────────────────────────

    def scan(self) -> dict[str, str]:
        """Classic inquiry scan, address → name."""
        return self._classic.scan()

    def info(self) -> HciInfo:
        return self._classic.info()

    def detect(self, address: str) -> bool:
        """Whether a classic device answers at *address*."""
        return self._classic.detect(address)

    # ── BLE discovery ──────────────────────────────────────────────

    def _device_entry(self, path: str) -> tuple[str, str | None]:
        address = normalize_address(self._client.get_address(path))
        return address, self._client.get_name(path)

    def _seed_known_devices(self, session: DiscoverySession) -> None:
        for path in self._client.list_objects(DEVICE_INTERFACE):
            if not is_adapter_child(path, self._name):
                continue
            try:
                address, name = self._device_entry(path)
            except (ServiceError, ValueError):
                _LOGGER.warning(
                    "%s: skipping known device %s", self._name, path, exc_info=True
                )
                continue
            session.add(address, name)

    def _on_device_added(
        self, session: DiscoverySession, path: str, props: dict[str, Any]
    ) -> None:
        # Runs on the event loop thread.
        if not is_adapter_child(path, self._name):
            return
        try:
            address = normalize_address(props["Address"])
        except (KeyError, TypeError, AttributeError, ValueError):
            _LOGGER.warning(
                "%s: skipping announced device %s without a valid address",
                self._name,
                path,
            )
            return
        name = props.get("Name")
        session.add(address, name if isinstance(name, str) else None)

    def _visible_devices(self, session: DiscoverySession) -> dict[str, str]:
        found: dict[str, str] = {}
        for address, name in session.devices.items():
            path = address_to_bluez_path(address, self._name)
            try:
                rssi = self._client.get_rssi(path)
            except ServiceError:
                _LOGGER.warning(
                    "%s: cannot read RSSI of %s", self._name, address, exc_info=True
                )
                continue
            if rssi == 0:
                continue
            found[address] = name
            _LOGGER.debug(
                "found BLE device %s by address %s (%d)", name, address, rssi
            )
        return found

    def lescan(self, timeout: float) -> dict[str, str]:
        """Run one BLE discovery session of *timeout* seconds.

        Returns address → name for every device of this adapter that
        was known or announced during the session and still reports a
        non-zero RSSI at the end.  Discovery keeps running afterwards.
        A concurrent ``down()`` or ``close()`` ends the wait early.
        """
        _LOGGER.info("starting BLE scan for %.0f seconds", timeout)

        session = DiscoverySession(timeout)
        self._seed_known_devices(session)

        handle = self._client.subscribe_devices_added(
            lambda path, props: self._on_device_added(session, path, props)
        )
        try:
            self._start_discovery(self._config.transport)

            with self._wait_condition:
                self._wait_condition.wait(timeout)
        finally:
            try:
                self._client.unsubscribe(handle)
            except LoopStoppedError:
                # Closed while parked; the loop already dropped the callback.
                _LOGGER.debug("%s: closed during BLE scan", self._name)

        session.result = self._visible_devices(session)

        _LOGGER.info(
            "BLE scan has finished, found %d device(s)", len(session.result)
        )
        return session.result

    # ── Connection ─────────────────────────────────────────────────

    def connect(self, address: str, timeout: float) -> Connection:
        """Open a connection to *address*, bounded by *timeout* seconds.

        Already-connected devices are returned without a new request.
        Failures are raised as :class:`~bluez_hci.errors.ServiceError`
        without retrying.
        """
        address = normalize_address(address)
        _LOGGER.debug("connecting to device %s", address)

        path = address_to_bluez_path(address, self._name)
        if not self._client.get_connected(path):
            self._client.connect(path, timeout)

        return Connection(self._name, address, path, timeout, self._client)

    # ── Teardown ───────────────────────────────────────────────────

    def close(self) -> None:
        """Stop discovery and the event loop.  Never raises; idempotent."""
        if self._closed:
            return
        self._closed = True

        with self._wait_condition:
            self._wait_condition.notify_all()

        try:
            self.stop_discovery()
        except Exception:
            _LOGGER.warning(
                "%s: failed to stop discovery on close", self._name, exc_info=True
            )

        if self._owns_client:
            try:
                self._client.close()
            except Exception:
                _LOGGER.debug(
                    "%s: failed to close management client", self._name, exc_info=True
                )

        try:
            self._loop.stop(self._config.join_timeout)
        except Exception:
            _LOGGER.warning(
                "%s: failed to stop event loop", self._name, exc_info=True
            )
