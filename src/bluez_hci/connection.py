"""Handle for an established device connection.

A :class:`Connection` is what :meth:`InterfaceController.connect`
returns.  It is owned by the caller and never mutated by the
controller, so closing the controller does not invalidate it behind
the caller's back.  Operations that need the management service go
through the controller's client and raise
:class:`~bluez_hci.errors.LoopStoppedError` once that controller has
been closed.

The GATT level is not handled here.  :attr:`Connection.ble_device`
hands out a ``bleak`` device bound to this adapter's object path so
that the caller can drive the link with ``BleakClient``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from bleak.backends.device import BLEDevice

if TYPE_CHECKING:
    from .bluez import BluezClient

_LOGGER = logging.getLogger(__name__)


class Connection:
    """One established link to a remote device.

    Parameters
    ----------
    adapter:
        Name of the adapter the link was opened on (e.g. ``"hci0"``).
    address:
        Remote device address (``"AA:BB:CC:DD:EE:FF"``).
    path:
        BlueZ object path of the device.
    timeout:
        The per-call timeout (seconds) the connection was opened with.
    client:
        Management client used for follow-up calls.
    """

    __slots__ = ("_adapter", "_address", "_path", "_timeout", "_client")

    def __init__(
        self,
        adapter: str,
        address: str,
        path: str,
        timeout: float,
        client: BluezClient,
    ) -> None:
        self._adapter = adapter
        self._address = address
        self._path = path
        self._timeout = timeout
        self._client = client

    def __repr__(self) -> str:
        return (
            f"Connection(adapter={self._adapter!r}, address={self._address!r}, "
            f"timeout={self._timeout!r})"
        )

    @property
    def adapter(self) -> str:
        return self._adapter

    @property
    def address(self) -> str:
        return self._address

    @property
    def path(self) -> str:
        return self._path

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def ble_device(self) -> BLEDevice:
        """A ``BLEDevice`` targeting this adapter's object path."""
        details: dict[str, Any] = {"path": self._path}
        return BLEDevice(self._address, None, details)

    def is_connected(self) -> bool:
        """Read the device's ``Connected`` property live."""
        return self._client.get_connected(self._path)

    def disconnect(self) -> None:
        """Ask BlueZ to drop the link."""
        _LOGGER.debug(
            "Disconnecting %s on %s", self._address, self._adapter
        )
        self._client.disconnect(self._path)
