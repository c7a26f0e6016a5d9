"""Classic (BR/EDR) helper backed by the kernel HCI layer.

The D-Bus controller only handles BLE.  Adapter metadata, classic
inquiry and remote-name detection are delegated to
:class:`ClassicHelper`:

- :meth:`ClassicHelper.info` reads ``struct hci_dev_info`` with the
  ``HCIGETDEVINFO`` ioctl on a raw HCI socket (equivalent to
  ``hciconfig <adapter>``).
- :meth:`ClassicHelper.scan` and :meth:`ClassicHelper.detect` run
  ``hcitool`` (``scan`` and ``name``) and parse its output; inquiry
  itself stays in the kernel and BlueZ tools.

The socket, ioctl, and ctypes patterns follow
``bluetooth_adapters.systems.linux_hci`` by J. Nick Koston, licensed
under the Apache License 2.0 (see below).

Portions derived from bluetooth-adapters:

    Copyright 2022 J. Nick Koston

    Licensed under the Apache License, Version 2.0 (the "License");
    you may not use this file except in compliance with the License.
    You may obtain a copy of the License at

        http://www.apache.org/licenses/LICENSE-2.0

    Unless required by applicable law or agreed to in writing, software
    distributed under the License is distributed on an "AS IS" BASIS,
    WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
    implied.  See the License for the specific language governing
    permissions and limitations under the License.

    Source: https://github.com/Bluetooth-Devices/bluetooth-adapters
"""

from __future__ import annotations

import ctypes
import logging
import shutil
import socket
import subprocess
from dataclasses import dataclass

from .bluez import normalize_address
from .const import IS_LINUX
from .errors import ServiceError

try:
    import fcntl

    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False

_LOGGER = logging.getLogger(__name__)

# ── Socket constants ────────────────────────────────────────────────

AF_BLUETOOTH = 31
BTPROTO_HCI = 1

# ── HCI ioctl constants ────────────────────────────────────────────
# From linux/include/net/bluetooth/hci.h
# Pattern: _IOR('H', nr, int) = 0x80000000 | (4 << 16) | (0x48 << 8) | nr

HCIGETDEVINFO = 0x800448D3  # _IOR('H', 211, int)

# ── hci_dev_info.flags bits ────────────────────────────────────────

HCI_UP = 0
HCI_INIT = 1
HCI_RUNNING = 2
HCI_PSCAN = 3
HCI_ISCAN = 4

# ── Bus types (low nibble of hci_dev_info.type) ────────────────────

_BUS_NAMES = {
    0: "VIRTUAL",
    1: "USB",
    2: "PCCARD",
    3: "UART",
    4: "RS232",
    5: "PCI",
    6: "SDIO",
    7: "SPI",
    8: "I2C",
    9: "SMD",
    10: "VIRTIO",
}

# hcitool inquiry lasts ~10 s; name requests are shorter.
_SCAN_TIMEOUT = 30.0
_NAME_TIMEOUT = 15.0


# ── ctypes structs (mirror kernel hci.h) ───────────────────────────


class _bdaddr_t(ctypes.Structure):
    """Bluetooth device address (6 bytes, little-endian)."""

    _fields_ = [("b", ctypes.c_uint8 * 6)]

    def __str__(self) -> str:
        return ":".join(f"{x:02X}" for x in reversed(self.b))


class _hci_dev_stats(ctypes.Structure):
    _fields_ = [
        ("err_rx", ctypes.c_uint32),
        ("err_tx", ctypes.c_uint32),
        ("cmd_tx", ctypes.c_uint32),
        ("evt_rx", ctypes.c_uint32),
        ("acl_tx", ctypes.c_uint32),
        ("acl_rx", ctypes.c_uint32),
        ("sco_tx", ctypes.c_uint32),
        ("sco_rx", ctypes.c_uint32),
        ("byte_rx", ctypes.c_uint32),
        ("byte_tx", ctypes.c_uint32),
    ]


class _hci_dev_info(ctypes.Structure):
    """Request/response buffer for HCIGETDEVINFO."""

    _fields_ = [
        ("dev_id", ctypes.c_uint16),
        ("name", ctypes.c_char * 8),
        ("bdaddr", _bdaddr_t),
        ("flags", ctypes.c_uint32),
        ("type", ctypes.c_uint8),
        ("features", ctypes.c_uint8 * 8),
        ("pkt_type", ctypes.c_uint32),
        ("link_policy", ctypes.c_uint32),
        ("link_mode", ctypes.c_uint32),
        ("acl_mtu", ctypes.c_uint16),
        ("acl_pkts", ctypes.c_uint16),
        ("sco_mtu", ctypes.c_uint16),
        ("sco_pkts", ctypes.c_uint16),
        ("stat", _hci_dev_stats),
    ]


# ── Public data model ──────────────────────────────────────────────


@dataclass(frozen=True)
class HciInfo:
    """Adapter metadata as reported by the kernel.

    Attributes
    ----------
    name:
        The adapter name (e.g. ``"hci0"``).
    address:
        The adapter's own Bluetooth address.
    bus:
        Transport bus name (``"USB"``, ``"UART"``, ...).
    up:
        ``True`` if the kernel reports the device as up.
    running:
        ``True`` if the HCI transport is running.
    flags:
        Raw ``hci_dev_info.flags``.
    acl_mtu, acl_pkts, sco_mtu, sco_pkts:
        Controller buffer sizes.
    """

    name: str
    address: str
    bus: str
    up: bool
    running: bool
    flags: int
    acl_mtu: int
    acl_pkts: int
    sco_mtu: int
    sco_pkts: int


def _adapter_to_dev_id(adapter: str) -> int:
    """Convert adapter name (e.g. ``"hci0"``) to device id (e.g. ``0``)."""
    try:
        return int(adapter.removeprefix("hci"))
    except ValueError:
        raise ValueError(f"not an HCI adapter name: {adapter!r}") from None


def _info_from_struct(adapter: str, buf: _hci_dev_info) -> HciInfo:
    flags = buf.flags
    return HciInfo(
        name=buf.name.decode(errors="replace") or adapter,
        address=str(buf.bdaddr),
        bus=_BUS_NAMES.get(buf.type & 0x0F, f"0x{buf.type & 0x0F:02x}"),
        up=bool(flags & (1 << HCI_UP)),
        running=bool(flags & (1 << HCI_RUNNING)),
        flags=flags,
        acl_mtu=buf.acl_mtu,
        acl_pkts=buf.acl_pkts,
        sco_mtu=buf.sco_mtu,
        sco_pkts=buf.sco_pkts,
    )


def read_dev_info(adapter: str = "hci0") -> HciInfo:
    """Read adapter metadata through ``HCIGETDEVINFO``.

    Raises :class:`~bluez_hci.errors.ServiceError` when the kernel HCI
    layer is unavailable or the adapter does not exist.
    """
    if not IS_LINUX or not _HAS_FCNTL:
        raise ServiceError("HCI device info is only available on Linux")

    dev_id = _adapter_to_dev_id(adapter)
    sock: socket.socket | None = None

    try:
        sock = socket.socket(AF_BLUETOOTH, socket.SOCK_RAW, BTPROTO_HCI)

        buf = _hci_dev_info()
        buf.dev_id = dev_id
        fcntl.ioctl(sock.fileno(), HCIGETDEVINFO, buf)

        return _info_from_struct(adapter, buf)

    except OSError as ex:
        raise ServiceError(f"cannot read HCI device info of {adapter}: {ex}") from ex
    finally:
        if sock is not None:
            sock.close()


def _parse_scan_output(output: str) -> dict[str, str]:
    """Parse ``hcitool scan`` output into address → name."""
    found: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.strip().split("\t", 1)
        try:
            address = normalize_address(parts[0])
        except ValueError:
            continue
        name = parts[1].strip() if len(parts) > 1 else ""
        found[address] = name or "n/a"
    return found


class ClassicHelper:
    """Non-BLE operations for one adapter.

    Parameters
    ----------
    adapter:
        The adapter name (e.g. ``"hci0"``).
    """

    def __init__(self, adapter: str = "hci0") -> None:
        self._adapter = adapter

    @property
    def adapter(self) -> str:
        return self._adapter

    def _hcitool(self, args: list[str], timeout: float) -> str:
        hcitool = shutil.which("hcitool")
        if hcitool is None:
            raise ServiceError("hcitool not found, classic operations unavailable")

        try:
            result = subprocess.run(
                [hcitool, "-i", self._adapter, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as ex:
            raise ServiceError(
                f"hcitool {args[0]} on {self._adapter} timed out after {timeout:.0f} s"
            ) from ex
        except OSError as ex:
            raise ServiceError(f"hcitool {args[0]} on {self._adapter} failed: {ex}") from ex

        if result.returncode != 0:
            raise ServiceError(
                f"hcitool {args[0]} on {self._adapter} exited {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        return result.stdout

    def info(self) -> HciInfo:
        return read_dev_info(self._adapter)

    def scan(self) -> dict[str, str]:
        """Run a classic inquiry and return address → name."""
        _LOGGER.info("starting classic scan on %s", self._adapter)
        found = _parse_scan_output(self._hcitool(["scan"], _SCAN_TIMEOUT))
        _LOGGER.info(
            "classic scan on %s has finished, found %d device(s)",
            self._adapter,
            len(found),
        )
        return found

    def detect(self, address: str) -> bool:
        """Return whether the device answers a remote name request."""
        address = normalize_address(address)
        name = self._hcitool(["name", address], _NAME_TIMEOUT).strip()
        _LOGGER.debug(
            "%s: remote name on %s is %r", address, self._adapter, name
        )
        return bool(name)
