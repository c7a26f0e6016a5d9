"""bluez-hci: thread-safe BlueZ adapter controller.

Drives one Bluetooth adapter over the BlueZ D-Bus API: power
lifecycle, time-bounded BLE discovery and device connections, with a
dedicated background thread draining D-Bus notifications.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .adapters import discover_adapters
from .bluez import (
    BluezClient,
    adapter_path,
    address_to_bluez_path,
    normalize_address,
)
from .connection import Connection
from .const import (
    CHANGE_POWER_ATTEMPTS,
    CHANGE_POWER_DELAY,
    IS_LINUX,
    UNKNOWN_NAME,
    ControllerConfig,
)
from .controller import DiscoverySession, InterfaceController
from .errors import HciError, LoopStoppedError, ServiceError, Timeout
from .hci import ClassicHelper, HciInfo, read_dev_info
from .loop import EventLoopThread
from .registry import InterfaceRegistry

__all__ = [
    # Controller
    "InterfaceController",
    "DiscoverySession",
    "InterfaceRegistry",
    "Connection",
    # Management service
    "BluezClient",
    "EventLoopThread",
    # Paths / addresses
    "adapter_path",
    "address_to_bluez_path",
    "normalize_address",
    # Classic helper
    "ClassicHelper",
    "HciInfo",
    "read_dev_info",
    # Adapters
    "discover_adapters",
    # Errors
    "HciError",
    "LoopStoppedError",
    "ServiceError",
    "Timeout",
    # Configuration
    "ControllerConfig",
    "CHANGE_POWER_ATTEMPTS",
    "CHANGE_POWER_DELAY",
    "IS_LINUX",
    "UNKNOWN_NAME",
]
