"""Constants and configuration dataclasses for bluez-hci."""

from __future__ import annotations

import platform
from dataclasses import dataclass

IS_LINUX = platform.system() == "Linux"

# D-Bus names used to reach bluetoothd.
BLUEZ_SERVICE = "org.bluez"
BLUEZ_NAMESPACE = "/org/bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"

# Power changes are observed by polling the adapter's ``Powered``
# property this many times, this many seconds apart.
CHANGE_POWER_ATTEMPTS = 5
CHANGE_POWER_DELAY = 0.2

# Name recorded for devices that do not report one.
UNKNOWN_NAME = "unknown"

# Discovery filter transport used for BLE scans.
LE_TRANSPORT = "le"

# Upper bound for a single management call (property read, method call)
# made from a caller thread through the event loop.
DEFAULT_CALL_TIMEOUT = 10.0

# How long teardown waits for the event loop thread to exit.
LOOP_JOIN_TIMEOUT = 5.0


@dataclass
class ControllerConfig:
    """Tuning knobs for an :class:`~bluez_hci.controller.InterfaceController`.

    The defaults match what bluetoothd needs on typical hardware; tests
    shrink *power_delay* to keep the power-change loop fast.

    Parameters
    ----------
    power_attempts:
        How many times ``up()`` / ``down()`` read ``Powered`` back after
        requesting a change before giving up with
        :class:`~bluez_hci.errors.Timeout`.
    power_delay:
        Seconds to sleep between two power reads.
    transport:
        Value of the ``Transport`` discovery filter entry set before
        starting discovery.
    call_timeout:
        Seconds a caller thread waits for one management call to
        complete on the event loop.
    join_timeout:
        Seconds ``close()`` waits for the event loop thread to exit.
    """

    power_attempts: int = CHANGE_POWER_ATTEMPTS
    power_delay: float = CHANGE_POWER_DELAY
    transport: str = LE_TRANSPORT
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    join_timeout: float = LOOP_JOIN_TIMEOUT
