"""Adapter enumeration for :meth:`InterfaceRegistry.discover`.

Sources are tried in order: ``bluetooth-adapters`` (HCI socket), then
``/sys/class/bluetooth``.  The first one that yields names wins.
"""

from __future__ import annotations

import logging
import pathlib
import re

from .const import IS_LINUX

_LOGGER = logging.getLogger(__name__)

_SYS_BLUETOOTH = pathlib.Path("/sys/class/bluetooth")

# Adapter entries only; per-link entries look like hci0:64.
_ADAPTER_NAME_RE = re.compile(r"^hci\d+$")

DEFAULT_ADAPTER = "hci0"


def _from_hci() -> list[str]:
    from bluetooth_adapters import get_adapters_from_hci

    return [info["name"] for info in get_adapters_from_hci().values()]


def _from_sysfs() -> list[str]:
    if not _SYS_BLUETOOTH.exists():
        return []
    return [entry.name for entry in _SYS_BLUETOOTH.iterdir()]


def discover_adapters() -> list[str]:
    """Return the sorted HCI adapter names present on this host.

    Falls back to ``["hci0"]`` off Linux or when no source finds one,
    so the registry always has a name to construct.
    """
    if not IS_LINUX:
        return [DEFAULT_ADAPTER]

    for source in (_from_hci, _from_sysfs):
        try:
            names = sorted(
                {name for name in source() if _ADAPTER_NAME_RE.match(name)},
                key=lambda name: int(name[3:]),
            )
        except Exception:
            _LOGGER.debug("%s: adapter enumeration failed", source.__name__, exc_info=True)
            continue
        if names:
            _LOGGER.debug("%s: found adapters %s", source.__name__, names)
            return names

    return [DEFAULT_ADAPTER]
