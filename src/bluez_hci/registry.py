"""Name-keyed cache of interface controllers.

Each adapter must be driven by exactly one
:class:`~bluez_hci.controller.InterfaceController` per process, because
each controller owns its own event loop thread and discovery state.
:class:`InterfaceRegistry` hands out that single instance, constructing
it lazily on the first lookup.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from .adapters import discover_adapters
from .const import ControllerConfig
from .controller import InterfaceController

_LOGGER = logging.getLogger(__name__)


class InterfaceRegistry:
    """Lazily create and cache one controller per adapter name.

    Parameters
    ----------
    config:
        Configuration handed to every controller the registry creates.
    factory:
        Callable building a controller from ``(name, config)``.
        Defaults to :class:`~bluez_hci.controller.InterfaceController`.
    """

    def __init__(
        self,
        config: ControllerConfig | None = None,
        factory: Callable[[str, ControllerConfig | None], InterfaceController] | None = None,
    ) -> None:
        self._config = config
        self._factory = factory or InterfaceController
        self._lock = threading.Lock()
        self._controllers: dict[str, InterfaceController] = {}

    def lookup(self, name: str) -> InterfaceController:
        """Return the controller for *name*, creating it on first use.

        The check-then-insert runs under a lock, so concurrent lookups
        of an unseen name construct exactly one controller.  A cached
        controller that was closed directly is replaced.
        """
        with self._lock:
            controller = self._controllers.get(name)
            if controller is not None and not controller.closed:
                return controller

            controller = self._factory(name, self._config)
            self._controllers[name] = controller
            _LOGGER.debug("Created controller for %s", name)
            return controller

    def names(self) -> list[str]:
        """Return the adapter names that currently have a controller."""
        with self._lock:
            return sorted(self._controllers)

    def discover(self) -> list[InterfaceController]:
        """Look up a controller for every adapter present on the host."""
        return [self.lookup(name) for name in discover_adapters()]

    def close(self) -> None:
        """Close every controller and forget them."""
        with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()

        for controller in controllers:
            controller.close()
