"""Background event loop thread for D-Bus notifications.

Every D-Bus round trip and every signal delivered by ``dbus-fast``
happens on a single ``asyncio`` loop.  :class:`EventLoopThread` runs
that loop forever in a dedicated thread so that:

- push notifications (``InterfacesAdded``) are drained continuously,
  even while no caller is inside the library;
- caller threads can issue blocking, timeout-bounded requests by
  handing a coroutine to the loop and waiting for its result.

Callbacks registered for notifications run on this thread.  They must
never call :meth:`EventLoopThread.run` themselves: the loop would wait
on itself.

Usage::

    loop = EventLoopThread("hci0")
    loop.start()
    powered = loop.run(client.async_get_powered(path), timeout=10.0)
    loop.stop()
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from .const import LOOP_JOIN_TIMEOUT
from .errors import LoopStoppedError, ServiceError

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class EventLoopThread:
    """Own one ``asyncio`` loop running in a named daemon thread.

    Parameters
    ----------
    name:
        Suffix used for the thread name (typically the adapter name).
    """

    def __init__(self, name: str = "default") -> None:
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return (
            self._loop is not None
            and self._thread is not None
            and self._thread.is_alive()
            and not self._loop.is_closed()
        )

    @property
    def in_loop_thread(self) -> bool:
        """Whether the current thread is the loop thread."""
        return self._thread is not None and threading.current_thread() is self._thread

    def start(self) -> None:
        """Start the loop thread and wait until the loop is accepting work.

        Calling ``start()`` on a running loop is a no-op.
        """
        with self._lock:
            if self.is_running:
                return
            self._started.clear()
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                name=f"HciEventLoop_{self._name}",
                target=self._run,
                args=(self._loop,),
                daemon=True,
            )
            self._thread.start()
        self._started.wait()
        _LOGGER.debug("EventLoopThread: started for %s", self._name)

    def _run(self, loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(self._started.set)
        try:
            loop.run_forever()
        finally:
            try:
                _cancel_pending(loop)
                loop.run_until_complete(loop.shutdown_asyncgens())
            except Exception:
                _LOGGER.debug(
                    "EventLoopThread: cleanup failed for %s",
                    self._name,
                    exc_info=True,
                )
            finally:
                loop.close()
                _LOGGER.debug("EventLoopThread: stopped for %s", self._name)

    def stop(self, timeout: float = LOOP_JOIN_TIMEOUT) -> None:
        """Ask the loop to exit and join its thread.

        Safe to call multiple times or before ``start()``.  Raises
        ``RuntimeError`` when called from the loop thread itself, and
        :class:`~bluez_hci.errors.ServiceError` if the thread does not
        exit within *timeout* seconds.
        """
        if self.in_loop_thread:
            raise RuntimeError("EventLoopThread cannot stop itself from its own thread")

        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None

        if loop is None or thread is None:
            return

        if not loop.is_closed():
            try:
                loop.call_soon_threadsafe(loop.stop)
            except RuntimeError:
                # Loop closed between the check and the call.
                pass

        thread.join(timeout=timeout)
        if thread.is_alive():
            raise ServiceError(
                f"event loop thread for {self._name} did not exit within {timeout:.1f} s"
            )

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._loop
        if loop is None or loop.is_closed() or not self.is_running:
            raise LoopStoppedError(f"event loop for {self._name} is not running")
        return loop

    def submit(self, coro: Coroutine[Any, Any, _T]) -> concurrent.futures.Future[_T]:
        """Schedule *coro* on the loop and return a concurrent future."""
        try:
            loop = self._require_loop()
        except LoopStoppedError:
            coro.close()
            raise
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def run(self, coro: Coroutine[Any, Any, _T], timeout: float | None = None) -> _T:
        """Run *coro* on the loop and block the calling thread for its result.

        Exceptions raised by the coroutine propagate unchanged.  If
        *timeout* elapses first, the coroutine is cancelled and
        :class:`~bluez_hci.errors.ServiceError` is raised.
        """
        if self.in_loop_thread:
            coro.close()
            raise RuntimeError("EventLoopThread.run() called from the loop thread")

        future = self.submit(coro)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise ServiceError(
                f"call on {self._name} did not complete within {timeout:.1f} s"
            ) from exc
        except concurrent.futures.CancelledError as exc:
            raise LoopStoppedError(
                f"call on {self._name} was cancelled by loop shutdown"
            ) from exc

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        """Schedule a plain callback on the loop from any thread."""
        self._require_loop().call_soon_threadsafe(callback, *args)


def _cancel_pending(loop: asyncio.AbstractEventLoop) -> None:
    """Cancel every task still pending on *loop* and let them unwind."""
    pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
    if not pending:
        return
    for task in pending:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
