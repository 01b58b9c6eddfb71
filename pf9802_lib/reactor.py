"""Adapters between the meter's notification entry point and an event loop.

The meter never waits on its own. It asks its host reactor for read or
write interest on its descriptor and expects handle_event() to be called
with the event mask that fired.
"""

import asyncio
import logging
import selectors
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

EVENT_READ = selectors.EVENT_READ
EVENT_WRITE = selectors.EVENT_WRITE

EventHandler = Callable[[int], None]


class Reactor(Protocol):
    """Protocol for the host event loop the async machine registers with."""

    def register(self, fileobj: Any, events: int, handler: EventHandler) -> None:
        """Start delivering events for fileobj to handler."""
        ...

    def modify(self, fileobj: Any, events: int, handler: EventHandler) -> None:
        """Change the interest set of an already registered fileobj."""
        ...

    def unregister(self, fileobj: Any) -> None:
        """Stop delivering events for fileobj."""
        ...


class SelectorReactor:
    """Minimal reactor on top of the selectors module.

    Handlers are stored as the selector key's data and called with the
    ready event mask.
    """

    def __init__(self, selector: Optional[selectors.BaseSelector] = None) -> None:
        self._selector = selector if selector is not None else selectors.DefaultSelector()
        self._running = False

    def register(self, fileobj: Any, events: int, handler: EventHandler) -> None:
        self._selector.register(fileobj, events, handler)

    def modify(self, fileobj: Any, events: int, handler: EventHandler) -> None:
        self._selector.modify(fileobj, events, handler)

    def unregister(self, fileobj: Any) -> None:
        self._selector.unregister(fileobj)

    def run_once(self, timeout: Optional[float] = None) -> int:
        """Wait for readiness once and dispatch the ready handlers.

        Args:
            timeout: Seconds to wait, None to block until something is ready

        Returns:
            Number of notifications dispatched
        """
        ready = self._selector.select(timeout)
        for key, mask in ready:
            # An earlier handler in this batch may have unregistered or modified it
            current = self._selector.get_map().get(key.fd)
            if current is None:
                continue
            current.data(mask)
        return len(ready)

    def run(self) -> None:
        """Dispatch until stop() is called or nothing is registered."""
        self._running = True
        logger.debug("Reactor loop started")
        try:
            while self._running and self._selector.get_map():
                self.run_once()
        finally:
            self._running = False
            logger.debug("Reactor loop stopped")

    def stop(self) -> None:
        """Make run() return after the current dispatch round."""
        self._running = False

    def close(self) -> None:
        self._selector.close()

    def __len__(self) -> int:
        return len(self._selector.get_map())


class AsyncioReactor:
    """Reactor backed by an asyncio loop's add_reader()/add_writer()."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Initialize adapter.

        Args:
            loop: Loop to register with. Defaults to the running loop.
        """
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._interest: Dict[int, int] = {}

    def register(self, fileobj: Any, events: int, handler: EventHandler) -> None:
        fd = _fileno(fileobj)
        if fd in self._interest:
            raise KeyError(f"{fileobj!r} (fd {fd}) is already registered")
        if events & EVENT_READ:
            self._loop.add_reader(fd, handler, EVENT_READ)
        if events & EVENT_WRITE:
            self._loop.add_writer(fd, handler, EVENT_WRITE)
        self._interest[fd] = events

    def modify(self, fileobj: Any, events: int, handler: EventHandler) -> None:
        self.unregister(fileobj)
        self.register(fileobj, events, handler)

    def unregister(self, fileobj: Any) -> None:
        fd = _fileno(fileobj)
        events = self._interest.pop(fd)
        if events & EVENT_READ:
            self._loop.remove_reader(fd)
        if events & EVENT_WRITE:
            self._loop.remove_writer(fd)

    def __len__(self) -> int:
        return len(self._interest)


def _fileno(fileobj: Any) -> int:
    if isinstance(fileobj, int):
        return fileobj
    return fileobj.fileno()
