"""Gateway popup management.

The host environment supplies a ``WindowOpener``. In a browser shell it wraps
``window.open``; on the desktop ``SystemBrowserOpener`` hands the URL to the
system browser through ``webbrowser``.
"""

import asyncio
import logging
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .errors import PopupBlocked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowFeatures:
    """Size and chrome of the gateway window."""
    width: int = 800
    height: int = 600
    scrollbars: bool = True
    resizable: bool = True

    def as_feature_string(self) -> str:
        flags = {
            "width": self.width,
            "height": self.height,
            "scrollbars": "yes" if self.scrollbars else "no",
            "resizable": "yes" if self.resizable else "no",
            "toolbar": "no",
            "menubar": "no",
            "location": "no",
            "status": "no",
        }
        return ",".join(f"{k}={v}" for k, v in flags.items())


class WindowHandle(ABC):
    """A browsing context showing the gateway page."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError


class WindowOpener(Protocol):
    def __call__(self, url: str, name: str, features: WindowFeatures) -> Optional[WindowHandle]:
        ...


class DetachedWindow(WindowHandle):
    """Handle for a page whose browsing context this process cannot observe.

    Neither the system browser nor a remote API client reports when the page
    is closed, so the handle stays open until ``close()`` is called.
    """

    def __init__(self, url: str):
        self.url = url
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class SystemBrowserOpener:
    """Open the gateway page with the standard library ``webbrowser`` module."""

    def __call__(self, url: str, name: str, features: WindowFeatures) -> Optional[WindowHandle]:
        if not webbrowser.open_new(url):
            return None
        return DetachedWindow(url)


class ClientSideOpener:
    """Opener for server deployments: the API client opens the redirect URL itself."""

    def __call__(self, url: str, name: str, features: WindowFeatures) -> Optional[WindowHandle]:
        return DetachedWindow(url)


class WindowWatch:
    """Polls a handle's closed-state until it closes or the watch is stopped."""

    def __init__(self, handle: WindowHandle, on_closed: Callable[[], None], interval: float):
        self.handle = handle
        self._on_closed = on_closed
        self.interval = interval
        self._fired = False
        self._stopped = False
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    def poll(self) -> bool:
        """Check the handle once; fires ``on_closed`` the first time it is closed.

        Returns:
            True when the watch is finished.
        """
        if self._stopped or self._fired:
            return True
        if not self.handle.closed:
            return False
        self._fired = True
        self._stopped = True
        self._on_closed()
        return True

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self.poll():
                break


class RedirectWindowController:
    """Opens, watches and closes the external payment window."""

    WINDOW_NAME = "payment_gateway"

    def __init__(
        self,
        opener: Optional[WindowOpener] = None,
        watch_interval: float = 1.0,
        features: Optional[WindowFeatures] = None,
    ):
        self._opener = opener or SystemBrowserOpener()
        self.watch_interval = watch_interval
        self.features = features or WindowFeatures()
        self._watches: List[WindowWatch] = []

    def open(self, url: str) -> WindowHandle:
        """Open the gateway page.

        Raises:
            PopupBlocked: If the opener refused or returned a closed handle.
        """
        handle = self._opener(url, self.WINDOW_NAME, self.features)
        if handle is None or handle.closed:
            logger.warning(f"Payment window blocked for {url}")
            raise PopupBlocked(url)
        logger.info(f"Opened payment window for {url}")
        return handle

    def watch(self, handle: WindowHandle, on_closed: Callable[[], None]) -> WindowWatch:
        """Invoke ``on_closed`` exactly once when the handle closes.

        Must be called from a running event loop. The returned watch is also
        released by ``stop()``.
        """
        watch = WindowWatch(handle, on_closed, self.watch_interval)
        self._watches = [w for w in self._watches if w.active]
        self._watches.append(watch)
        watch.start()
        return watch

    def close(self, handle: Optional[WindowHandle]) -> None:
        """Close the window; closing an already-closed handle is a no-op."""
        if handle is None or handle.closed:
            return
        handle.close()
        logger.debug("Closed payment window")

    def stop(self) -> None:
        """Release every watch interval."""
        for watch in self._watches:
            watch.stop()
        self._watches.clear()
