# src/parley/core/streams.py
from __future__ import annotations
import asyncio
import threading
from typing import Callable, Dict, List, Optional

from loguru import logger

from .errors import StreamAlreadyExistsError, StreamNotFoundError

CancelFunc = Callable[[], None]


class CancelScope:
    """
    Cooperative cancellation token for one generation call.
    A child scope is cancelled whenever its parent is; cancelling a child
    never touches the parent.

    cancel() may be called from any thread. The event is owned by the loop
    the scope was created (or first awaited) on, and is set there.
    """

    def __init__(self, parent: Optional["CancelScope"] = None):
        self._event = asyncio.Event()
        self._cancelled = False
        self._children: List["CancelScope"] = []
        self._lock = threading.Lock()
        self._loop = _running_loop()
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelScope") -> None:
        with self._lock:
            already = self._cancelled
            if not already:
                self._children.append(child)
        if already:
            child.cancel()

    def child(self) -> "CancelScope":
        return CancelScope(parent=self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            children, self._children = self._children, []
        self._wake()
        for c in children:
            c.cancel()

    def _wake(self) -> None:
        loop = self._loop
        if loop is None or loop is _running_loop():
            self._event.set()
            return
        try:
            loop.call_soon_threadsafe(self._event.set)
        except RuntimeError:
            # Loop already closed; nobody is left waiting.
            logger.debug("cancel scope loop is closed; skipping wake-up")

    async def wait(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        if self._cancelled:
            return
        await self._event.wait()


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class StreamRegistry:
    """
    Process-wide table of in-flight generations: message_id -> cancel function.
    One instance is created at bootstrap and shared by every session driver.
    All operations take the same lock, so any caller (any task or thread)
    may use it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._streams: Dict[str, Optional[CancelFunc]] = {}

    def register(self, message_id: str, cancel: Optional[CancelFunc]) -> None:
        with self._lock:
            if message_id in self._streams:
                raise StreamAlreadyExistsError(f"stream already exists for message: {message_id}")
            self._streams[message_id] = cancel

    def cancel(self, message_id: str) -> None:
        with self._lock:
            if message_id not in self._streams:
                raise StreamNotFoundError(f"stream not found for message: {message_id}")
            cancel = self._streams.pop(message_id)
            if cancel is not None:
                cancel()

    def unregister(self, message_id: str) -> None:
        # Forget the mapping only; never invokes the cancel function.
        with self._lock:
            self._streams.pop(message_id, None)

    def __contains__(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._streams

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)
