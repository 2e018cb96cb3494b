"""Source-side capture ownership.

Opening the camera is expensive and may prompt the user, so a device holds at
most one open capture. Every consumer goes through CaptureManager.acquire()
and gets the same handle back until the last consumer releases it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from loguru import logger

from camrelay.utils.relay_errors import RelayError, RelayErrorCode


class CaptureDevice(Protocol):
    """An opened local media source."""

    @property
    def tracks(self) -> list[Any]: ...

    def subscribe(self) -> list[Any]:
        """Fresh track proxies for one more peer link."""
        ...

    async def stop(self) -> None: ...


CaptureFactory = Callable[[], Awaitable[CaptureDevice]]


class CaptureHandle:
    def __init__(self, device: CaptureDevice) -> None:
        self.device = device
        self.refs = 0
        self.ended = False
        self.stopped = False

    def subscribe(self) -> list[Any]:
        if self.ended:
            raise RelayError(
                errcode=RelayErrorCode.E_PERMISSION_DENIED,
                errmesg="Capture has ended",
            )
        return self.device.subscribe()


class CaptureManager:
    """Ref-counted owner of the single local capture."""

    def __init__(self, factory: CaptureFactory) -> None:
        self._factory = factory
        self._handle: CaptureHandle | None = None
        self._lock = asyncio.Lock()
        self._ended_listeners: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._handle.ended

    @property
    def refs(self) -> int:
        return self._handle.refs if self._handle else 0

    def on_ended(self, listener: Callable[[], None]) -> None:
        """Register a callback fired once when the open capture stops on its own."""
        self._ended_listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._ended_listeners:
            self._ended_listeners.remove(listener)

    async def acquire(self) -> CaptureHandle:
        """Return the open capture, opening it on first use.

        Raises:
            RelayError: E_PERMISSION_DENIED if the device cannot be opened.
        """
        async with self._lock:
            if self._handle is not None and not self._handle.ended:
                self._handle.refs += 1
                logger.debug(f"Reusing open capture (refs={self._handle.refs})")
                return self._handle

            try:
                device = await self._factory()
            except RelayError:
                raise
            except OSError as exc:
                raise RelayError(
                    errcode=RelayErrorCode.E_PERMISSION_DENIED,
                    errmesg=f"Capture unavailable: {exc}",
                ) from exc

            handle = CaptureHandle(device)
            handle.refs = 1
            for track in device.tracks:
                on = getattr(track, "on", None)
                if on is not None:
                    on("ended", lambda h=handle: self._handle_track_ended(h))

            self._handle = handle
            logger.info(f"Capture opened with {len(device.tracks)} track(s)")
            return handle

    async def release(self, handle: CaptureHandle) -> None:
        """Drop one reference; the device stops when the last one goes."""
        async with self._lock:
            if handle is not self._handle:
                return
            handle.refs = max(0, handle.refs - 1)
            if handle.refs > 0:
                logger.debug(f"Capture released (refs={handle.refs})")
                return
            self._handle = None
            await self._stop_device(handle)

    async def _stop_device(self, handle: CaptureHandle) -> None:
        # Stopping tracks fires "ended"; mark first so listeners stay quiet
        handle.ended = True
        if handle.stopped:
            return
        handle.stopped = True
        try:
            await handle.device.stop()
        except Exception as exc:
            logger.warning(f"Error stopping capture: {exc}")
        logger.info("Capture stopped")

    def _handle_track_ended(self, handle: CaptureHandle) -> None:
        if handle.ended:
            return
        handle.ended = True
        if handle is self._handle:
            self._handle = None
        logger.warning("Capture ended unexpectedly")
        task = asyncio.create_task(self._stop_device(handle), name="capture-stop")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        for listener in list(self._ended_listeners):
            listener()
