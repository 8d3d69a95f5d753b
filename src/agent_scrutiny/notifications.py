"""Server-Sent-Events transport for file-change notifications.

Each client connection gets one ChangeStream: it subscribes to the watch
registry for the requested root, pushes a ``file-changed`` message for every
settled change and a ``keepalive`` message on a fixed interval, and tears
everything down exactly once when the client goes away.

Reconnection is left to the client (EventSource reconnects on its own).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from enum import StrEnum
from pathlib import Path

from agent_scrutiny.errors import WatcherError
from agent_scrutiny.watcher import ChangeEvent, WatchRegistry

logger = logging.getLogger("agent_scrutiny")

KEEPALIVE_INTERVAL_SECONDS: float = 30.0
# Frames buffered for a client that has stopped reading; beyond this the
# stream is closed and the client is left to reconnect.
MAX_PENDING_FRAMES: int = 256

FILE_CHANGED_EVENT = "file-changed"
KEEPALIVE_EVENT = "keepalive"
ERROR_EVENT = "error"


class StreamState(StrEnum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_sse(event: str, data: dict[str, object]) -> str:
    """Render one SSE frame with a named event and a JSON payload."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class ChangeStream:
    """One client's push stream over a watch registry subscription."""

    def __init__(
        self,
        registry: WatchRegistry,
        root: str | Path,
        *,
        heartbeat_interval: float | None = None,
    ) -> None:
        self._registry = registry
        self.root = Path(root)
        self._heartbeat_interval = (
            KEEPALIVE_INTERVAL_SECONDS if heartbeat_interval is None else heartbeat_interval
        )
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=MAX_PENDING_FRAMES)
        self._unsubscribe: Callable[[], None] | None = None
        self._heartbeat: asyncio.TimerHandle | None = None
        self.state = StreamState.PENDING

    @property
    def closed(self) -> bool:
        return self.state == StreamState.CLOSED

    def open(self) -> None:
        """Subscribe and start heartbeats. Raises WatcherError if the root cannot be watched."""
        if self.state != StreamState.PENDING:
            return
        try:
            self._unsubscribe = self._registry.subscribe(
                self.root, self._on_change, self._on_watcher_error
            )
        except Exception:
            self.state = StreamState.CLOSED
            raise
        self.state = StreamState.OPEN
        self._arm_heartbeat()
        logger.info("watch_stream -> open for %s", self.root, extra={"root": str(self.root)})

    def _arm_heartbeat(self) -> None:
        loop = asyncio.get_running_loop()
        self._heartbeat = loop.call_later(self._heartbeat_interval, self._on_heartbeat)

    def _on_heartbeat(self) -> None:
        self._heartbeat = None
        if self.closed:
            return
        self._push(format_sse(KEEPALIVE_EVENT, {"timestamp": _now_ms()}))
        self._arm_heartbeat()

    def _on_change(self, event: ChangeEvent) -> None:
        self._push(
            format_sse(
                FILE_CHANGED_EVENT,
                {"event": str(event.kind), "path": event.path, "timestamp": _now_ms()},
            )
        )

    def _on_watcher_error(self, error: WatcherError) -> None:
        # The registry has already dropped this subscription.
        self._unsubscribe = None
        logger.warning("watch_stream -> %s", error, extra={"root": str(self.root)})
        self._push(format_sse(ERROR_EVENT, {"message": str(error)}))
        self.close()

    def _push(self, frame: str) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "watch_stream -> client for %s stopped reading, closing",
                self.root,
                extra={"root": str(self.root)},
            )
            self.close()

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames until the stream is closed.

        Frames queued before close() are still delivered. Cancellation,
        generator close, and errors raised into the generator by a failed
        write all end in close().
        """
        self.open()
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            self.close()

    def _end_frames(self) -> None:
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def close(self) -> None:
        """Stop heartbeats and unsubscribe. Repeated calls are no-ops."""
        if self.closed:
            return
        was_open = self.state == StreamState.OPEN
        self.state = StreamState.CLOSED
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            try:
                unsubscribe()
            except Exception:
                logger.exception("watch_stream -> unsubscribe failed for %s", self.root)
        self._end_frames()
        if was_open:
            logger.info("watch_stream -> closed for %s", self.root, extra={"root": str(self.root)})
