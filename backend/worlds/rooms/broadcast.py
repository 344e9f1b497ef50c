"""Outbound delivery: per-connection outboxes and room broadcast.

Every connection that receives server pushes owns exactly one Outbox. The
Outbox's writer task is the only coroutine that writes to the connection, so
events reach each recipient in the order they were enqueued. Enqueueing never
blocks: a recipient that cannot keep up is failed instead of awaited.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog

from worlds.messaging.encoder import encode

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable

    from worlds.messaging.protocol import ConnectionProtocol

logger = structlog.get_logger()

DEFAULT_MAX_QUEUE_SIZE = 256
DEFAULT_SEND_TIMEOUT = 5.0

# Close code sent to a recipient that was dropped for failing delivery.
DELIVERY_FAILED_CLOSE_CODE = 1011


class Outbox:
    """Bounded FIFO of serialized frames drained by a dedicated writer task.

    A full queue, a failed write, or a write slower than ``send_timeout``
    marks the outbox failed: pending frames are discarded, the connection is
    closed and ``on_failure`` is called with the connection id.
    """

    def __init__(
        self,
        connection: ConnectionProtocol,
        *,
        max_size: int = DEFAULT_MAX_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_failure: Callable[[str], None] | None = None,
    ) -> None:
        self._connection = connection
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_size)
        self._send_timeout = send_timeout
        self._on_failure = on_failure
        self._writer_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._failed = False
        self._closed = False

    @property
    def connection_id(self) -> str:
        return self._connection.connection_id

    @property
    def is_open(self) -> bool:
        return not (self._closed or self._failed)

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._writer_task is None and self.is_open:
            self._writer_task = asyncio.create_task(
                self._writer_loop(),
                name=f"outbox-{self.connection_id}",
            )

    def put(self, payload: str) -> bool:
        """Enqueue a serialized frame. Return False if it was not accepted."""
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._fail("queue_full")
            return False
        return True

    def send(self, message: dict[str, Any]) -> bool:
        return self.put(encode(message))

    async def flush(self) -> None:
        """Wait until every frame accepted so far has been written or discarded."""
        if self._writer_task is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        """Stop the writer. Frames still queued are discarded."""
        if self._closed:
            return
        self._closed = True
        self._discard_pending()
        task = self._writer_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _writer_loop(self) -> None:
        while True:
            payload = await self._queue.get()
            failure: str | None = None
            try:
                await asyncio.wait_for(self._connection.send_text(payload), timeout=self._send_timeout)
            except TimeoutError:
                failure = "send_timeout"
            except (ConnectionError, RuntimeError, OSError) as e:
                failure = f"send_error: {e}"
            finally:
                self._queue.task_done()
            if failure is not None:
                self._fail(failure)
                return

    def _fail(self, reason: str) -> None:
        if not self.is_open:
            return
        self._failed = True
        logger.info("delivery failed, dropping recipient", connection_id=self.connection_id, reason=reason)
        self._discard_pending()
        task = self._writer_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._close_task = asyncio.create_task(self._close_connection())
        if self._on_failure is not None:
            self._on_failure(self.connection_id)

    async def _close_connection(self) -> None:
        with contextlib.suppress(ConnectionError, RuntimeError, OSError):
            await self._connection.close(code=DELIVERY_FAILED_CLOSE_CODE, reason="delivery_failed")

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()


def broadcast(
    recipients: Iterable[Outbox],
    message: dict[str, Any],
    *,
    exclude: str | None = None,
    only: Collection[str] | None = None,
) -> int:
    """Serialize once and enqueue on every recipient outbox.

    ``exclude`` skips one connection id; ``only`` restricts delivery to an
    explicit set of connection ids. Returns the number of outboxes that
    accepted the frame. Never raises for a failing recipient.

    Snapshot the recipients via list() so a failure callback that mutates
    the caller's collection cannot disturb the loop.
    """
    payload = encode(message)
    delivered = 0
    for outbox in list(recipients):
        if outbox.connection_id == exclude:
            continue
        if only is not None and outbox.connection_id not in only:
            continue
        if outbox.put(payload):
            delivered += 1
    return delivered
