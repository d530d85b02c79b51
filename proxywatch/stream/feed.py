"""Scoped subscription that drives the connection view from a stream."""

import contextlib
import logging
from typing import Any, Awaitable, Callable, List, Optional

from .reader import DATA_EVENT, ERROR_EVENT, StreamAcquisitionError, StreamReader, Subscription


logger = logging.getLogger(__name__)

ReaderFactory = Callable[[], Awaitable[StreamReader]]


class ConnectionFeed:
    """
    Owns one stream subscription for the lifetime of a consumer.

    Used as an async context manager: entering acquires the reader and
    subscribes, leaving releases the subscription and destroys the reader,
    also when the body raises.

    State is one of 'idle', 'open', 'failed' or 'closed'.
    """

    def __init__(self, view, reader_factory: ReaderFactory, lock=None):
        """
        Initialize connection feed.

        Args:
            view: ConnectionsView receiving the batches
            reader_factory: Coroutine factory returning a connected StreamReader
            lock: Optional lock serialising feeds against readers on other threads
        """
        self.view = view
        self.reader_factory = reader_factory
        self.lock = lock

        self.reader: Optional[StreamReader] = None
        self.state = 'idle'
        self.error: Optional[BaseException] = None
        self.batches_received = 0

        self._subscriptions: List[Subscription] = []

    async def __aenter__(self) -> 'ConnectionFeed':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """
        Acquire the reader and subscribe.

        Raises:
            StreamAcquisitionError: If the reader cannot be acquired
        """
        try:
            self.reader = await self.reader_factory()
        except StreamAcquisitionError as e:
            self._fail(e)
            raise
        except Exception as e:
            self._fail(e)
            raise StreamAcquisitionError(str(e)) from e

        self._subscriptions = [
            self.reader.subscribe(DATA_EVENT, self._handle_batch),
            self.reader.subscribe(ERROR_EVENT, self._handle_error),
        ]
        self.state = 'open'
        logger.info("Connection feed opened")

    async def run(self) -> None:
        """Pump the reader until the stream ends."""
        if self.reader is None:
            raise StreamAcquisitionError("Feed is not open")
        await self.reader.run()

    async def close(self) -> None:
        """Unsubscribe and destroy the reader. Idempotent."""
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions = []

        if self.reader is not None:
            await self.reader.destroy()
            self.reader = None
            if self.state != 'failed':
                self.state = 'closed'
            logger.info("Connection feed closed")

    def _handle_batch(self, snapshots: List[Any]) -> None:
        guard = self.lock if self.lock is not None else contextlib.nullcontext()
        with guard:
            self.view.feed(snapshots)
        self.batches_received += 1

    def _handle_error(self, error: BaseException) -> None:
        self._fail(error)

    def _fail(self, error: BaseException) -> None:
        self.state = 'failed'
        self.error = error
        logger.error(f"Connection feed failed: {error}")
