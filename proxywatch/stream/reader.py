"""Push sources of connection snapshot batches."""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException


logger = logging.getLogger(__name__)

DATA_EVENT = 'data'
ERROR_EVENT = 'error'

Handler = Callable[[Any], None]


class StreamAcquisitionError(RuntimeError):
    """Raised when a stream source cannot be opened."""


class Subscription:
    """Handle returned by subscribe; dispose releases it exactly once."""

    def __init__(self, reader: 'StreamReader', event: str, handler: Handler):
        self._reader = reader
        self.event = event
        self.handler = handler
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self._reader.unsubscribe(self.event, self.handler)
        self.disposed = True


class StreamReader:
    """
    Observer-style push source.

    Subclasses implement connect() to acquire the transport, _pump() to
    deliver batches via emit(), and _close() to release the transport.
    Handlers run synchronously, so one batch is fully handled before the
    next is read.
    """

    def __init__(self, buffer_length: int = 1):
        """
        Args:
            buffer_length: Snapshots grouped into one emitted batch
        """
        if buffer_length <= 0:
            raise ValueError("buffer_length must be positive")
        self.buffer_length = buffer_length
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        self._handlers[event].append(handler)
        return Subscription(self, event, handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event: str = DATA_EVENT) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: Any) -> None:
        """Deliver a payload to every handler of an event."""
        for handler in list(self._handlers.get(event, [])):
            handler(payload)

    async def connect(self) -> 'StreamReader':
        """Acquire the underlying transport."""
        return self

    async def run(self) -> None:
        """
        Pump batches until the source ends or the reader is destroyed.

        Transport failures are logged and emitted as an error event.
        """
        try:
            await self._pump()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._destroyed:
                return
            logger.error(f"Stream reader failed: {e}", exc_info=True)
            self.emit(ERROR_EVENT, e)

    async def destroy(self) -> None:
        """Release the transport. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self._handlers.clear()
        await self._close()

    async def _pump(self) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        pass


class JsonlStreamReader(StreamReader):
    """
    Replays a recorded stream, one snapshot JSON object per line.

    Undecodable lines are skipped. The file is read with blocking I/O and
    the event loop only gets control between batches, which is fine for a
    local recording but not for slow or networked files.
    """

    def __init__(self, path: str, buffer_length: int = 1, interval_seconds: float = 0.0):
        super().__init__(buffer_length)
        self.path = path
        self.interval_seconds = interval_seconds
        self._file = None

    async def connect(self) -> 'JsonlStreamReader':
        try:
            self._file = open(self.path, 'r', encoding='utf-8')
        except OSError as e:
            raise StreamAcquisitionError(f"Cannot open recording {self.path}: {e}") from e
        logger.info(f"Replaying connection snapshots from {self.path}")
        return self

    async def _pump(self) -> None:
        if self._file is None:
            raise StreamAcquisitionError("Reader is not connected")

        batch: List[Dict] = []
        for line_no, line in enumerate(self._file, start=1):
            if self._destroyed:
                return
            line = line.strip()
            if not line:
                continue
            try:
                batch.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping undecodable line {line_no} in {self.path}: {e}")
                continue

            if len(batch) >= self.buffer_length:
                self.emit(DATA_EVENT, batch)
                batch = []
                # Yield to the loop between batches
                await asyncio.sleep(self.interval_seconds)

        if batch and not self._destroyed:
            self.emit(DATA_EVENT, batch)

    async def _close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def with_token(url: str, token: Optional[str]) -> str:
    """Append the API secret as a token query parameter."""
    if not token:
        return url
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ''
    query += urlencode({'token': token})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class WebSocketStreamReader(StreamReader):
    """
    Live connection snapshots from a Clash-compatible /connections websocket.
    """

    def __init__(self, url: str, token: Optional[str] = None, buffer_length: int = 1):
        super().__init__(buffer_length)
        self.url = url
        self.token = token
        self._websocket = None

    async def connect(self) -> 'WebSocketStreamReader':
        try:
            self._websocket = await websockets.connect(with_token(self.url, self.token))
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise StreamAcquisitionError(f"Cannot connect to {self.url}: {e}") from e
        logger.info(f"Connected to connection stream {self.url}")
        return self

    async def _pump(self) -> None:
        if self._websocket is None:
            raise StreamAcquisitionError("Reader is not connected")

        batch: List[Dict] = []
        try:
            async for message in self._websocket:
                try:
                    batch.append(json.loads(message))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping undecodable stream message: {e}")
                    continue

                if len(batch) >= self.buffer_length:
                    self.emit(DATA_EVENT, batch)
                    batch = []
        except ConnectionClosed as e:
            logger.warning(f"Connection stream closed: {e}")

        if batch and not self._destroyed:
            self.emit(DATA_EVENT, batch)

    async def _close(self) -> None:
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None


async def open_stream_reader(config) -> StreamReader:
    """
    Create and connect the reader selected by the configuration.

    Raises:
        StreamAcquisitionError: If the source cannot be opened
    """
    if config.stream_source == 'jsonl':
        reader = JsonlStreamReader(
            path=config.stream_jsonl_path,
            buffer_length=config.stream_buffer_length,
            interval_seconds=config.stream_replay_interval_seconds
        )
    else:
        reader = WebSocketStreamReader(
            url=config.stream_url,
            token=config.stream_token,
            buffer_length=config.stream_buffer_length
        )
    return await reader.connect()
