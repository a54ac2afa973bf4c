# Live telemetry transport: one websocket stream per drone hostname

import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from fleettrack.errors import TransportError

logger = logging.getLogger(__name__)

RawMessage = Union[str, bytes]


class TelemetryConnection(Protocol):
    """An open per-drone stream"""

    async def send(self, text: str) -> None:
        ...

    def messages(self) -> AsyncIterator[RawMessage]:
        ...

    async def close(self) -> None:
        ...


class TelemetryTransport(Protocol):
    async def open(self, url: str) -> TelemetryConnection:
        ...


class WebSocketConnection:
    """Adapter over a websockets client connection"""

    def __init__(self, websocket, url: str):
        self._ws = websocket
        self.url = url

    async def send(self, text: str) -> None:
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise TransportError(f"Stream to {self.url} closed while sending: {e}") from e

    async def messages(self) -> AsyncIterator[RawMessage]:
        """Yield frames until the peer closes; an abnormal close also just ends iteration"""
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosed as e:
            logger.info(f"Telemetry stream {self.url} closed: {e}")

    async def close(self) -> None:
        await self._ws.close()


class WebSocketTransport:
    """Opens JSON telemetry streams with the websockets client"""

    def __init__(self, open_timeout: Optional[float] = 10.0):
        self.open_timeout = open_timeout

    async def open(self, url: str) -> WebSocketConnection:
        logger.info(f"Connecting to {url}...")
        try:
            websocket = await websockets.connect(url, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"WebSocket connection failed to {url}: {e}") from e
        logger.info(f"Connected to {url}")
        return WebSocketConnection(websocket, url)
