"""Client-side realtime transport.

Defines the interface the session manager uses to talk to the relay, and its
WebSocket implementation. Events are JSON objects in both directions.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import websockets
from pydantic import BaseModel
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from src.common.errors import TransportEstablishmentError

logger = logging.getLogger(__name__)


class RealtimeTransport(ABC):
    """Duplex JSON-event connection to the realtime relay."""

    @abstractmethod
    async def send_event(self, event: dict[str, Any] | BaseModel) -> None:
        """Send one client event.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield server events in arrival order until the connection closes.

        Raises:
            ConnectionError: If the connection closes abnormally
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still open."""
        pass


class WebSocketRealtimeTransport(RealtimeTransport):
    """RealtimeTransport over a websockets client connection."""

    def __init__(self, websocket: ClientConnection) -> None:
        self._websocket = websocket
        self._closed = False

    @classmethod
    async def connect(cls, url: str, open_timeout: float = 10.0) -> "WebSocketRealtimeTransport":
        """Open a connection to the relay.

        Args:
            url: Relay WebSocket URL (e.g., ws://localhost:8080)
            open_timeout: Bound on the opening handshake in seconds

        Raises:
            TransportEstablishmentError: If the relay cannot be reached
        """
        try:
            websocket = await websockets.connect(url, open_timeout=open_timeout, max_size=None)
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as e:
            raise TransportEstablishmentError(f"Failed to connect to {url}: {e}") from e

        logger.info("Connected to relay", extra={"url": url})
        return cls(websocket)

    @property
    def is_connected(self) -> bool:
        return not self._closed and self._websocket.state == State.OPEN

    async def send_event(self, event: dict[str, Any] | BaseModel) -> None:
        if isinstance(event, BaseModel):
            payload = event.model_dump_json(exclude_none=True)
        else:
            payload = json.dumps(event)

        try:
            await self._websocket.send(payload)
        except ConnectionClosed as e:
            self._closed = True
            raise ConnectionError(f"Relay connection closed: {e}") from e

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for raw_message in self._websocket:
                try:
                    event = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.warning("Dropping non-JSON event", extra={"error": str(e)})
                    continue
                if not isinstance(event, dict):
                    logger.warning("Dropping non-object event")
                    continue
                yield event
        except ConnectionClosed as e:
            self._closed = True
            raise ConnectionError(f"Relay connection lost: {e}") from e

        self._closed = True
        logger.info("Relay connection closed")

    async def close(self) -> None:
        if self._closed and self._websocket.state == State.CLOSED:
            return
        self._closed = True
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning("Error closing relay connection", extra={"error": str(e)})
