"""Duplex relay between one client WebSocket and one upstream realtime socket.

Lifecycle of a relay:

1. Client connects; the relay opens the upstream connection.
2. The relay waits for the upstream ``session.created`` event (both steps
   bounded by ``connect_timeout_s``). Failure closes the client and raises
   ``TransportEstablishmentError``.
3. ``session.created`` is forwarded to the client, then the relay sends one
   ``session.update`` handshake upstream. The client never sends it itself.
4. Two pumps forward messages verbatim in each direction. When either side
   closes or errors, the other pump is cancelled and both sockets are closed.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from src.common.errors import TransportEstablishmentError
from src.relay.protocol import SESSION_CREATED, SessionUpdateEvent

logger = logging.getLogger(__name__)

UpstreamConnector = Callable[[], Awaitable[ClientConnection]]

CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011


def _event_type(message: str | bytes) -> str | None:
    """Best-effort read of an event's ``type`` field."""
    try:
        data = json.loads(message)
    except (ValueError, TypeError):
        return None
    return data.get("type") if isinstance(data, dict) else None


class DuplexRelay:
    """Bridges a client connection and an upstream connection for one session.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        client: ServerConnection,
        connect_upstream: UpstreamConnector,
        session_update: SessionUpdateEvent | dict[str, Any],
        connect_timeout_s: float = 10.0,
        relay_id: str | None = None,
    ) -> None:
        """Initialize relay.

        Args:
            client: Accepted client-facing connection
            connect_upstream: Coroutine factory that opens the upstream connection
            session_update: Handshake injected after upstream session.created
            connect_timeout_s: Bound on establishment (connect + readiness)
            relay_id: Identifier for logging (generated if omitted)
        """
        if connect_timeout_s <= 0:
            raise ValueError(f"connect_timeout_s must be positive, got {connect_timeout_s}")

        self.relay_id = relay_id or f"relay-{uuid.uuid4().hex[:12]}"
        self._client = client
        self._connect_upstream = connect_upstream
        if isinstance(session_update, SessionUpdateEvent):
            self._session_update = session_update.model_dump_json(exclude_none=True)
        else:
            self._session_update = json.dumps(session_update)
        self._connect_timeout_s = connect_timeout_s

        self._upstream: ClientConnection | None = None
        self._ready = asyncio.Event()
        self._closed = False
        self._close_lock = asyncio.Lock()

        self.frames_to_upstream = 0
        self.frames_to_client = 0

    @property
    def is_ready(self) -> bool:
        """True once the handshake has been injected."""
        return self._ready.is_set()

    @property
    def is_closed(self) -> bool:
        """True once both sides have been closed."""
        return self._closed

    async def run(self) -> None:
        """Establish the upstream side and relay until either side closes.

        Raises:
            TransportEstablishmentError: If the upstream cannot be opened or
                does not become ready within the timeout
        """
        try:
            await asyncio.wait_for(self._establish(), timeout=self._connect_timeout_s)
        except TimeoutError as e:
            await self.close(code=CLOSE_INTERNAL_ERROR, reason="upstream timeout")
            raise TransportEstablishmentError(
                f"Upstream not ready within {self._connect_timeout_s}s"
            ) from e
        except TransportEstablishmentError:
            await self.close(code=CLOSE_INTERNAL_ERROR, reason="upstream unavailable")
            raise

        logger.info("Relay ready", extra={"relay_id": self.relay_id})

        try:
            await self._relay()
        finally:
            await self.close()

    async def _establish(self) -> None:
        try:
            self._upstream = await self._connect_upstream()
        except (OSError, InvalidHandshake, InvalidURI) as e:
            raise TransportEstablishmentError(f"Failed to connect upstream: {e}") from e

        logger.info("Upstream connected, awaiting session.created", extra={"relay_id": self.relay_id})

        try:
            while True:
                message = await self._upstream.recv()
                event_type = _event_type(message)
                await self._client.send(message)
                self.frames_to_client += 1

                if event_type == SESSION_CREATED:
                    break

                logger.debug(
                    "Upstream event before ready",
                    extra={"relay_id": self.relay_id, "type": event_type},
                )

            await self._upstream.send(self._session_update)
            self.frames_to_upstream += 1
        except ConnectionClosed as e:
            raise TransportEstablishmentError(f"Connection closed during handshake: {e}") from e

        self._ready.set()
        logger.info("Session update sent", extra={"relay_id": self.relay_id})

    async def _relay(self) -> None:
        assert self._upstream is not None

        to_upstream = asyncio.create_task(
            self._pump(self._client, self._upstream, "client→upstream"),
            name=f"{self.relay_id}-to-upstream",
        )
        to_client = asyncio.create_task(
            self._pump(self._upstream, self._client, "upstream→client"),
            name=f"{self.relay_id}-to-client",
        )
        tasks = {to_upstream, to_client}

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.error(
                    "Relay pump failed",
                    extra={"relay_id": self.relay_id, "pump": task.get_name(), "error": str(error)},
                )

    async def _pump(self, source: Any, sink: Any, direction: str) -> None:
        """Forward every message from source to sink, in order, unmodified."""
        to_upstream = sink is self._upstream
        try:
            async for message in source:
                await sink.send(message)
                if to_upstream:
                    self.frames_to_upstream += 1
                else:
                    self.frames_to_client += 1
                    if logger.isEnabledFor(logging.DEBUG):
                        logger.debug(
                            "Upstream event",
                            extra={"relay_id": self.relay_id, "type": _event_type(message)},
                        )
        except ConnectionClosed as e:
            logger.info(
                "Relay side closed",
                extra={"relay_id": self.relay_id, "direction": direction, "code": e.rcvd and e.rcvd.code},
            )
            return

        logger.info("Relay source ended", extra={"relay_id": self.relay_id, "direction": direction})

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close both sides exactly once.

        Args:
            code: WebSocket close code sent to both peers
            reason: Close reason
        """
        async with self._close_lock:
            if self._closed:
                return
            self._closed = True

            for name, connection in (("upstream", self._upstream), ("client", self._client)):
                if connection is None:
                    continue
                try:
                    await connection.close(code=code, reason=reason)
                except Exception as e:
                    logger.warning(
                        "Error closing relay side",
                        extra={"relay_id": self.relay_id, "side": name, "error": str(e)},
                    )

        logger.info(
            "Relay closed",
            extra={
                "relay_id": self.relay_id,
                "frames_to_upstream": self.frames_to_upstream,
                "frames_to_client": self.frames_to_client,
                "reason": reason,
            },
        )
