"""Relay server: realtime WebSocket relay plus HTTP chat/transcription endpoints.

Main server implementation that:
1. Accepts client WebSocket connections and runs one DuplexRelay per client
2. Opens the upstream realtime connection with the configured credentials
3. Serves /chat (streaming chat proxy) and /transcribe over HTTP
4. Provides HTTP health check endpoints
"""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any

import websockets
from aiohttp.web import Application, AppRunner, TCPSite
from dotenv import load_dotenv
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import ServerConnection

from src.common.errors import TransportEstablishmentError
from src.common.logging import log_event, setup_logging
from src.relay.chat_proxy import ChatProxy, setup_chat_routes
from src.relay.config import RelayConfig
from src.relay.duplex_relay import DuplexRelay, UpstreamConnector
from src.relay.health import setup_health_routes
from src.relay.protocol import build_session_update
from src.relay.transcription import TranscriptionProxy, setup_transcription_routes

logger = logging.getLogger(__name__)

CLOSE_TRY_AGAIN_LATER = 1013


def create_http_app(config: RelayConfig, server: Any = None) -> Application:
    """Build the aiohttp application with health, chat and transcription routes.

    Args:
        config: Relay configuration
        server: RelayServer for health reporting (optional)

    Returns:
        Configured aiohttp Application
    """
    app = Application()
    setup_health_routes(app, server, upstream_configured=bool(config.upstream.api_key))
    setup_chat_routes(app, ChatProxy(config.chat))
    setup_transcription_routes(
        app, TranscriptionProxy(config.transcription, api_key=config.upstream.api_key)
    )
    return app


class RelayServer:
    """Owns the WebSocket listener, the HTTP app, and all live relays.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: RelayConfig, connect_upstream: UpstreamConnector | None = None) -> None:
        """Initialize relay server.

        Args:
            config: Relay configuration
            connect_upstream: Override for opening upstream connections (tests)
        """
        self.config = config
        self._connect_upstream = connect_upstream or self._open_upstream
        self._session_update = build_session_update(config.session)
        self._relays: set[DuplexRelay] = set()
        self._ws_server: Any = None
        self._runner: AppRunner | None = None
        self._running = False

    @property
    def active_relays(self) -> int:
        """Number of relays currently open."""
        return len(self._relays)

    @property
    def max_connections(self) -> int:
        return self.config.server.max_connections

    @property
    def is_running(self) -> bool:
        return self._running

    async def _open_upstream(self) -> ClientConnection:
        upstream = self.config.upstream
        return await websockets.connect(
            upstream.endpoint,
            additional_headers=upstream.headers(),
            open_timeout=upstream.connect_timeout_s,
            max_size=None,
        )

    async def start(self, with_http: bool = True) -> None:
        """Start the WebSocket listener and (optionally) the HTTP app.

        Raises:
            RuntimeError: If the server is already running
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("Relay server is already running")

        server_config = self.config.server
        logger.info(
            "Starting relay server",
            extra={"host": server_config.host, "port": server_config.port},
        )

        self._ws_server = await websockets.serve(
            self._handle_connection,
            server_config.host,
            server_config.port,
            max_size=server_config.max_message_bytes,
        )

        if with_http:
            self._runner = AppRunner(create_http_app(self.config, self))
            await self._runner.setup()
            site = TCPSite(self._runner, server_config.host, server_config.http_port)
            await site.start()
            logger.info("HTTP endpoints started", extra={"port": server_config.http_port})

        self._running = True
        log_event("relay_server_started", {"port": server_config.port}, logger)

    async def stop(self) -> None:
        """Close every live relay, then the listener and the HTTP app."""
        if not self._running:
            return

        self._running = False
        logger.info("Stopping relay server", extra={"active_relays": len(self._relays)})

        relays = list(self._relays)
        if relays:
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        *(relay.close(reason="server shutdown") for relay in relays),
                        return_exceptions=True,
                    ),
                    timeout=self.config.graceful_shutdown_timeout_s,
                )
            except TimeoutError:
                logger.warning(
                    "Relays did not close within shutdown timeout",
                    extra={
                        "timeout_s": self.config.graceful_shutdown_timeout_s,
                        "active_relays": len(self._relays),
                    },
                )

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Relay server stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Run one relay for one client connection."""
        if len(self._relays) >= self.max_connections:
            logger.warning(
                "Rejecting connection, relay limit reached",
                extra={"max_connections": self.max_connections},
            )
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="relay limit reached")
            return

        relay = DuplexRelay(
            websocket,
            self._connect_upstream,
            self._session_update,
            connect_timeout_s=self.config.upstream.connect_timeout_s,
        )
        self._relays.add(relay)

        logger.info(
            "Client connected, establishing upstream connection",
            extra={"relay_id": relay.relay_id, "remote": websocket.remote_address},
        )

        try:
            await relay.run()
        except TransportEstablishmentError as e:
            logger.error(
                "Upstream establishment failed",
                extra={"relay_id": relay.relay_id, "error": str(e)},
            )
        except Exception as e:
            logger.exception("Relay error", extra={"relay_id": relay.relay_id, "error": str(e)})
            await relay.close(code=1011, reason="relay error")
        finally:
            self._relays.discard(relay)
            log_event(
                "relay_finished",
                {
                    "relay_id": relay.relay_id,
                    "frames_to_upstream": relay.frames_to_upstream,
                    "frames_to_client": relay.frames_to_client,
                },
                logger,
            )


async def start_server(config: RelayConfig) -> None:
    """Run the relay server until cancelled.

    Args:
        config: Relay configuration
    """
    if not config.upstream.api_key:
        logger.warning("OPENAI_API_KEY is not set; upstream connections will be rejected")

    server = RelayServer(config)
    await server.start()

    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Career voice relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    load_dotenv()
    config = RelayConfig.from_yaml_with_defaults(args.config)
    setup_logging(config.log_level)
    logger.info("Loaded configuration", extra={"config_path": str(args.config)})

    try:
        asyncio.run(start_server(config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
