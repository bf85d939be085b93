"""Streaming chat proxy endpoint.

``POST /chat`` accepts ``{"messages": [{"role", "content"}, ...]}``, prepends
the career-counsellor system prompt, and streams the upstream
chat-completions SSE body back to the caller byte for byte. The relay does not
parse the stream; clients reconstruct messages with ``StreamFrameParser``.
If the upstream body breaks off after streaming has begun, the relay appends
an in-band ``stream_interrupted`` error event and ends the response.
"""

import json
import logging
from typing import Any, Literal

import aiohttp
from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from src.relay.config import ChatConfig

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

# Leading newline terminates any partial line already forwarded
STREAM_INTERRUPTED_EVENT = (
    b"\ndata: "
    + json.dumps(
        {"error": {"message": "AI gateway stream interrupted", "code": "stream_interrupted"}}
    ).encode()
    + b"\n\n"
)


class ChatMessage(BaseModel):
    """One conversation turn sent by the client."""

    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Client → relay: chat history to complete."""

    messages: list[ChatMessage] = Field(..., min_length=1)


def json_error(message: str, status: int) -> web.Response:
    """JSON error body with CORS headers."""
    return web.json_response({"error": message}, status=status, headers=CORS_HEADERS)


async def handle_options(request: web.Request) -> web.Response:
    """Answer CORS preflight requests."""
    return web.Response(status=204, headers=CORS_HEADERS)


class ChatProxy:
    """Forwards chat requests to the upstream completions endpoint."""

    def __init__(self, config: ChatConfig, session: aiohttp.ClientSession | None = None) -> None:
        """Initialize proxy.

        Args:
            config: Chat upstream configuration
            session: Optional shared HTTP session (created on start otherwise)
        """
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def start(self, app: web.Application | None = None) -> None:
        """Create the upstream HTTP session (aiohttp on_startup hook)."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self, app: web.Application | None = None) -> None:
        """Close the upstream HTTP session (aiohttp on_cleanup hook)."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def build_payload(self, request: ChatRequest) -> dict[str, Any]:
        """Build the upstream request body."""
        messages = [{"role": "system", "content": self.config.system_prompt}]
        messages.extend(m.model_dump() for m in request.messages)
        return {"model": self.config.model, "messages": messages, "stream": True}

    async def handle_chat(self, request: web.Request) -> web.StreamResponse:
        """Stream a chat completion back to the client."""
        if not self.config.api_key:
            logger.error("Chat API key is not configured")
            return json_error("Chat API key is not configured", 500)

        try:
            chat_request = ChatRequest.model_validate(await request.json())
        except ValueError as e:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
            detail = e.errors()[0]["msg"] if isinstance(e, ValidationError) else "Body must be JSON"
            return json_error(f"Invalid chat request: {detail}", 400)

        if self._session is None:
            await self.start()
        assert self._session is not None

        logger.info("Proxying chat request", extra={"message_count": len(chat_request.messages)})

        response: web.StreamResponse | None = None
        try:
            async with self._session.post(
                self.config.url,
                json=self.build_payload(chat_request),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            ) as upstream:
                if upstream.status != 200:
                    return await self._upstream_error(upstream)

                response = web.StreamResponse(
                    status=200,
                    headers={**CORS_HEADERS, "Content-Type": "text/event-stream"},
                )
                await response.prepare(request)

                async for chunk in upstream.content.iter_any():
                    await response.write(chunk)

        except aiohttp.ClientError as e:
            if response is None:
                logger.error("Chat upstream request failed", extra={"error": str(e)})
                return json_error("AI gateway unreachable", 502)

            # Headers are already sent; report the failure in-band and end the body
            logger.error("Chat upstream stream interrupted", extra={"error": str(e)})
            await response.write(STREAM_INTERRUPTED_EVENT)

        assert response is not None
        await response.write_eof()
        return response

    async def _upstream_error(self, upstream: aiohttp.ClientResponse) -> web.Response:
        body = await upstream.text()
        logger.error(
            "Chat upstream error",
            extra={"status": upstream.status, "body": body[:500]},
        )
        if upstream.status == 429:
            return json_error("Rate limits exceeded, please try again later.", 429)
        if upstream.status == 402:
            return json_error("Payment required, please add funds to your workspace.", 402)
        return json_error("AI gateway error", 500)


def setup_chat_routes(app: web.Application, proxy: ChatProxy) -> None:
    """Register /chat and its CORS preflight; tie the proxy to app lifecycle."""
    app.router.add_post("/chat", proxy.handle_chat)
    app.router.add_route("OPTIONS", "/chat", handle_options)
    app.on_startup.append(proxy.start)
    app.on_cleanup.append(proxy.close)
