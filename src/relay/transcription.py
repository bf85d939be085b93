"""Speech-to-text endpoint.

``POST /transcribe`` accepts ``{"audio": <base64>, "mime_type": "audio/webm"}``
and answers ``{"text": "..."}`` using the upstream transcription API.
"""

import base64
import binascii
import logging

import aiohttp
from aiohttp import web

from src.relay.chat_proxy import handle_options, json_error
from src.relay.config import TranscriptionConfig

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "mp4",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
}


def filename_for_mime(mime_type: str) -> str:
    """Return an upload filename whose extension matches the MIME type.

    Raises:
        ValueError: If the MIME type is not an accepted audio format
    """
    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    if mime not in _EXTENSIONS:
        raise ValueError(f"Unsupported audio MIME type: '{mime_type}'")
    return f"audio.{_EXTENSIONS[mime]}"


class TranscriptionProxy:
    """Forwards base64 audio to the upstream transcription API."""

    def __init__(
        self,
        config: TranscriptionConfig,
        api_key: str | None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config
        self.api_key = api_key
        self._session = session
        self._owns_session = session is None

    async def start(self, app: web.Application | None = None) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self, app: web.Application | None = None) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def handle_transcribe(self, request: web.Request) -> web.Response:
        """Transcribe one base64 audio clip."""
        if not self.api_key:
            return json_error("Transcription API key is not configured", 500)

        try:
            body = await request.json()
        except ValueError:
            return json_error("Body must be JSON", 400)

        audio_b64 = body.get("audio") if isinstance(body, dict) else None
        if not audio_b64:
            return json_error("No audio data provided", 400)

        try:
            audio = base64.b64decode(audio_b64, validate=True)
            filename = filename_for_mime(body.get("mime_type") or "audio/webm")
        except (binascii.Error, ValueError) as e:
            return json_error(str(e), 400)

        if len(audio) > self.config.max_audio_bytes:
            return json_error("Audio payload too large", 413)

        if self._session is None:
            await self.start()
        assert self._session is not None

        form = aiohttp.FormData()
        form.add_field("file", audio, filename=filename)
        form.add_field("model", self.config.model)

        try:
            async with self._session.post(
                self.config.url,
                data=form,
                headers={"Authorization": f"Bearer {self.api_key}"},
            ) as upstream:
                if upstream.status != 200:
                    detail = await upstream.text()
                    logger.error(
                        "Transcription upstream error",
                        extra={"status": upstream.status, "body": detail[:500]},
                    )
                    status = upstream.status if upstream.status in (402, 429) else 500
                    return json_error("Transcription failed", status)
                result = await upstream.json()
        except aiohttp.ClientError as e:
            logger.error("Transcription request failed", extra={"error": str(e)})
            return json_error("Transcription service unreachable", 502)

        text = (result.get("text") or "").strip() if isinstance(result, dict) else ""
        logger.info("Audio transcribed", extra={"bytes": len(audio), "text_length": len(text)})
        return web.json_response({"text": text}, headers={"Access-Control-Allow-Origin": "*"})


def setup_transcription_routes(app: web.Application, proxy: TranscriptionProxy) -> None:
    """Register /transcribe and its CORS preflight."""
    app.router.add_post("/transcribe", proxy.handle_transcribe)
    app.router.add_route("OPTIONS", "/transcribe", handle_options)
    app.on_startup.append(proxy.start)
    app.on_cleanup.append(proxy.close)
