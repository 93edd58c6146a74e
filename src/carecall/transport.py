import asyncio
import base64
import logging
from typing import AsyncIterator, Optional

import aiohttp

from carecall.errors import TransportError
from carecall.events import ServerEvent, parse_server_event

logger = logging.getLogger(__name__)

REALTIME_URL = "wss://api.openai.com/v1/realtime"
DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview-2024-12-17"


class RealtimeChannel:
    """Bidirectional event channel to the realtime speech service.

    Authenticates with the ephemeral credential issued by the backend, never the
    long-lived API key.
    """

    def __init__(
        self,
        token: str,
        model: str = DEFAULT_REALTIME_MODEL,
        url: str = REALTIME_URL,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat: float = 20,
    ):
        self.token = token
        self.model = model
        self.url = url
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        headers = {
            "Authorization": f"Bearer {self.token}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await self._session.ws_connect(
                f"{self.url}?model={self.model}",
                headers=headers,
                heartbeat=self.heartbeat,
                max_msg_size=2**23,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self._close_session()
            raise TransportError(f"Could not connect to realtime service: {e}") from e
        logger.info("Realtime channel open (model=%s)", self.model)

    async def send(self, message: dict) -> None:
        if not self.is_open:
            raise TransportError("Realtime channel is not open")
        try:
            await self._ws.send_json(message)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Send failed: {e}") from e

    async def events(self) -> AsyncIterator[ServerEvent]:
        if self._ws is None:
            return
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    yield parse_server_event(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Realtime channel error: %s", self._ws.exception())
                    break
        except aiohttp.ClientError as e:
            raise TransportError(f"Realtime channel failed: {e}") from e

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class MicrophoneTrack:
    """Gated microphone input.

    ``source`` yields PCM16 chunks. Chunks are forwarded to the channel only
    while the track is enabled; muting drops audio at the source so the
    service never hears anything captured while the assistant holds the floor.
    """

    def __init__(self, source: AsyncIterator[bytes]):
        self.source = source
        self.enabled = True
        self.stopped = False

    def mute(self) -> None:
        if self.enabled:
            logger.debug("Mic muted")
        self.enabled = False

    def unmute(self) -> None:
        if self.stopped:
            return
        if not self.enabled:
            logger.debug("Mic unmuted")
        self.enabled = True

    async def pump(self, channel) -> None:
        async for chunk in self.source:
            if self.stopped:
                break
            if not self.enabled or not chunk or not channel.is_open:
                continue
            try:
                await channel.send({
                    "type": "input_audio_buffer.append",
                    "audio": base64.b64encode(chunk).decode("ascii"),
                })
            except TransportError as e:
                # The reader notices the closed channel and ends the call
                logger.debug("Mic pump stopped: %s", e)
                return

    def stop(self) -> None:
        # The device is released by the source itself when the pump task is
        # cancelled (generator cleanup), so stopping only closes the gate.
        self.stopped = True
        self.enabled = False
