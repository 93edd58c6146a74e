"""Server events from the realtime speech service.

Raw JSON messages are parsed into one small dataclass per event kind. The
engine dispatches on ``kind``; anything it does not recognize arrives as
:class:`UnknownEvent` and is ignored.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

logger = logging.getLogger(__name__)

FATAL_ERROR_CODES = frozenset({
    "session_expired",
    "invalid_api_key",
    "invalid_client_secret",
    "session_not_found",
})


@dataclass(frozen=True)
class SessionReady:
    kind: str = field(default="session_ready", init=False)


@dataclass(frozen=True)
class SpeechStarted:
    kind: str = field(default="speech_started", init=False)


@dataclass(frozen=True)
class SpeechStopped:
    kind: str = field(default="speech_stopped", init=False)


@dataclass(frozen=True)
class ResponseCreated:
    response_id: str = ""
    kind: str = field(default="response_created", init=False)


@dataclass(frozen=True)
class TranscriptDelta:
    delta: str = ""
    kind: str = field(default="transcript_delta", init=False)


@dataclass(frozen=True)
class TranscriptDone:
    transcript: str = ""
    kind: str = field(default="transcript_done", init=False)


@dataclass(frozen=True)
class AudioDelta:
    audio: bytes = b""
    kind: str = field(default="audio_delta", init=False)


@dataclass(frozen=True)
class ResponseDone:
    response_id: str = ""
    status: str = ""
    kind: str = field(default="response_done", init=False)


@dataclass(frozen=True)
class InputTranscriptionDone:
    transcript: str = ""
    kind: str = field(default="input_transcription_done", init=False)


@dataclass(frozen=True)
class ServerError:
    message: str = "Unknown error"
    code: Optional[str] = None
    kind: str = field(default="error", init=False)

    @property
    def fatal(self) -> bool:
        return self.code in FATAL_ERROR_CODES


@dataclass(frozen=True)
class UnknownEvent:
    type: str = ""
    kind: str = field(default="unknown", init=False)


ServerEvent = Union[
    SessionReady,
    SpeechStarted,
    SpeechStopped,
    ResponseCreated,
    TranscriptDelta,
    TranscriptDone,
    AudioDelta,
    ResponseDone,
    InputTranscriptionDone,
    ServerError,
    UnknownEvent,
]


def _decode_audio(payload: str) -> bytes:
    try:
        return base64.b64decode(payload or "")
    except (binascii.Error, ValueError):
        logger.warning("Dropping undecodable audio delta (%d chars)", len(payload or ""))
        return b""


def from_message(data: dict) -> ServerEvent:
    event_type = data.get("type", "")

    if event_type in ("session.created", "session.updated"):
        return SessionReady()
    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted()
    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped()
    if event_type == "response.created":
        return ResponseCreated(response_id=(data.get("response") or {}).get("id", ""))
    if event_type in ("response.audio_transcript.delta", "response.output_audio_transcript.delta"):
        return TranscriptDelta(delta=data.get("delta") or "")
    if event_type in ("response.audio_transcript.done", "response.output_audio_transcript.done"):
        return TranscriptDone(transcript=data.get("transcript") or "")
    if event_type in ("response.audio.delta", "response.output_audio.delta"):
        return AudioDelta(audio=_decode_audio(data.get("delta") or ""))
    if event_type == "response.done":
        response = data.get("response") or {}
        return ResponseDone(response_id=response.get("id", ""), status=response.get("status", ""))
    if event_type == "conversation.item.input_audio_transcription.completed":
        return InputTranscriptionDone(transcript=data.get("transcript") or "")
    if event_type == "error":
        error = data.get("error") or {}
        return ServerError(
            message=error.get("message") or "Unknown error",
            code=error.get("code"),
        )
    return UnknownEvent(type=event_type)


def parse_server_event(raw: Union[str, bytes]) -> ServerEvent:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        logger.warning("Malformed server event: %r", raw[:200] if raw else raw)
        return UnknownEvent(type="malformed")
    if not isinstance(data, dict):
        logger.warning("Server event is not an object: %r", data)
        return UnknownEvent(type="malformed")
    return from_message(data)
