"""Turn-taking engine.

Decides, at every moment of a call, whether the system is listening,
thinking or speaking. The engine never lets the patient barge in: the
microphone is muted before any response is requested and only re-opened once
the assistant's audio has actually finished playing.

Per event from the realtime service:
    speech_started   -> cancel pending response timer, USER_SPEAKING
    speech_stopped   -> PROCESSING, (re)arm debounce timer -> response.create
    response_created -> mute mic, record turn latency
    transcript/audio -> ASSISTANT_SPEAKING on first content of the turn
    transcript_done  -> emit assistant entry, arm goodbye if a closing phrase was said
    response_done    -> wait for playback, then unmute (or end the call on goodbye)
    error            -> fatal: latch and fail the call; otherwise a system note
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from carecall.errors import MicrophoneError, SessionBootstrapError, TransportError
from carecall.events import ServerEvent
from carecall.matching import contains_final_phrase
from carecall.playback import GOODBYE_ALLOWANCE, TURN_ALLOWANCE, OutputLevelMonitor, wait_for_playback
from carecall.session import CallSession, LatencyInfo
from carecall.states import CallStatus, is_valid_transition
from carecall.transcript import TranscriptEntry
from carecall.transport import MicrophoneTrack

logger = logging.getLogger(__name__)


class TurnTakingEngine:
    KICKOFF_DELAY_S = 0.2
    RESPONSE_DEBOUNCE_S = 0.4
    UNMUTE_DELAY_S = 0.15
    TURN_ALLOWANCE = TURN_ALLOWANCE
    GOODBYE_ALLOWANCE = GOODBYE_ALLOWANCE

    def __init__(
        self,
        backend,
        channel_factory: Callable,
        microphone_factory: Callable[[], Awaitable[MicrophoneTrack]],
        output_monitor: Optional[OutputLevelMonitor] = None,
        on_transcript: Optional[Callable[[TranscriptEntry], None]] = None,
        on_status_change: Optional[Callable[[CallStatus], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_latency: Optional[Callable[[LatencyInfo], None]] = None,
        on_audio: Optional[Callable[[bytes], None]] = None,
    ):
        self.backend = backend
        self.channel_factory = channel_factory
        self.microphone_factory = microphone_factory
        self.output_monitor = output_monitor
        self.on_transcript = on_transcript
        self.on_status_change = on_status_change
        self.on_error = on_error
        self.on_latency = on_latency
        self.on_audio = on_audio

        self.session = CallSession()
        self.channel = None
        self.microphone: Optional[MicrophoneTrack] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._mic_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    @property
    def status(self) -> CallStatus:
        return self.session.status

    @property
    def latency(self) -> LatencyInfo:
        return self.session.latency

    @property
    def transcript(self) -> list[TranscriptEntry]:
        return list(self.session.transcript)

    # -- public surface ----------------------------------------------------

    async def start_call(
        self,
        patient_name: Optional[str] = None,
        system_prompt: Optional[str] = None,
        voice: str = "cedar",
        mode: str = "deterministic",
    ) -> None:
        if self.session.status.is_active:
            logger.warning("start_call ignored: call %s is %s", self.session.call_id, self.session.status.value)
            return

        session = CallSession(
            patient_name=patient_name or "",
            system_prompt=system_prompt or "",
            voice=voice,
            mode=mode,
            start_time=time.time(),
        )
        self.session = session
        self.channel = None
        self.microphone = None
        logger.info("Starting call %s (voice=%s, mode=%s)", session.call_id, voice, mode)
        self._set_status(CallStatus.CONNECTING)
        self._add_entry("system", "Starting call...")

        try:
            self.microphone = await self.microphone_factory()
            credentials = await self.backend.create_session(
                patient_name=session.patient_name,
                system_prompt=session.system_prompt,
                voice=voice,
                mode=mode,
            )
            self.channel = self.channel_factory(credentials)
            await self.channel.connect()
        except (MicrophoneError, SessionBootstrapError, TransportError) as e:
            if session.ending:
                await self._release_resources()
            else:
                await self._fail(str(e))
            return

        if session.ending:
            # end_call ran while we were still connecting
            await self._release_resources()
            return
        self._begin_call()

    async def end_call(self) -> None:
        """End the call. Safe to call any number of times from any path."""
        s = self.session
        if s.ending or s.status == CallStatus.IDLE or s.status.is_terminal:
            return
        s.ending = True
        logger.info("Ending call %s", s.call_id)

        self._cancel_timers()
        self._flush_pending_user_text()
        await self._release_resources()
        s.end_time = time.time()
        self._add_entry("system", "Call ended")
        self._set_status(CallStatus.ENDED)

    # -- lifecycle ----------------------------------------------------------

    def _begin_call(self) -> None:
        s = self.session
        self._set_status(CallStatus.CONNECTED)
        self._add_entry("system", "Connected - call starting")
        # Mute before the kickoff response is even scheduled
        self._set_assistant_speaking(True)
        s.kickoff_timer = asyncio.create_task(self._kickoff())
        self._reader_task = asyncio.create_task(self._read_events())
        self._mic_task = asyncio.create_task(self.microphone.pump(self.channel))

    async def _kickoff(self) -> None:
        await asyncio.sleep(self.KICKOFF_DELAY_S)
        self.session.kickoff_timer = None
        await self._request_response()

    async def _fail(self, message: str, notify: bool = True) -> None:
        s = self.session
        if s.status.is_terminal:
            return
        s.ending = True
        logger.error("Call %s failed: %s", s.call_id, message)
        if notify:
            self._emit(self.on_error, message)
        self._cancel_timers()
        self._set_status(CallStatus.ERROR)
        self._add_entry("system", f"Error: {message}")
        await self._release_resources()
        s.end_time = time.time()

    async def _release_resources(self) -> None:
        for task in (self._mic_task, self._reader_task):
            self._cancel_task(task)
        self._mic_task = None
        self._reader_task = None

        microphone, self.microphone = self.microphone, None
        if microphone is not None:
            microphone.stop()
            logger.debug("Microphone released")

        channel, self.channel = self.channel, None
        if channel is not None:
            try:
                await channel.close()
            except TransportError as e:
                logger.warning("Error closing realtime channel: %s", e)
            logger.debug("Realtime channel released")

    def _cancel_timers(self) -> None:
        s = self.session
        for task in (s.response_timer, s.kickoff_timer, s.playback_task):
            self._cancel_task(task)
        s.response_timer = None
        s.kickoff_timer = None
        s.playback_task = None

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        # Never cancel the task we are running in; it finishes on its own
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    # -- event loop ---------------------------------------------------------

    async def _read_events(self) -> None:
        s = self.session
        channel = self.channel
        try:
            async for event in channel.events():
                try:
                    self._dispatch(event)
                except Exception:
                    logger.exception("Error handling %s event", event.kind)
                if s.ending:
                    return
        except TransportError as e:
            logger.warning("Realtime channel failed: %s", e)

        if not s.ending:
            logger.warning("Realtime channel closed unexpectedly (call %s)", s.call_id)
            self._add_entry("system", "Connection closed unexpectedly")
            await self.end_call()

    def _dispatch(self, event: ServerEvent) -> None:
        handler = getattr(self, f"_on_{event.kind}", None)
        if handler is None:
            logger.debug("Ignoring %s event", event.kind)
            return
        handler(event)

    def _on_session_ready(self, event) -> None:
        logger.debug("Realtime session ready")

    def _on_speech_started(self, event) -> None:
        s = self.session
        self._cancel_task(s.response_timer)
        s.response_timer = None
        if s.assistant_speaking:
            logger.debug("Speech start while assistant holds the floor, ignored")
            return
        self._set_status(CallStatus.USER_SPEAKING)

    def _on_speech_stopped(self, event) -> None:
        s = self.session
        s.speech_stopped_at = time.monotonic()
        if s.assistant_speaking:
            return
        self._set_status(CallStatus.PROCESSING)
        if s.response_in_flight:
            return
        self._cancel_task(s.response_timer)
        s.response_timer = asyncio.create_task(self._debounced_response())

    async def _debounced_response(self) -> None:
        await asyncio.sleep(self.RESPONSE_DEBOUNCE_S)
        self.session.response_timer = None
        await self._request_response()

    async def _request_response(self) -> None:
        s = self.session
        if s.ending or s.response_in_flight:
            return
        # Mic goes quiet before the response is requested, never after
        self._set_assistant_speaking(True)
        s.response_in_flight = True
        await self._send({"type": "response.create"})

    def _on_response_created(self, event) -> None:
        s = self.session
        s.response_in_flight = True
        s.assistant_turn_started = False
        s.assistant_buffer = ""
        s.response_chars = 0
        self._cancel_task(s.response_timer)
        s.response_timer = None
        self._set_assistant_speaking(True)

        if s.speech_stopped_at is not None:
            latency_ms = (time.monotonic() - s.speech_stopped_at) * 1000
            s.speech_stopped_at = None
            info = s.record_latency(latency_ms)
            logger.info("Turn latency %.0fms (avg %.0fms over %d turns)", latency_ms, info.avg_ms, info.turn_count)
            self._emit(self.on_latency, info)

    def _on_transcript_delta(self, event) -> None:
        s = self.session
        self._begin_assistant_turn()
        s.assistant_buffer += event.delta
        s.response_chars += len(event.delta)

    def _on_audio_delta(self, event) -> None:
        self._begin_assistant_turn()
        if event.audio:
            self._emit(self.on_audio, event.audio)

    def _on_transcript_done(self, event) -> None:
        s = self.session
        self._begin_assistant_turn()
        text = (event.transcript or s.assistant_buffer).strip()
        s.assistant_buffer = ""
        s.response_chars = max(s.response_chars, len(text))
        if not text:
            return
        self._add_entry("assistant", text)
        if contains_final_phrase(text):
            # Hang up only once the farewell has finished playing
            logger.info("Closing phrase detected, call will end after playback")
            s.goodbye_pending = True

    def _on_response_done(self, event) -> None:
        s = self.session
        s.response_in_flight = False
        self._cancel_task(s.playback_task)
        s.playback_task = asyncio.create_task(self._finish_turn(s.goodbye_pending, s.response_chars))

    async def _finish_turn(self, goodbye: bool, chars: int) -> None:
        s = self.session
        allowance = self.GOODBYE_ALLOWANCE if goodbye else self.TURN_ALLOWANCE
        await wait_for_playback(chars, allowance, self.output_monitor)
        if s.ending:
            return
        if goodbye:
            s.playback_task = None
            await self.end_call()
            return

        self._set_status(CallStatus.CONNECTED)
        await asyncio.sleep(self.UNMUTE_DELAY_S)
        if s.ending or s.response_in_flight:
            return
        s.playback_task = None
        s.assistant_turn_started = False
        self._set_assistant_speaking(False)
        self._set_status(CallStatus.LISTENING)

    def _on_input_transcription_done(self, event) -> None:
        s = self.session
        text = (event.transcript or "").strip()
        if not text:
            return
        # Held back so the patient's words land before the reply to them
        if s.pending_user_text:
            s.pending_user_text = f"{s.pending_user_text} {text}"
        else:
            s.pending_user_text = text

    def _on_error(self, event) -> None:
        logger.warning("Realtime service error (%s): %s", event.code, event.message)
        self._emit(self.on_error, event.message)
        if not event.fatal:
            self._add_entry("system", f"Service error: {event.message}")
        elif not self.session.ending:
            # Latch now so a socket close right behind the error cannot end the call first
            self.session.ending = True
            self._spawn(self._fail(event.message, notify=False))

    # -- helpers ------------------------------------------------------------

    def _begin_assistant_turn(self) -> None:
        s = self.session
        if s.assistant_turn_started:
            return
        s.assistant_turn_started = True
        self._flush_pending_user_text()
        self._set_status(CallStatus.ASSISTANT_SPEAKING)

    def _flush_pending_user_text(self) -> None:
        s = self.session
        if s.pending_user_text:
            text, s.pending_user_text = s.pending_user_text, None
            self._add_entry("user", text)

    def _set_assistant_speaking(self, speaking: bool) -> None:
        self.session.assistant_speaking = speaking
        if self.microphone is not None:
            if speaking:
                self.microphone.mute()
            else:
                self.microphone.unmute()

    async def _send(self, message: dict) -> None:
        if self.channel is None:
            return
        try:
            await self.channel.send(message)
        except TransportError as e:
            logger.warning("Could not send %s: %s", message.get("type"), e)

    def _set_status(self, status: CallStatus) -> None:
        current = self.session.status
        if status == current:
            return
        if not is_valid_transition(current, status):
            logger.warning("Unexpected status transition %s -> %s", current.value, status.value)
        self.session.status = status
        logger.debug("Status %s -> %s", current.value, status.value)
        self._emit(self.on_status_change, status)

    def _add_entry(self, role: str, text: str) -> TranscriptEntry:
        entry = TranscriptEntry(role=role, text=text)
        self.session.transcript.append(entry)
        if role != "system":
            logger.info("[%s] %s: %s", self.session.call_id[:8], role, text)
        self._emit(self.on_transcript, entry)
        return entry

    def _emit(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Engine callback %s failed", getattr(callback, "__name__", callback))
