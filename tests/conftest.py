import asyncio

import pytest
from carecall.backend import SessionCredentials
from carecall.engine import TurnTakingEngine
from carecall.errors import TransportError
from carecall.matching import NO_MATCH
from carecall.playback import PlaybackAllowance
from carecall.scripts import DEFAULT_FLOW_MAP
from carecall.session import CallSession
from carecall.transcript import TranscriptEntry
from carecall.transport import MicrophoneTrack

FAST_ALLOWANCE = PlaybackAllowance(ms_per_char=0, min_ms=10, max_ms=10, silence_hold_ms=10)

_CLOSE = object()


class FakeChannel:
    """In-memory stand-in for the realtime channel. Tests push events into it."""

    def __init__(self, credentials=None, fail_connect=False):
        self.credentials = credentials
        self.fail_connect = fail_connect
        self.sent: list[dict] = []
        self.mic_enabled_at_send: list[bool] = []
        self.microphone: MicrophoneTrack | None = None
        self.close_count = 0
        self.connected = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self.connected and self.close_count == 0

    async def connect(self):
        if self.fail_connect:
            raise TransportError("handshake refused")
        self.connected = True

    async def send(self, message: dict):
        if not self.is_open:
            raise TransportError("Realtime channel is not open")
        self.sent.append(message)
        if self.microphone is not None:
            self.mic_enabled_at_send.append(self.microphone.enabled)

    def push(self, event):
        self._queue.put_nowait(event)

    def drop(self):
        """Simulate the service closing the connection."""
        self._queue.put_nowait(_CLOSE)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is _CLOSE:
                return
            yield event

    async def close(self):
        self.close_count += 1

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]


class CountingMicrophone(MicrophoneTrack):
    def __init__(self):
        super().__init__(self._silence())
        self.stop_count = 0

    @staticmethod
    async def _silence():
        while True:
            await asyncio.sleep(3600)
            yield b""

    def stop(self):
        self.stop_count += 1
        super().stop()


class FakeBackend:
    def __init__(self, secret="ek_test", error: Exception | None = None, summary: dict | None = None):
        self.secret = secret
        self.error = error
        self.summary = summary
        self.session_requests: list[dict] = []
        self.summary_requests: list[dict] = []
        self.match_result = NO_MATCH

    async def create_session(self, **kwargs):
        self.session_requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return SessionCredentials(client_secret=self.secret)

    async def match_answer(self, question, user_response, options):
        return self.match_result

    async def summarize(self, timeline, needs_callback, callback_reasons):
        self.summary_requests.append({
            "timeline": timeline,
            "needsCallback": needs_callback,
            "callbackReasons": callback_reasons,
        })
        return self.summary


class Harness:
    """Engine wired to fakes, with every recorded callback kept for assertions."""

    def __init__(self, backend=None, mic_error: Exception | None = None, fail_connect=False, output_monitor=None):
        self.backend = backend or FakeBackend()
        self.mic_error = mic_error
        self.fail_connect = fail_connect
        self.channels: list[FakeChannel] = []
        self.microphones: list[CountingMicrophone] = []
        self.statuses = []
        self.errors: list[str] = []
        self.entries: list[TranscriptEntry] = []
        self.latencies = []
        self.audio: list[bytes] = []
        self.engine = TurnTakingEngine(
            self.backend,
            self.make_channel,
            self.make_microphone,
            output_monitor=output_monitor,
            on_transcript=self.entries.append,
            on_status_change=self.statuses.append,
            on_error=self.errors.append,
            on_latency=self.latencies.append,
            on_audio=self.audio.append,
        )
        self.engine.KICKOFF_DELAY_S = 0.01
        self.engine.RESPONSE_DEBOUNCE_S = 0.05
        self.engine.UNMUTE_DELAY_S = 0.01
        self.engine.TURN_ALLOWANCE = FAST_ALLOWANCE
        self.engine.GOODBYE_ALLOWANCE = FAST_ALLOWANCE

    def make_channel(self, credentials):
        channel = FakeChannel(credentials, fail_connect=self.fail_connect)
        if self.microphones:
            channel.microphone = self.microphones[-1]
        self.channels.append(channel)
        return channel

    async def make_microphone(self):
        if self.mic_error is not None:
            raise self.mic_error
        mic = CountingMicrophone()
        self.microphones.append(mic)
        return mic

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    @property
    def microphone(self) -> CountingMicrophone:
        return self.microphones[-1]

    def texts(self, role: str) -> list[str]:
        return [e.text for e in self.engine.session.transcript if e.role == role]


async def settle(seconds: float = 0.02):
    await asyncio.sleep(seconds)


@pytest.fixture
def session():
    return CallSession(patient_name="Maria")


@pytest.fixture
def flow_map():
    return DEFAULT_FLOW_MAP


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def harness():
    return Harness()
