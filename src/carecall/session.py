import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Optional

from carecall.states import CallStatus
from carecall.transcript import TranscriptEntry


@dataclass(frozen=True)
class LatencyInfo:
    last_turn_ms: Optional[float] = None
    avg_ms: Optional[float] = None
    turn_count: int = 0

    def to_dict(self) -> dict:
        return {
            "lastTurnMs": self.last_turn_ms,
            "avgMs": self.avg_ms,
            "turnCount": self.turn_count,
        }


@dataclass
class CallSession:
    """Everything one call owns. Created fresh by start_call, never shared between calls.

    Handlers always read and write these fields directly so that every event sees
    the latest value, never a snapshot taken when a timer or task was armed.
    """

    patient_name: str = ""
    system_prompt: str = ""
    voice: str = "cedar"
    mode: str = "deterministic"

    call_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: CallStatus = CallStatus.IDLE
    start_time: float = 0.0
    end_time: float = 0.0
    transcript: list[TranscriptEntry] = field(default_factory=list)

    # Mic gate: True while the assistant holds the floor
    assistant_speaking: bool = False
    response_in_flight: bool = False
    assistant_turn_started: bool = False
    assistant_buffer: str = ""
    response_chars: int = 0
    pending_user_text: Optional[str] = None

    # Hangup sequencing
    goodbye_pending: bool = False
    ending: bool = False

    # Latency
    speech_stopped_at: Optional[float] = None
    latencies_ms: list[float] = field(default_factory=list)

    # Flow tracking
    current_step_id: Optional[str] = None
    completed_steps: list[str] = field(default_factory=list)
    matched_options: dict[str, str] = field(default_factory=dict)

    # Callback detection
    needs_callback: bool = False
    callback_reasons: list[str] = field(default_factory=list)

    # Cancellable timers owned by this call
    response_timer: Optional[asyncio.Task] = field(default=None, repr=False)
    kickoff_timer: Optional[asyncio.Task] = field(default=None, repr=False)
    playback_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def latency(self) -> LatencyInfo:
        if not self.latencies_ms:
            return LatencyInfo()
        return LatencyInfo(
            last_turn_ms=self.latencies_ms[-1],
            avg_ms=sum(self.latencies_ms) / len(self.latencies_ms),
            turn_count=len(self.latencies_ms),
        )

    def record_latency(self, latency_ms: float) -> LatencyInfo:
        self.latencies_ms.append(latency_ms)
        return self.latency
