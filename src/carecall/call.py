import asyncio
import logging
import os
from typing import Callable, Optional

from carecall.backend import BackendClient, SessionCredentials
from carecall.classification import CallbackDetector
from carecall.config import backend_url
from carecall.engine import TurnTakingEngine
from carecall.flow import FlowMap
from carecall.generation import GeneratedScript
from carecall.matching import AnswerMatcher
from carecall.playback import OutputLevelMonitor
from carecall.post_call import CallSummary, handle_call_ended
from carecall.prompts import assemble_instructions, get_system_prompt, render_flow_script
from carecall.scripts import DEFAULT_FLOW_MAP
from carecall.session import CallSession
from carecall.states import CallStatus
from carecall.tracker import FlowTracker
from carecall.transport import DEFAULT_REALTIME_MODEL, RealtimeChannel

logger = logging.getLogger(__name__)


def realtime_channel_factory(credentials: SessionCredentials) -> RealtimeChannel:
    return RealtimeChannel(
        credentials.client_secret,
        model=os.getenv("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
    )


class FollowUpCall:
    """One follow-up call from greeting to summary.

    Wires the turn-taking engine to the flow tracker and callback detector,
    and produces the call summary exactly once when the call finishes.
    Per-call state is rebuilt whenever the engine starts a new session.
    """

    def __init__(
        self,
        backend,
        microphone_factory,
        channel_factory: Callable = realtime_channel_factory,
        flow_map: FlowMap = DEFAULT_FLOW_MAP,
        greeting: Optional[str] = None,
        script_content: Optional[str] = None,
        matcher: Optional[AnswerMatcher] = None,
        output_monitor: Optional[OutputLevelMonitor] = None,
        on_transcript: Optional[Callable] = None,
        on_status_change: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
        on_latency: Optional[Callable] = None,
        on_audio: Optional[Callable] = None,
        on_summary: Optional[Callable[[CallSummary], None]] = None,
    ):
        self.backend = backend
        self.flow_map = flow_map
        self.greeting = greeting
        self.script_content = script_content
        self.matcher = matcher
        self.on_transcript = on_transcript
        self.on_status_change = on_status_change
        self.on_summary = on_summary

        self.engine = TurnTakingEngine(
            backend,
            channel_factory,
            microphone_factory,
            output_monitor=output_monitor,
            on_transcript=self._handle_transcript,
            on_status_change=self._handle_status,
            on_error=on_error,
            on_latency=on_latency,
            on_audio=on_audio,
        )
        self.tracker: Optional[FlowTracker] = None
        self.detector: Optional[CallbackDetector] = None
        self.summary: Optional[CallSummary] = None
        self._summary_task: Optional[asyncio.Task] = None

    @classmethod
    def from_env(cls, microphone_factory, **kwargs) -> "FollowUpCall":
        backend = BackendClient(
            base_url=backend_url(),
            api_key=os.getenv("CARECALL_API_KEY", ""),
        )
        return cls(backend, microphone_factory, **kwargs)

    @classmethod
    def from_generated(cls, backend, microphone_factory, script: GeneratedScript, **kwargs) -> "FollowUpCall":
        return cls(
            backend,
            microphone_factory,
            flow_map=script.flow_map,
            greeting=script.greeting,
            script_content=script.script_content,
            **kwargs,
        )

    @property
    def session(self) -> CallSession:
        return self.engine.session

    async def start(
        self,
        patient_name: Optional[str] = None,
        system_prompt: Optional[str] = None,
        voice: str = "cedar",
        mode: str = "deterministic",
        script_choice: str = "ed-followup-v1",
    ) -> None:
        if not system_prompt:
            system_prompt = self.build_instructions(patient_name or "", mode, script_choice)
        await self.engine.start_call(patient_name, system_prompt, voice, mode)

    def build_instructions(
        self,
        patient_name: str = "",
        mode: str = "deterministic",
        script_choice: str = "ed-followup-v1",
    ) -> str:
        """Instructions for the speech service, always describing the flow the tracker follows."""
        if self.script_content or self.flow_map is not DEFAULT_FLOW_MAP:
            script = self.script_content or render_flow_script(self.flow_map)
            return assemble_instructions(script, self.greeting, mode, patient_name)
        return get_system_prompt(script_choice, mode, patient_name)

    async def end(self) -> None:
        await self.engine.end_call()

    async def wait_for_summary(self) -> Optional[CallSummary]:
        if self._summary_task is None:
            return self.summary
        return await self._summary_task

    def _ensure_call_state(self) -> None:
        session = self.engine.session
        if self.tracker is not None and self.tracker.session is session:
            return
        self.tracker = FlowTracker(session, self.flow_map, self.matcher)
        self.detector = CallbackDetector(session)
        self.summary = None
        self._summary_task = None

    def _handle_transcript(self, entry) -> None:
        self._ensure_call_state()
        self.detector.observe(entry)
        self.tracker.observe(entry)
        if self.on_transcript is not None:
            self.on_transcript(entry)

    def _handle_status(self, status: CallStatus) -> None:
        self._ensure_call_state()
        if self.on_status_change is not None:
            self.on_status_change(status)
        if status.is_terminal and self._summary_task is None:
            self._summary_task = asyncio.create_task(self._summarize())

    async def _summarize(self) -> CallSummary:
        await self.tracker.drain()
        summary = await handle_call_ended(self.engine.session, self.backend)
        self.summary = summary
        if self.on_summary is not None:
            self.on_summary(summary)
        return summary
