import asyncio
import logging
from typing import Optional

from carecall.flow import FlowMap
from carecall.matching import AnswerMatcher, LocalMatcher, infer_flow_step
from carecall.session import CallSession
from carecall.transcript import TranscriptEntry

logger = logging.getLogger(__name__)


class FlowTracker:
    """Follows the conversation through the flow map.

    Assistant entries move the current step; user entries are matched
    against the options of whatever step is current *when the entry arrives*.
    The current step lives on the session and is updated synchronously, so a
    match that completes late still records against the step it was asked on.
    """

    def __init__(self, session: CallSession, flow_map: FlowMap, matcher: Optional[AnswerMatcher] = None):
        self.session = session
        self.flow_map = flow_map
        self.matcher = matcher or LocalMatcher()
        self._pending: set[asyncio.Task] = set()

    def observe(self, entry: TranscriptEntry) -> None:
        if entry.role == "assistant":
            self._on_assistant(entry)
        elif entry.role == "user":
            self._on_user(entry)

    def _on_assistant(self, entry: TranscriptEntry) -> None:
        s = self.session
        step_id = infer_flow_step(s.transcript, self.flow_map)
        if step_id is None or step_id == s.current_step_id:
            return
        previous = s.current_step_id
        if previous and previous not in s.completed_steps:
            s.completed_steps.append(previous)
        s.current_step_id = step_id
        logger.info("Flow step %s -> %s", previous or "(start)", step_id)

    def _on_user(self, entry: TranscriptEntry) -> None:
        step = self.flow_map.get_step(self.session.current_step_id)
        if step is None or step.is_statement or not step.options:
            return
        task = asyncio.create_task(self._match(step.id, entry.text))
        self._pending.add(task)
        task.add_done_callback(self._match_done)

    async def _match(self, step_id: str, text: str) -> None:
        step = self.flow_map.get_step(step_id)
        result = await self.matcher.match(step, text)
        if not result.matched:
            logger.debug("No option matched for step %s: %r", step_id, text)
            return
        # Revisiting a step overwrites the earlier answer
        self.session.matched_options[step_id] = result.label
        logger.info("Step %s answered: %s (confidence %.2f)", step_id, result.label, result.confidence)

    def _match_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Answer matching failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for in-flight matches so the final answers are recorded."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
