import logging
from typing import Optional

from carecall.session import CallSession
from carecall.transcript import TranscriptEntry

logger = logging.getLogger(__name__)

# Phrases the assistant says when committing to a clinical callback.
# Detection trusts the assistant's own words: the script always says one of
# these before a callback is flagged.
ASSISTANT_CALLBACK_PHRASES = (
    # English
    "we'll have someone from our care team call you back",
    "someone will call you back",
    "care team will call",
    "team will follow up",
    "we'll have someone call you",
    "i'll make sure the care team knows",
    # Spanish
    "alguien de nuestro equipo de atención le devolverá la llamada",
    "alguien le devolverá la llamada",
    "equipo de atención le llamará",
)

CALLBACK_REASON = "Agent confirmed clinical team will call back"


def _normalize(text: str) -> str:
    # Speech transcripts often carry typographic apostrophes
    return (text or "").lower().replace("’", "'")


def check_assistant_for_callback(text: str) -> Optional[str]:
    """Return a callback reason if the assistant committed to a callback, else None."""
    lower = _normalize(text)
    for phrase in ASSISTANT_CALLBACK_PHRASES:
        if phrase in lower:
            return CALLBACK_REASON
    return None


class CallbackDetector:
    """Scans assistant transcript entries and flags the session for a clinical callback.

    The flag is sticky for the rest of the call; reasons are de-duplicated.
    """

    def __init__(self, session: CallSession):
        self.session = session

    def observe(self, entry: TranscriptEntry) -> bool:
        if entry.role != "assistant":
            return False
        reason = check_assistant_for_callback(entry.text)
        if reason is None:
            return False

        if not self.session.needs_callback:
            logger.info("Callback flagged for call %s", self.session.call_id)
        self.session.needs_callback = True
        if reason not in self.session.callback_reasons:
            self.session.callback_reasons.append(reason)
        return True
