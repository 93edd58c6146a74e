import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

ROLES = ("user", "assistant", "system")

_SPEAKER_LABELS = {
    "assistant": "Agent",
    "user": "Patient",
}


def _new_entry_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TranscriptEntry:
    role: str
    text: str
    id: str = field(default_factory=_new_entry_id)
    timestamp: datetime = field(default_factory=_now)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown transcript role: {self.role!r}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


def patient_utterances(entries: list[TranscriptEntry]) -> list[str]:
    """Non-empty patient lines, in order."""
    return [e.text.strip() for e in entries if e.role == "user" and e.text.strip()]


def has_conversation(entries: list[TranscriptEntry]) -> bool:
    return any(e.role in _SPEAKER_LABELS and e.text.strip() for e in entries)


def to_plain_text(entries: list[TranscriptEntry]) -> str:
    """Convert transcript entries to plain text.

    Assistant lines are prefixed with "Agent:", patient lines with "Patient:".
    System notes are lifecycle bookkeeping and are left out.
    """
    if not entries:
        return ""

    lines = []
    for entry in entries:
        speaker = _SPEAKER_LABELS.get(entry.role)
        text = entry.text.strip()
        if speaker and text:
            lines.append(f"{speaker}: {text}")
    return "\n".join(lines)


def to_json_array(entries: list[TranscriptEntry]) -> list[dict]:
    """Convert transcript entries to the wire shape the summarization service expects."""
    return [entry.to_dict() for entry in entries]


def to_timestamped_dump(
    entries: list[TranscriptEntry],
    start_time: float,
    call_id: str,
    final_status: str,
    end_time: float = 0.0,
) -> dict:
    """Build a timestamped transcript dump dict for structured logging.

    Timestamps are converted to relative seconds from call start.
    If start_time is 0, uses the first entry's timestamp as base.
    duration_s is only set when both start and end times are known.
    """
    base_time = start_time
    if base_time <= 0 and entries:
        base_time = entries[0].timestamp.timestamp()

    dumped = []
    for entry in entries:
        dumped.append({
            "t": round(entry.timestamp.timestamp() - base_time, 1),
            "role": entry.role,
            "content": entry.text,
        })

    dump = {
        "call_id": call_id,
        "final_status": final_status,
        "entries": dumped,
    }
    if start_time > 0 and end_time > start_time:
        dump["duration_s"] = round(end_time - start_time, 1)
    return dump
