import json
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from carecall.matching import RESPONSE_SYNONYMS
from carecall.session import CallSession
from carecall.transcript import (
    TranscriptEntry,
    has_conversation,
    patient_utterances,
    to_json_array,
    to_timestamped_dump,
)

logger = logging.getLogger(__name__)

OUTCOMES = ("completed", "incomplete", "wrong_number", "no_answer", "unknown")

PREVIEW_UTTERANCES = 3


@dataclass(frozen=True)
class CallSummary:
    outcome: str = "unknown"
    callback_needed: bool = False
    patient_responses: list[str] = field(default_factory=list)
    key_findings: str = ""
    language: str = "Unknown"
    callback_reasons: list[str] = field(default_factory=list)
    # "remote" when produced by the summarization service, "local" for the fallback
    source: str = "local"

    @classmethod
    def from_dict(cls, data: dict, source: str = "remote") -> "CallSummary":
        """Validate a summary payload. Raises ValueError when it is not CallSummary-shaped."""
        if not isinstance(data, dict):
            raise ValueError(f"Summary must be an object, got {type(data).__name__}")

        outcome = str(data.get("outcome") or "").strip().lower().replace(" ", "_").replace("-", "_")
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown call outcome: {data.get('outcome')!r}")

        key_findings = data.get("keyFindings", data.get("key_findings"))
        if not isinstance(key_findings, str) or not key_findings.strip():
            raise ValueError("Summary is missing key findings")

        responses = data.get("patientResponses", data.get("patient_responses")) or []
        if not isinstance(responses, list):
            raise ValueError("patientResponses must be a list")

        callback = data.get("callbackNeeded", data.get("callback_needed", False))
        return cls(
            outcome=outcome,
            callback_needed=bool(callback),
            patient_responses=[str(r) for r in responses],
            key_findings=key_findings.strip(),
            language=str(data.get("language") or "Unknown"),
            callback_reasons=[str(r) for r in data.get("callbackReasons") or []],
            source=str(data.get("source") or source),
        )

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "callbackNeeded": self.callback_needed,
            "patientResponses": list(self.patient_responses),
            "keyFindings": self.key_findings,
            "language": self.language,
            "callbackReasons": list(self.callback_reasons),
            "source": self.source,
        }


def detect_language(entries: list[TranscriptEntry]) -> str:
    utterances = patient_utterances(entries)
    if not utterances:
        return "Unknown"
    spanish = RESPONSE_SYNONYMS["español"]
    for text in utterances:
        lower = text.lower()
        if any(s in lower for s in spanish):
            return "Spanish"
    return "English"


def build_local_summary(
    entries: list[TranscriptEntry],
    needs_callback: bool = False,
    callback_reasons: Optional[list[str]] = None,
) -> CallSummary:
    """Deterministic summary from patient turns. Never fails."""
    reasons = list(callback_reasons or [])
    if not has_conversation(entries):
        return CallSummary(
            outcome="incomplete",
            callback_needed=needs_callback,
            key_findings="No conversation recorded.",
            language="Unknown",
            callback_reasons=reasons,
        )

    said = patient_utterances(entries)
    preview = "; ".join(said[:PREVIEW_UTTERANCES])
    if len(said) > PREVIEW_UTTERANCES:
        preview += "..."
    findings = f"Call completed with {len(said)} patient responses."
    if preview:
        findings += f" Patient statements: {preview}"

    return CallSummary(
        outcome="completed",
        callback_needed=needs_callback,
        patient_responses=said,
        key_findings=findings,
        language=detect_language(entries),
        callback_reasons=reasons,
    )


async def summarize_call(
    entries: list[TranscriptEntry],
    needs_callback: bool,
    callback_reasons: list[str],
    backend=None,
) -> CallSummary:
    """Summarize via the remote service, falling back to the local summary.

    The callback flag always comes from the callback detector, whatever the
    remote summary claims.
    """
    local = build_local_summary(entries, needs_callback, callback_reasons)
    if backend is None or not has_conversation(entries):
        return local

    remote = await backend.summarize(to_json_array(entries), needs_callback, list(callback_reasons))
    if remote is None:
        logger.info("Using local summary (remote unavailable)")
        return local
    try:
        summary = CallSummary.from_dict(remote)
    except ValueError as e:
        logger.warning("Remote summary malformed, using local summary: %s", e)
        return local

    return replace(summary, callback_needed=needs_callback, callback_reasons=list(callback_reasons))


def chunk_transcript_dump(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Split a transcript dump into chunks that fit within log line limits.

    Each chunk is a string: TRANSCRIPT_DUMP|N/M|{json}
    The first chunk contains header fields + as many entries as fit.
    Subsequent chunks contain only entries.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    entries = dump.get("entries", [])

    if not entries:
        payload = json.dumps({**header, "entries": []})
        return [f"TRANSCRIPT_DUMP|1/1|{payload}"]

    chunks: list[list[dict]] = []
    current: list[dict] = []
    # Reserve space for header in first chunk
    size = len(json.dumps({**header, "entries": []}).encode("utf-8"))

    for entry in entries:
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2  # comma + bracket overhead
        if current and (size + entry_size) > max_bytes:
            chunks.append(current)
            current = []
            size = len(json.dumps({"entries": []}).encode("utf-8"))
        current.append(entry)
        size += entry_size

    if current:
        chunks.append(current)

    total = len(chunks)
    lines = []
    for i, chunk in enumerate(chunks):
        body = {**header, "entries": chunk} if i == 0 else {"entries": chunk}
        lines.append(f"TRANSCRIPT_DUMP|{i + 1}/{total}|{json.dumps(body)}")
    return lines


async def handle_call_ended(session: CallSession, backend=None) -> CallSummary:
    """Post-call orchestrator: log the transcript dump, then summarize."""
    dump = to_timestamped_dump(
        session.transcript,
        session.start_time,
        session.call_id,
        session.status.value,
        end_time=session.end_time,
    )
    for line in chunk_transcript_dump(dump):
        logger.info(line)

    summary = await summarize_call(
        session.transcript,
        session.needs_callback,
        session.callback_reasons,
        backend,
    )
    logger.info(
        "Call %s summary (%s): outcome=%s callback=%s",
        session.call_id,
        summary.source,
        summary.outcome,
        summary.callback_needed,
    )
    return summary
