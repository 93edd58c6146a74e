"""Server-side language-model helpers.

Everything that needs the long-lived OpenAI key lives here: minting
ephemeral realtime sessions, answer matching and call summaries.
"""

import json
import logging
import os
import re
from typing import Any, Optional

import httpx

from carecall.circuit_breaker import CircuitBreaker
from carecall.errors import CareCallError
from carecall.post_call import CallSummary, build_local_summary
from carecall.transcript import ROLES, TranscriptEntry, to_plain_text

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"

DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview-2024-12-17"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"

# Server VAD tuned for lower sensitivity; responses are triggered by the client
# after its own debounce, never automatically.
TURN_DETECTION = {
    "type": "server_vad",
    "threshold": 0.6,
    "prefix_padding_ms": 200,
    "silence_duration_ms": 400,
    "create_response": False,
}

MATCH_PROMPT = """You are a precise response matcher for medical IVR calls.
Return ONLY a JSON object with: {"match": <option_number or 0 if no match>, "confidence": <0.0-1.0>}

MATCHING RULES:
1. VOICE TRANSCRIPTION ERRORS - This is voice transcription which may contain errors from phonetically similar words. Match on both phonetic similarity and intended meaning.
2. EXACT OPTION MATCHING - If the transcript is exactly or nearly identical to one of the option texts, that's the correct match.
3. NEGATIONS - Pay close attention to negative words which reverse meaning.
4. COMPLETE MEANING - Match the full meaning and intent, not isolated keywords.
5. NUMERIC VALUES - If an option contains a number and the patient said that number, match it.
6. AMBIGUITY - If truly ambiguous, return 0.

Be VERY careful - incorrect matches affect patient care."""

SUMMARY_PROMPT = """You summarize medical IVR call transcripts for clinical review.

RULES:
1. ONLY report information that was EXPLICITLY stated in the transcript
2. DO NOT infer, assume, or make up any details
3. If information was not discussed, omit it
4. Use the patient's actual words for patientResponses
5. Be factual and objective

Return ONLY a JSON object with this exact shape:
{
  "outcome": "completed" | "incomplete" | "wrong_number" | "no_answer",
  "callbackNeeded": true | false,
  "patientResponses": ["the patient's statements, quoted"],
  "keyFindings": "2-4 sentences, only facts from the transcript",
  "language": "English" | "Spanish"
}"""


class UpstreamError(CareCallError):
    """The language-model service returned an error or an unusable response."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


def extract_json(content: str) -> Any:
    """Parse model output as JSON, accepting a fenced ```json block as well."""
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError):
        match = re.search(r"```(?:json)?\s*([\s\S]*?)```", content or "")
        if match:
            return json.loads(match.group(1).strip())
        raise ValueError("Response is not valid JSON")


class OpenAIClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "")
        self.realtime_model = os.getenv("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL)
        self.chat_model = os.getenv("OPENAI_CHAT_MODEL", DEFAULT_CHAT_MODEL)
        self.transcription_model = os.getenv("OPENAI_TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL)
        self._circuit = CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0, label="OpenAI")
        self._client = client or httpx.AsyncClient(base_url=OPENAI_BASE_URL, timeout=timeout)

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def close(self):
        await self._client.aclose()

    async def _post(self, path: str, payload: dict) -> dict:
        if not self._circuit.should_try():
            raise UpstreamError("Language-model service temporarily unavailable", status_code=503)
        try:
            resp = await self._client.post(path, headers=self._headers, json=payload)
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            raise UpstreamError(f"Language-model request failed: {e}") from e
        if resp.is_error:
            if resp.status_code >= 500:
                self._circuit.record_failure()
            logger.error("OpenAI %s error %d: %s", path, resp.status_code, resp.text[:500])
            raise UpstreamError(f"Language-model request failed: {resp.reason_phrase}", status_code=resp.status_code)
        self._circuit.record_success()
        return resp.json()

    async def create_realtime_session(self, instructions: str, voice: str = "cedar") -> dict:
        data = await self._post(
            "/realtime/sessions",
            {
                "model": self.realtime_model,
                "voice": voice,
                "instructions": instructions,
                "input_audio_transcription": {"model": self.transcription_model},
                "turn_detection": TURN_DETECTION,
            },
        )
        secret = data.get("client_secret") or {}
        if isinstance(secret, dict):
            value, expires_at = secret.get("value"), secret.get("expires_at")
        else:
            value, expires_at = secret, data.get("expires_at")
        if not value:
            raise UpstreamError("Realtime session response carried no client secret")
        return {"client_secret": value, "expires_at": expires_at}

    async def chat(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 200,
        json_mode: bool = True,
    ) -> str:
        payload = {
            "model": model or self.chat_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = await self._post("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError("Language-model response had no content") from e
        if not content:
            raise UpstreamError("Language-model response had no content")
        return content


def _numbered_options(options: list[dict]) -> str:
    return "\n".join(f"{i}. {opt.get('label', '')}" for i, opt in enumerate(options, start=1))


async def match_answer_with_llm(
    client: OpenAIClient,
    question: str,
    user_response: str,
    options: list[dict],
) -> dict:
    """Match a spoken answer to a numbered option. 0 from the model means no match."""
    no_match = {"match": None, "matchedIndex": -1, "confidence": 0.0}
    user_message = (
        f"Question: {question or 'N/A'}\n\n"
        f'Patient said: "{user_response}"\n\n'
        f"Options:\n{_numbered_options(options)}\n\n"
        "This is a voice transcript that may contain phonetic transcription errors. "
        "Match to the most appropriate option."
    )
    try:
        content = await client.chat(
            [
                {"role": "system", "content": MATCH_PROMPT},
                {"role": "user", "content": user_message},
            ],
            max_tokens=50,
        )
        parsed = extract_json(content)
        index = int(parsed.get("match") or 0)
        confidence = float(parsed.get("confidence") or 0.0)
    except (UpstreamError, ValueError, TypeError, AttributeError) as e:
        logger.warning("LLM match failed: %s", e)
        return no_match

    if 0 < index <= len(options):
        return {
            "match": options[index - 1].get("label"),
            "matchedIndex": index - 1,
            "confidence": confidence,
        }
    return no_match


def timeline_to_entries(timeline: list[dict]) -> list[TranscriptEntry]:
    entries = []
    for item in timeline or []:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        text = (item.get("text") or "").strip()
        if role in ROLES and text:
            entries.append(TranscriptEntry(role=role, text=text))
    return entries


async def summarize_with_llm(
    client: OpenAIClient,
    timeline: list[dict],
    needs_callback: bool,
    callback_reasons: list[str],
) -> CallSummary:
    """Summarize a call, falling back to the local summary on any failure."""
    entries = timeline_to_entries(timeline)
    local = build_local_summary(entries, needs_callback, callback_reasons)

    conversation = to_plain_text(entries)
    if not conversation:
        return local

    if needs_callback:
        context = f"This call has been flagged for clinical callback. Reasons: {', '.join(callback_reasons)}"
    else:
        context = "No callback required - patient reported no concerns."

    try:
        content = await client.chat(
            [
                {"role": "system", "content": SUMMARY_PROMPT},
                {
                    "role": "user",
                    "content": f"Summarize this call based ONLY on what was said.\n{context}\n\nTranscript:\n{conversation}",
                },
            ],
            max_tokens=400,
        )
        summary = CallSummary.from_dict(extract_json(content))
    except (UpstreamError, ValueError) as e:
        logger.warning("LLM summary failed, using local summary: %s", e)
        return local

    return CallSummary(
        outcome=summary.outcome,
        callback_needed=needs_callback,
        patient_responses=summary.patient_responses,
        key_findings=summary.key_findings,
        language=summary.language,
        callback_reasons=list(callback_reasons),
        source="remote",
    )
