import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from carecall.circuit_breaker import CircuitBreaker
from carecall.errors import FlowMapError, ScriptGenerationError, SessionBootstrapError
from carecall.flow import FlowOption
from carecall.generation import GeneratedScript
from carecall.matching import NO_MATCH, MatchResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionCredentials:
    client_secret: str
    expires_at: Optional[int] = None


def _error_message(resp: httpx.Response, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"{fallback} ({resp.status_code})"


class BackendClient:
    """HTTP client for the call backend.

    The backend holds the long-lived speech-service key and issues ephemeral
    credentials, and fronts the language-model helpers (answer matching,
    summaries, script generation).

    Each call is wrapped with a circuit breaker: after 3 consecutive failures,
    calls are skipped for 60s. Matching and summaries degrade (no match / no
    remote summary) instead of raising; session bootstrap and generation raise
    because the caller has nothing sensible to fall back to.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="call backend",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def create_session(
        self,
        patient_name: str = "",
        system_prompt: str = "",
        voice: str = "cedar",
        mode: str = "deterministic",
    ) -> SessionCredentials:
        if not self._circuit.should_try():
            raise SessionBootstrapError("Call backend unavailable, try again shortly")
        try:
            resp = await self._client.post(
                "/api/session",
                json={
                    "patientName": patient_name or None,
                    "systemPrompt": system_prompt,
                    "voice": voice,
                    "mode": mode,
                },
            )
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            logger.error("create_session failed: %s", e)
            raise SessionBootstrapError(f"Could not reach call backend: {e}") from e

        if resp.is_error:
            if resp.status_code >= 500:
                self._circuit.record_failure()
            message = _error_message(resp, "Failed to create session")
            logger.error("create_session rejected: %s", message)
            raise SessionBootstrapError(message)

        self._circuit.record_success()
        data = resp.json()
        secret = data.get("client_secret")
        expires_at = data.get("expires_at")
        # Accept the speech service's raw shape as well as the flattened one
        if isinstance(secret, dict):
            expires_at = expires_at or secret.get("expires_at")
            secret = secret.get("value")
        if not secret:
            raise SessionBootstrapError("Session response did not include a credential")
        return SessionCredentials(client_secret=secret, expires_at=expires_at)

    async def match_answer(
        self,
        question: str,
        user_response: str,
        options: Sequence[FlowOption],
    ) -> MatchResult:
        if not self._circuit.should_try():
            logger.warning("Backend circuit breaker open, skipping remote match")
            return NO_MATCH
        try:
            resp = await self._client.post(
                "/api/match",
                json={
                    "question": question,
                    "userResponse": user_response,
                    "options": [o.to_dict() for o in options],
                },
            )
            resp.raise_for_status()
            self._circuit.record_success()
            data = resp.json()
        except Exception as e:
            self._circuit.record_failure()
            logger.warning("match_answer failed: %s", e)
            return NO_MATCH

        label = data.get("match")
        if not label:
            return NO_MATCH
        return MatchResult(label=label, confidence=float(data.get("confidence") or 0.0))

    async def summarize(
        self,
        timeline: list[dict],
        needs_callback: bool,
        callback_reasons: list[str],
    ) -> Optional[dict]:
        if not self._circuit.should_try():
            logger.warning("Backend circuit breaker open, skipping remote summary")
            return None
        try:
            resp = await self._client.post(
                "/api/summary",
                json={
                    "timeline": timeline,
                    "needsCallback": needs_callback,
                    "callbackReasons": callback_reasons,
                },
            )
            resp.raise_for_status()
            self._circuit.record_success()
            summary = resp.json().get("summary")
        except Exception as e:
            self._circuit.record_failure()
            logger.warning("summarize failed: %s", e)
            return None

        if not isinstance(summary, dict):
            logger.warning("Summary response was not structured: %r", summary)
            return None
        return summary

    async def generate_script(self, script: str, input_type: str = "script", mode: str = "deterministic") -> GeneratedScript:
        try:
            resp = await self._client.post(
                "/api/generate",
                json={"script": script, "inputType": input_type, "mode": mode},
                timeout=120.0,
            )
        except httpx.HTTPError as e:
            raise ScriptGenerationError(f"Could not reach call backend: {e}") from e
        if resp.is_error:
            raise ScriptGenerationError(_error_message(resp, "Failed to generate script"))
        try:
            return GeneratedScript.from_dict(resp.json())
        except (ValueError, FlowMapError) as e:
            raise ScriptGenerationError(f"Generated script is unusable: {e}") from e

    async def regenerate_options(
        self,
        question: str,
        current_options: Sequence[FlowOption] = (),
        target_count: int = 4,
        context: str = "",
    ) -> list[FlowOption]:
        try:
            resp = await self._client.post(
                "/api/regenerate-options",
                json={
                    "question": question,
                    "currentOptions": [o.to_dict() for o in current_options],
                    "targetCount": target_count,
                    "context": context,
                },
            )
        except httpx.HTTPError as e:
            raise ScriptGenerationError(f"Could not reach call backend: {e}") from e
        if resp.is_error:
            raise ScriptGenerationError(_error_message(resp, "Failed to regenerate options"))
        try:
            return [FlowOption.from_dict(o) for o in resp.json().get("options") or []]
        except (ValueError, FlowMapError) as e:
            raise ScriptGenerationError(f"Regenerated options are unusable: {e}") from e
