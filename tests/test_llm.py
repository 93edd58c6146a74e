import json

import httpx
import pytest
import respx
from carecall.llm import (
    OPENAI_BASE_URL,
    TURN_DETECTION,
    OpenAIClient,
    UpstreamError,
    extract_json,
    match_answer_with_llm,
    summarize_with_llm,
    timeline_to_entries,
)

CHAT_URL = f"{OPENAI_BASE_URL}/chat/completions"

OPTIONS = [{"label": "As expected", "next": "reason"}, {"label": "Have a concern", "next": "reason"}]

TIMELINE = [
    {"role": "assistant", "text": "How are you feeling since leaving the ER?"},
    {"role": "user", "text": "Not great, my chest still hurts"},
    {"role": "system", "text": "Call ended"},
]


def _chat_response(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestExtractJson:
    def test_plain(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced(self):
        assert extract_json('Here you go:\n```json\n{"a": 2}\n```') == {"a": 2}

    def test_garbage(self):
        with pytest.raises(ValueError):
            extract_json("no json here")


class TestRealtimeSession:
    @pytest.mark.asyncio
    async def test_mints_ephemeral_credential(self):
        with respx.mock:
            route = respx.post(f"{OPENAI_BASE_URL}/realtime/sessions").mock(
                return_value=httpx.Response(200, json={"client_secret": {"value": "ek_abc", "expires_at": 123}})
            )
            client = OpenAIClient(api_key="sk-test")
            session = await client.create_realtime_session("Be kind.", voice="sage")

            assert session == {"client_secret": "ek_abc", "expires_at": 123}
            request = route.calls[0].request
            assert request.headers["authorization"] == "Bearer sk-test"
            body = json.loads(request.content)
            assert body["instructions"] == "Be kind."
            assert body["voice"] == "sage"
            assert body["turn_detection"] == TURN_DETECTION
            assert body["turn_detection"]["create_response"] is False

    @pytest.mark.asyncio
    async def test_upstream_error_status_preserved(self):
        with respx.mock:
            respx.post(f"{OPENAI_BASE_URL}/realtime/sessions").mock(return_value=httpx.Response(401))
            client = OpenAIClient(api_key="bad")
            with pytest.raises(UpstreamError) as exc:
                await client.create_realtime_session("x")
            assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_secret(self):
        with respx.mock:
            respx.post(f"{OPENAI_BASE_URL}/realtime/sessions").mock(return_value=httpx.Response(200, json={}))
            with pytest.raises(UpstreamError):
                await OpenAIClient(api_key="sk").create_realtime_session("x")


class TestChat:
    @pytest.mark.asyncio
    async def test_json_mode_requested(self):
        with respx.mock:
            route = respx.post(CHAT_URL).mock(return_value=_chat_response('{"ok": true}'))
            content = await OpenAIClient(api_key="sk").chat([{"role": "user", "content": "hi"}])
            assert content == '{"ok": true}'
            body = json.loads(route.calls[0].request.content)
            assert body["response_format"] == {"type": "json_object"}
            assert body["temperature"] == 0.1

    @pytest.mark.asyncio
    async def test_empty_content(self):
        with respx.mock:
            respx.post(CHAT_URL).mock(return_value=httpx.Response(200, json={"choices": []}))
            with pytest.raises(UpstreamError):
                await OpenAIClient(api_key="sk").chat([])

    @pytest.mark.asyncio
    async def test_circuit_opens_after_server_errors(self):
        with respx.mock:
            route = respx.post(CHAT_URL).mock(return_value=httpx.Response(500))
            client = OpenAIClient(api_key="sk")
            for _ in range(3):
                with pytest.raises(UpstreamError):
                    await client.chat([])
            with pytest.raises(UpstreamError) as exc:
                await client.chat([])
            assert exc.value.status_code == 503
            assert route.call_count == 3


class TestMatchWithLlm:
    @pytest.mark.asyncio
    async def test_numbered_option_resolved(self):
        with respx.mock:
            route = respx.post(CHAT_URL).mock(return_value=_chat_response('{"match": 2, "confidence": 0.85}'))
            result = await match_answer_with_llm(OpenAIClient(api_key="sk"), "How are you?", "not great", OPTIONS)
            assert result == {"match": "Have a concern", "matchedIndex": 1, "confidence": 0.85}
            prompt = json.loads(route.calls[0].request.content)["messages"][1]["content"]
            assert "1. As expected\n2. Have a concern" in prompt

    @pytest.mark.asyncio
    async def test_zero_is_no_match(self):
        with respx.mock:
            respx.post(CHAT_URL).mock(return_value=_chat_response('{"match": 0, "confidence": 0.2}'))
            result = await match_answer_with_llm(OpenAIClient(api_key="sk"), "q", "purple", OPTIONS)
            assert result == {"match": None, "matchedIndex": -1, "confidence": 0.0}

    @pytest.mark.asyncio
    async def test_out_of_range_is_no_match(self):
        with respx.mock:
            respx.post(CHAT_URL).mock(return_value=_chat_response('{"match": 7, "confidence": 0.9}'))
            result = await match_answer_with_llm(OpenAIClient(api_key="sk"), "q", "x", OPTIONS)
            assert result["match"] is None

    @pytest.mark.asyncio
    async def test_upstream_failure_is_no_match(self):
        with respx.mock:
            respx.post(CHAT_URL).mock(return_value=httpx.Response(500))
            result = await match_answer_with_llm(OpenAIClient(api_key="sk"), "q", "x", OPTIONS)
            assert result["match"] is None


class TestSummarizeWithLlm:
    def test_timeline_to_entries_skips_bad_items(self):
        entries = timeline_to_entries(TIMELINE + [{"role": "tool", "text": "x"}, "junk", {"role": "user", "text": " "}])
        assert [(e.role, e.text) for e in entries] == [
            ("assistant", "How are you feeling since leaving the ER?"),
            ("user", "Not great, my chest still hurts"),
            ("system", "Call ended"),
        ]

    @pytest.mark.asyncio
    async def test_remote_summary(self):
        remote = {
            "outcome": "completed",
            "callbackNeeded": False,
            "patientResponses": ["Not great, my chest still hurts"],
            "keyFindings": "Patient reports ongoing chest pain.",
            "language": "English",
        }
        with respx.mock:
            route = respx.post(CHAT_URL).mock(return_value=_chat_response(json.dumps(remote)))
            summary = await summarize_with_llm(OpenAIClient(api_key="sk"), TIMELINE, True, ["callback"])

            assert summary.source == "remote"
            assert summary.key_findings == "Patient reports ongoing chest pain."
            assert summary.callback_needed is True
            assert summary.callback_reasons == ["callback"]
            prompt = json.loads(route.calls[0].request.content)["messages"][1]["content"]
            assert "Patient: Not great, my chest still hurts" in prompt
            assert "flagged for clinical callback" in prompt
            assert "Call ended" not in prompt

    @pytest.mark.asyncio
    async def test_malformed_summary_falls_back(self):
        with respx.mock:
            respx.post(CHAT_URL).mock(return_value=_chat_response('{"outcome": "fantastic"}'))
            summary = await summarize_with_llm(OpenAIClient(api_key="sk"), TIMELINE, False, [])
            assert summary.source == "local"
            assert summary.outcome == "completed"
            assert summary.key_findings.startswith("Call completed with 1 patient responses.")

    @pytest.mark.asyncio
    async def test_no_spoken_lines_skips_model(self):
        with respx.mock:
            route = respx.post(CHAT_URL).mock(return_value=_chat_response("{}"))
            summary = await summarize_with_llm(OpenAIClient(api_key="sk"), [{"role": "system", "text": "x"}], False, [])
            assert summary.outcome == "incomplete"
            assert not route.called
