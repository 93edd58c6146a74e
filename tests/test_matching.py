import pytest
from carecall.flow import FlowMap, FlowOption, FlowStep
from carecall.matching import (
    NO_MATCH,
    LocalMatcher,
    MatchResult,
    RemoteMatcher,
    contains_final_phrase,
    infer_flow_step,
    match_option,
    match_user_response,
)
from carecall.transcript import TranscriptEntry


def _assistant(text):
    return TranscriptEntry("assistant", text)


def _user(text):
    return TranscriptEntry("user", text)


CONFIRM_STEP = FlowStep(
    id="confirm",
    question="Our records show you left early. Is that correct? Please say Yes or No.",
    options=(
        FlowOption(label="Yes", keywords=("yes", "yeah", "correct"), next="end_call"),
        FlowOption(label="No", next="end_call"),
    ),
)


class TestFinalPhrases:
    def test_goodbye_detected(self):
        assert contains_final_phrase("Thank you, take care, goodbye!")

    def test_concern_is_not_a_goodbye(self):
        assert not contains_final_phrase("I understand your concern")

    @pytest.mark.parametrize("text", ["Adiós, cuídese", "BYE now", "Take Care"])
    def test_case_and_language_insensitive(self, text):
        assert contains_final_phrase(text)

    def test_empty(self):
        assert not contains_final_phrase("")
        assert not contains_final_phrase(None)


class TestMatchOption:
    def test_keyword_match(self):
        assert match_option("yeah that's right", CONFIRM_STEP) == "Yes"

    def test_label_substring(self):
        assert match_option("NO", CONFIRM_STEP) == "No"

    def test_first_declared_option_wins(self):
        step = FlowStep(
            id="s",
            options=(FlowOption(label="Yes", next="end_call"), FlowOption(label="Correct", next="end_call")),
        )
        assert match_option("yes correct", step) == "Yes"

        reversed_step = FlowStep(
            id="s",
            options=(FlowOption(label="Correct", next="end_call"), FlowOption(label="Yes", next="end_call")),
        )
        assert match_option("yes correct", reversed_step) == "Correct"

    def test_synonyms_used_when_option_has_no_keywords(self):
        step = FlowStep(id="s", options=(FlowOption(label="Yes", next="end_call"),))
        assert match_option("yep", step) == "Yes"

    def test_synonyms_skipped_when_option_has_keywords(self):
        step = FlowStep(id="s", options=(FlowOption(label="Yes", keywords=("affirmative",), next="end_call"),))
        assert match_option("yep", step) is None

    def test_no_match(self):
        assert match_option("purple elephants", CONFIRM_STEP) is None

    def test_blank_utterance(self):
        assert match_option("   ", CONFIRM_STEP) is None

    def test_deterministic(self):
        results = {match_option("yeah, correct", CONFIRM_STEP) for _ in range(5)}
        assert results == {"Yes"}


class TestMatchUserResponse:
    def test_against_default_flow(self, flow_map):
        assert match_user_response("I went home afterwards", "disposition", flow_map) == "Went home"
        assert match_user_response("Español por favor", "language", flow_map) == "Español"
        assert match_user_response("it got worse", "reason", flow_map) == "I felt worse"

    def test_unknown_step(self, flow_map):
        assert match_user_response("yes", "nowhere", flow_map) is None

    def test_end_to_end_confirmation(self):
        flow = FlowMap(title="t", steps=(CONFIRM_STEP,))
        transcript = [
            _assistant("...Is that correct? Please say Yes or No."),
            _user("yeah that's right"),
        ]
        step_id = infer_flow_step(transcript, flow)
        assert step_id == "confirm"
        assert match_user_response(transcript[-1].text, step_id, flow) == "Yes"


class TestInferFlowStep:
    def test_empty_transcript_is_first_step(self, flow_map):
        assert infer_flow_step([], flow_map) == "language"

    def test_only_user_entries_is_first_step(self, flow_map):
        assert infer_flow_step([_user("hello?")], flow_map) == "language"

    def test_question_overlap(self):
        flow = FlowMap(
            title="t",
            steps=(
                FlowStep(id="pain", question="Rate your pain level today"),
                FlowStep(id="meds", question="Are you taking medications regularly?"),
            ),
        )
        assert infer_flow_step([_assistant("Could you rate your pain for me?")], flow) == "pain"
        assert infer_flow_step([_assistant("Are you still taking your medications?")], flow) == "meds"

    def test_best_score_wins_and_ties_go_to_earlier_step(self):
        flow = FlowMap(
            title="t",
            steps=(
                FlowStep(id="first", question="Tell me about sleep quality"),
                FlowStep(id="second", question="Tell me about sleep habits lately"),
            ),
        )
        assert infer_flow_step([_assistant("Tell me about your sleep.")], flow) == "first"
        assert infer_flow_step([_assistant("Tell me about your sleep habits.")], flow) == "second"

    def test_reason_question(self, flow_map):
        transcript = [_assistant("Got it. Why did you leave the ER before your visit was finished?")]
        assert infer_flow_step(transcript, flow_map) == "reason"

    def test_uses_latest_assistant_entry(self, flow_map):
        transcript = [
            _assistant("Why did you leave the ER before your visit was finished?"),
            _user("the wait was too long"),
            _assistant("Where did you go after leaving? Say 'Went home'."),
        ]
        assert infer_flow_step(transcript, flow_map) == "disposition"

    def test_goodbye_falls_back_to_closing(self, flow_map):
        transcript = [_assistant("Alright, bye now.")]
        assert infer_flow_step(transcript, flow_map) == "closing"

    def test_topic_hint(self, flow_map):
        transcript = [_assistant("Tell me, any concern at all?")]
        assert infer_flow_step(transcript, flow_map) == "general_status"

    def test_topic_hint_needs_matching_step(self):
        flow = FlowMap(title="t", steps=(CONFIRM_STEP,))
        assert infer_flow_step([_assistant("How are you feeling?")], flow) is None

    def test_nothing_matches(self, flow_map):
        assert infer_flow_step([_assistant("Hmm, one moment please.")], flow_map) is None

    def test_threshold_is_tunable(self, flow_map):
        transcript = [_assistant("Where to?")]
        assert infer_flow_step(transcript, flow_map) is None
        transcript = [_assistant("Where did it hurt?")]
        assert infer_flow_step(transcript, flow_map, min_overlap=1) == "disposition"


class TestMatchers:
    @pytest.mark.asyncio
    async def test_local_matcher(self):
        result = await LocalMatcher().match(CONFIRM_STEP, "yeah")
        assert result == MatchResult(label="Yes", confidence=1.0)
        assert result.matched

    @pytest.mark.asyncio
    async def test_local_matcher_no_match(self):
        result = await LocalMatcher().match(CONFIRM_STEP, "what?")
        assert result is NO_MATCH
        assert not result.matched

    @pytest.mark.asyncio
    async def test_remote_matcher_passes_step(self, backend):
        backend.match_result = MatchResult(label="No", confidence=0.8)
        calls = []
        original = backend.match_answer

        async def spy(question, user_response, options):
            calls.append((question, user_response, options))
            return await original(question, user_response, options)

        backend.match_answer = spy
        result = await RemoteMatcher(backend).match(CONFIRM_STEP, "nah, not me")
        assert result.label == "No"
        assert calls == [(CONFIRM_STEP.question, "nah, not me", CONFIRM_STEP.options)]

    @pytest.mark.asyncio
    async def test_remote_matcher_rejects_unknown_label(self, backend):
        backend.match_result = MatchResult(label="Maybe", confidence=0.9)
        assert await RemoteMatcher(backend).match(CONFIRM_STEP, "maybe") is NO_MATCH

    @pytest.mark.asyncio
    async def test_remote_matcher_skips_steps_without_options(self, backend):
        backend.match_result = MatchResult(label="Yes", confidence=0.9)
        step = FlowStep(id="closing", type="statement", question="Goodbye!")
        assert await RemoteMatcher(backend).match(step, "yes") is NO_MATCH
