import pytest
from carecall.classification import CALLBACK_REASON, CallbackDetector, check_assistant_for_callback
from carecall.transcript import TranscriptEntry


class TestPhraseCheck:
    @pytest.mark.parametrize("text", [
        "I understand. We'll have someone from our care team call you back.",
        "Someone will call you back soon.",
        "Your care team will call you tomorrow.",
        "I'll make sure the care team knows about this.",
        "Entiendo. Alguien de nuestro equipo de atención le devolverá la llamada.",
    ])
    def test_commitment_detected(self, text):
        assert check_assistant_for_callback(text) == CALLBACK_REASON

    def test_typographic_apostrophe(self):
        assert check_assistant_for_callback("We’ll have someone call you about that.") == CALLBACK_REASON

    @pytest.mark.parametrize("text", [
        "I'm glad to hear that.",
        "Can I call you back later?",
        "",
    ])
    def test_no_commitment(self, text):
        assert check_assistant_for_callback(text) is None


class TestCallbackDetector:
    def test_flags_on_assistant_commitment(self, session):
        detector = CallbackDetector(session)
        flagged = detector.observe(TranscriptEntry("assistant", "Someone will call you back."))
        assert flagged
        assert session.needs_callback is True
        assert session.callback_reasons == [CALLBACK_REASON]

    def test_patient_speech_never_flags(self, session):
        detector = CallbackDetector(session)
        assert not detector.observe(TranscriptEntry("user", "Can someone will call you back me? I have a concern."))
        assert session.needs_callback is False

    def test_reason_deduplicated_across_turns(self, session):
        detector = CallbackDetector(session)
        detector.observe(TranscriptEntry("assistant", "Someone will call you back."))
        detector.observe(TranscriptEntry("assistant", "Again, someone will call you back."))
        assert session.callback_reasons == [CALLBACK_REASON]

    def test_flag_is_sticky(self, session):
        detector = CallbackDetector(session)
        detector.observe(TranscriptEntry("assistant", "Someone will call you back."))
        detector.observe(TranscriptEntry("assistant", "Thank you, goodbye!"))
        assert session.needs_callback is True
