"""Tests for ConversationEvaluator.

Covers event dispatch, the deterministic short-circuit, degraded model
paths and the escalation verification gate.
"""
import pytest

from tattleturtle.shared.models import (
    CRITICAL_REASON_CODES,
    ESCALATION_REASON_CODES,
    ILLEGAL_HARM_REASON,
    SELF_HARM_REASON,
    ConversationEventType,
    CriticalSafetyMatch,
    SafetyOutcome,
    TranscriptTurn,
    TurnRole,
)
from tattleturtle.services.evaluator_service.decision_parser import ParsedDecision
from tattleturtle.services.evaluator_service.evaluator import (
    INSUFFICIENT_EVIDENCE_REASON,
    MODEL_INVALID_RESPONSE_REASON,
    MODEL_UNAVAILABLE_REASON,
    STUDENT_ESCALATION_NOTICE,
    ConversationEvaluator,
    apply_escalation_gate,
    is_grounded_quote,
)
from tattleturtle.services.evaluator_service.transcript import WorkerState


def model_escalation(reason_code=SELF_HARM_REASON, evidence_quote="", **extra):
    response = {
        "safetyOutcome": "TEACHER_REQUIRED",
        "shouldEndConversation": False,
        "reasonCode": reason_code,
        "confidence": 0.9,
        "evidenceQuote": evidence_quote,
    }
    response.update(extra)
    return response


@pytest.fixture
def make_evaluator(fake_llm_factory, policy):
    def _make(responses=None, error=None):
        llm = fake_llm_factory(responses=responses, error=error)
        return ConversationEvaluator(llm=llm, policy=policy)
    return _make


class TestEventDispatch:
    """Non-utterance events never call the model."""

    @pytest.mark.asyncio
    async def test_session_start(self, make_evaluator, make_event):
        evaluator = make_evaluator()
        event = make_event(ConversationEventType.SESSION_START)

        decision = await evaluator.evaluate_event(event)

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.reason_code == "session_start"
        assert decision.confidence == 1.0
        assert event.conversation_id in evaluator.store
        assert evaluator.llm.prompts == []

    @pytest.mark.asyncio
    async def test_session_end(self, make_evaluator, make_event):
        evaluator = make_evaluator()

        decision = await evaluator.evaluate_event(make_event(ConversationEventType.SESSION_END))

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.reason_code == "session_end"
        assert decision.should_end_conversation is True

    @pytest.mark.asyncio
    async def test_manual_teacher_request(self, make_evaluator, make_event):
        evaluator = make_evaluator()
        event = make_event(ConversationEventType.MANUAL_TEACHER_REQUEST, text="Can I talk to my teacher?")

        decision = await evaluator.evaluate_event(event)

        assert decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decision.teacher_notify_now is True
        assert decision.reason_code == "manual_teacher_request"
        assert decision.student_notice == STUDENT_ESCALATION_NOTICE
        assert '"Can I talk to my teacher?"' in decision.teacher_notice
        assert evaluator.store.get(event.conversation_id).transcript == []
        assert evaluator.llm.prompts == []

    @pytest.mark.asyncio
    async def test_model_utterance_is_context_only(self, make_evaluator, make_event):
        evaluator = make_evaluator()
        event = make_event(ConversationEventType.MODEL_UTTERANCE, text="How was your day?")

        decision = await evaluator.evaluate_event(event)

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.reason_code == "model_context_update"
        assert evaluator.store.get(event.conversation_id).rendered() == "Turtle: How was your day?"
        assert evaluator.llm.prompts == []

    @pytest.mark.asyncio
    async def test_turtle_text_never_triggers_detector(self, make_evaluator, make_event):
        """Only student turns feed the deterministic check."""
        evaluator = make_evaluator()
        await evaluator.evaluate_event(
            make_event(ConversationEventType.MODEL_UTTERANCE, text="Some kids say I want to die")
        )

        decision = await evaluator.evaluate_event(make_event(text="I like turtles"))

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert len(evaluator.llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_blank_text_not_appended(self, make_evaluator, make_event):
        evaluator = make_evaluator()
        event = make_event(text="   ")

        await evaluator.evaluate_event(event)

        assert evaluator.store.get(event.conversation_id).transcript == []


class TestDeterministicShortCircuit:
    """A detector match decides without the model."""

    @pytest.mark.asyncio
    async def test_critical_statement(self, make_evaluator, make_event):
        """I need help, I want to die -> TEACHER_REQUIRED even if the model is down."""
        evaluator = make_evaluator(error=ConnectionError("model down"))

        decision = await evaluator.evaluate_event(make_event(text="I need help, I want to die"))

        assert decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decision.reason_code == SELF_HARM_REASON
        assert decision.confidence == 1.0
        assert decision.teacher_notify_now is True
        assert decision.should_end_conversation is True
        assert decision.student_notice == STUDENT_ESCALATION_NOTICE
        assert decision.teacher_notice == 'Critical safety statement detected: "i want to die".'
        assert evaluator.llm.prompts == []

    @pytest.mark.asyncio
    async def test_illegal_harm(self, make_evaluator, make_event):
        evaluator = make_evaluator()

        decision = await evaluator.evaluate_event(make_event(text="I'm going to bring a gun to school"))

        assert decision.reason_code == ILLEGAL_HARM_REASON

    @pytest.mark.asyncio
    async def test_earlier_student_turn_still_in_window(self, make_evaluator, make_event):
        evaluator = make_evaluator()
        await evaluator.evaluate_event(make_event(text="I want to hurt myself"))

        decision = await evaluator.evaluate_event(make_event(text="Never mind"))

        assert decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert evaluator.llm.prompts == []


class TestModelDegradation:
    """Model failures degrade to a low-confidence GREEN."""

    @pytest.mark.asyncio
    async def test_model_error(self, make_evaluator, make_event):
        evaluator = make_evaluator(error=ConnectionError("network error"))

        decision = await evaluator.evaluate_event(make_event(text="I had a rough day"))

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.confidence == 0.35
        assert decision.reason_code == MODEL_UNAVAILABLE_REASON
        assert decision.student_notice is None
        assert decision.teacher_notice is None
        assert decision.latency_ms is not None

    @pytest.mark.asyncio
    async def test_invalid_response(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=["definitely not json"])

        decision = await evaluator.evaluate_event(make_event(text="I had a rough day"))

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.confidence == 0.35
        assert decision.reason_code == MODEL_INVALID_RESPONSE_REASON

    @pytest.mark.asyncio
    async def test_non_object_response(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=['["TEACHER_REQUIRED"]'])

        decision = await evaluator.evaluate_event(make_event(text="I had a rough day"))

        assert decision.reason_code == MODEL_INVALID_RESPONSE_REASON


class TestModelDecisions:
    """Model decisions and the verification gate."""

    @pytest.mark.asyncio
    async def test_green_passes_through(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=[{
            "safetyOutcome": "GREEN",
            "shouldEndConversation": True,
            "reasonCode": "emotional_distress_only",
            "confidence": 0.7,
            "studentNotice": "Thanks for sharing.",
        }])

        decision = await evaluator.evaluate_event(make_event(text="I'm done, bye"))

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.reason_code == "emotional_distress_only"
        assert decision.should_end_conversation is True
        assert decision.confidence == 0.7
        assert decision.student_notice == "Thanks for sharing."

    @pytest.mark.asyncio
    async def test_prompt_contains_transcript(self, make_evaluator, make_event):
        evaluator = make_evaluator()
        await evaluator.evaluate_event(make_event(ConversationEventType.MODEL_UTTERANCE, text="Hi there"))

        await evaluator.evaluate_event(make_event(text="I had a rough day"))

        prompt = evaluator.llm.prompts[-1]
        assert '"""I had a rough day"""' in prompt
        assert "Turtle: Hi there\nStudent: I had a rough day" in prompt

    @pytest.mark.asyncio
    async def test_fabricated_quote_downgraded(self, make_evaluator, make_event):
        """Quote not in the conversation and no detector match -> GREEN."""
        evaluator = make_evaluator(responses=[model_escalation(
            evidence_quote="I hate my life",
            teacherNotice="Student is in danger.",
            studentNotice="Your teacher is coming.",
        )])

        decision = await evaluator.evaluate_event(make_event(text="I had a rough day at school."))

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.reason_code == INSUFFICIENT_EVIDENCE_REASON
        assert decision.teacher_notify_now is False
        assert decision.teacher_notice is None
        assert decision.student_notice is None

    @pytest.mark.asyncio
    async def test_verified_quote_escalates(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=[model_escalation(evidence_quote="better off gone")])

        decision = await evaluator.evaluate_event(
            make_event(text="I keep thinking I would be better off gone.")
        )

        assert decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decision.reason_code == SELF_HARM_REASON
        assert decision.teacher_notify_now is True
        assert decision.confidence == 0.9
        assert '"better off gone"' in decision.teacher_notice

    @pytest.mark.asyncio
    async def test_verified_quote_ignores_case_and_punctuation(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=[model_escalation(evidence_quote="Better off GONE!")])

        decision = await evaluator.evaluate_event(
            make_event(text="I keep thinking I would be better off gone.")
        )

        assert decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED

    @pytest.mark.asyncio
    async def test_unrecognized_reason_code_downgraded(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=[model_escalation(
            reason_code="bullying", evidence_quote="better off gone",
        )])

        decision = await evaluator.evaluate_event(
            make_event(text="I keep thinking I would be better off gone.")
        )

        assert decision.safety_outcome is SafetyOutcome.GREEN
        assert decision.reason_code == INSUFFICIENT_EVIDENCE_REASON

    @pytest.mark.asyncio
    async def test_too_short_quote_downgraded(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=[model_escalation(evidence_quote="gone")])

        decision = await evaluator.evaluate_event(make_event(text="I wish I was gone"))

        assert decision.reason_code == INSUFFICIENT_EVIDENCE_REASON

    @pytest.mark.asyncio
    async def test_detector_corroborates_unverified_quote(self, make_evaluator, make_event):
        evaluator = make_evaluator(responses=[model_escalation(evidence_quote="something else entirely")])
        event = make_event(text="I want to die")
        state = WorkerState(
            student_id=event.student_id,
            transcript=[TranscriptTurn(role=TurnRole.STUDENT, text="I want to die")],
        )

        decision = await evaluator.evaluate_with_model(event, state)

        assert decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        assert decision.reason_code == SELF_HARM_REASON
        assert '"i want to die"' in decision.teacher_notice

    @pytest.mark.asyncio
    async def test_escalation_reason_codes_never_arbitrary(self, make_evaluator, make_event):
        """Every TEACHER_REQUIRED decision carries a defined reason code."""
        evaluator = make_evaluator(responses=[
            model_escalation(reason_code="vibes", evidence_quote="rough day"),
            model_escalation(reason_code="model_decision", evidence_quote=""),
            model_escalation(evidence_quote="better off gone"),
        ])
        texts = ["I had a rough day", "Still rough", "I would be better off gone"]

        for text in texts:
            decision = await evaluator.evaluate_event(make_event(text=text))
            if decision.safety_outcome is SafetyOutcome.TEACHER_REQUIRED:
                assert decision.reason_code in ESCALATION_REASON_CODES


class TestEscalationGate:
    """Unit tests for the downgrade rule."""

    def parsed(self, outcome=SafetyOutcome.TEACHER_REQUIRED, reason_code=SELF_HARM_REASON):
        return ParsedDecision(
            safety_outcome=outcome,
            should_end_conversation=False,
            reason_code=reason_code,
            confidence=0.9,
        )

    def test_green_untouched(self):
        result = apply_escalation_gate(
            self.parsed(SafetyOutcome.GREEN, "no_clear_harm_intent"), False, CriticalSafetyMatch(matched=False)
        )

        assert result == (SafetyOutcome.GREEN, "no_clear_harm_intent")

    @pytest.mark.parametrize("reason_code", sorted(CRITICAL_REASON_CODES))
    def test_verified_quote_with_critical_code_kept(self, reason_code):
        result = apply_escalation_gate(
            self.parsed(reason_code=reason_code), True, CriticalSafetyMatch(matched=False)
        )

        assert result == (SafetyOutcome.TEACHER_REQUIRED, reason_code)

    def test_corroborated_without_quote_kept(self):
        match = CriticalSafetyMatch(matched=True, reason_code=SELF_HARM_REASON, evidence_quote="i want to die")

        assert apply_escalation_gate(self.parsed(), False, match)[0] is SafetyOutcome.TEACHER_REQUIRED

    def test_bad_code_downgraded_even_when_grounded(self):
        match = CriticalSafetyMatch(matched=True, reason_code=SELF_HARM_REASON, evidence_quote="i want to die")

        result = apply_escalation_gate(self.parsed(reason_code="manual_teacher_request"), True, match)

        assert result == (SafetyOutcome.GREEN, INSUFFICIENT_EVIDENCE_REASON)

    def test_ungrounded_downgraded(self):
        result = apply_escalation_gate(self.parsed(), False, CriticalSafetyMatch(matched=False))

        assert result == (SafetyOutcome.GREEN, INSUFFICIENT_EVIDENCE_REASON)


class TestIsGroundedQuote:
    """Unit tests for evidence verification."""

    def test_substring_after_normalization(self):
        assert is_grounded_quote("I’M GOING to run away", "Student: i'm going to run away tonight")

    def test_not_present(self):
        assert not is_grounded_quote("I hate my life", "Student: I had a rough day")

    def test_minimum_length(self):
        assert not is_grounded_quote("die", "I want to die")
        assert not is_grounded_quote("  !!!  ", "anything")
        assert is_grounded_quote("to die", "I want to die")


class TestLifecycle:
    """Tests for evaluator resource handling."""

    @pytest.mark.asyncio
    async def test_aclose_closes_model(self, make_evaluator):
        evaluator = make_evaluator()

        await evaluator.aclose()

        assert evaluator.llm.closed is True
