"""Model-backed safety evaluator with evidence verification.

Two-tier decision:
1. The deterministic critical-phrase detector decides first. A match is
   TEACHER_REQUIRED with no model call.
2. Otherwise the external model is asked for a structured decision, and
   any escalation it claims must survive the verification gate: a
   recognized critical reason code AND either a verbatim quote found in
   the conversation or an independent detector match.

Model failures degrade locally to a low-confidence GREEN; they are not
faults. Only a crash of this evaluator itself reaches the client's
fail-safe machinery.
"""
import logging
import os
import time
from typing import Optional, Tuple

from tattleturtle.shared.models import (
    CRITICAL_REASON_CODES,
    MANUAL_TEACHER_REQUEST_REASON,
    ConversationEvent,
    ConversationEventType,
    CriticalSafetyMatch,
    SafetyDecision,
    SafetyOutcome,
    TranscriptTurn,
)
from tattleturtle.shared.utils import hash_pii
from tattleturtle.services.llm_service import LLMConfig, LLMProvider, StructuredLLM, create_llm
from tattleturtle.services.safety_service import CriticalPhraseDetector, get_detector, normalize_text
from .decision_parser import ParsedDecision, parse_model_response
from .policy import EvaluatorPolicy, load_policy
from .prompt_builder import EVALUATOR_RESPONSE_SCHEMA, SCHEMA_NAME, build_evaluator_prompt
from .transcript import TranscriptStore, WorkerState, render_transcript, turn_role_for

logger = logging.getLogger(__name__)


MODEL_UNAVAILABLE_REASON = "model_unavailable_deterministic_only"
MODEL_INVALID_RESPONSE_REASON = "model_invalid_response"
INSUFFICIENT_EVIDENCE_REASON = "insufficient_teacher_required_evidence"
SESSION_START_REASON = "session_start"
SESSION_END_REASON = "session_end"
MODEL_CONTEXT_REASON = "model_context_update"

STUDENT_ESCALATION_NOTICE = "Teacher has been notified to check in privately."
TEACHER_CHECK_IN_NOTICE = "Immediate teacher check-in required."


def critical_teacher_notice(match: CriticalSafetyMatch) -> str:
    """Teacher-facing notice quoting the detector's evidence verbatim."""
    if match.evidence_quote:
        return f'Critical safety statement detected: "{match.evidence_quote}".'
    return "Critical safety statement detected."


def is_grounded_quote(quote: str, source_text: str, min_chars: int = 6) -> bool:
    """Check that a quoted excerpt really occurs in the conversation.

    Both sides are normalized the same way as for detection, so casing,
    punctuation and smart quotes do not matter, but words must match.

    Args:
        quote: Evidence quote claimed by the model
        source_text: Latest utterance plus rendered transcript
        min_chars: Minimum normalized quote length

    Returns:
        True if the normalized quote is a substring of the normalized source
    """
    normalized_quote = normalize_text(quote)
    if len(normalized_quote) < min_chars:
        return False
    return normalized_quote in normalize_text(source_text)


def apply_escalation_gate(
    parsed: ParsedDecision,
    quote_verified: bool,
    critical_match: CriticalSafetyMatch,
) -> Tuple[SafetyOutcome, str]:
    """Downgrade an unsupported TEACHER_REQUIRED claim.

    Downgrade when the reason code is not a critical code, OR when the
    quote is unverified and the detector does not corroborate.

    Returns:
        (final outcome, final reason code)
    """
    if parsed.safety_outcome is not SafetyOutcome.TEACHER_REQUIRED:
        return parsed.safety_outcome, parsed.reason_code

    recognized_code = parsed.reason_code in CRITICAL_REASON_CODES
    grounded = quote_verified or critical_match.matched
    if not recognized_code or not grounded:
        return SafetyOutcome.GREEN, INSUFFICIENT_EVIDENCE_REASON

    return SafetyOutcome.TEACHER_REQUIRED, parsed.reason_code


def _decision(
    event: ConversationEvent,
    outcome: SafetyOutcome,
    reason_code: str,
    **overrides,
) -> SafetyDecision:
    requires_teacher = outcome is SafetyOutcome.TEACHER_REQUIRED
    fields = {
        "student_id": event.student_id,
        "conversation_id": event.conversation_id,
        "utterance_id": event.utterance_id,
        "safety_outcome": outcome,
        "teacher_notify_now": requires_teacher,
        "should_end_conversation": False,
        "reason_code": reason_code,
        "confidence": 1.0,
        "student_notice": STUDENT_ESCALATION_NOTICE if requires_teacher else None,
        "teacher_notice": TEACHER_CHECK_IN_NOTICE if requires_teacher else None,
    }
    fields.update(overrides)
    return SafetyDecision(**fields)


class ConversationEvaluator:
    """Evaluates conversation events into SafetyDecisions.

    Owns the TranscriptStore. Must be driven from a single event loop;
    the evaluator worker guarantees that.
    """

    def __init__(
        self,
        llm: StructuredLLM,
        policy: Optional[EvaluatorPolicy] = None,
        detector: Optional[CriticalPhraseDetector] = None,
        store: Optional[TranscriptStore] = None,
    ):
        """Initialize evaluator with dependencies.

        Args:
            llm: External structured-generation capability
            policy: Evaluation policy (defaults from environment)
            detector: Critical-phrase detector (module singleton by default)
            store: Transcript store (new empty store by default)
        """
        self.llm = llm
        self.policy = policy or load_policy()
        self.detector = detector or get_detector()
        self.store = store or TranscriptStore(self.policy.rolling_window_limit)

        logger.info(
            "CONVERSATION_EVALUATOR_INITIALIZED",
            extra={
                "model": self.policy.model,
                "rolling_window_limit": self.policy.rolling_window_limit,
            }
        )

    @classmethod
    def from_policy(
        cls,
        policy: Optional[EvaluatorPolicy] = None,
        api_key: Optional[str] = None,
    ) -> "ConversationEvaluator":
        """Build an evaluator backed by the configured OpenAI model.

        Raises:
            ValueError: If no API key is available
        """
        policy = policy or load_policy()
        llm = create_llm(LLMConfig(
            provider=LLMProvider.OPENAI,
            model_name=policy.model,
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
        ))
        return cls(llm=llm, policy=policy)

    async def aclose(self) -> None:
        await self.llm.aclose()

    async def evaluate_event(self, event: ConversationEvent) -> SafetyDecision:
        """Fold one event into conversation state and decide.

        Args:
            event: Event from the conversation emitter

        Returns:
            SafetyDecision for this event
        """
        state = self.store.get_or_create(event.conversation_id, event.student_id)

        if event.type is ConversationEventType.SESSION_START:
            return _decision(event, SafetyOutcome.GREEN, SESSION_START_REASON)

        if event.type is ConversationEventType.SESSION_END:
            return _decision(
                event, SafetyOutcome.GREEN, SESSION_END_REASON,
                should_end_conversation=True,
            )

        if event.type is ConversationEventType.MANUAL_TEACHER_REQUEST:
            return self._manual_request_decision(event)

        text = (event.text or "").strip()
        if text:
            state = self.store.append(
                event.conversation_id,
                event.student_id,
                TranscriptTurn(role=turn_role_for(event), text=text),
            )

        if event.type is ConversationEventType.MODEL_UTTERANCE:
            return _decision(event, SafetyOutcome.GREEN, MODEL_CONTEXT_REASON)

        # Deterministic hard trigger over the latest text and every student
        # turn still in the window
        started_at = time.perf_counter()
        critical_match = self.detector.detect(f"{event.text or ''}\n{state.student_text()}".strip())
        if critical_match.matched and critical_match.reason_code:
            decision = _decision(
                event, SafetyOutcome.TEACHER_REQUIRED, critical_match.reason_code,
                should_end_conversation=True,
                latency_ms=(time.perf_counter() - started_at) * 1000,
                teacher_notice=critical_teacher_notice(critical_match),
            )
            self._log_decision(decision, source="critical_detector")
            return decision

        return await self.evaluate_with_model(event, state)

    async def evaluate_with_model(
        self,
        event: ConversationEvent,
        state: WorkerState,
    ) -> SafetyDecision:
        """Ask the model for a decision and verify any escalation it claims.

        Args:
            event: Event being evaluated
            state: Conversation state (transcript already updated)

        Returns:
            SafetyDecision; degraded GREEN if the model fails or returns
            unparseable output
        """
        started_at = time.perf_counter()
        transcript = render_transcript(state.transcript)
        latest_student_utterance = event.text or ""
        prompt = build_evaluator_prompt(
            transcript=transcript,
            latest_student_utterance=latest_student_utterance,
        )

        try:
            response_text = await self.llm.generate_json(
                prompt, EVALUATOR_RESPONSE_SCHEMA, schema_name=SCHEMA_NAME
            )
        except Exception as e:
            logger.warning(
                "EVALUATOR_MODEL_UNAVAILABLE",
                extra={
                    "conversation_id_hash": hash_pii(event.conversation_id),
                    "utterance_id": event.utterance_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return self._degraded_decision(event, started_at, MODEL_UNAVAILABLE_REASON)

        result = parse_model_response(response_text, self.policy.default_confidence)
        if not result.ok:
            logger.warning(
                "EVALUATOR_MODEL_INVALID_RESPONSE",
                extra={
                    "conversation_id_hash": hash_pii(event.conversation_id),
                    "utterance_id": event.utterance_id,
                    "error": result.error,
                }
            )
            return self._degraded_decision(event, started_at, MODEL_INVALID_RESPONSE_REASON)

        parsed = result.decision
        source_text = f"{latest_student_utterance}\n{transcript}"
        quote_verified = is_grounded_quote(
            parsed.evidence_quote, source_text, self.policy.min_evidence_chars
        )
        critical_match = self.detector.detect(source_text)
        outcome, reason_code = apply_escalation_gate(parsed, quote_verified, critical_match)
        downgraded = outcome is not parsed.safety_outcome

        if downgraded:
            logger.warning(
                "EVALUATOR_ESCALATION_DOWNGRADED",
                extra={
                    "conversation_id_hash": hash_pii(event.conversation_id),
                    "utterance_id": event.utterance_id,
                    "model_reason_code": parsed.reason_code,
                    "quote_verified": quote_verified,
                    "critical_match": critical_match.matched,
                }
            )

        requires_teacher = outcome is SafetyOutcome.TEACHER_REQUIRED
        evidence = parsed.evidence_quote if quote_verified else critical_match.evidence_quote
        decision = SafetyDecision(
            student_id=event.student_id,
            conversation_id=event.conversation_id,
            utterance_id=event.utterance_id,
            safety_outcome=outcome,
            teacher_notify_now=requires_teacher,
            should_end_conversation=parsed.should_end_conversation,
            reason_code=reason_code,
            confidence=parsed.confidence,
            latency_ms=(time.perf_counter() - started_at) * 1000,
            student_notice=None if downgraded else parsed.student_notice,
            teacher_notice=(
                self._model_teacher_notice(parsed.teacher_notice, evidence)
                if requires_teacher else None
            ),
        )
        self._log_decision(decision, source="model")
        return decision

    def _manual_request_decision(self, event: ConversationEvent) -> SafetyDecision:
        request_text = (event.text or "").strip()
        teacher_notice = TEACHER_CHECK_IN_NOTICE
        if request_text:
            teacher_notice = f'{TEACHER_CHECK_IN_NOTICE} Student asked: "{request_text}".'
        decision = _decision(
            event, SafetyOutcome.TEACHER_REQUIRED, MANUAL_TEACHER_REQUEST_REASON,
            teacher_notice=teacher_notice,
        )
        self._log_decision(decision, source="manual_request")
        return decision

    def _degraded_decision(
        self,
        event: ConversationEvent,
        started_at: float,
        reason_code: str,
    ) -> SafetyDecision:
        return _decision(
            event, SafetyOutcome.GREEN, reason_code,
            confidence=self.policy.degraded_confidence,
            latency_ms=(time.perf_counter() - started_at) * 1000,
        )

    @staticmethod
    def _model_teacher_notice(model_notice: Optional[str], evidence: Optional[str]) -> str:
        notice = model_notice or TEACHER_CHECK_IN_NOTICE
        if evidence and evidence not in notice:
            notice = f'{notice} Student said: "{evidence}".'
        return notice

    def _log_decision(self, decision: SafetyDecision, source: str) -> None:
        extra = {
            "conversation_id_hash": hash_pii(decision.conversation_id),
            "student_id_hash": hash_pii(decision.student_id),
            "utterance_id": decision.utterance_id,
            "safety_outcome": decision.safety_outcome.value,
            "reason_code": decision.reason_code,
            "confidence": decision.confidence,
            "latency_ms": decision.latency_ms,
            "source": source,
        }
        if decision.requires_teacher:
            logger.critical("SAFETY_DECISION_TEACHER_REQUIRED", extra=extra)
        else:
            logger.info("SAFETY_DECISION_GREEN", extra=extra)
