"""Conversation event and safety decision domain models.

This file defines the records exchanged between the conversation layer
and the safety evaluator. Events are produced once by the emitter and
consumed once by the evaluator; decisions are produced once per evaluated
event and handed to the caller.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class SafetyOutcome(Enum):
    """Binary escalation outcome for one evaluated event."""
    GREEN = "GREEN"                          # Safe to continue
    TEACHER_REQUIRED = "TEACHER_REQUIRED"    # Trusted adult must step in now


class ConversationEventType(Enum):
    """Steps of a live conversation that the evaluator understands."""
    SESSION_START = "SESSION_START"
    STUDENT_UTTERANCE = "STUDENT_UTTERANCE"
    MODEL_UTTERANCE = "MODEL_UTTERANCE"
    SESSION_END = "SESSION_END"
    MANUAL_TEACHER_REQUEST = "MANUAL_TEACHER_REQUEST"


class EventRole(Enum):
    """Provenance of the text attached to an event."""
    SYSTEM = "SYSTEM"
    STUDENT = "STUDENT"
    MODEL = "MODEL"


class TurnRole(Enum):
    """Speaker label used when rendering the rolling transcript."""
    STUDENT = "Student"
    TURTLE = "Turtle"
    SYSTEM = "System"


# Reason codes produced by the deterministic detector. These are the only
# codes a model is allowed to use when it asks for escalation.
SELF_HARM_REASON = "self_harm_intent_or_plan"
ILLEGAL_HARM_REASON = "serious_illegal_harm_intent_or_plan"

CRITICAL_REASON_CODES: FrozenSet[str] = frozenset({
    SELF_HARM_REASON,
    ILLEGAL_HARM_REASON,
})

# Non-model escalation codes
MANUAL_TEACHER_REQUEST_REASON = "manual_teacher_request"
EVALUATOR_FAILURE_REASON = "evaluator_failure"

# Every reason code a TEACHER_REQUIRED decision may carry
ESCALATION_REASON_CODES: FrozenSet[str] = CRITICAL_REASON_CODES | frozenset({
    MANUAL_TEACHER_REQUEST_REASON,
    EVALUATOR_FAILURE_REASON,
})


@dataclass(frozen=True)
class ConversationEvent:
    """One step of a conversation, as produced by the event emitter.

    utterance_id is strictly increasing within a conversation_id. The
    evaluator tolerates gaps (dropped events) but never reordering by
    the emitter.
    """
    type: ConversationEventType
    role: EventRole
    student_id: str
    conversation_id: str
    utterance_id: int
    timestamp: datetime = field(default_factory=datetime.utcnow)
    text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for transport and audit."""
        return {
            "type": self.type.value,
            "role": self.role.value,
            "student_id": self.student_id,
            "conversation_id": self.conversation_id,
            "utterance_id": self.utterance_id,
            "timestamp": self.timestamp.isoformat() + "Z",
            "text": self.text,
        }


@dataclass(frozen=True)
class TranscriptTurn:
    """A single speaker turn held in the evaluator's rolling window."""
    role: TurnRole
    text: str

    def render(self) -> str:
        return f"{self.role.value}: {self.text}"


@dataclass(frozen=True)
class CriticalSafetyMatch:
    """Output of the deterministic critical-phrase detector.

    evidence_quote is the literal normalized substring that matched, so it
    can be quoted to a teacher without paraphrasing.
    """
    matched: bool
    reason_code: Optional[str] = None
    evidence_quote: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"matched": self.matched}
        if self.matched:
            result["reason_code"] = self.reason_code
            result["evidence_quote"] = self.evidence_quote
        return result


NO_MATCH = CriticalSafetyMatch(matched=False)


@dataclass(frozen=True)
class SafetyDecision:
    """Evaluator verdict for one conversation event.

    Immutable - decisions cannot be modified after creation. Invariants
    are enforced at construction so that a malformed escalation can never
    reach the caller.
    """
    student_id: str
    conversation_id: str
    utterance_id: int
    safety_outcome: SafetyOutcome
    teacher_notify_now: bool
    should_end_conversation: bool
    reason_code: str
    confidence: float
    latency_ms: Optional[float] = None
    student_notice: Optional[str] = None
    teacher_notice: Optional[str] = None

    def __post_init__(self):
        requires_teacher = self.safety_outcome is SafetyOutcome.TEACHER_REQUIRED
        if self.teacher_notify_now != requires_teacher:
            raise ValueError(
                "teacher_notify_now must be True exactly when outcome is TEACHER_REQUIRED"
            )
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")
        if requires_teacher and self.reason_code not in ESCALATION_REASON_CODES:
            raise ValueError(
                f"Reason code {self.reason_code!r} is not allowed for TEACHER_REQUIRED"
            )

    @property
    def requires_teacher(self) -> bool:
        return self.safety_outcome is SafetyOutcome.TEACHER_REQUIRED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and alert payloads."""
        result = {
            "student_id": self.student_id,
            "conversation_id": self.conversation_id,
            "utterance_id": self.utterance_id,
            "safety_outcome": self.safety_outcome.value,
            "teacher_notify_now": self.teacher_notify_now,
            "should_end_conversation": self.should_end_conversation,
            "reason_code": self.reason_code,
            "confidence": round(self.confidence, 3),
        }
        if self.latency_ms is not None:
            result["latency_ms"] = round(self.latency_ms, 2)
        if self.student_notice:
            result["student_notice"] = self.student_notice
        if self.teacher_notice:
            result["teacher_notice"] = self.teacher_notice
        return result
