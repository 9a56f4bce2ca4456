"""Shared domain models for the Tattle Turtle safety core."""
from .safety import (
    SafetyOutcome,
    ConversationEventType,
    EventRole,
    TurnRole,
    ConversationEvent,
    TranscriptTurn,
    CriticalSafetyMatch,
    SafetyDecision,
    NO_MATCH,
    SELF_HARM_REASON,
    ILLEGAL_HARM_REASON,
    CRITICAL_REASON_CODES,
    MANUAL_TEACHER_REQUEST_REASON,
    EVALUATOR_FAILURE_REASON,
    ESCALATION_REASON_CODES,
)

__all__ = [
    "SafetyOutcome",
    "ConversationEventType",
    "EventRole",
    "TurnRole",
    "ConversationEvent",
    "TranscriptTurn",
    "CriticalSafetyMatch",
    "SafetyDecision",
    "NO_MATCH",
    "SELF_HARM_REASON",
    "ILLEGAL_HARM_REASON",
    "CRITICAL_REASON_CODES",
    "MANUAL_TEACHER_REQUEST_REASON",
    "EVALUATOR_FAILURE_REASON",
    "ESCALATION_REASON_CODES",
]
