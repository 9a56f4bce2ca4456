"""Strict parsing of the model's structured safety decision.

Every field has an explicit coercion rule so that any JSON the model
returns becomes either a well-typed ParsedDecision or a parse error.
Nothing here trusts the model: escalation checks happen in the evaluator.
"""
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tattleturtle.shared.models import SafetyOutcome

logger = logging.getLogger(__name__)


DEFAULT_REASON_CODE = "model_decision"
DEFAULT_CONFIDENCE = 0.5

_TRUE_STRINGS = frozenset({"true", "1", "yes"})


@dataclass(frozen=True)
class ParsedDecision:
    """Model output after coercion, before evidence verification."""
    safety_outcome: SafetyOutcome
    should_end_conversation: bool
    reason_code: str
    confidence: float
    evidence_quote: str = ""
    student_notice: Optional[str] = None
    teacher_notice: Optional[str] = None


@dataclass(frozen=True)
class ParseResult:
    """Either a decision or an error description, never both."""
    decision: Optional[ParsedDecision] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.decision is not None

    @classmethod
    def success(cls, decision: ParsedDecision) -> "ParseResult":
        return cls(decision=decision)

    @classmethod
    def failure(cls, error: str) -> "ParseResult":
        return cls(error=error)


def coerce_outcome(value: Any) -> SafetyOutcome:
    """Only the exact string TEACHER_REQUIRED escalates."""
    if value == SafetyOutcome.TEACHER_REQUIRED.value:
        return SafetyOutcome.TEACHER_REQUIRED
    return SafetyOutcome.GREEN


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def coerce_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    """Finite number clamped to [0, 1]; anything else becomes default."""
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if not math.isfinite(number):
        return default
    return max(0.0, min(1.0, number))


def coerce_reason_code(value: Any) -> str:
    if value is None:
        return DEFAULT_REASON_CODE
    text = str(value).strip()
    return text or DEFAULT_REASON_CODE


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> Optional[str]:
    text = coerce_text(value)
    return text or None


def parse_model_response(
    text: Optional[str],
    default_confidence: float = DEFAULT_CONFIDENCE,
) -> ParseResult:
    """Deserialize and coerce the model's JSON response.

    Args:
        text: Raw response text; empty or None is read as "{}"
        default_confidence: Confidence used when the model's is unusable

    Returns:
        ParseResult with a ParsedDecision, or an error when the text is
        not valid JSON or not a JSON object
    """
    try:
        payload = json.loads(text or "{}")
    except (TypeError, ValueError) as e:
        logger.warning(
            "MODEL_RESPONSE_INVALID_JSON",
            extra={"error": str(e), "response_length": len(text or "")}
        )
        return ParseResult.failure(f"invalid JSON: {e}")

    if not isinstance(payload, dict):
        logger.warning(
            "MODEL_RESPONSE_NOT_OBJECT",
            extra={"payload_type": type(payload).__name__}
        )
        return ParseResult.failure(f"expected a JSON object, got {type(payload).__name__}")

    return ParseResult.success(_coerce_payload(payload, default_confidence))


def _coerce_payload(payload: Dict[str, Any], default_confidence: float) -> ParsedDecision:
    return ParsedDecision(
        safety_outcome=coerce_outcome(payload.get("safetyOutcome")),
        should_end_conversation=coerce_bool(payload.get("shouldEndConversation")),
        reason_code=coerce_reason_code(payload.get("reasonCode")),
        confidence=coerce_confidence(payload.get("confidence"), default_confidence),
        evidence_quote=coerce_text(payload.get("evidenceQuote")),
        student_notice=_optional_text(payload.get("studentNotice")),
        teacher_notice=_optional_text(payload.get("teacherNotice")),
    )
