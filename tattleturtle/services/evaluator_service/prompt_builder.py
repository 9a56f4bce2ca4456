"""Prompt and output schema for the model-backed safety evaluator.

The prompt must steer the model toward decisions the evaluator's
verification gate will accept: escalation only for explicit intent or
plan, only with one of the critical reason codes, and only with a
verbatim quote from the student's own words.
"""
from typing import Any, Dict, Tuple

from tattleturtle.shared.models import CRITICAL_REASON_CODES, SafetyOutcome


EVALUATOR_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "safetyOutcome": {
            "type": "string",
            "description": "Must be GREEN or TEACHER_REQUIRED",
        },
        "shouldEndConversation": {
            "type": "boolean",
        },
        "reasonCode": {
            "type": "string",
            "description": "Short snake_case reason code",
        },
        "confidence": {
            "type": "number",
            "description": "0.0-1.0",
        },
        "evidenceQuote": {
            "type": "string",
            "description": "Direct quote from student content supporting the decision",
        },
        "studentNotice": {
            "type": "string",
        },
        "teacherNotice": {
            "type": "string",
        },
    },
    "required": ["safetyOutcome", "shouldEndConversation", "reasonCode", "confidence"],
}

SCHEMA_NAME = "safety_decision"

TEACHER_REQUIRED_EXAMPLES: Tuple[str, ...] = (
    "I am going to kill myself after school.",
    "I don't want to be alive anymore.",
    "I keep thinking about killing myself.",
    "I want to hurt myself.",
    "I brought a knife and I will stab him today.",
    "I'm going to bring a gun to school.",
    "We are going to beat him up at recess.",
    "I plan to jump off the roof.",
)

GREEN_EXAMPLES: Tuple[str, ...] = (
    "I feel sad and mad.",
    "Someone was mean to me at lunch.",
    "I hate school and I am frustrated.",
    "I need help because I feel overwhelmed.",
    "I am scared about my test.",
    "Sometimes I get angry but I don't want to hurt anyone.",
)

GREEN_REASON_EXAMPLES: Tuple[str, ...] = (
    "no_clear_harm_intent",
    "emotional_distress_only",
    "ambiguous_content",
)


def _bullets(items, indent: str = "  - ") -> str:
    return "\n".join(f"{indent}{item}" for item in items)


def build_evaluator_prompt(transcript: str, latest_student_utterance: str) -> str:
    """Compose the instruction prompt for one evaluation.

    Args:
        transcript: Rendered rolling transcript ("Role: text" per line)
        latest_student_utterance: Text of the event being evaluated

    Returns:
        Prompt text with both inputs embedded verbatim
    """
    green = SafetyOutcome.GREEN.value
    teacher_required = SafetyOutcome.TEACHER_REQUIRED.value
    reason_codes = _bullets(sorted(CRITICAL_REASON_CODES), indent="    - ")
    positive = _bullets(f'"{example}"' for example in TEACHER_REQUIRED_EXAMPLES)
    negative = _bullets(f'"{example}"' for example in GREEN_EXAMPLES)
    green_reasons = ", ".join(GREEN_REASON_EXAMPLES)

    return f"""
You are a school safety evaluator for a child support conversation.

Task:
- Evaluate the FULL conversation context and latest student utterance.
- Return only JSON.
- Choose exactly one safety outcome:
  - {green}: no immediate teacher intervention required.
  - {teacher_required}: student must talk with a teacher now.

Rules:
- Base the decision on explicit text/content only (stated intent, plan, actions, and targets).
- Do NOT use emotional tone, style, politeness, or intensity as the escalation trigger.
- Choose {teacher_required} only when the student shows:
  1) explicit self-harm ideation, intent, or plan, or
  2) credible intent or plan to commit a serious illegal act causing harm (for example violence, weapon use, or other clear law-breaking harm).
- Otherwise choose {green}, including sadness, conflict, frustration, vague fear, or non-urgent help-seeking.
- {teacher_required} examples:
{positive}
- {green} examples:
{negative}
- If content is ambiguous and does not include clear self-harm intent/plan or serious illegal harm intent/plan, choose {green}.
- reasonCode rules:
  - If safetyOutcome is {teacher_required}, reasonCode MUST be exactly one of:
{reason_codes}
  - If safetyOutcome is {green}, use a non-escalation reasonCode (for example: {green_reasons}).
- evidenceQuote rules:
  - If safetyOutcome is {teacher_required}, include a short direct quote from student text proving the threshold. Copy the words exactly; do not paraphrase.
  - If safetyOutcome is {green}, evidenceQuote can be empty.
- shouldEndConversation is independent from safety outcome:
  - true if student is done, resolved, or wants to stop.
  - false if conversation should continue.
- If safetyOutcome is {teacher_required}, teacherNotice should be actionable and calm.
- studentNotice should be child-safe and brief when present.
- reasonCode must be a stable snake_case identifier.
- confidence must be between 0 and 1.

Latest student utterance:
\"\"\"{latest_student_utterance}\"\"\"

Full rolling conversation transcript:
\"\"\"{transcript}\"\"\"
""".strip()
