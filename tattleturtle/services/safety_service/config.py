"""Critical-phrase detector configuration and pattern tables.

Patterns run against normalized text (see text_normalizer), so they only
need to handle lowercase [a-z0-9' ] with single spaces. They are narrow on
purpose: only explicit first-person intent or plan qualifies. Emotional
intensity alone (sad, angry, scared) must never match.
"""
import re
from dataclasses import dataclass
from typing import Tuple

from tattleturtle.shared.models import ILLEGAL_HARM_REASON, SELF_HARM_REASON


@dataclass(frozen=True)
class DetectorConfig:
    """Configuration for critical-phrase detection."""

    # Evidence quotes longer than this are cut (quotes go into teacher notices)
    max_evidence_chars: int = 220

    # Version tracking for audit trail
    pattern_version: str = "2026.02.01"


_SELF_TARGETS = (
    r"kill\s*my\s*self|kill\s*myself|hurt\s*my\s*self|hurt\s*myself|"
    r"harm\s*my\s*self|harm\s*myself|cut\s*my\s*self|cut\s*myself|"
    r"end\s*my\s*life|take\s*my\s*life|die|commit\s*suicide|do\s*suicide|"
    r"overdose|hang\s*my\s*self|hang\s*myself|jump\s*off|shoot\s*my\s*self|"
    r"shoot\s*myself|poison\s*my\s*self|poison\s*myself|kms"
)

_INTENT_VERBS = (
    r"going to|gonna|will|plan(?:ning)? to|want to|wanna|need to|might|could|"
    r"should|feel like|thinking about|thought about|thought of|trying to|"
    r"tried to|attempt(?:ed|ing)? to"
)

_GROUP_INTENT = r"going to|gonna|will|plan(?:ning)? to|want to|wanna"

_VICTIMS = (
    r"him|her|them|someone|somebody|everyone|everybody|a kid|kids|people|"
    r"my teacher|the teacher|the school|my school"
)

# Could/might/should die is hyperbole ("I was so embarrassed I could die")
_HYPERBOLE = r"(?!(?:might|could|should)\s*die\b)"


# ==========================================================================
# SELF-HARM INTENT OR PLAN (checked first)
# ==========================================================================
SELF_HARM_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        rf"\bi\s*(?:am|'m)?\s*{_HYPERBOLE}(?:{_INTENT_VERBS})\s*(?:{_SELF_TARGETS})\b",
        r"\bi\s*(?:have|had)\s*(?:a\s*)?plan\s*(?:to|for)\s*(?:kill\s*my\s*self|"
        r"kill\s*myself|hurt\s*my\s*self|hurt\s*myself|harm\s*my\s*self|harm\s*myself|"
        r"end\s*my\s*life|suicide|overdose|jump\s*off|hang\s*my\s*self|hang\s*myself|kms)\b",
        r"\bi\s*(?:tried|attempted)\s*to\s*(?:kill\s*my\s*self|kill\s*myself|"
        r"hurt\s*my\s*self|hurt\s*myself|harm\s*my\s*self|harm\s*myself|end\s*my\s*life|"
        r"commit\s*suicide|overdose|kms)\b",
        r"\bi\s*(?:do\s*not|don't)\s*want\s*to\s*(?:live|be alive)\b",
        r"\bi\s*(?:want to|wanna)\s*(?:die|be dead|stop living|not be alive)\b",
        r"\bi\s*wish\s*i\s*(?:was|were)\s*dead\b",
        r"\beveryone\s*would\s*be\s*better\s*off\s*without\s*me\b",
        r"\b(?:thinking|thoughts?)\s*(?:about|of)\s*(?:suicide|killing\s*my\s*self|"
        r"killing\s*myself|hurting\s*my\s*self|hurting\s*myself|harming\s*my\s*self|"
        r"harming\s*myself|ending\s*my\s*life|kms)\b",
        r"\bi\s*(?:am|'m)\s*(?:suicidal|having suicidal thoughts)\b",
    )
)

# ==========================================================================
# SERIOUS ILLEGAL HARM INTENT OR PLAN (violence, weapons, serious crime)
# ==========================================================================
ILLEGAL_HARM_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        # Violent verbs need a victim: "shoot hoops" and "kill it at the recital" are fine
        rf"\b(?:i|we)\s*(?:am|'m|are|'re)?\s*(?:{_GROUP_INTENT})\s*(?:(?:stab|shoot|kill|"
        rf"jump|attack|bomb|burn|poison|kidnap|beat\s*up)\s*(?:{_VICTIMS})|"
        rf"beat\s*(?:{_VICTIMS})\s*up|set\s*fire\s*to)\b",
        rf"\b(?:i|we)\s*(?:am|'m|are|'re)?\s*(?:{_GROUP_INTENT})\s*(?:bring|carry|use|take)"
        r"\s*(?:a\s*)?(?:gun|knife|weapon|bomb)\s*(?:to|at)?\s*(?:school|class|campus)?\b",
        r"\b(?:i|we)\s*(?:brought|bringing|have|got)\s*(?:a\s*)?(?:gun|knife|weapon|bomb)\b"
        r".*\b(?:shoot|stab|kill|hurt|attack|bomb)\b",
        rf"\b(?:i|we)\s*(?:am|'m|are|'re)?\s*(?:{_GROUP_INTENT})\s*(?:break\s*the\s*law|"
        r"break\s*the\s*constitution|do\s*something\s*illegal|commit\s*a\s*crime|rob|"
        r"steal\s*from|burn\s*down|set\s*fire\s*to|sell\s*drugs|deal\s*drugs)\b",
    )
)

# Ordered rule table: first match across both groups wins
CRITICAL_RULES: Tuple[Tuple[str, Tuple[re.Pattern, ...]], ...] = (
    (SELF_HARM_REASON, SELF_HARM_PATTERNS),
    (ILLEGAL_HARM_REASON, ILLEGAL_HARM_PATTERNS),
)
