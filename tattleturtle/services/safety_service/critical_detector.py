"""Deterministic critical-phrase detector.

Detects unambiguous self-harm or serious-illegal-harm statements in
utterance text. Pure and synchronous: no I/O, no model call, no state.

A match is treated as ground truth by every caller. It overrides the
model-backed evaluator and is re-run by the evaluator client's fail-safe
path, so a crashed or hung model pipeline can never hide it.
"""
import logging
import re
from typing import Optional, Sequence, Tuple

from tattleturtle.shared.models import NO_MATCH, CriticalSafetyMatch
from .config import CRITICAL_RULES, DetectorConfig
from .text_normalizer import TextNormalizer

logger = logging.getLogger(__name__)


class CriticalPhraseDetector:
    """High-precision matcher for explicit intent or plan statements.

    Rules are evaluated in declared order (self-harm first); the first
    pattern that matches decides the reason code.
    """

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        rules: Sequence[Tuple[str, Sequence[re.Pattern]]] = CRITICAL_RULES,
    ):
        """Initialize detector.

        Args:
            config: Detector behavior configuration
            rules: Ordered (reason_code, patterns) pairs
        """
        self.config = config or DetectorConfig()
        self._rules = tuple(rules)
        self._normalizer = TextNormalizer()

        logger.info(
            "CRITICAL_DETECTOR_INITIALIZED",
            extra={
                "pattern_version": self.config.pattern_version,
                "rule_count": len(self._rules),
                "pattern_count": sum(len(patterns) for _, patterns in self._rules),
            }
        )

    def detect(self, text: str) -> CriticalSafetyMatch:
        """Check text for an explicit critical safety statement.

        Args:
            text: Raw utterance or transcript text

        Returns:
            CriticalSafetyMatch; evidence_quote is the literal normalized
            substring that matched, truncated to max_evidence_chars
        """
        source = self._normalizer.normalize(text)
        if not source:
            return NO_MATCH

        for reason_code, patterns in self._rules:
            for pattern in patterns:
                hit = pattern.search(source)
                if hit and hit.group(0):
                    evidence = hit.group(0)[:self.config.max_evidence_chars]
                    logger.warning(
                        "CRITICAL_PHRASE_MATCHED",
                        extra={
                            "reason_code": reason_code,
                            "evidence_length": len(evidence),
                            "pattern_version": self.config.pattern_version,
                        }
                    )
                    return CriticalSafetyMatch(
                        matched=True,
                        reason_code=reason_code,
                        evidence_quote=evidence,
                    )

        return NO_MATCH


# Module-level singleton, shared by the evaluator and the client fail-safe
_detector: CriticalPhraseDetector | None = None


def get_detector() -> CriticalPhraseDetector:
    """Get the singleton CriticalPhraseDetector instance."""
    global _detector
    if _detector is None:
        _detector = CriticalPhraseDetector()
    return _detector


def detect_critical_phrase(text: str) -> CriticalSafetyMatch:
    """Convenience function for one-off detection.

    Args:
        text: Raw text

    Returns:
        CriticalSafetyMatch
    """
    return get_detector().detect(text)
