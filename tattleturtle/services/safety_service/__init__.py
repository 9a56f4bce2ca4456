"""Safety Service: deterministic critical-phrase detection.

The detector is the ground truth for escalation. Its verdict overrides
the model-backed evaluator and is re-checked by the evaluator client's
fail-safe path.

Components:
- text_normalizer.py: Shared normal form for matching and evidence checks
- config.py: Ordered critical pattern tables
- critical_detector.py: CriticalPhraseDetector
- handler.py: Flask HTTP endpoints (/health, /ready, /detect)

Usage:
    from tattleturtle.services.safety_service import detect_critical_phrase
    match = detect_critical_phrase("I am going to hurt myself")
"""

from .critical_detector import CriticalPhraseDetector, detect_critical_phrase, get_detector
from .config import DetectorConfig, CRITICAL_RULES, SELF_HARM_PATTERNS, ILLEGAL_HARM_PATTERNS
from .text_normalizer import TextNormalizer, normalize_text

__all__ = [
    "CriticalPhraseDetector",
    "detect_critical_phrase",
    "get_detector",
    "DetectorConfig",
    "CRITICAL_RULES",
    "SELF_HARM_PATTERNS",
    "ILLEGAL_HARM_PATTERNS",
    "TextNormalizer",
    "normalize_text",
]
