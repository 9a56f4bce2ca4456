"""Text normalization for critical-phrase matching and evidence checks.

The detector and the evidence-quote verifier must agree on exactly the
same normal form, otherwise a quote taken from detector output could fail
verification. Both go through normalize_text().
"""
import logging
import re
from typing import FrozenSet

logger = logging.getLogger(__name__)


# Apostrophe look-alikes folded to a plain ASCII apostrophe
APOSTROPHE_VARIANTS: FrozenSet[str] = frozenset({
    "’",  # Right single quotation mark
    "‘",  # Left single quotation mark
    "ʼ",  # Modifier letter apostrophe
    "´",  # Acute accent
    "`",
})


class TextNormalizer:
    """Normalizes utterance text to the matching alphabet [a-z0-9' ].

    Applies, in order:
    1. Lowercase
    2. Fold smart quotes and backticks to '
    3. Replace every character outside [a-z0-9' ] with a space
    4. Collapse whitespace and trim
    """

    def __init__(self):
        self._disallowed_pattern = re.compile(r"[^a-z0-9'\s]")
        self._whitespace_pattern = re.compile(r"\s+")

    def normalize(self, text: str) -> str:
        """Normalize text for pattern matching.

        Args:
            text: Raw input text

        Returns:
            Normalized text, possibly empty
        """
        if not text:
            return ""

        result = text.lower()
        result = "".join("'" if c in APOSTROPHE_VARIANTS else c for c in result)
        result = self._disallowed_pattern.sub(" ", result)
        result = self._whitespace_pattern.sub(" ", result)
        return result.strip()


# Module-level singleton
_normalizer: TextNormalizer | None = None


def get_normalizer() -> TextNormalizer:
    """Get the singleton TextNormalizer instance."""
    global _normalizer
    if _normalizer is None:
        _normalizer = TextNormalizer()
    return _normalizer


def normalize_text(text: str) -> str:
    """Convenience function to normalize text.

    Args:
        text: Raw input text

    Returns:
        Normalized text for pattern matching
    """
    return get_normalizer().normalize(text)
