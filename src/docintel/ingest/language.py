"""Language tagging for parsed documents."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from langdetect import DetectorFactory, LangDetectException, detect_langs

LOGGER = logging.getLogger(__name__)

# Reproducible guesses across re-parses of the same document.
DetectorFactory.seed = 0

DEFAULT_SAMPLE_CHARS = 5000


@dataclass(frozen=True, slots=True)
class LanguageGuess:
    code: str
    probability: float


class LanguageDetector:
    """Tag document text with its most likely ISO 639-1 code.

    Only the leading ``sample_chars`` characters are inspected. A guess below
    ``min_probability`` is reported as unknown (``None``) rather than as a
    shaky label, as is text with no letters to go on.
    """

    def __init__(self, *, sample_chars: int = DEFAULT_SAMPLE_CHARS, min_probability: float = 0.5) -> None:
        if sample_chars <= 0:
            raise ValueError("sample_chars must be a positive integer")
        self.sample_chars = sample_chars
        self.min_probability = min_probability

    def guess(self, text: str) -> Optional[LanguageGuess]:
        sample = text[: self.sample_chars].strip()
        if not sample:
            return None
        try:
            candidates = detect_langs(sample)
        except LangDetectException:
            LOGGER.info("No language detected in a %s character sample", len(sample))
            return None
        if not candidates:
            return None
        best = candidates[0]
        if best.prob < self.min_probability:
            LOGGER.debug("Discarding low-confidence language guess %s (%.2f)", best.lang, best.prob)
            return None
        return LanguageGuess(code=best.lang, probability=float(best.prob))

    def detect(self, text: str) -> Optional[str]:
        """Return the language code stored in ``ParseMetadata.language``."""

        guess = self.guess(text)
        return guess.code if guess is not None else None


__all__ = ["DEFAULT_SAMPLE_CHARS", "LanguageDetector", "LanguageGuess"]
