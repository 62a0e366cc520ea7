# mangatl/exceptions.py
from __future__ import annotations

from typing import List, Optional, Tuple


class MangaTLError(Exception):
    """Base exception for the mangatl library."""
    pass


class DocumentLoadFailure(MangaTLError):
    """Raised when the document bytes cannot be decoded. Fatal to the whole run."""
    pass


class RenderFailure(MangaTLError):
    """Raised when a single page cannot be rasterized."""
    pass


class RecognitionFailure(MangaTLError):
    """Raised when the OCR engine faults on a single page."""
    pass


class ProviderError(MangaTLError):
    """Raised by one translation provider; the translator moves on to the next."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}, {reason}")
        self.provider = provider
        self.reason = reason


class TranslationFailure(MangaTLError):
    """Raised when every provider in the chain failed for a page."""

    def __init__(self, message: str, attempts: Optional[List[Tuple[str, str]]] = None):
        super().__init__(message)
        self.attempts: List[Tuple[str, str]] = list(attempts or [])


class StageTimeout(MangaTLError):
    """Raised when a page stage exceeds the configured stage timeout."""

    def __init__(self, stage: str, seconds: float):
        super().__init__(f"{stage} stage timed out after {seconds:g}s")
        self.stage = stage
        self.seconds = seconds
