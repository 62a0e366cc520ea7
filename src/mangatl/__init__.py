"""Page-by-page OCR and translation of multi-page documents."""

from . import logger as _logger  # registers the PROGRESS log level
from .config import PipelineConfig, ProviderConfig
from .document import Rasterizer, open_document
from .exceptions import (
    MangaTLError,
    DocumentLoadFailure,
    RenderFailure,
    RecognitionFailure,
    TranslationFailure,
    StageTimeout,
)
from .models import (
    Bitmap,
    Done,
    PageUpdate,
    Pending,
    RecognitionFailed,
    RecognitionResult,
    Recognizing,
    Rendering,
    TranslationFailed,
    TranslationResult,
    Translating,
)
from .pipeline import PagePipeline, ProcessingSession
from .recognizer import Recognizer
from .translator import Translator

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "ProviderConfig",
    "Rasterizer",
    "open_document",
    "MangaTLError",
    "DocumentLoadFailure",
    "RenderFailure",
    "RecognitionFailure",
    "TranslationFailure",
    "StageTimeout",
    "Bitmap",
    "Done",
    "PageUpdate",
    "Pending",
    "RecognitionFailed",
    "RecognitionResult",
    "Recognizing",
    "Rendering",
    "TranslationFailed",
    "TranslationResult",
    "Translating",
    "PagePipeline",
    "ProcessingSession",
    "Recognizer",
    "Translator",
]
