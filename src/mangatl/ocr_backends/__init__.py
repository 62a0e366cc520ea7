from .base import BaseOCREngine, ProgressCallback

__all__ = ["BaseOCREngine", "ProgressCallback"]
