# mangatl/ocr_backends/base.py
from typing import Callable, Optional
from abc import ABC, abstractmethod
import numpy as np

# progress(stage_label, fraction); fraction is None when the engine cannot tell
ProgressCallback = Callable[[str, Optional[float]], None]


class BaseOCREngine(ABC):
    """
    One engine instance serves a single page: construct, configure, recognize, release.
    """

    def configure(self, language_hint: str, progress: Optional[ProgressCallback] = None) -> None:
        """Prepare the engine for the given compound language hint, e.g. 'jpn+eng'."""
        pass

    @abstractmethod
    def recognize(self, image: np.ndarray, progress: ProgressCallback) -> str:
        """Return the raw recognized text of an RGB image."""
        pass

    def release(self) -> None:
        """Free engine resources. Called exactly once per instance."""
        pass
