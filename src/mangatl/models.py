# mangatl/models.py
from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import ClassVar, NamedTuple, Optional, Union

import numpy as np
from PIL import Image


@dataclass(frozen=True)
class Bitmap:
    """RGB raster of one page, ``pixels`` has shape (height, width, 3)."""
    pixels: np.ndarray = field(repr=False)
    page_index: int = 0
    scale: float = 1.0

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self.to_image().save(buf, format="PNG")
        return buf.getvalue()


@dataclass(frozen=True)
class RecognitionProgress:
    stage: str
    fraction: Optional[float] = None


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    language_hint: str

    @property
    def is_empty(self) -> bool:
        return not self.text


@dataclass(frozen=True)
class TranslationResult:
    text: str
    # None only when translation was skipped for empty text
    provider: Optional[str] = None


# --- Page status variants ---
# rank orders the lifecycle; a page never moves to a lower rank.

@dataclass(frozen=True)
class Pending:
    rank: ClassVar[int] = 0
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Rendering:
    rank: ClassVar[int] = 1
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Recognizing:
    progress: float = 0.0
    stage_label: str = ""
    rank: ClassVar[int] = 2
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Translating:
    recognition: RecognitionResult
    rank: ClassVar[int] = 3
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Done:
    recognition: RecognitionResult
    translation: TranslationResult
    image_png: Optional[bytes] = field(default=None, repr=False)
    rank: ClassVar[int] = 4
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class RecognitionFailed:
    """Terminal status for a page whose bitmap or text could not be produced."""
    error: str
    stage: str = "recognize"  # "render" when rasterization failed
    image_png: Optional[bytes] = field(default=None, repr=False)
    rank: ClassVar[int] = 4
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class TranslationFailed:
    """Terminal status that still carries the recognized text."""
    recognition: RecognitionResult
    error: str
    image_png: Optional[bytes] = field(default=None, repr=False)
    rank: ClassVar[int] = 4
    terminal: ClassVar[bool] = True


PageStatus = Union[
    Pending,
    Rendering,
    Recognizing,
    Translating,
    Done,
    RecognitionFailed,
    TranslationFailed,
]


class PageUpdate(NamedTuple):
    """One entry of the status stream produced by the pipeline."""
    page_index: int
    page_count: int
    status: PageStatus

    def describe(self) -> str:
        s = self.status
        where = f"page {self.page_index} of {self.page_count}"
        if isinstance(s, Pending):
            return f"waiting, {where}"
        if isinstance(s, Rendering):
            return f"rendering {where}"
        if isinstance(s, Recognizing):
            label = f" ({s.stage_label})" if s.stage_label else ""
            return f"recognizing {where}: {round(s.progress * 100)}%{label}"
        if isinstance(s, Translating):
            return f"translating {where}"
        if isinstance(s, Done):
            if s.recognition.is_empty:
                return f"no text found on {where}"
            return f"done, {where}"
        if isinstance(s, RecognitionFailed):
            return f"{s.stage} failed on {where}, {s.error}"
        return f"translation failed on {where}, {s.error}"
