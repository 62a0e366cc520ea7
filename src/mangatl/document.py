# src/mangatl/document.py
from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import fitz  # PyMuPDF
import numpy as np

from .exceptions import DocumentLoadFailure, RenderFailure
from .models import Bitmap

logger = logging.getLogger("mangatl")

DEFAULT_SCALE = 2.0


# --- Step 1, page and document handles ---
class PdfPage:
    """Handle to one page of an open document. ``index`` is 1-based."""

    def __init__(self, document: "PdfDocument", index: int):
        self.document = document
        self.index = index

    def __repr__(self) -> str:
        return f"PdfPage(index={self.index})"


class PdfDocument:
    """A decoded document. Close it (or use it as a context manager) when done."""

    def __init__(self, doc: fitz.Document, name: str = "<memory>"):
        self._doc = doc
        self.name = name
        self.page_count = len(doc)
        # PyMuPDF documents are not thread-safe; renders and close take this lock
        self.lock = threading.RLock()

    @property
    def closed(self) -> bool:
        return bool(self._doc.is_closed)

    def get_page(self, index: int) -> PdfPage:
        if not 1 <= index <= self.page_count:
            raise RenderFailure(f"Page index {index} out of range, 1..{self.page_count}")
        return PdfPage(self, index)

    def load(self, page: PdfPage) -> fitz.Page:
        if self.closed:
            raise RenderFailure(f"Document closed before page {page.index} was rendered")
        try:
            return self._doc.load_page(page.index - 1)
        except Exception as e:
            raise RenderFailure(f"Cannot load page {page.index}, {e}") from e

    def close(self) -> None:
        with self.lock:
            if not self.closed:
                self._doc.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# --- Step 2, decoder interface ---
class BaseDocumentDecoder(ABC):
    """
    Interface for any document decoding engine.
    """

    @abstractmethod
    def open(self, data: bytes, filetype: str = "pdf", name: str = "<memory>") -> PdfDocument:
        """Decode raw bytes, raising DocumentLoadFailure on malformed input."""
        raise NotImplementedError


class PyMuPDFDecoder(BaseDocumentDecoder):
    """Document decoder that uses PyMuPDF. Also accepts single images (png, jpeg)."""

    def open(self, data: bytes, filetype: str = "pdf", name: str = "<memory>") -> PdfDocument:
        if not data:
            raise DocumentLoadFailure(f"{name} is empty")
        try:
            doc = fitz.open(stream=data, filetype=filetype)
        except Exception as e:
            raise DocumentLoadFailure(f"Cannot decode {name} as {filetype}, {e}") from e

        if len(doc) == 0:
            doc.close()
            raise DocumentLoadFailure(f"{name} has no pages")
        if doc.needs_pass:
            doc.close()
            raise DocumentLoadFailure(f"{name} is encrypted")

        logger.info("Opened %s, %d page(s)", name, len(doc))
        return PdfDocument(doc, name=name)


# --- Step 3, factory ---
def get_document_decoder(engine_name: str = "pymupdf") -> BaseDocumentDecoder:
    """
    Create a document decoder by name.
    """
    name = (engine_name or "").lower()
    if name == "pymupdf":
        return PyMuPDFDecoder()
    raise ValueError(f"Unknown document engine, '{engine_name}'. Supported engines, ['pymupdf']")


def open_document(data: bytes, filetype: str = "pdf", name: str = "<memory>") -> PdfDocument:
    return get_document_decoder("pymupdf").open(data, filetype=filetype, name=name)


# --- Step 4, rasterizer ---
def _pixmap_to_array(pix: fitz.Pixmap) -> np.ndarray:
    # rows may be padded, so slice by stride before reshaping
    raw = np.frombuffer(pix.samples, dtype=np.uint8)
    rows = raw.reshape(pix.height, pix.stride)[:, : pix.width * pix.n]
    return rows.reshape(pix.height, pix.width, pix.n).copy()


def render_page(page: PdfPage, scale: float = DEFAULT_SCALE) -> Bitmap:
    """
    Render one page to an RGB bitmap at ``scale`` (1.0 = 72 dpi).
    Dimensions depend only on the page geometry and the scale.
    """
    if not scale or scale <= 0:
        raise RenderFailure(f"scale must be positive, got {scale}")

    with page.document.lock:
        fz_page = page.document.load(page)
        try:
            matrix = fitz.Matrix(scale, scale)
            pix = fz_page.get_pixmap(matrix=matrix, colorspace=fitz.csRGB, alpha=False)
            if pix.width <= 0 or pix.height <= 0:
                raise RenderFailure(f"Page {page.index} has an empty viewport")
            pixels = _pixmap_to_array(pix)
        except RenderFailure:
            raise
        except Exception as e:
            raise RenderFailure(f"Rendering page {page.index} failed, {e}") from e

    logger.debug("Rendered page %s at scale %s, %dx%d", page.index, scale, pix.width, pix.height)
    return Bitmap(pixels=pixels, page_index=page.index, scale=scale)


class Rasterizer:
    """Async facade over render_page; the decode work runs in a worker thread."""

    def __init__(self, scale: float = DEFAULT_SCALE):
        self.scale = scale

    async def render(self, page: PdfPage, scale: Optional[float] = None) -> Bitmap:
        return await asyncio.to_thread(render_page, page, scale if scale is not None else self.scale)
