# src/mangatl/pipeline.py
from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

import httpx

from .config import PipelineConfig
from .document import Rasterizer, open_document
from .exceptions import RecognitionFailure, RenderFailure, StageTimeout, TranslationFailure
from .models import (
    Done,
    PageStatus,
    PageUpdate,
    Pending,
    RecognitionFailed,
    RecognitionProgress,
    RecognitionResult,
    Recognizing,
    Rendering,
    TranslationFailed,
    TranslationResult,
    Translating,
)
from .recognizer import Recognizer, engine_factory
from .translator import Translator, build_provider_chain

logger = logging.getLogger("mangatl")

T = TypeVar("T")


@dataclass
class ProcessingSession:
    """
    State of one processing run, shared between the pipeline and whatever
    presents it. The pipeline writes statuses; the presentation layer reads
    them and may call ``cancel``.
    """
    name: str = "<memory>"
    page_count: int = 0
    statuses: Dict[int, PageStatus] = field(default_factory=dict)
    _cancelled: bool = field(default=False, repr=False)

    def cancel(self) -> None:
        """Stop before the next page starts. The page in flight still finishes."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def record(self, update: PageUpdate) -> None:
        previous = self.statuses.get(update.page_index)
        if previous is not None and (previous.terminal or update.status.rank < previous.rank):
            raise RuntimeError(
                f"Page {update.page_index} status cannot move from "
                f"{type(previous).__name__} to {type(update.status).__name__}"
            )
        self.statuses[update.page_index] = update.status

    def terminal_statuses(self) -> List[PageStatus]:
        return [s for _, s in sorted(self.statuses.items()) if s.terminal]

    @property
    def finished(self) -> bool:
        return self.page_count > 0 and len(self.terminal_statuses()) == self.page_count


class PagePipeline:
    """
    Drives a document through Rasterizer -> Recognizer -> Translator, one page
    at a time, and streams a PageUpdate for every status transition.

    Page-level failures end up in that page's terminal status; only a
    document that cannot be opened raises out of the run.
    """

    def __init__(
        self,
        rasterizer,
        recognizer,
        translator,
        scale: float = 2.0,
        stage_timeout: Optional[float] = None,
        keep_images: bool = False,
    ):
        self.rasterizer = rasterizer
        self.recognizer = recognizer
        self.translator = translator
        self.scale = scale
        self.stage_timeout = stage_timeout
        self.keep_images = keep_images

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PagePipeline":
        translator = Translator(
            build_provider_chain(config.providers),
            target_lang=config.target_lang,
            default_source_lang=config.default_source_lang,
            timeout=config.request_timeout,
            transport=transport,
        )
        recognizer = Recognizer(
            engine_factory(config.ocr_backend, config.ocr_backend_kwargs),
            language_hint=config.language_hint,
            timeout=config.stage_timeout,
        )
        return cls(
            Rasterizer(config.scale),
            recognizer,
            translator,
            scale=config.scale,
            stage_timeout=config.stage_timeout,
            keep_images=config.keep_images,
        )

    async def __aenter__(self):
        if hasattr(self.translator, "__aenter__"):
            await self.translator.__aenter__()
        return self

    async def __aexit__(self, *exc):
        if hasattr(self.translator, "__aexit__"):
            await self.translator.__aexit__(*exc)

    # -----------------------------
    # Public entry points
    # -----------------------------
    async def process_bytes(
        self,
        data: bytes,
        filetype: str = "pdf",
        name: str = "<memory>",
        session: Optional[ProcessingSession] = None,
    ) -> AsyncIterator[PageUpdate]:
        """Open ``data`` and process it. DocumentLoadFailure propagates before any update."""
        document = await asyncio.to_thread(open_document, data, filetype, name)
        try:
            async with aclosing(self.process(document, session)) as updates:
                async for update in updates:
                    yield update
        finally:
            document.close()

    async def process(self, document, session: Optional[ProcessingSession] = None) -> AsyncIterator[PageUpdate]:
        if session is None:
            session = ProcessingSession(name=getattr(document, "name", "<memory>"))
        total = document.page_count
        session.page_count = total
        logger.info("Processing %s, %d page(s)", session.name, total)

        for index in range(1, total + 1):
            if session.cancelled:
                logger.info("Run cancelled before page %d of %d", index, total)
                return
            async with aclosing(self._process_page(document, index)) as statuses:
                async for status in statuses:
                    update = PageUpdate(index, total, status)
                    session.record(update)
                    self._log_update(update)
                    yield update

        logger.info("Finished %s", session.name)

    # -----------------------------
    # One page
    # -----------------------------
    async def _process_page(self, document, index: int) -> AsyncIterator[PageStatus]:
        yield Pending()

        # Stage 1. Rasterize
        yield Rendering()
        render_job: Optional[asyncio.Future] = None
        try:
            page = document.get_page(index)
            render_job = asyncio.ensure_future(self.rasterizer.render(page, self.scale))
            bitmap = await self._await_stage("render", render_job)
        except (RenderFailure, StageTimeout) as e:
            logger.warning("Page %d, %s", index, e)
            try:
                yield RecognitionFailed(error=str(e), stage="render")
            finally:
                await self._settle(render_job)
            return
        except Exception as e:
            logger.exception("Unexpected error while rendering page %d", index)
            yield RecognitionFailed(error=f"Rendering failed, {e}", stage="render")
            return

        image_png = await asyncio.to_thread(bitmap.to_png) if self.keep_images else None

        # Stage 2. Recognize
        recognition: Optional[RecognitionResult] = None
        last = Recognizing(0.0, "")
        yield last
        try:
            async with aclosing(self.recognizer.stream(bitmap)) as events:
                async for event in events:
                    if isinstance(event, RecognitionProgress):
                        status = Recognizing(event.fraction or 0.0, event.stage)
                        if status != last:
                            last = status
                            yield status
                    else:
                        recognition = event
        except (RecognitionFailure, StageTimeout) as e:
            logger.warning("Page %d, %s", index, e)
            yield RecognitionFailed(error=str(e), stage="recognize", image_png=image_png)
            return
        except Exception as e:
            logger.exception("Unexpected error while recognizing page %d", index)
            yield RecognitionFailed(error=f"Recognition failed, {e}", stage="recognize", image_png=image_png)
            return
        finally:
            # the bitmap is not needed past recognition
            bitmap = None

        if recognition is None:
            yield RecognitionFailed(error="OCR engine returned no result", stage="recognize", image_png=image_png)
            return

        if recognition.is_empty:
            yield Done(recognition, TranslationResult(text="", provider=None), image_png=image_png)
            return

        # Stage 3. Translate
        yield Translating(recognition)
        try:
            translation = await self._with_timeout("translate", self.translator.translate(recognition.text))
        except (TranslationFailure, StageTimeout) as e:
            logger.warning("Page %d, %s", index, e)
            yield TranslationFailed(recognition, error=str(e), image_png=image_png)
            return
        except Exception as e:
            logger.exception("Unexpected error while translating page %d", index)
            yield TranslationFailed(recognition, error=f"Translation failed, {e}", image_png=image_png)
            return

        yield Done(recognition, translation, image_png=image_png)

    async def _await_stage(self, stage: str, job: asyncio.Future) -> T:
        """
        Wait for ``job`` up to the stage timeout without cancelling it. A job
        backed by a worker thread cannot be interrupted, so a timed out job is
        left running for ``_settle``.
        """
        if self.stage_timeout is None:
            return await job
        done, _ = await asyncio.wait({job}, timeout=self.stage_timeout)
        if not done:
            raise StageTimeout(stage, self.stage_timeout)
        return job.result()

    async def _settle(self, job: Optional[asyncio.Future]) -> None:
        # the next page and document.close() must not overlap a running render
        if job is None:
            return
        if not job.done():
            logger.debug("Waiting for a timed out render to return")
            await asyncio.wait({job})
        if not job.cancelled() and job.exception() is not None:
            logger.debug("Render job finished with, %s", job.exception())

    async def _with_timeout(self, stage: str, awaitable: Awaitable[T]) -> T:
        if self.stage_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, self.stage_timeout)
        except asyncio.TimeoutError:
            raise StageTimeout(stage, self.stage_timeout) from None

    def _log_update(self, update: PageUpdate) -> None:
        status = update.status
        fraction = status.progress if isinstance(status, Recognizing) else (1.0 if status.terminal else 0.0)
        overall = ((update.page_index - 1) + fraction) / max(1, update.page_count)
        logger.progress(
            update.describe(),
            extra={
                "phase": type(status).__name__.lower(),
                "pct": round(overall * 100, 1),
                "current": update.page_index,
                "total": update.page_count,
            },
        )
