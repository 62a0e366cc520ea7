# src/mangatl/recognizer.py
from __future__ import annotations

import asyncio
import importlib
import logging
from functools import partial
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

from .config import DEFAULT_LANGUAGE_HINT
from .exceptions import RecognitionFailure, StageTimeout
from .models import Bitmap, RecognitionProgress, RecognitionResult
from .ocr_backends.base import BaseOCREngine

logger = logging.getLogger("mangatl")

EngineFactory = Callable[[], BaseOCREngine]
RecognitionEvent = Union[RecognitionProgress, RecognitionResult]


def _import_obj(dotted: str):
    mod_path, _, attr = dotted.rpartition(".")
    if not mod_path or not attr:
        raise ImportError(f"Invalid backend path, {dotted}")
    mod = importlib.import_module(mod_path)
    try:
        return getattr(mod, attr)
    except AttributeError as e:
        raise ImportError(f"Backend class not found, {dotted}") from e


def engine_factory(backend_path: str, backend_kwargs: Optional[Dict[str, Any]] = None) -> EngineFactory:
    """
    Resolve a dotted backend class path once and return a factory that builds
    a fresh engine per page.
    """
    EngineCls = _import_obj(backend_path)
    kwargs = dict(backend_kwargs or {})

    def build() -> BaseOCREngine:
        return EngineCls(**kwargs)

    return build


class Recognizer:
    """
    Runs one OCR engine per page and streams its progress.

    The engine is constructed, configured and released inside ``stream``;
    release happens exactly once on every exit path, including when the
    consumer stops iterating early.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        language_hint: str = DEFAULT_LANGUAGE_HINT,
        timeout: Optional[float] = None,
    ):
        self.engine_factory = engine_factory
        self.language_hint = language_hint
        self.timeout = timeout

    async def recognize(self, bitmap: Bitmap) -> RecognitionResult:
        result: Optional[RecognitionResult] = None
        stream = self.stream(bitmap)
        try:
            async for event in stream:
                if isinstance(event, RecognitionResult):
                    result = event
        finally:
            await stream.aclose()
        if result is None:
            raise RecognitionFailure("OCR engine returned no result")
        return result

    async def stream(self, bitmap: Bitmap) -> AsyncIterator[RecognitionEvent]:
        """
        Yield RecognitionProgress events, then exactly one RecognitionResult.

        Progress labels come from the engine for both configuration and
        recognition; the fraction never decreases over the whole page.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout else None
        events: asyncio.Queue = asyncio.Queue()
        engine: Optional[BaseOCREngine] = None
        job: Optional[asyncio.Future] = None
        getter: Optional[asyncio.Future] = None
        timed_out = False

        def relay(stage: str, fraction: Optional[float]) -> None:
            # called from the worker thread
            loop.call_soon_threadsafe(events.put_nowait, RecognitionProgress(stage, fraction))

        def remaining() -> Optional[float]:
            return None if deadline is None else max(0.0, deadline - loop.time())

        try:
            try:
                engine = self.engine_factory()
            except Exception as e:
                raise RecognitionFailure(f"OCR engine construction failed, {e}") from e

            phases = (
                (partial(engine.configure, self.language_hint, relay), "OCR engine initialization failed"),
                (partial(engine.recognize, bitmap.pixels, relay), f"OCR failed on page {bitmap.page_index}"),
            )
            last = 0.0
            raw = None
            for call, failure in phases:
                job = asyncio.ensure_future(asyncio.to_thread(call))
                while True:
                    getter = asyncio.ensure_future(events.get())
                    done, _ = await asyncio.wait(
                        {job, getter}, timeout=remaining(), return_when=asyncio.FIRST_COMPLETED
                    )
                    if not done:
                        timed_out = True
                        raise StageTimeout("recognize", self.timeout)
                    if getter in done:
                        event = getter.result()
                        getter = None
                        last = _monotonic(last, event.fraction)
                        yield RecognitionProgress(event.stage, last)
                        continue
                    getter.cancel()
                    getter = None
                    break

                # progress posted before the job finished is already queued
                while not events.empty():
                    event = events.get_nowait()
                    last = _monotonic(last, event.fraction)
                    yield RecognitionProgress(event.stage, last)

                try:
                    raw = job.result()
                except Exception as e:
                    raise RecognitionFailure(f"{failure}, {e}") from e

            text = (raw or "").strip()
            if not text:
                logger.info("No text recognized on page %s", bitmap.page_index)
            yield RecognitionResult(text=text, language_hint=self.language_hint)

        finally:
            if getter is not None:
                getter.cancel()
            if engine is not None:
                if job is not None and not job.done():
                    if timed_out:
                        # the worker thread cannot be interrupted, release once it returns
                        job.add_done_callback(lambda _f, e=engine: _release(e))
                        engine = None
                    else:
                        await asyncio.wait({job})
                if engine is not None:
                    _release(engine)


def _monotonic(last: float, fraction: Optional[float]) -> float:
    if fraction is None:
        return last
    return max(last, min(1.0, float(fraction)))


def _release(engine: BaseOCREngine) -> None:
    try:
        engine.release()
    except Exception:
        logger.exception("Failed to release OCR engine")
