from __future__ import annotations

import asyncio
import threading
import time
from contextlib import aclosing

import fitz
import httpx
import numpy as np
import pytest

from mangatl.config import PipelineConfig, ProviderConfig
import mangatl.document as document_module
from mangatl.document import Rasterizer
from mangatl.exceptions import DocumentLoadFailure, RecognitionFailure, RenderFailure, TranslationFailure
from mangatl.models import (
    Bitmap,
    Done,
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
from mangatl.ocr_backends.base import BaseOCREngine
from mangatl.pipeline import PagePipeline, ProcessingSession
from mangatl.recognizer import Recognizer
from mangatl.translator import LibreTranslateProvider, MyMemoryProvider, Translator


# --- fakes ---

class FakeDocument:
    def __init__(self, page_count: int):
        self.page_count = page_count
        self.name = "fake.pdf"
        self.closed = False

    def get_page(self, index):
        return index

    def close(self):
        self.closed = True


class FakeRasterizer:
    def __init__(self, fail_pages=()):
        self.fail_pages = set(fail_pages)
        self.rendered = []

    async def render(self, page, scale=None):
        self.rendered.append(page)
        if page in self.fail_pages:
            raise RenderFailure(f"Rendering page {page} failed, corrupt stream")
        return Bitmap(pixels=np.zeros((2, 2, 3), dtype=np.uint8), page_index=page, scale=scale or 1.0)


class FakeRecognizer:
    def __init__(self, texts=None, fail_pages=()):
        self.texts = texts or {}
        self.fail_pages = set(fail_pages)

    async def stream(self, bitmap):
        yield RecognitionProgress("recognizing text", 0.5)
        if bitmap.page_index in self.fail_pages:
            raise RecognitionFailure(f"OCR failed on page {bitmap.page_index}, engine crashed")
        yield RecognitionProgress("recognizing text", 1.0)
        text = self.texts.get(bitmap.page_index, f"text {bitmap.page_index}").strip()
        yield RecognitionResult(text=text, language_hint="jpn+eng")


class FakeTranslator:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def translate(self, text):
        self.calls.append(text)
        if self.fail:
            raise TranslationFailure("All translation providers failed (A: HTTP 500; B: HTTP 500)",
                                     [("A", "HTTP 500"), ("B", "HTTP 500")])
        return TranslationResult(text=f"fa:{text}", provider="A")


async def _run(pipeline, document, session=None):
    updates = []
    async for update in pipeline.process(document, session):
        updates.append(update)
    return updates


def _terminals(updates):
    return [u for u in updates if u.status.terminal]


# --- scenarios ---

@pytest.mark.asyncio
async def test_all_pages_succeed_in_order() -> None:
    translator = FakeTranslator()
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(), translator)
    updates = await _run(pipeline, FakeDocument(3))

    terminals = _terminals(updates)
    assert [u.page_index for u in terminals] == [1, 2, 3]
    for u in terminals:
        assert isinstance(u.status, Done)
        assert u.status.recognition.text
        assert u.status.translation.text == f"fa:{u.status.recognition.text}"
        assert u.page_count == 3
    assert translator.calls == ["text 1", "text 2", "text 3"]


@pytest.mark.asyncio
async def test_status_sequence_for_one_page() -> None:
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(), FakeTranslator())
    updates = await _run(pipeline, FakeDocument(1))

    kinds = [type(u.status) for u in updates]
    assert kinds == [Pending, Rendering, Recognizing, Recognizing, Recognizing, Translating, Done]
    progress = [u.status.progress for u in updates if isinstance(u.status, Recognizing)]
    assert progress == [0.0, 0.5, 1.0]


@pytest.mark.asyncio
async def test_pages_finish_before_next_page_starts() -> None:
    pipeline = PagePipeline(FakeRasterizer(fail_pages={2}), FakeRecognizer(), FakeTranslator())
    updates = await _run(pipeline, FakeDocument(4))

    indexes = [u.page_index for u in updates]
    assert indexes == sorted(indexes)
    for i, u in enumerate(updates[:-1]):
        nxt = updates[i + 1]
        if nxt.page_index != u.page_index:
            assert u.status.terminal
    assert len(_terminals(updates)) == 4


@pytest.mark.asyncio
async def test_render_failure_is_isolated_to_its_page() -> None:
    rasterizer = FakeRasterizer(fail_pages={2})
    pipeline = PagePipeline(rasterizer, FakeRecognizer(), FakeTranslator())
    updates = await _run(pipeline, FakeDocument(3))

    statuses = [u.status for u in _terminals(updates)]
    assert isinstance(statuses[0], Done)
    assert isinstance(statuses[1], RecognitionFailed)
    assert statuses[1].stage == "render"
    assert "corrupt stream" in statuses[1].error
    assert isinstance(statuses[2], Done)
    assert rasterizer.rendered == [1, 2, 3]


@pytest.mark.asyncio
async def test_recognition_failure_is_isolated_to_its_page() -> None:
    translator = FakeTranslator()
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(fail_pages={1}), translator)
    updates = await _run(pipeline, FakeDocument(2))

    first, second = [u.status for u in _terminals(updates)]
    assert isinstance(first, RecognitionFailed)
    assert first.stage == "recognize"
    assert "engine crashed" in first.error
    assert isinstance(second, Done)
    assert translator.calls == ["text 2"]


@pytest.mark.asyncio
async def test_whitespace_text_skips_translation() -> None:
    translator = FakeTranslator()
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(texts={1: "   "}), translator)
    updates = await _run(pipeline, FakeDocument(1))

    status = updates[-1].status
    assert isinstance(status, Done)
    assert status.recognition.text == ""
    assert status.translation.text == ""
    assert status.translation.provider is None
    assert translator.calls == []
    assert not any(isinstance(u.status, Translating) for u in updates)


@pytest.mark.asyncio
async def test_translation_failure_keeps_recognized_text() -> None:
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(texts={1: "こんにちは"}), FakeTranslator(fail=True))
    updates = await _run(pipeline, FakeDocument(1))

    status = updates[-1].status
    assert isinstance(status, TranslationFailed)
    assert status.recognition.text == "こんにちは"
    assert "All translation providers failed" in status.error


@pytest.mark.asyncio
async def test_cancel_stops_at_next_page_boundary() -> None:
    session = ProcessingSession()
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(), FakeTranslator())
    updates = []
    async for update in pipeline.process(FakeDocument(3), session):
        updates.append(update)
        if update.page_index == 1 and isinstance(update.status, Rendering):
            session.cancel()

    assert {u.page_index for u in updates} == {1}
    assert isinstance(updates[-1].status, Done)
    assert session.cancelled
    assert not session.finished
    assert len(session.terminal_statuses()) == 1


@pytest.mark.asyncio
async def test_session_tracks_latest_status_per_page() -> None:
    session = ProcessingSession(name="fake.pdf")
    pipeline = PagePipeline(FakeRasterizer(fail_pages={2}), FakeRecognizer(), FakeTranslator())
    await _run(pipeline, FakeDocument(2), session)

    assert session.page_count == 2
    assert session.finished
    assert isinstance(session.statuses[1], Done)
    assert isinstance(session.statuses[2], RecognitionFailed)


def test_session_rejects_regressions() -> None:
    session = ProcessingSession()
    session.record(PageUpdate(1, 1, Rendering()))
    with pytest.raises(RuntimeError):
        session.record(PageUpdate(1, 1, Pending()))

    rec = RecognitionResult(text="a", language_hint="jpn")
    session.record(PageUpdate(1, 1, Done(rec, TranslationResult("b", "A"))))
    with pytest.raises(RuntimeError):
        session.record(PageUpdate(1, 1, TranslationFailed(rec, "late")))


@pytest.mark.asyncio
async def test_stage_timeout_on_translation() -> None:
    class SlowTranslator(FakeTranslator):
        async def translate(self, text):
            await asyncio.sleep(5)

    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(), SlowTranslator(), stage_timeout=0.05)
    updates = await _run(pipeline, FakeDocument(1))

    status = updates[-1].status
    assert isinstance(status, TranslationFailed)
    assert "translate stage timed out" in status.error
    assert status.recognition.text == "text 1"


@pytest.mark.asyncio
async def test_keep_images_attaches_png() -> None:
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(), FakeTranslator(), keep_images=True)
    updates = await _run(pipeline, FakeDocument(1))

    status = updates[-1].status
    assert isinstance(status, Done)
    assert status.image_png.startswith(b"\x89PNG")


# --- engine lifecycle through the pipeline ---

class CountingEngine(BaseOCREngine):
    instances = []

    def __init__(self, text="hello"):
        self.text = text
        self.release_count = 0
        CountingEngine.instances.append(self)

    def recognize(self, image, progress):
        for step in (0.2, 0.4, 0.6, 0.8, 1.0):
            progress("recognizing text", step)
        return self.text

    def release(self):
        self.release_count += 1


@pytest.mark.asyncio
async def test_engine_released_once_when_observer_raises() -> None:
    CountingEngine.instances = []
    pipeline = PagePipeline(FakeRasterizer(), Recognizer(CountingEngine), FakeTranslator())

    with pytest.raises(KeyError):
        async with aclosing(pipeline.process(FakeDocument(2))) as updates:
            async for update in updates:
                if isinstance(update.status, Recognizing) and update.status.progress > 0:
                    raise KeyError("observer bug")

    assert len(CountingEngine.instances) == 1
    assert CountingEngine.instances[0].release_count == 1


@pytest.mark.asyncio
async def test_engine_released_once_per_page() -> None:
    CountingEngine.instances = []
    pipeline = PagePipeline(FakeRasterizer(fail_pages={2}), Recognizer(CountingEngine), FakeTranslator())
    await _run(pipeline, FakeDocument(3))

    # page 2 never reaches recognition
    assert len(CountingEngine.instances) == 2
    assert [e.release_count for e in CountingEngine.instances] == [1, 1]


# --- real document end to end ---

def _pdf_bytes(pages: int) -> bytes:
    doc = fitz.open()
    for _ in range(pages):
        doc.new_page(width=200, height=100)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.mark.asyncio
async def test_process_bytes_end_to_end_with_fallback() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "libre.example":
            return httpx.Response(429, json={"error": "Too many requests"})
        return httpx.Response(200, json={"responseData": {"translatedText": "ok"}})

    translator = Translator(
        [LibreTranslateProvider("A", "https://libre.example/translate"),
         MyMemoryProvider("B", "https://memory.example/get")],
        transport=httpx.MockTransport(handler),
    )
    CountingEngine.instances = []
    pipeline = PagePipeline(Rasterizer(2.0), Recognizer(CountingEngine), translator)

    async with pipeline:
        updates = [u async for u in pipeline.process_bytes(_pdf_bytes(2), name="two.pdf")]

    terminals = _terminals(updates)
    assert [u.page_index for u in terminals] == [1, 2]
    for u in terminals:
        assert isinstance(u.status, Done)
        assert u.status.translation.text == "ok"
        assert u.status.translation.provider == "B"


@pytest.mark.asyncio
async def test_process_bytes_bad_document_raises_before_any_update() -> None:
    pipeline = PagePipeline(FakeRasterizer(), FakeRecognizer(), FakeTranslator())
    updates = []
    with pytest.raises(DocumentLoadFailure):
        async for update in pipeline.process_bytes(b"definitely not a pdf", name="junk.pdf"):
            updates.append(update)
    assert updates == []


def test_from_config_wires_components() -> None:
    config = PipelineConfig(
        scale=1.5,
        target_lang="en",
        stage_timeout=10,
        providers=[ProviderConfig(kind="mymemory", name="mm")],
    )
    pipeline = PagePipeline.from_config(config)

    assert pipeline.scale == 1.5
    assert pipeline.stage_timeout == 10
    assert pipeline.rasterizer.scale == 1.5
    assert pipeline.recognizer.language_hint == "jpn+eng"
    assert pipeline.recognizer.timeout == 10
    assert pipeline.translator.target_lang == "en"
    assert [p.name for p in pipeline.translator.providers] == ["mm"]


# --- stage timeouts against a real document ---

def _slow_render(monkeypatch, slow_pages, delay=0.5):
    real_render = document_module.render_page
    lock = threading.Lock()
    seen = {"active": 0, "max": 0, "closed": 0, "finished": 0}

    def render(page, scale=2.0):
        with lock:
            seen["active"] += 1
            seen["max"] = max(seen["max"], seen["active"])
        try:
            if page.index in slow_pages:
                time.sleep(delay)
            if page.document.closed:
                seen["closed"] += 1
            return real_render(page, scale)
        finally:
            with lock:
                seen["active"] -= 1
                seen["finished"] += 1

    monkeypatch.setattr(document_module, "render_page", render)
    return seen


@pytest.mark.asyncio
async def test_render_timeout_does_not_overlap_next_page(monkeypatch) -> None:
    seen = _slow_render(monkeypatch, slow_pages={1})
    pipeline = PagePipeline(Rasterizer(1.0), FakeRecognizer(), FakeTranslator(), stage_timeout=0.1)

    updates = [u async for u in pipeline.process_bytes(_pdf_bytes(2), name="two.pdf")]

    first, second = [u.status for u in _terminals(updates)]
    assert isinstance(first, RecognitionFailed)
    assert first.stage == "render"
    assert "render stage timed out" in first.error
    assert isinstance(second, Done)
    assert seen["max"] == 1
    assert seen["closed"] == 0


@pytest.mark.asyncio
async def test_render_timeout_on_last_page_finishes_before_close(monkeypatch) -> None:
    seen = _slow_render(monkeypatch, slow_pages={1})
    pipeline = PagePipeline(Rasterizer(1.0), FakeRecognizer(), FakeTranslator(), stage_timeout=0.1)

    updates = [u async for u in pipeline.process_bytes(_pdf_bytes(1), name="one.pdf")]

    assert isinstance(updates[-1].status, RecognitionFailed)
    assert seen["finished"] == 1
    assert seen["closed"] == 0


# --- engine progress labels ---

class LabelledEngine(BaseOCREngine):
    def configure(self, language_hint, progress=None):
        progress("initializing api", None)

    def recognize(self, image, progress):
        progress("recognizing text", 0.5)
        progress("recognizing text", 1.0)
        return "hello"


@pytest.mark.asyncio
async def test_engine_stage_labels_reach_page_status() -> None:
    pipeline = PagePipeline(FakeRasterizer(), Recognizer(LabelledEngine), FakeTranslator())
    updates = await _run(pipeline, FakeDocument(1))

    recognizing = [u for u in updates if isinstance(u.status, Recognizing)]
    assert [(u.status.stage_label, u.status.progress) for u in recognizing] == [
        ("", 0.0),
        ("initializing api", 0.0),
        ("recognizing text", 0.5),
        ("recognizing text", 1.0),
    ]
    assert recognizing[1].describe() == "recognizing page 1 of 1: 0% (initializing api)"
