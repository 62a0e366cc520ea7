# src/mangatl/cli.py
from __future__ import annotations

import argparse
import ast
import asyncio
import importlib
import json
import logging
import re
import signal
import sys
from contextlib import aclosing
from pathlib import Path
from queue import Queue
from typing import List, Optional

from tqdm import tqdm

from .config import PipelineConfig, ProviderConfig
from .exceptions import DocumentLoadFailure
from .logger import configure_logging, setup_logging
from .models import Done, PageUpdate, RecognitionFailed, TranslationFailed
from .pipeline import PagePipeline, ProcessingSession

__all__ = ["run_pipeline", "main"]

logger = logging.getLogger("mangatl")

# Helper

def _parse_backend_kwargs(val) -> dict:
    """
    Accept several syntaxes for --ocr-backend-kwargs:
      1) JSON (double quotes)                      {"psm":6,"oem":1}
      2) Python-literal dict with single quotes    {'psm': 6}
      3) key=value pairs separated by , or ;       psm=6;oem=1
    """
    if isinstance(val, dict):
        return dict(val)
    if not isinstance(val, str):
        return {}

    s = val.strip()
    if len(s) >= 2 and s[0] in ("'", '"') and s[-1] == s[0]:
        s = s[1:-1].strip()
    if not s:
        return {}

    try:
        parsed = json.loads(s)
        if isinstance(parsed, dict):
            return parsed
    except Exception:
        pass

    try:
        lit = ast.literal_eval(s)
        if isinstance(lit, dict):
            return lit
    except Exception:
        pass

    out: dict = {}
    for part in re.split(r"[;,]\s*", s):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        k = k.strip().strip('"\'').replace("-", "_").lower()
        v = v.strip().strip('"\'')
        low = v.lower()
        if low in ("true", "false"):
            out[k] = (low == "true")
        elif re.fullmatch(r"-?\d+", v):
            out[k] = int(v)
        elif re.fullmatch(r"-?\d+\.\d*", v):
            out[k] = float(v)
        else:
            out[k] = v

    if out:
        return out

    raise SystemExit(f"Invalid --ocr-backend-kwargs. Could not parse: {val!r}")


def _normalize_backend_alias(name: str) -> str:
    """
    Allow short aliases (case-insensitive). Returns a fully qualified dotted
    path 'module.Class'.
    """
    if not name:
        return name

    original = name.strip().strip('"\'')
    mapping = {
        "tess": "mangatl.ocr_backends.tesseract_backend.TesseractOCREngine",
        "tesseract": "mangatl.ocr_backends.tesseract_backend.TesseractOCREngine",
        "pytesseract": "mangatl.ocr_backends.tesseract_backend.TesseractOCREngine",
    }
    alias = original.lower()
    if alias in mapping:
        return mapping[alias]
    if alias.endswith(".tesseract_backend"):
        return "mangatl.ocr_backends.tesseract_backend.TesseractOCREngine"
    return original


def _preflight_backend_import(dotted: str) -> None:
    """
    Import the backend class now, so a typo fails fast with a clear message
    instead of failing every page.
    """
    try:
        module_path, cls_name = dotted.rsplit(".", 1)
    except ValueError:
        raise SystemExit(f"--ocr-backend must be 'module.Class', got: {dotted!r}")

    try:
        mod = importlib.import_module(module_path)
    except Exception as e:
        raise SystemExit(f"Cannot import backend module: {module_path!r} ({e})")

    if not hasattr(mod, cls_name):
        raise SystemExit(
            f"Backend class not found: {dotted}\n"
            f"- For Tesseract, use: mangatl.ocr_backends.tesseract_backend.TesseractOCREngine"
        )


def _parse_provider(spec: str) -> ProviderConfig:
    """'mymemory' or 'libretranslate=https://host/translate'."""
    kind, _, endpoint = spec.partition("=")
    kind = kind.strip().lower()
    if not kind:
        raise SystemExit(f"Invalid --provider value: {spec!r}")
    return ProviderConfig(kind=kind, endpoint=endpoint.strip() or None)


def _filetype_for(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in ("jpg", "jpeg"):
        return "jpeg"
    return ext or "pdf"


# -------------------------------
# Output
# -------------------------------

def _format_terminal(update: PageUpdate) -> str:
    s = update.status
    header = f"=== Page {update.page_index}/{update.page_count} ==="
    if isinstance(s, Done):
        if s.recognition.is_empty:
            return f"{header}\n(no text found)"
        return (
            f"{header}\n{s.recognition.text}\n"
            f"--- translation ({s.translation.provider}) ---\n{s.translation.text}"
        )
    if isinstance(s, TranslationFailed):
        return f"{header}\n{s.recognition.text}\n--- translation failed ---\n{s.error}"
    return f"{header}\n{s.stage} failed, {s.error}"


def _terminal_record(update: PageUpdate) -> dict:
    s = update.status
    rec = {"page": update.page_index, "pages": update.page_count, "status": type(s).__name__}
    if isinstance(s, Done):
        rec.update(text=s.recognition.text, translation=s.translation.text, provider=s.translation.provider)
    elif isinstance(s, TranslationFailed):
        rec.update(text=s.recognition.text, error=s.error)
    elif isinstance(s, RecognitionFailed):
        rec.update(stage=s.stage, error=s.error)
    return rec


# -------------------------------
# Runner
# -------------------------------

def _install_cancel_handler(session: ProcessingSession) -> None:
    """
    First Ctrl-C finishes the current page and stops; a second one aborts.
    """
    loop = asyncio.get_running_loop()

    def _handler():
        if not session.cancelled:
            logger.warning("Interrupt received! Finishing the current page before stopping.")
            session.cancel()
        else:
            logger.error("Second interrupt received! Aborting.")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, _handler)
    except (NotImplementedError, RuntimeError):
        # not available on Windows event loops, fall back to KeyboardInterrupt
        pass


async def run_pipeline(config: PipelineConfig, path: Path, as_jsonl: bool = False) -> ProcessingSession:
    """
    Process one document file and print each page's result as it completes.
    """
    data = path.read_bytes()
    session = ProcessingSession(name=path.name)
    _install_cancel_handler(session)

    bar: Optional[tqdm] = None
    try:
        async with PagePipeline.from_config(config) as pipeline:
            updates = pipeline.process_bytes(
                data, filetype=config.document_filetype, name=path.name, session=session
            )
            async with aclosing(updates):
                async for update in updates:
                    if bar is None:
                        bar = tqdm(total=update.page_count, desc="Pages", unit="page", file=sys.stderr)
                    bar.set_postfix_str(update.describe()[:60])
                    if not update.status.terminal:
                        continue
                    bar.update(1)
                    if as_jsonl:
                        tqdm.write(json.dumps(_terminal_record(update), ensure_ascii=False), file=sys.stdout)
                    else:
                        tqdm.write(_format_terminal(update), file=sys.stdout)
    finally:
        if bar is not None:
            bar.close()
    return session


# -------------------------------
# CLI parsing
# -------------------------------

def _build_run_parser(subparsers: argparse._SubParsersAction | argparse.ArgumentParser) -> argparse.ArgumentParser:
    if isinstance(subparsers, argparse.ArgumentParser):
        p = subparsers
    else:
        p = subparsers.add_parser("run", help="OCR and translate one document")

    p.add_argument("input", type=Path, help="Document to process (pdf, or a png/jpeg image)")
    p.add_argument("--jsonl", action="store_true", help="Print one JSON object per page instead of text")
    p.add_argument("--log-file", type=Path, help="Also write logs to this file")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    render_group = p.add_argument_group("Rendering")
    render_group.add_argument("-s", "--scale", type=float, help="Render scale, 1.0 = 72 dpi (default: 2.0)")
    render_group.add_argument("--keep-images", action="store_true", help="Keep page images on the results")

    ocr_group = p.add_argument_group("Recognition")
    ocr_group.add_argument("-l", "--language-hint", help="OCR language hint (default: jpn+eng)")
    ocr_group.add_argument(
        "--ocr-backend",
        type=str,
        default="mangatl.ocr_backends.tesseract_backend.TesseractOCREngine",
        help="Dotted path to an OCR engine class, or an alias like 'tesseract'",
    )
    ocr_group.add_argument(
        "--ocr-backend-kwargs",
        type=str,
        default="{}",
        help='Engine init kwargs as JSON or key=value pairs, e.g. \'{"psm":6}\' or psm=6;oem=1',
    )

    tr_group = p.add_argument_group("Translation")
    tr_group.add_argument("-t", "--target", dest="target_lang", help="Target language code (default: fa)")
    tr_group.add_argument("--source", dest="default_source_lang",
                          help="Source language for providers without auto-detection (default: en)")
    tr_group.add_argument(
        "--provider",
        action="append",
        dest="providers",
        help="Provider in priority order, KIND or KIND=ENDPOINT; repeatable "
             "(default: libretranslate, then mymemory)",
    )
    tr_group.add_argument("--request-timeout", type=float, help="HTTP timeout per provider call in seconds")
    p.add_argument("--stage-timeout", type=float, help="Fail a page stage that runs longer than this many seconds")
    return p


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="mangatl: OCR and translate documents page by page")
    subparsers = parser.add_subparsers(dest="command")
    _build_run_parser(subparsers)

    if argv is None:
        argv = sys.argv[1:]
    if argv and argv[0] not in {"run", "-h", "--help"}:
        # Legacy form without subcommand: mangatl file.pdf [options]
        legacy_parser = argparse.ArgumentParser(add_help=False)
        _build_run_parser(legacy_parser)
        try:
            args = legacy_parser.parse_args(argv)
            args.command = "run"
            return args
        except SystemExit:
            pass

    return parser.parse_args(argv)


def _config_from_args(args: argparse.Namespace) -> PipelineConfig:
    backend = _normalize_backend_alias(args.ocr_backend)
    _preflight_backend_import(backend)

    cfg_dict = {
        "scale": args.scale,
        "language_hint": args.language_hint,
        "target_lang": args.target_lang,
        "default_source_lang": args.default_source_lang,
        "providers": [_parse_provider(s) for s in args.providers] if args.providers else None,
        "request_timeout": args.request_timeout,
        "stage_timeout": args.stage_timeout,
        "keep_images": args.keep_images,
        "document_filetype": _filetype_for(args.input),
        "ocr_backend": backend,
        "ocr_backend_kwargs": _parse_backend_kwargs(args.ocr_backend_kwargs),
    }
    cfg_dict = {k: v for k, v in cfg_dict.items() if v is not None}
    try:
        return PipelineConfig.from_dict(cfg_dict)
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}")


# -------------------------------
# Entry points
# -------------------------------

def _run_from_cli(args: argparse.Namespace) -> int:
    if not args.input.is_file():
        raise SystemExit(f"Input file not found: {args.input}")

    config = _config_from_args(args)

    log_queue: Queue = Queue(-1)
    configure_logging(log_queue)
    listener = setup_logging(
        log_queue,
        level=logging.DEBUG if args.verbose else logging.WARNING,
        file_path=args.log_file,
        file_level=logging.DEBUG,
    )
    listener.start()
    try:
        session = asyncio.run(run_pipeline(config, args.input, as_jsonl=args.jsonl))
    except DocumentLoadFailure as e:
        logger.error("Cannot open %s, %s", args.input, e)
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        # a second Ctrl-C cancels every task, so asyncio.run raises CancelledError
        logger.error("Interrupted")
        return 130
    finally:
        listener.stop()

    if session.cancelled and not session.finished:
        return 130
    return 0


def main(argv: Optional[List[str]] = None):
    args = _parse_args(argv)

    if args.command == "run":
        sys.exit(_run_from_cli(args))

    print("Usage:\n  mangatl run <document.pdf> [options]\n  mangatl <document.pdf> [options]")
    sys.exit(2)


if __name__ == "__main__":
    main()
