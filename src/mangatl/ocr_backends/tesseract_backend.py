# mangatl/ocr_backends/tesseract_backend.py
from __future__ import annotations

import logging
import os
import platform
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
from PIL import Image
import pytesseract as pt

from .base import BaseOCREngine, ProgressCallback

logger = logging.getLogger("mangatl")


def _as_int(x, default: int) -> int:
    try:
        if isinstance(x, str):
            x = x.strip().rstrip(",}] ")
        return int(x)
    except Exception:
        m = re.search(r"-?\d+", str(x))
        return int(m.group()) if m else default


def resolve_tesseract_cmd() -> str | None:
    # 1) explicit env override
    cmd = os.getenv("TESSERACT_CMD")
    if cmd and Path(cmd).exists():
        return cmd

    # 2) look on PATH
    cmd = shutil.which("tesseract")
    if cmd:
        return cmd

    # 3) common fallbacks by OS
    system = platform.system()
    if system == "Windows":
        candidates = [
            r"C:\Program Files\Tesseract-OCR\tesseract.exe",
            r"C:\Program Files (x86)\Tesseract-OCR\tesseract.exe",
        ]
    elif system == "Darwin":
        candidates = [
            "/opt/homebrew/bin/tesseract",
            "/usr/local/bin/tesseract",
        ]
    else:
        candidates = [
            "/usr/bin/tesseract",
            "/usr/local/bin/tesseract",
            "/snap/bin/tesseract",
        ]

    for p in candidates:
        if Path(p).exists():
            return p
    return None


# Short codes accepted in a language hint, mapped to Tesseract's traineddata names
_TESS_LANG_MAP = {
    "ja": "jpn",
    "en": "eng",
    "ko": "kor",
    "zh": "chi_sim",
    "fa": "fas",
    "vi": "vie",
}


def normalize_language_hint(hint: str) -> str:
    """'ja+en' -> 'jpn+eng'. Order is kept since Tesseract treats the first as primary."""
    codes: List[str] = []
    for part in re.split(r"[+,\s]+", hint or ""):
        if not part:
            continue
        code = _TESS_LANG_MAP.get(part.lower(), part)
        if code not in codes:
            codes.append(code)
    if not codes:
        raise ValueError(f"Empty language hint, {hint!r}")
    return "+".join(codes)


class TesseractOCREngine(BaseOCREngine):
    """
    Pytesseract-based engine.

    Kwargs supported (all optional):
      - tesseract_cmd: full path to tesseract binary
      - tessdata_prefix: path to tessdata directory
      - oem: 0..3 (default 3 = LSTM)
      - psm: page segmentation mode (default 3 = fully automatic, suits comic panels)
      - preserve_interword_spaces: bool (default False, CJK text has no spaces)
      - extra_config: str of extra flags (appended to config string)
      - check_languages: verify traineddata is installed on configure (default True)
    """

    def __init__(self, **kwargs: Dict[str, Any]):
        k = dict(kwargs)

        tesseract_cmd = k.pop("tesseract_cmd", None) or k.pop("tesseract_path", None)
        if tesseract_cmd:
            if not os.path.exists(str(tesseract_cmd)):
                raise RuntimeError(f"Tesseract binary not found: {tesseract_cmd}")
            pt.pytesseract.tesseract_cmd = str(tesseract_cmd)
        else:
            found = resolve_tesseract_cmd()
            if found:
                pt.pytesseract.tesseract_cmd = found

        tessdata_prefix = k.pop("tessdata_prefix", None)
        if tessdata_prefix:
            os.environ["TESSDATA_PREFIX"] = str(tessdata_prefix)

        oem = _as_int(k.pop("oem", 3), 3)
        psm = _as_int(k.pop("psm", 3), 3)
        preserve_spaces = bool(k.pop("preserve_interword_spaces", False))
        extra_cfg = str(k.pop("extra_config", "")).strip()
        self._check_languages = bool(k.pop("check_languages", True))

        if k:
            logger.debug("Ignoring unknown Tesseract kwargs, %s", sorted(k))

        cfg_parts = [f"--oem {oem}", f"--psm {psm}"]
        if preserve_spaces:
            cfg_parts.append("-c preserve_interword_spaces=1")
        if extra_cfg:
            cfg_parts.append(extra_cfg)
        self._config = " ".join(cfg_parts)

        self.lang: Optional[str] = None
        self._released = False

    def configure(self, language_hint: str, progress: Optional[ProgressCallback] = None) -> None:
        report = progress or (lambda stage, fraction: None)
        lang = normalize_language_hint(language_hint)
        if self._check_languages:
            report("loading language traineddata", None)
            installed = set(pt.get_languages(config=""))
            missing = [code for code in lang.split("+") if code not in installed]
            if missing:
                raise RuntimeError(
                    f"Tesseract traineddata not installed for, {', '.join(missing)}"
                )
        report("initializing api", None)
        self.lang = lang

    def recognize(self, image: np.ndarray, progress: ProgressCallback) -> str:
        if self._released:
            raise RuntimeError("Engine used after release")
        if self.lang is None:
            raise RuntimeError("Engine must be configured before recognition")

        pil_im = image if isinstance(image, Image.Image) else Image.fromarray(image[..., :3])
        progress("recognizing text", 0.0)
        text = pt.image_to_string(pil_im, lang=self.lang, config=self._config)
        progress("recognizing text", 1.0)
        return text

    def release(self) -> None:
        # pytesseract spawns one process per call, nothing is held between calls
        self._released = True
