# mangatl/config.py
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional


DEFAULT_LANGUAGE_HINT = "jpn+eng"
DEFAULT_TARGET_LANG = "fa"


@dataclass
class ProviderConfig:
    """One entry of the translation provider chain."""
    kind: str                       # "libretranslate" | "mymemory"
    endpoint: Optional[str] = None  # None means the provider's public endpoint
    name: Optional[str] = None      # identifier reported in results, defaults to kind
    api_key: Optional[str] = None


def default_providers() -> List[ProviderConfig]:
    return [
        ProviderConfig(kind="libretranslate"),
        ProviderConfig(kind="mymemory"),
    ]


@dataclass
class PipelineConfig:
    """Configuration for one document processing run."""
    scale: float = 2.0
    language_hint: str = DEFAULT_LANGUAGE_HINT

    target_lang: str = DEFAULT_TARGET_LANG
    # used by providers that cannot auto-detect the source language
    default_source_lang: str = "en"
    providers: List[ProviderConfig] = field(default_factory=default_providers)

    request_timeout: float = 30.0
    stage_timeout: Optional[float] = None  # None disables the per-stage timeout

    keep_images: bool = False
    document_filetype: str = "pdf"

    ocr_backend: str = "mangatl.ocr_backends.tesseract_backend.TesseractOCREngine"
    ocr_backend_kwargs: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")
        if self.stage_timeout is not None and self.stage_timeout <= 0:
            raise ValueError(f"stage_timeout must be positive, got {self.stage_timeout}")
        if not self.providers:
            raise ValueError("At least one translation provider is required")

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)

        # allow explicit None to mean use default
        for key in ["scale", "language_hint", "target_lang", "default_source_lang",
                    "providers", "request_timeout", "document_filetype", "ocr_backend"]:
            if d.get(key) is None:
                d.pop(key, None)

        if "providers" in d:
            d["providers"] = [
                p if isinstance(p, ProviderConfig) else ProviderConfig(**p)
                for p in d["providers"]
            ]
        return cls(**d)
