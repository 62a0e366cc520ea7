# src/mangatl/translator.py
"""Translation over public HTTP providers with ordered, first-success fallback."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence, Tuple

import httpx

from .config import DEFAULT_TARGET_LANG, ProviderConfig
from .exceptions import ProviderError, TranslationFailure
from .models import TranslationResult

logger = logging.getLogger("mangatl")


# --- Providers ---
class BaseTranslationProvider(ABC):
    """One HTTP translation backend. ``translate`` raises ProviderError on any failure."""

    default_endpoint: str = ""
    supports_auto_source: bool = False

    def __init__(self, name: str, endpoint: Optional[str] = None):
        self.name = name
        self.endpoint = endpoint or self.default_endpoint

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, endpoint={self.endpoint!r})"

    @abstractmethod
    async def translate(self, client: httpx.AsyncClient, text: str, source: str, target: str) -> str:
        raise NotImplementedError

    def _json(self, resp: httpx.Response) -> Any:
        if not resp.is_success:
            raise ProviderError(self.name, f"HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(self.name, f"malformed response body, {e}") from e

    def _non_empty(self, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ProviderError(self.name, "empty translation")
        return value


class LibreTranslateProvider(BaseTranslationProvider):
    """POST {q, source, target, format} as JSON, answers {translatedText}."""

    default_endpoint = "https://libretranslate.de/translate"
    supports_auto_source = True

    def __init__(self, name: str = "libretranslate", endpoint: Optional[str] = None,
                 api_key: Optional[str] = None):
        super().__init__(name, endpoint)
        self.api_key = api_key

    async def translate(self, client: httpx.AsyncClient, text: str, source: str, target: str) -> str:
        payload = {"q": text, "source": source, "target": target, "format": "text"}
        if self.api_key:
            payload["api_key"] = self.api_key
        try:
            resp = await client.post(self.endpoint, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError(self.name, f"transport error, {e}") from e
        data = self._json(resp)
        if not isinstance(data, dict):
            raise ProviderError(self.name, "malformed response body")
        return self._non_empty(data.get("translatedText"))


class MyMemoryProvider(BaseTranslationProvider):
    """GET ?q=..&langpair=src|dst, answers {responseData: {translatedText}}."""

    default_endpoint = "https://api.mymemory.translated.net/get"

    def __init__(self, name: str = "mymemory", endpoint: Optional[str] = None):
        super().__init__(name, endpoint)

    async def translate(self, client: httpx.AsyncClient, text: str, source: str, target: str) -> str:
        params = {"q": text, "langpair": f"{source}|{target}"}
        try:
            resp = await client.get(self.endpoint, params=params)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError(self.name, f"transport error, {e}") from e
        data = self._json(resp)
        if not isinstance(data, dict):
            raise ProviderError(self.name, "malformed response body")

        # MyMemory reports quota and language errors in the body with HTTP 200
        status = data.get("responseStatus")
        if status is not None and str(status) != "200":
            detail = data.get("responseDetails") or "no details"
            raise ProviderError(self.name, f"response status {status}, {detail}")

        response_data = data.get("responseData")
        if not isinstance(response_data, dict):
            raise ProviderError(self.name, "malformed response body, missing responseData")
        return self._non_empty(response_data.get("translatedText"))


_PROVIDER_KINDS = {
    "libretranslate": LibreTranslateProvider,
    "libre": LibreTranslateProvider,
    "mymemory": MyMemoryProvider,
}


def build_provider(cfg: ProviderConfig) -> BaseTranslationProvider:
    kind = (cfg.kind or "").lower()
    cls = _PROVIDER_KINDS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown translation provider, '{cfg.kind}'. Supported, {sorted(set(_PROVIDER_KINDS))}")
    name = cfg.name or kind
    if cls is LibreTranslateProvider:
        return cls(name=name, endpoint=cfg.endpoint, api_key=cfg.api_key)
    return cls(name=name, endpoint=cfg.endpoint)


def build_provider_chain(configs: Sequence[ProviderConfig]) -> List[BaseTranslationProvider]:
    return [build_provider(c) for c in configs]


# --- Translator ---
class Translator:
    """
    Translates text by walking the provider chain in priority order.

    Every provider is tried at most once per call and the first non-empty
    translation wins. Usable as an async context manager, which owns the
    underlying httpx.AsyncClient unless one is passed in.
    """

    def __init__(
        self,
        providers: Sequence[BaseTranslationProvider],
        target_lang: str = DEFAULT_TARGET_LANG,
        default_source_lang: str = "en",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not providers:
            raise ValueError("Translator needs at least one provider")
        self.providers = list(providers)
        self.target_lang = target_lang
        self.default_source_lang = default_source_lang
        self.timeout = timeout
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            self._owns_client = True
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _source_for(self, provider: BaseTranslationProvider) -> str:
        return "auto" if provider.supports_auto_source else self.default_source_lang

    async def translate(self, text: str) -> TranslationResult:
        if not text or not text.strip() or text != text.strip():
            raise ValueError("translate() expects non-empty, trimmed text")
        if self._client is None:
            raise RuntimeError("Translator not started, use 'async with Translator(...)'")

        attempts: List[Tuple[str, str]] = []
        for provider in self.providers:
            try:
                translated = await provider.translate(
                    self._client, text, self._source_for(provider), self.target_lang
                )
            except ProviderError as e:
                logger.warning("Translation provider %s failed, %s", provider.name, e.reason)
                attempts.append((provider.name, e.reason))
                continue
            logger.debug("Translated %d chars with %s", len(text), provider.name)
            return TranslationResult(text=translated, provider=provider.name)

        summary = "; ".join(f"{name}: {reason}" for name, reason in attempts)
        raise TranslationFailure(f"All translation providers failed ({summary})", attempts)
