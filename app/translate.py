"""Text translation through a LibreTranslate-compatible endpoint, falling back to the input."""

from __future__ import annotations

import logging
import os

import httpx


logger = logging.getLogger("formrelay.translate")

DEFAULT_SOURCE_LANG = "en"
DEFAULT_TARGET_LANG = "mr"


class TranslationProviderError(RuntimeError):
    pass


class TranslationProvider:
    def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        raise NotImplementedError


class PassthroughProvider(TranslationProvider):
    def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        return text


class LibreTranslateProvider(TranslationProvider):
    def __init__(self, url: str, api_key: str | None = None, timeout: float = 15.0, client: httpx.Client | None = None) -> None:
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        payload = {"q": text, "source": source_lang, "target": target_lang, "format": "text"}
        if self.api_key:
            payload["api_key"] = self.api_key
        url = f"{self.url}/translate"
        try:
            if self._client is not None:
                resp = self._client.post(url, json=payload, timeout=self.timeout)
            else:
                resp = httpx.post(url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise TranslationProviderError(f"translate request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TranslationProviderError(f"translate error: {resp.status_code} {resp.text}")
        translated = (resp.json() or {}).get("translatedText")
        if not isinstance(translated, str):
            raise TranslationProviderError("translate response missing translatedText")
        return translated


def get_provider() -> TranslationProvider:
    url = os.getenv("FORMRELAY_TRANSLATE_URL", "").strip()
    if not url:
        return PassthroughProvider()
    api_key = os.getenv("FORMRELAY_TRANSLATE_API_KEY", "").strip() or None
    return LibreTranslateProvider(url, api_key=api_key)


def translate_text(
    provider: TranslationProvider,
    text: str | None,
    target_lang: str | None = None,
    source_lang: str | None = None,
) -> str:
    """Translate ``text``; on any provider failure return it unchanged."""
    if not text:
        return ""
    source = source_lang or DEFAULT_SOURCE_LANG
    target = target_lang or DEFAULT_TARGET_LANG
    try:
        return provider.translate(text, source, target)
    except Exception as exc:
        logger.warning("translate_failed source=%s target=%s error=%s", source, target, exc)
        return text
