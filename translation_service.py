from __future__ import annotations

import html
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Final, Optional

import httpx
from openai import APIStatusError, AsyncOpenAI

from config_utils import LiveTranslatorSettings, read_int_env, read_str_env


@dataclass
class TranslationResult:
    text: str
    provider: str = ""


class TranslationError(RuntimeError):
    def __init__(self, message: str, target_lang: str = "") -> None:
        super().__init__(message)
        self.target_lang = target_lang


class TranslationProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationResult: ...

    async def aclose(self) -> None:
        return None


class MyMemoryTranslationProvider(TranslationProvider):
    name = "mymemory"
    DEFAULT_BASE_URL: Final[str] = "https://api.mymemory.translated.net"
    _LANG_CODES: Final[dict[str, str]] = {
        "zh": "zh-CN",
        "zh-cn": "zh-CN",
        "zh-tw": "zh-TW",
        "pt-br": "pt-BR",
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_s: float = 10.0,
        contact_email: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or os.getenv("MYMEMORY_BASE_URL", self.DEFAULT_BASE_URL),
            timeout=timeout_s,
            transport=transport,
        )
        self._contact_email = contact_email or (os.getenv("MYMEMORY_EMAIL") or "").strip() or None

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationResult:
        cleaned = _sanitize(text)
        if not cleaned:
            return TranslationResult(text="", provider=self.name)
        params = {
            "q": cleaned,
            "langpair": f"{self._lang_code(source_lang)}|{self._lang_code(target_lang)}",
        }
        if self._contact_email:
            params["de"] = self._contact_email
        try:
            response = await self._client.get("/get", params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TranslationError(f"MyMemory request failed: {exc}", target_lang) from exc

        status = self._status_code(payload.get("responseStatus"))
        data = payload.get("responseData") or {}
        translated = data.get("translatedText") if isinstance(data, dict) else None
        if status != 200 or not translated:
            details = payload.get("responseDetails") or "empty response"
            raise TranslationError(f"MyMemory returned status={status}: {details}", target_lang)
        return TranslationResult(text=_sanitize(html.unescape(translated)), provider=self.name)

    async def aclose(self) -> None:
        await self._client.aclose()

    @classmethod
    def _lang_code(cls, lang: str) -> str:
        lowered = (lang or "").strip().lower()
        return cls._LANG_CODES.get(lowered, lowered)

    @staticmethod
    def _status_code(raw: object) -> int:
        try:
            return int(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0


class OpenAITranslationProvider(TranslationProvider):
    name = "openai"
    _LANGUAGE_NAMES: Final[dict[str, str]] = {
        "ar": "Arabic",
        "en": "English",
        "fr": "French",
        "es": "Spanish",
        "de": "German",
        "pt": "Portuguese (Brazil)",
        "pt-br": "Portuguese (Brazil)",
        "zh": "Mandarin Chinese (Simplified)",
        "zh-cn": "Mandarin Chinese (Simplified)",
        "zh-tw": "Mandarin Chinese (Traditional)",
        "hi": "Hindi",
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_s: float = 10.0,
    ) -> None:
        key = api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise RuntimeError("OPENAI_API_KEY is required for translation.")
        self._client = AsyncOpenAI(api_key=key, timeout=timeout_s)
        primary_model = read_str_env("TRANSLATION_MODEL", model)
        fallback_model = (os.getenv("TRANSLATION_FALLBACK_MODEL") or "gpt-4.1-mini").strip()
        self._models = [primary_model]
        if fallback_model and fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_model_index = 0
        self._max_completion_tokens = read_int_env("TRANSLATION_MAX_TOKENS", 240)

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationResult:
        cleaned = _sanitize(text)
        if not cleaned:
            return TranslationResult(text="", provider=self.name)
        source_name = self._language_name(source_lang)
        target_name = self._language_name(target_lang)
        system_prompt = (
            "You are a real-time transcript translator.\n"
            f"Translate the {source_name} fragment into {target_name}.\n"
            "Keep names, numbers and units exactly. Never refuse, explain or add text.\n"
            "Return only the translated text."
        )
        try:
            translated = await self._chat(cleaned, system_prompt)
        except TranslationError:
            raise
        except Exception as exc:  # noqa: BLE001 - API boundary
            raise TranslationError(f"OpenAI translation failed: {exc}", target_lang) from exc
        if not translated or self._is_refusal_like(translated):
            raise TranslationError("OpenAI returned no usable translation", target_lang)
        return TranslationResult(text=translated, provider=self.name)

    async def aclose(self) -> None:
        await self._client.close()

    async def _chat(self, user_prompt: str, system_prompt: str) -> str:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        last_exc: Optional[Exception] = None
        while self._active_model_index < len(self._models):
            model_name = self._models[self._active_model_index]
            try:
                response = await self._client.chat.completions.create(
                    model=model_name,
                    temperature=0.0,
                    messages=messages,
                    max_tokens=self._max_completion_tokens,
                )
                content = response.choices[0].message.content or ""
                return _sanitize(content)
            except APIStatusError as exc:
                last_exc = exc
                # Promote to fallback model once and keep it for subsequent requests.
                if exc.status_code in (400, 404) and self._active_model_index + 1 < len(self._models):
                    self._active_model_index += 1
                    continue
                break
        raise TranslationError(f"Translation API failed with all configured models: {last_exc}") from last_exc

    @classmethod
    def _language_name(cls, lang: str) -> str:
        raw = (lang or "").strip()
        return cls._LANGUAGE_NAMES.get(raw.lower(), raw or "English")

    @staticmethod
    def _is_refusal_like(text: str) -> bool:
        normalized = _sanitize(text).lower()
        refusal_patterns = (
            "i'm sorry, i can't help with that",
            "i cannot help with that",
            "i can’t help with that",
            "i can't assist with that",
            "cannot assist with that",
        )
        return any(pattern in normalized for pattern in refusal_patterns)


def _sanitize(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def build_translation_provider(settings: LiveTranslatorSettings) -> TranslationProvider:
    provider = settings.translation_provider
    if provider == "mymemory":
        return MyMemoryTranslationProvider(timeout_s=settings.translation_timeout_s)
    if provider == "openai":
        return OpenAITranslationProvider(timeout_s=settings.translation_timeout_s)
    raise ValueError(f"Unknown translation provider: {provider}")
