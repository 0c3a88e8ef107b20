from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def read_float_env(name: str, default: float, allow_zero: bool = False) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def read_int_env(name: str, default: int, allow_zero: bool = False) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value > 0 or (allow_zero and value == 0):
        return value
    return default


def read_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def read_str_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def read_list_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    items: list[str] = []
    for part in raw.split(","):
        item = part.strip().lower()
        if item and item not in items:
            items.append(item)
    return tuple(items) or default


@dataclass
class LiveTranslatorSettings:
    source_language: str = "ar"
    target_languages: tuple[str, ...] = ("en", "fr", "zh")
    gate_ms: float = 100.0
    overlap_window: int = 10
    stages: tuple[str, ...] = ("time_gate", "containment", "overlap_trim")
    comparison_base: str = "accepted"
    translation_provider: str = "mymemory"
    translation_timeout_s: float = 10.0
    translation_cache_size: int = 512
    interim_translation_delay_s: float = 0.8
    restart_delay_s: float = 0.1
    restart_backoff_factor: float = 1.5
    restart_max_delay_s: float = 2.0
    restart_max_attempts: Optional[int] = None
    speech_session_max_s: float = 55.0
    metrics_enabled: bool = True
    metrics_output_path: str = "./reports/session_metrics.jsonl"
    metrics_summary_path: str = "./reports/session_summary.json"

    @classmethod
    def from_env(cls) -> "LiveTranslatorSettings":
        defaults = cls()
        source_language = read_str_env("SOURCE_LANGUAGE", defaults.source_language).lower()
        targets = tuple(
            lang
            for lang in read_list_env("TARGET_LANGUAGES", defaults.target_languages)
            if lang != source_language
        )
        max_attempts = read_int_env("RESTART_MAX_ATTEMPTS", 0, allow_zero=True)
        return cls(
            source_language=source_language,
            target_languages=targets or defaults.target_languages,
            gate_ms=read_float_env("RECONCILE_GATE_MS", defaults.gate_ms, allow_zero=True),
            overlap_window=read_int_env("RECONCILE_OVERLAP_WINDOW", defaults.overlap_window),
            stages=read_list_env("RECONCILE_STAGES", defaults.stages),
            comparison_base=read_str_env("RECONCILE_COMPARISON_BASE", defaults.comparison_base).lower(),
            translation_provider=read_str_env("TRANSLATION_PROVIDER", defaults.translation_provider).lower(),
            translation_timeout_s=read_float_env("TRANSLATION_TIMEOUT_SECONDS", defaults.translation_timeout_s),
            translation_cache_size=read_int_env("TRANSLATION_CACHE_SIZE", defaults.translation_cache_size),
            interim_translation_delay_s=read_float_env(
                "INTERIM_TRANSLATION_DELAY_MS", defaults.interim_translation_delay_s * 1000.0, allow_zero=True
            )
            / 1000.0,
            restart_delay_s=read_float_env("RESTART_DELAY_SECONDS", defaults.restart_delay_s, allow_zero=True),
            restart_backoff_factor=read_float_env("RESTART_BACKOFF_FACTOR", defaults.restart_backoff_factor),
            restart_max_delay_s=read_float_env("RESTART_MAX_DELAY_SECONDS", defaults.restart_max_delay_s),
            restart_max_attempts=max_attempts or None,
            speech_session_max_s=read_float_env("SPEECH_SESSION_MAX_SECONDS", defaults.speech_session_max_s),
            metrics_enabled=read_bool_env("METRICS_ENABLED", defaults.metrics_enabled),
            metrics_output_path=read_str_env("METRICS_OUTPUT_PATH", defaults.metrics_output_path),
            metrics_summary_path=read_str_env("METRICS_SUMMARY_PATH", defaults.metrics_summary_path),
        )
