from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


def _percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    index = (len(ordered) - 1) * ratio
    lower = int(index)
    upper = min(lower + 1, len(ordered) - 1)
    if lower == upper:
        return ordered[lower]
    weight = index - lower
    return ordered[lower] * (1.0 - weight) + ordered[upper] * weight


class SessionMetricsReporter:
    def __init__(self, enabled: bool, output_path: str, summary_path: str, append_mode: bool = False) -> None:
        self._enabled = enabled
        self._output_path = Path(output_path)
        self._summary_path = Path(summary_path)
        self._append_mode = append_mode
        self._session_started_at: Optional[datetime] = None
        self._translation_latencies: list[float] = []
        self._segments_accepted = 0
        self._fragments_discarded = 0
        self._translations_done = 0
        self._translations_failed = 0
        self._cache_hits = 0
        self._restarts = 0
        self._error_events = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_session(self) -> None:
        if not self._enabled:
            return
        self._session_started_at = datetime.now()
        self._translation_latencies.clear()
        self._segments_accepted = 0
        self._fragments_discarded = 0
        self._translations_done = 0
        self._translations_failed = 0
        self._cache_hits = 0
        self._restarts = 0
        self._error_events = 0
        self._ensure_parent_dirs()
        if not self._append_mode:
            self._output_path.write_text("", encoding="utf-8")

    def record_segment(self, segment_id: int, text_length: int) -> None:
        if not self._enabled:
            return
        self._segments_accepted += 1
        self._append_jsonl(
            {
                "event_type": "segment",
                "recorded_at": self._now(),
                "segment_id": segment_id,
                "text_length": text_length,
            }
        )

    def record_discard(self, raw_length: int) -> None:
        if not self._enabled:
            return
        self._fragments_discarded += 1
        self._append_jsonl({"event_type": "discard", "recorded_at": self._now(), "text_length": raw_length})

    def record_translation(
        self,
        segment_id: int,
        target_lang: str,
        status: str,
        latency_s: float,
        from_cache: bool = False,
        error: str = "",
    ) -> None:
        if not self._enabled:
            return
        if status == "done":
            self._translations_done += 1
            if from_cache:
                self._cache_hits += 1
            else:
                self._translation_latencies.append(latency_s)
        else:
            self._translations_failed += 1
        self._append_jsonl(
            {
                "event_type": "translation",
                "recorded_at": self._now(),
                "segment_id": segment_id,
                "target_lang": target_lang,
                "status": status,
                "latency_s": latency_s,
                "from_cache": from_cache,
                "error": error,
            }
        )

    def record_restart(self, attempt: int, delay_s: float) -> None:
        if not self._enabled:
            return
        self._restarts += 1
        self._append_jsonl(
            {"event_type": "restart", "recorded_at": self._now(), "attempt": attempt, "delay_s": delay_s}
        )

    def record_error(self, stage: str, error: str) -> None:
        if not self._enabled:
            return
        self._error_events += 1
        self._append_jsonl({"event_type": "error", "recorded_at": self._now(), "stage": stage, "error": error})

    def snapshot(self) -> dict[str, float]:
        attempted = self._translations_done + self._translations_failed
        return {
            "segments_accepted": float(self._segments_accepted),
            "avg_translation_latency_s": (
                sum(self._translation_latencies) / len(self._translation_latencies)
                if self._translation_latencies
                else 0.0
            ),
            "p95_translation_latency_s": _percentile(self._translation_latencies, 0.95),
            "translation_failure_pct": (self._translations_failed / attempted * 100.0) if attempted else 0.0,
        }

    def finalize_session(self) -> dict[str, Any]:
        if not self._enabled:
            return {}
        now = datetime.now()
        started = self._session_started_at or now
        duration_s = max(0.0, (now - started).total_seconds())
        latencies = self._translation_latencies
        summary = {
            "session_started_at": started.isoformat(timespec="milliseconds"),
            "session_ended_at": now.isoformat(timespec="milliseconds"),
            "session_duration_s": duration_s,
            "segments_accepted": self._segments_accepted,
            "fragments_discarded": self._fragments_discarded,
            "translations_done": self._translations_done,
            "translations_failed": self._translations_failed,
            "translation_cache_hits": self._cache_hits,
            "restarts": self._restarts,
            "error_events": self._error_events,
            "translation_latency_avg_s": sum(latencies) / len(latencies) if latencies else 0.0,
            "translation_latency_p50_s": _percentile(latencies, 0.50),
            "translation_latency_p95_s": _percentile(latencies, 0.95),
            "translation_latency_max_s": max(latencies) if latencies else 0.0,
        }
        self._write_summary(summary)
        return summary

    @staticmethod
    def _now() -> str:
        return datetime.now().isoformat(timespec="milliseconds")

    def _ensure_parent_dirs(self) -> None:
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        line = json.dumps(payload, ensure_ascii=False)
        with self._output_path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def _write_summary(self, summary: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        with self._summary_path.open("w", encoding="utf-8") as handle:
            json.dump(summary, handle, ensure_ascii=False, indent=2)
