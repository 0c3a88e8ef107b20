from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Iterable, Optional

from metrics_reporter import SessionMetricsReporter
from reconciliation import CleanSegment
from segment_store import SegmentStore
from text_normalizer import normalize
from translation_service import TranslationProvider

FAILURE_MARKERS: dict[str, str] = {
    "en": "Translation unavailable",
    "fr": "Traduction non disponible",
    "zh": "翻译不可用",
    "ar": "الترجمة غير متوفرة",
}
DEFAULT_FAILURE_MARKER = "[translation unavailable]"


def failure_marker(lang: str) -> str:
    return FAILURE_MARKERS.get((lang or "").lower().split("-")[0], DEFAULT_FAILURE_MARKER)


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TranslationTask:
    segment_id: int
    target_lang: str
    status: TaskStatus = TaskStatus.PENDING
    result_text: Optional[str] = None
    error: str = ""
    from_cache: bool = False

    @property
    def key(self) -> tuple[int, str]:
        return (self.segment_id, self.target_lang)

    def resolve(self, text: str, from_cache: bool = False) -> None:
        self._ensure_pending()
        self.status = TaskStatus.DONE
        self.result_text = text
        self.from_cache = from_cache

    def fail(self, error: str) -> None:
        self._ensure_pending()
        self.status = TaskStatus.FAILED
        self.error = error

    def _ensure_pending(self) -> None:
        if self.status is not TaskStatus.PENDING:
            raise RuntimeError(f"Translation task {self.key} already {self.status.value}")


class TranslationCache:
    def __init__(self, max_size: int = 512) -> None:
        self._max_size = max(1, max_size)
        self._items: OrderedDict[tuple[str, str], str] = OrderedDict()

    @staticmethod
    def key(text: str, target_lang: str) -> tuple[str, str]:
        return (normalize(text), target_lang)

    def get(self, text: str, target_lang: str) -> Optional[str]:
        key = self.key(text, target_lang)
        value = self._items.get(key)
        if value is not None:
            self._items.move_to_end(key)
        return value

    def put(self, text: str, target_lang: str, translated: str) -> None:
        key = self.key(text, target_lang)
        self._items[key] = translated
        self._items.move_to_end(key)
        while len(self._items) > self._max_size:
            self._items.popitem(last=False)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class TranslationFanout:
    # Languages never wait on each other; inside one channel results land in
    # segment order. Interim previews are debounced and only fill interim slots.
    def __init__(
        self,
        provider: TranslationProvider,
        store: SegmentStore,
        source_lang: str,
        cache: Optional[TranslationCache] = None,
        metrics_reporter: Optional[SessionMetricsReporter] = None,
        interim_delay_s: Optional[float] = 0.8,
    ) -> None:
        self.provider = provider
        self.store = store
        self.source_lang = source_lang
        self.cache = cache or TranslationCache()
        self.metrics_reporter = metrics_reporter
        self._tasks: dict[tuple[int, str], TranslationTask] = {}
        self._delivery_order: dict[str, deque[int]] = {}
        self._inflight: set[asyncio.Task[None]] = set()
        self._generation = 0
        self.interim_delay_s = interim_delay_s
        self._interim_task: Optional[asyncio.Task[None]] = None
        self._interim_langs: tuple[str, ...] = ()
        self._interim_token = 0

    def dispatch(self, segment: CleanSegment, target_langs: Iterable[str]) -> list[asyncio.Task[None]]:
        scheduled: list[asyncio.Task[None]] = []
        for lang in target_langs:
            if (segment.id, lang) in self._tasks:
                logging.warning("translation_duplicate_dispatch id=%d lang=%s", segment.id, lang)
                continue
            task = TranslationTask(segment_id=segment.id, target_lang=lang)
            self._tasks[task.key] = task
            self._delivery_order.setdefault(lang, deque()).append(segment.id)

            cached = self.cache.get(segment.source_text, lang)
            if cached is not None:
                task.resolve(cached, from_cache=True)
                self._record(task, 0.0)
                self._deliver(lang)
                continue

            runner = asyncio.create_task(
                self._translate(task, segment.source_text, self._generation),
                name=f"translate-{segment.id}-{lang}",
            )
            self._inflight.add(runner)
            runner.add_done_callback(self._inflight.discard)
            scheduled.append(runner)
        return scheduled

    def task(self, segment_id: int, target_lang: str) -> Optional[TranslationTask]:
        return self._tasks.get((segment_id, target_lang))

    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if task.status is TaskStatus.PENDING)

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def schedule_interim(self, text: str, target_langs: Iterable[str]) -> Optional[asyncio.Task[None]]:
        self.cancel_interim(clear_slots=False)
        if self.interim_delay_s is None or not text.strip():
            return None
        langs = tuple(target_langs)
        self._interim_langs = langs
        task = asyncio.create_task(
            self._translate_interim(text, langs, self._interim_token, self._generation),
            name="translate-interim",
        )
        self._interim_task = task
        return task

    def cancel_interim(self, clear_slots: bool = True) -> None:
        self._interim_token += 1
        task = self._interim_task
        self._interim_task = None
        if task is not None and not task.done():
            task.cancel()
        if clear_slots:
            for lang in self._interim_langs:
                self.store.clear_interim(lang)
            self._interim_langs = ()

    def clear(self) -> None:
        self.cancel_interim()
        self._generation += 1
        self._tasks.clear()
        self._delivery_order.clear()
        self.cache.clear()

    async def _translate(self, task: TranslationTask, text: str, generation: int) -> None:
        started = perf_counter()
        try:
            result = await self.provider.translate(text, self.source_lang, task.target_lang)
            translated = (result.text or "").strip()
            error = "" if translated else "empty translation"
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - one language failing must not affect the others
            translated = ""
            error = str(exc) or exc.__class__.__name__

        if generation != self._generation:
            logging.debug("translation_dropped_after_clear id=%d lang=%s", task.segment_id, task.target_lang)
            return
        if error:
            task.fail(error)
            logging.warning(
                "translation_failed id=%d lang=%s error=%s", task.segment_id, task.target_lang, error
            )
        else:
            task.resolve(translated)
            self.cache.put(text, task.target_lang, translated)
        self._record(task, perf_counter() - started)
        self._deliver(task.target_lang)

    async def _translate_interim(self, text: str, langs: tuple[str, ...], token: int, generation: int) -> None:
        await asyncio.sleep(self.interim_delay_s or 0.0)
        await asyncio.gather(*(self._translate_interim_lang(text, lang, token, generation) for lang in langs))

    async def _translate_interim_lang(self, text: str, lang: str, token: int, generation: int) -> None:
        translated = self.cache.get(text, lang)
        if translated is None:
            try:
                result = await self.provider.translate(text, self.source_lang, lang)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - a failed preview keeps the previous interim line
                logging.debug("interim_translation_failed lang=%s error=%s", lang, exc)
                return
            translated = (result.text or "").strip()
            if not translated:
                return
            self.cache.put(text, lang, translated)
        if token != self._interim_token or generation != self._generation:
            return
        self.store.set_interim(lang, translated)

    def _deliver(self, lang: str) -> None:
        order = self._delivery_order.get(lang)
        while order:
            task = self._tasks[(order[0], lang)]
            if task.status is TaskStatus.PENDING:
                return
            order.popleft()
            if task.status is TaskStatus.DONE:
                self.store.append(lang, task.result_text or "", segment_id=task.segment_id)
            else:
                self.store.append(lang, failure_marker(lang), segment_id=task.segment_id, failed=True)

    def _record(self, task: TranslationTask, latency_s: float) -> None:
        if self.metrics_reporter is None:
            return
        self.metrics_reporter.record_translation(
            segment_id=task.segment_id,
            target_lang=task.target_lang,
            status=task.status.value,
            latency_s=latency_s,
            from_cache=task.from_cache,
            error=task.error,
        )
