from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Optional, Protocol, Sequence

from config_utils import LiveTranslatorSettings
from metrics_reporter import SessionMetricsReporter
from reconciliation import CleanSegment, ReconciliationEngine
from segment_store import SegmentStore
from translation_fanout import TranslationFanout

PERMISSION_DENIED = "permission-denied"
NO_SPEECH = "no-speech"
NETWORK = "network"


class SessionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    STOPPING = "stopping"


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool


class RecognitionError(RuntimeError):
    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code

    @property
    def is_fatal(self) -> bool:
        return self.code == PERMISSION_DENIED


class SpeechEventHandler(Protocol):
    def handle_result(
        self, result_index: int, results: Sequence[RecognitionResult], timestamp: Optional[datetime] = None
    ) -> None: ...

    def handle_started(self) -> None: ...

    def handle_ended(self) -> None: ...

    def handle_error(self, code: str, message: str = "") -> None: ...


class SpeechSource(Protocol):
    def bind(self, handler: SpeechEventHandler) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@dataclass
class RestartPolicy:
    initial_delay_s: float = 0.1
    backoff_factor: float = 1.5
    max_delay_s: float = 2.0
    max_attempts: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: LiveTranslatorSettings) -> "RestartPolicy":
        return cls(
            initial_delay_s=settings.restart_delay_s,
            backoff_factor=settings.restart_backoff_factor,
            max_delay_s=settings.restart_max_delay_s,
            max_attempts=settings.restart_max_attempts,
        )

    def allows(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        delay = self.initial_delay_s * (self.backoff_factor ** max(0, attempt - 1))
        return min(delay, self.max_delay_s)


class SessionController:
    def __init__(
        self,
        source: SpeechSource,
        engine: ReconciliationEngine,
        store: SegmentStore,
        fanout: TranslationFanout,
        source_channel: str,
        target_langs: Sequence[str],
        restart_policy: Optional[RestartPolicy] = None,
        metrics_reporter: Optional[SessionMetricsReporter] = None,
        status_listener: Optional[Callable[[SessionState, str], None]] = None,
    ) -> None:
        self.source = source
        self.engine = engine
        self.store = store
        self.fanout = fanout
        self.source_channel = source_channel
        self.target_langs = tuple(target_langs)
        self.restart_policy = restart_policy or RestartPolicy()
        self.metrics_reporter = metrics_reporter
        self.status_listener = status_listener
        self.stop_requested = False
        self.recognition_errors = 0
        self._state = SessionState.IDLE
        self._restart_attempt = 0
        self._restart_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()
        self.source.bind(self)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def restart_attempt(self) -> int:
        return self._restart_attempt

    async def start(self) -> None:
        if self._state is not SessionState.IDLE:
            return
        self.stop_requested = False
        self._restart_attempt = 0
        self.engine.reset_state()
        self.store.clear_interim(self.source_channel)
        if self.metrics_reporter is not None:
            self.metrics_reporter.start_session()
        self._set_state(SessionState.LISTENING, "Listening...")
        try:
            await self.source.start()
        except RecognitionError as exc:
            self.handle_error(exc.code, str(exc))
            if self._state is SessionState.LISTENING:
                self._schedule_restart()
        except Exception as exc:  # noqa: BLE001 - service startup boundary
            logging.error("session_start_failed error=%s", exc)
            self.stop_requested = True
            self._finalize_metrics()
            self._set_state(SessionState.IDLE, f"Startup error: {exc}")

    async def stop(self) -> None:
        if self._state is not SessionState.LISTENING:
            return
        # Set before the source stops so the ``ended`` that follows is terminal.
        self.stop_requested = True
        self._cancel_restart()
        self.fanout.cancel_interim()
        self._set_state(SessionState.STOPPING, "Stopping...")
        try:
            await self.source.stop()
        except asyncio.CancelledError:
            logging.warning("session_stop_cancelled")
            raise
        except Exception as exc:  # noqa: BLE001 - source shutdown boundary
            logging.warning("session_stop_failed error=%s", exc)
        finally:
            if self._state is SessionState.STOPPING:
                self._finish_stop()

    def reset(self) -> None:
        self.engine.reset()
        self.fanout.clear()
        self.store.clear()
        self._notify_status("Cleared.")

    async def shutdown(self) -> None:
        await self.stop()
        await self.fanout.wait_idle()
        for task in list(self._background):
            task.cancel()

    def shutdown_sync(self) -> None:
        self.stop_requested = True
        self._cancel_restart()
        self.fanout.cancel_interim()
        for task in list(self._background):
            task.cancel()

    def handle_result(
        self, result_index: int, results: Sequence[RecognitionResult], timestamp: Optional[datetime] = None
    ) -> None:
        if self._state is SessionState.IDLE:
            return
        now = timestamp or datetime.now()
        interim: Optional[str] = None
        saw_final = False
        for result in results[max(0, result_index):]:
            if result.is_final:
                saw_final = True
                self._accept_final(result.transcript, now)
            else:
                interim = result.transcript

        if saw_final:
            self.fanout.cancel_interim()
        if interim is not None:
            preview = self.engine.preview_interim(interim)
            if preview:
                self.store.set_interim(self.source_channel, preview)
                if self.target_langs:
                    self.fanout.schedule_interim(preview, self.target_langs)
            else:
                self.store.clear_interim(self.source_channel)
                self.fanout.cancel_interim()
        elif saw_final:
            self.store.clear_interim(self.source_channel)

    def handle_started(self) -> None:
        self._restart_attempt = 0
        if self._state is SessionState.LISTENING:
            self._notify_status("Listening...")

    def handle_ended(self) -> None:
        if self._state is SessionState.STOPPING or (self.stop_requested and self._state is not SessionState.IDLE):
            self._finish_stop()
            return
        if self._state is SessionState.LISTENING:
            logging.info("recognition_ended_unexpectedly restarting=1")
            self._schedule_restart()

    def handle_error(self, code: str, message: str = "") -> None:
        if code == NO_SPEECH:
            logging.debug("recognition_no_speech")
            return
        self.recognition_errors += 1
        if self.metrics_reporter is not None:
            self.metrics_reporter.record_error(stage="recognition", error=f"{code}: {message}".strip(": "))
        if code == PERMISSION_DENIED:
            logging.error("recognition_permission_denied message=%s", message)
            self.stop_requested = True
            self._cancel_restart()
            self.fanout.cancel_interim()
            self.store.clear_interim(self.source_channel)
            if self._state is not SessionState.IDLE:
                self._spawn(self.source.stop())
                self._finalize_metrics()
            self._set_state(SessionState.IDLE, "Microphone permission denied.")
            return
        logging.warning("recognition_error code=%s message=%s", code, message)
        if code == NETWORK:
            self._notify_status("Network error. Check your connection.")
        else:
            self._notify_status(f"Recognition error: {message or code}")

    def _accept_final(self, transcript: str, now: datetime) -> Optional[CleanSegment]:
        segment = self.engine.reconcile(transcript, now)
        if segment is None:
            if self.metrics_reporter is not None:
                self.metrics_reporter.record_discard(len(transcript or ""))
            return None
        self.store.append(self.source_channel, segment.source_text, segment_id=segment.id)
        if self.metrics_reporter is not None:
            self.metrics_reporter.record_segment(segment.id, len(segment.source_text))
        if self.target_langs:
            self.fanout.dispatch(segment, self.target_langs)
        return segment

    def _schedule_restart(self) -> None:
        attempt = self._restart_attempt + 1
        if not self.restart_policy.allows(attempt):
            logging.error("recognition_restart_exhausted attempts=%d", self._restart_attempt)
            self.stop_requested = True
            self.fanout.cancel_interim()
            self._finalize_metrics()
            self._set_state(SessionState.IDLE, "Recognition stopped after repeated restart failures.")
            return
        delay = self.restart_policy.delay_for(attempt)
        self._restart_attempt = attempt
        if self.metrics_reporter is not None:
            self.metrics_reporter.record_restart(attempt, delay)
        self._cancel_restart()
        self._restart_task = asyncio.create_task(self._restart_after(delay), name="recognition-restart")

    async def _restart_after(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if self._state is not SessionState.LISTENING or self.stop_requested:
            return
        try:
            await self.source.start()
        except asyncio.CancelledError:
            raise
        except RecognitionError as exc:
            self.handle_error(exc.code, str(exc))
            if self._state is SessionState.LISTENING:
                self._schedule_restart()
        except Exception as exc:  # noqa: BLE001 - restart boundary
            logging.warning("recognition_restart_failed attempt=%d error=%s", self._restart_attempt, exc)
            if self.metrics_reporter is not None:
                self.metrics_reporter.record_error(stage="restart", error=str(exc))
            self._schedule_restart()

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _finish_stop(self) -> None:
        self._cancel_restart()
        self.fanout.cancel_interim()
        self.store.clear_interim(self.source_channel)
        self._finalize_metrics()
        self._set_state(SessionState.IDLE, "Stopped.")

    def _finalize_metrics(self) -> None:
        if self.metrics_reporter is None:
            return
        summary = self.metrics_reporter.finalize_session()
        if summary:
            logging.info("metrics_session_summary %s", summary)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _set_state(self, state: SessionState, message: str) -> None:
        if state is not self._state:
            logging.info("session_state from=%s to=%s", self._state.value, state.value)
        self._state = state
        self._notify_status(message)

    def _notify_status(self, message: str) -> None:
        if self.status_listener is not None:
            self.status_listener(self._state, message)
