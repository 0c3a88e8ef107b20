from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from PyQt6.QtWidgets import QApplication
from qasync import QEventLoop

from config_utils import LiveTranslatorSettings
from metrics_reporter import SessionMetricsReporter
from overlay_ui import OverlayWindow
from reconciliation import ComparisonBase, ReconciliationConfig, ReconciliationEngine
from segment_store import SegmentStore
from session_controller import RestartPolicy, SessionController, SessionState, SpeechSource
from speech_source import RealtimeSpeechSource
from translation_fanout import TranslationCache, TranslationFanout
from translation_service import TranslationProvider, build_translation_provider


def build_reconciliation_config(settings: LiveTranslatorSettings) -> ReconciliationConfig:
    return ReconciliationConfig(
        gate_ms=settings.gate_ms,
        overlap_window=settings.overlap_window,
        stage_order=settings.stages,
        comparison_base=ComparisonBase(settings.comparison_base),
    )


class LiveTranslatorApp:
    def __init__(
        self,
        ui: OverlayWindow,
        settings: LiveTranslatorSettings,
        source: SpeechSource,
        provider: TranslationProvider,
    ) -> None:
        self.ui = ui
        self.settings = settings
        self.provider = provider
        self.metrics_reporter = SessionMetricsReporter(
            enabled=settings.metrics_enabled,
            output_path=settings.metrics_output_path,
            summary_path=settings.metrics_summary_path,
        )
        channels = (settings.source_language, *settings.target_languages)
        self.store = SegmentStore(channels)
        self.engine = ReconciliationEngine(build_reconciliation_config(settings))
        self.fanout = TranslationFanout(
            provider=provider,
            store=self.store,
            source_lang=settings.source_language,
            cache=TranslationCache(settings.translation_cache_size),
            metrics_reporter=self.metrics_reporter,
            interim_delay_s=settings.interim_translation_delay_s or None,
        )
        self.controller = SessionController(
            source=source,
            engine=self.engine,
            store=self.store,
            fanout=self.fanout,
            source_channel=settings.source_language,
            target_langs=settings.target_languages,
            restart_policy=RestartPolicy.from_settings(settings),
            metrics_reporter=self.metrics_reporter,
            status_listener=self._on_status,
        )
        self._toggle_task: Optional[asyncio.Task[None]] = None
        self._stop_task: Optional[asyncio.Task[None]] = None

        self.ui.bind_store(self.store)
        self.ui.toggle_listening.connect(self._on_toggle_listening)
        self.ui.clear_requested.connect(self._on_clear_requested)
        self.ui.set_status(
            f"Idle. {settings.source_language} -> {', '.join(settings.target_languages)} via {provider.name}."
        )

    def shutdown_sync(self) -> None:
        if self._toggle_task and not self._toggle_task.done():
            self._toggle_task.cancel()
        if self.controller.state is not SessionState.IDLE:
            self.metrics_reporter.finalize_session()
        self.controller.shutdown_sync()

    async def shutdown(self) -> None:
        if self._stop_task is not None and not self._stop_task.done():
            await asyncio.wait({self._stop_task})
        await self.controller.shutdown()
        await self.provider.aclose()

    def _on_toggle_listening(self, should_listen: bool) -> None:
        self._schedule_toggle(should_listen)

    def _schedule_toggle(self, should_listen: bool) -> None:
        if self._toggle_task and not self._toggle_task.done():
            self._toggle_task.cancel()
        task = asyncio.create_task(self._run_toggle(should_listen), name="toggle-listening")
        self._toggle_task = task

        def _finalize(done_task: asyncio.Task[None]) -> None:
            if self._toggle_task is done_task:
                self._toggle_task = None
            try:
                done_task.result()
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001 - task boundary
                self.ui.set_status(f"Toggle error: {exc}")

        task.add_done_callback(_finalize)

    async def _run_toggle(self, should_listen: bool) -> None:
        # A stop runs in its own task and is never cancelled by a later toggle.
        if self._stop_task is not None and not self._stop_task.done():
            await asyncio.wait({self._stop_task})
        if should_listen:
            await self.controller.start()
            return
        self._stop_task = asyncio.create_task(self.controller.stop(), name="stop-listening")
        await asyncio.shield(self._stop_task)

    def _on_clear_requested(self) -> None:
        self.controller.reset()

    def _on_status(self, state: SessionState, message: str) -> None:
        self.ui.set_listening(state is SessionState.LISTENING)
        if message:
            self.ui.set_status(message)


def main() -> None:
    load_dotenv()
    log_level_name = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")

    settings = LiveTranslatorSettings.from_env()
    app = QApplication(sys.argv)
    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)

    overlay = OverlayWindow((settings.source_language, *settings.target_languages))
    source = RealtimeSpeechSource(
        loop=loop,
        language=settings.source_language,
        session_max_s=settings.speech_session_max_s,
    )
    provider = build_translation_provider(settings)
    translator = LiveTranslatorApp(overlay, settings, source, provider)
    app.aboutToQuit.connect(translator.shutdown_sync)
    overlay.show()

    with loop:
        loop.run_forever()


if __name__ == "__main__":
    main()
