from __future__ import annotations

import asyncio
import base64
import logging
import os
from contextlib import suppress
from datetime import datetime
from typing import Any, Callable, Optional

import numpy as np
import sounddevice as sd
from openai import APIStatusError, AsyncOpenAI

from audio_listener import MicrophoneListener, StreamingAudioFrame
from config_utils import read_float_env, read_int_env, read_str_env
from session_controller import (
    NETWORK,
    PERMISSION_DENIED,
    RecognitionError,
    RecognitionResult,
    SpeechEventHandler,
)

REALTIME_SAMPLE_RATE = 24000


class RealtimeSpeechSource:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        language: str,
        session_max_s: float = 55.0,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini-transcribe",
        listener_factory: Optional[Callable[[asyncio.Queue[StreamingAudioFrame]], MicrophoneListener]] = None,
    ) -> None:
        self._loop = loop
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client: Optional[AsyncOpenAI] = None
        self._language = (language or "").strip().lower() or None
        self._session_max_s = session_max_s
        self._session_model = read_str_env("REALTIME_SESSION_MODEL", "gpt-realtime-mini")
        self._model = read_str_env("TRANSCRIPTION_MODEL", model)
        self._base_prompt = (os.getenv("TRANSCRIPTION_BASE_PROMPT") or "").strip()
        self._vad_threshold = read_float_env("REALTIME_VAD_THRESHOLD", 0.45)
        self._vad_prefix_padding_ms = read_int_env("REALTIME_VAD_PREFIX_MS", 220)
        self._vad_silence_duration_ms = read_int_env("REALTIME_VAD_SILENCE_MS", 500)
        self._audio_queue: asyncio.Queue[StreamingAudioFrame] = asyncio.Queue(
            maxsize=read_int_env("AUDIO_QUEUE_MAXSIZE", 64)
        )
        self._listener_factory = listener_factory or self._default_listener
        self._listener: Optional[MicrophoneListener] = None
        self._handler: Optional[SpeechEventHandler] = None
        self._connection: Any = None
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._results: list[RecognitionResult] = []
        self._slot_by_item: dict[str, int] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    def bind(self, handler: SpeechEventHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._running:
            return
        if not self._api_key:
            raise RecognitionError(PERMISSION_DENIED, "OPENAI_API_KEY is required for speech recognition.")
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)

        connection = None
        try:
            connection = await self._client.realtime.connect(model=self._session_model).enter()
            await connection.session.update(session=self._session_config())
        except asyncio.CancelledError:
            await self._close_quietly(connection)
            raise
        except APIStatusError as exc:
            await self._close_quietly(connection)
            if exc.status_code in (401, 403):
                raise RecognitionError(PERMISSION_DENIED, "Authentication failed (401/403).") from exc
            raise RecognitionError(NETWORK, str(exc)) from exc
        except Exception as exc:  # noqa: BLE001 - realtime startup boundary
            await self._close_quietly(connection)
            raise RecognitionError(NETWORK, str(exc)) from exc

        self._listener = self._listener_factory(self._audio_queue)
        try:
            self._listener.start()
        except (sd.PortAudioError, RuntimeError) as exc:
            await self._close_quietly(connection)
            self._listener = None
            raise RecognitionError(PERMISSION_DENIED, f"Microphone unavailable: {exc}") from exc

        self._connection = connection
        self._results = []
        self._slot_by_item = {}
        self._running = True
        self._tasks = [
            asyncio.create_task(self._receive_events(), name="speech-recv"),
            asyncio.create_task(self._pump_audio(), name="speech-audio"),
            asyncio.create_task(self._expire_session(), name="speech-session-timer"),
        ]
        logging.info("speech_session_started model=%s language=%s", self._model, self._language or "auto")
        if self._handler is not None:
            self._handler.handle_started()

    async def stop(self) -> None:
        await self._end_session()

    async def _end_session(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        connection = self._connection
        self._connection = None
        try:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            # Runs even when the caller is cancelled: the connection is closed
            # and the handler always hears ``ended`` exactly once.
            await self._close_quietly(connection)
            while not self._audio_queue.empty():
                try:
                    self._audio_queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
            logging.info("speech_session_ended results=%d", len(self._results))
            if self._handler is not None:
                self._handler.handle_ended()

    def _session_config(self) -> dict[str, Any]:
        transcription_config: dict[str, Any] = {"model": self._model}
        if self._language:
            transcription_config["language"] = self._language
        if self._base_prompt:
            transcription_config["prompt"] = self._base_prompt
        return {
            "type": "transcription",
            "audio": {
                "input": {
                    "format": {"type": "audio/pcm", "rate": REALTIME_SAMPLE_RATE},
                    "transcription": transcription_config,
                    "turn_detection": {
                        "type": "server_vad",
                        "prefix_padding_ms": self._vad_prefix_padding_ms,
                        "silence_duration_ms": self._vad_silence_duration_ms,
                        "threshold": self._vad_threshold,
                    },
                }
            },
        }

    async def _pump_audio(self) -> None:
        while self._running:
            frame = await self._audio_queue.get()
            if self._connection is None:
                continue
            pcm16_bytes = self._to_pcm16(frame.samples, frame.sample_rate)
            await self._connection.input_audio_buffer.append(audio=base64.b64encode(pcm16_bytes).decode("ascii"))

    async def _expire_session(self) -> None:
        await asyncio.sleep(self._session_max_s)
        logging.info("speech_session_expired after_s=%.1f", self._session_max_s)
        await self._end_session()

    async def _receive_events(self) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            async for event in connection:
                self.dispatch_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - realtime boundary
            if self._handler is not None:
                self._handler.handle_error(NETWORK, str(exc))
        if self._running:
            await self._end_session()

    def dispatch_event(self, event: Any) -> None:
        if self._handler is None:
            return
        event_type = getattr(event, "type", "")
        if event_type == "conversation.item.input_audio_transcription.delta":
            item_id = getattr(event, "item_id", "") or ""
            delta = getattr(event, "delta", None) or ""
            if not item_id or not delta.strip():
                return
            slot = self._slot_for(item_id)
            merged = self._merge_preview_text(self._results[slot].transcript, delta)
            self._results[slot] = RecognitionResult(transcript=merged, is_final=False)
            self._handler.handle_result(slot, self._results[: slot + 1], datetime.now())
            return
        if event_type == "conversation.item.input_audio_transcription.completed":
            item_id = getattr(event, "item_id", "") or ""
            transcript = (getattr(event, "transcript", None) or "").strip()
            if not item_id:
                return
            slot = self._slot_for(item_id)
            self._results[slot] = RecognitionResult(transcript=transcript, is_final=True)
            self._handler.handle_result(slot, self._results[: slot + 1], datetime.now())
            return
        if event_type == "conversation.item.input_audio_transcription.failed":
            error = getattr(event, "error", None)
            message = getattr(error, "message", None) or "Realtime transcription failed"
            self._handler.handle_error(self._error_code(message), str(message))
            return
        if event_type == "error":
            message = getattr(getattr(event, "error", None), "message", None) or "Unknown realtime transcription error"
            self._handler.handle_error(self._error_code(str(message)), str(message))

    def _slot_for(self, item_id: str) -> int:
        slot = self._slot_by_item.get(item_id)
        if slot is None:
            slot = len(self._results)
            self._slot_by_item[item_id] = slot
            self._results.append(RecognitionResult(transcript="", is_final=False))
        return slot

    @staticmethod
    def _error_code(message: str) -> str:
        lowered = (message or "").lower()
        if "permission" in lowered or "unauthorized" in lowered or "401" in lowered or "403" in lowered:
            return PERMISSION_DENIED
        if "network" in lowered or "connection" in lowered or "timeout" in lowered:
            return NETWORK
        return "recognition-failed"

    @staticmethod
    async def _close_quietly(connection: Any) -> None:
        if connection is None:
            return
        with suppress(Exception):
            await connection.close()

    def _default_listener(self, queue: asyncio.Queue[StreamingAudioFrame]) -> MicrophoneListener:
        return MicrophoneListener(
            loop=self._loop,
            output_queue=queue,
            sample_rate=REALTIME_SAMPLE_RATE,
            preferred_device=os.getenv("SPEECH_INPUT_DEVICE"),
        )

    @staticmethod
    def _merge_preview_text(current: str, delta: str) -> str:
        current = " ".join((current or "").split())
        delta = " ".join((delta or "").split())
        if not current:
            return delta
        if not delta:
            return current
        if delta in current:
            return current
        return f"{current}{delta}" if current.endswith(("-", "/")) else f"{current} {delta}".strip()

    @staticmethod
    def _to_pcm16(samples: np.ndarray, sample_rate: int) -> bytes:
        mono = np.asarray(samples, dtype=np.float32).reshape(-1)
        if sample_rate != REALTIME_SAMPLE_RATE:
            target_len = max(1, int(round(mono.shape[0] * REALTIME_SAMPLE_RATE / sample_rate)))
            src_x = np.linspace(0.0, 1.0, num=mono.shape[0], endpoint=False)
            dst_x = np.linspace(0.0, 1.0, num=target_len, endpoint=False)
            mono = np.interp(dst_x, src_x, mono).astype(np.float32)
        clamped = np.clip(mono, -1.0, 1.0)
        return (clamped * 32767).astype(np.int16).tobytes()
