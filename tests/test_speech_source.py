from __future__ import annotations

import asyncio
import os
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
from openai import APIStatusError

from session_controller import NETWORK, PERMISSION_DENIED, RecognitionError, RecognitionResult
from speech_source import RealtimeSpeechSource


def _api_status_error(status_code: int, message: str) -> APIStatusError:
    request = httpx.Request("GET", "https://api.openai.com/v1/realtime")
    response = httpx.Response(status_code=status_code, request=request)
    return APIStatusError(message, response=response, body={"error": {"message": message}})


def _delta(item_id: str, delta: str) -> SimpleNamespace:
    return SimpleNamespace(type="conversation.item.input_audio_transcription.delta", item_id=item_id, delta=delta)


def _completed(item_id: str, transcript: str) -> SimpleNamespace:
    return SimpleNamespace(
        type="conversation.item.input_audio_transcription.completed", item_id=item_id, transcript=transcript
    )


class RealtimeSpeechSourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.handler = MagicMock()
        self.source = RealtimeSpeechSource(loop=self.loop, language="ar", api_key="test-key")
        self.source.bind(self.handler)

    def tearDown(self) -> None:
        self.loop.close()

    def _last_result_call(self) -> tuple[int, list[RecognitionResult]]:
        args = self.handler.handle_result.call_args.args
        return args[0], list(args[1])

    def test_deltas_rewrite_one_interim_slot(self) -> None:
        self.source.dispatch_event(_delta("item-1", "hello"))
        self.source.dispatch_event(_delta("item-1", "world"))
        self.assertEqual(self._last_result_call(), (0, [RecognitionResult("hello world", False)]))

    def test_completed_item_marks_slot_final(self) -> None:
        self.source.dispatch_event(_delta("item-1", "hello"))
        self.source.dispatch_event(_completed("item-1", " Hello world. "))
        self.assertEqual(self._last_result_call(), (0, [RecognitionResult("Hello world.", True)]))

    def test_new_items_get_new_slots(self) -> None:
        self.source.dispatch_event(_completed("item-1", "first"))
        self.source.dispatch_event(_delta("item-2", "sec"))
        index, results = self._last_result_call()
        self.assertEqual(index, 1)
        self.assertEqual(results, [RecognitionResult("first", True), RecognitionResult("sec", False)])

    def test_blank_deltas_are_ignored(self) -> None:
        self.source.dispatch_event(_delta("item-1", "   "))
        self.source.dispatch_event(_delta("", "text"))
        self.handler.handle_result.assert_not_called()

    def test_error_events_are_classified(self) -> None:
        self.source.dispatch_event(SimpleNamespace(type="error", error=SimpleNamespace(message="Connection reset")))
        self.handler.handle_error.assert_called_with(NETWORK, "Connection reset")
        failed = SimpleNamespace(
            type="conversation.item.input_audio_transcription.failed",
            error=SimpleNamespace(message="401 Unauthorized"),
        )
        self.source.dispatch_event(failed)
        self.handler.handle_error.assert_called_with(PERMISSION_DENIED, "401 Unauthorized")
        self.assertEqual(RealtimeSpeechSource._error_code("model overloaded"), "recognition-failed")

    def test_missing_key_is_permission_denied(self) -> None:
        original = os.environ.pop("OPENAI_API_KEY", None)
        try:
            source = RealtimeSpeechSource(loop=self.loop, language="ar")
            with self.assertRaises(RecognitionError) as ctx:
                self.loop.run_until_complete(source.start())
            self.assertEqual(ctx.exception.code, PERMISSION_DENIED)
        finally:
            if original is not None:
                os.environ["OPENAI_API_KEY"] = original

    def test_auth_failure_on_connect_is_permission_denied(self) -> None:
        client = MagicMock()
        client.realtime.connect.return_value.enter = AsyncMock(side_effect=_api_status_error(401, "bad key"))
        self.source._client = client
        with self.assertRaises(RecognitionError) as ctx:
            self.loop.run_until_complete(self.source.start())
        self.assertEqual(ctx.exception.code, PERMISSION_DENIED)
        self.assertFalse(self.source.is_running)

    def test_microphone_failure_closes_connection(self) -> None:
        connection = MagicMock()
        connection.session.update = AsyncMock()
        connection.close = AsyncMock()
        client = MagicMock()
        client.realtime.connect.return_value.enter = AsyncMock(return_value=connection)
        listener = MagicMock()
        listener.start.side_effect = RuntimeError("no input device")
        source = RealtimeSpeechSource(
            loop=self.loop, language="ar", api_key="test-key", listener_factory=lambda queue: listener
        )
        source._client = client
        with self.assertRaises(RecognitionError) as ctx:
            self.loop.run_until_complete(source.start())
        self.assertEqual(ctx.exception.code, PERMISSION_DENIED)
        connection.close.assert_awaited_once()
        session = connection.session.update.call_args.kwargs["session"]
        self.assertEqual(session["audio"]["input"]["transcription"]["language"], "ar")

    def test_cancelled_connect_closes_connection(self) -> None:
        connection = MagicMock()
        connection.session.update = AsyncMock(side_effect=asyncio.CancelledError())
        connection.close = AsyncMock()
        client = MagicMock()
        client.realtime.connect.return_value.enter = AsyncMock(return_value=connection)
        self.source._client = client
        with self.assertRaises(asyncio.CancelledError):
            self.loop.run_until_complete(self.source.start())
        connection.close.assert_awaited_once()
        self.assertFalse(self.source.is_running)

    def test_cancelled_stop_still_closes_and_reports_end(self) -> None:
        connection = MagicMock()
        connection.close = AsyncMock()

        async def slow_to_cancel() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                await asyncio.sleep(0.05)
                raise

        async def scenario() -> None:
            worker = asyncio.create_task(slow_to_cancel())
            await asyncio.sleep(0)
            self.source._tasks = [worker]
            self.source._connection = connection
            self.source._running = True
            ending = asyncio.create_task(self.source.stop())
            await asyncio.sleep(0.01)
            ending.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await ending

        self.loop.run_until_complete(scenario())
        connection.close.assert_awaited_once()
        self.handler.handle_ended.assert_called_once()
        self.assertFalse(self.source.is_running)

    def test_resample_to_pcm16_24khz_outputs_audio_bytes(self) -> None:
        samples = np.zeros(1600, dtype=np.float32)
        self.assertEqual(len(RealtimeSpeechSource._to_pcm16(samples, 16000)), 2400 * 2)
        self.assertEqual(len(RealtimeSpeechSource._to_pcm16(samples, 24000)), 1600 * 2)

    def test_merge_preview_text_collapses_spacing(self) -> None:
        self.assertEqual(RealtimeSpeechSource._merge_preview_text("hello   ", "  world "), "hello world")
        self.assertEqual(RealtimeSpeechSource._merge_preview_text("hello world", "world"), "hello world")
        self.assertEqual(RealtimeSpeechSource._merge_preview_text("", "hi"), "hi")


if __name__ == "__main__":
    unittest.main()
