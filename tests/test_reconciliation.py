from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from reconciliation import (
    ComparisonBase,
    ContainmentFilter,
    OverlapTrimFilter,
    ReconciliationConfig,
    ReconciliationEngine,
    ReconciliationState,
    TimeGateFilter,
)

T0 = datetime(2024, 1, 1, 12, 0, 0)


def _at(ms: int) -> datetime:
    return T0 + timedelta(milliseconds=ms)


class ReconcileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = ReconciliationEngine()

    def test_first_fragment_is_accepted_unchanged(self) -> None:
        segment = self.engine.reconcile("  hello world ", _at(0))
        assert segment is not None
        self.assertEqual(segment.id, 1)
        self.assertEqual(segment.source_text, "hello world")
        self.assertEqual(segment.accepted_at, _at(0))

    def test_time_gate_discards_identical_refire(self) -> None:
        self.assertIsNotNone(self.engine.reconcile("hello world", _at(0)))
        state_after_accept = self.engine.state
        self.assertIsNone(self.engine.reconcile("hello world", _at(50)))
        self.assertEqual(self.engine.state, state_after_accept)

    def test_full_duplicate_after_gate_is_still_discarded(self) -> None:
        self.engine.reconcile("hello world", _at(0))
        self.assertIsNone(self.engine.reconcile("hello world", _at(500)))
        self.assertEqual(self.engine.state.last_accepted_at, _at(0))

    def test_containment_discards_restart_echo(self) -> None:
        self.engine.reconcile("the quick brown fox", _at(0))
        self.assertIsNone(self.engine.reconcile("brown fox", _at(2000)))
        self.assertIsNone(self.engine.reconcile("Brown fox.", _at(2100)))

    def test_overlap_is_trimmed(self) -> None:
        self.engine.reconcile("hello world foo", _at(0))
        segment = self.engine.reconcile("world foo bar", _at(1000))
        assert segment is not None
        self.assertEqual(segment.source_text, "bar")
        self.assertEqual(segment.id, 2)

    def test_state_keeps_untrimmed_raw_text(self) -> None:
        self.engine.reconcile("hello world foo", _at(0))
        self.engine.reconcile("world foo bar", _at(1000))
        self.assertEqual(self.engine.state.last_accepted_raw_text, "world foo bar")
        segment = self.engine.reconcile("foo bar baz", _at(2000))
        assert segment is not None
        self.assertEqual(segment.source_text, "baz")

    def test_independent_fragment_passes_through(self) -> None:
        self.engine.reconcile("good morning", _at(0))
        segment = self.engine.reconcile("see you later", _at(1000))
        assert segment is not None
        self.assertEqual(segment.source_text, "see you later")

    def test_empty_input_is_discarded_without_state_change(self) -> None:
        self.assertIsNone(self.engine.reconcile("   ", _at(0)))
        self.assertEqual(self.engine.state, ReconciliationState())

    def test_ids_are_monotonic_and_reset(self) -> None:
        ids = [
            self.engine.reconcile(text, _at(i * 1000)).id  # type: ignore[union-attr]
            for i, text in enumerate(["one", "two", "three"])
        ]
        self.assertEqual(ids, [1, 2, 3])
        self.engine.reset_state()
        self.assertEqual(self.engine.reconcile("four", _at(5000)).id, 4)  # type: ignore[union-attr]
        self.engine.reset()
        self.assertEqual(self.engine.state, ReconciliationState())
        self.assertEqual(self.engine.reconcile("five", _at(6000)).id, 1)  # type: ignore[union-attr]

    def test_adjacent_segments_never_repeat_overlap(self) -> None:
        fragments = [
            "we are testing the engine",
            "testing the engine with overlapping",
            "with overlapping fragments today",
            "fragments today",
        ]
        accepted = []
        for i, fragment in enumerate(fragments):
            segment = self.engine.reconcile(fragment, _at(i * 1000))
            if segment is not None:
                accepted.append(segment.source_text)
        self.assertEqual(accepted, ["we are testing the engine", "with overlapping", "fragments today"])


class InterimPreviewTests(unittest.TestCase):
    def test_interim_equal_to_last_accepted_is_suppressed(self) -> None:
        engine = ReconciliationEngine()
        engine.reconcile("hello world", _at(0))
        self.assertIsNone(engine.preview_interim("Hello, world"))
        self.assertEqual(engine.preview_interim(" hello world again "), "hello world again")
        self.assertIsNone(engine.preview_interim("..."))

    def test_interim_never_changes_state(self) -> None:
        engine = ReconciliationEngine()
        engine.preview_interim("partial words")
        self.assertEqual(engine.state, ReconciliationState())


class ConfigurationTests(unittest.TestCase):
    def test_stage_order_and_thresholds_are_configurable(self) -> None:
        config = ReconciliationConfig(gate_ms=50, overlap_window=5, stage_order=("overlap_trim", "time_gate"))
        engine = ReconciliationEngine(config)
        self.assertEqual(engine.stage_names, ["overlap_trim", "time_gate"])

    def test_unknown_stage_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ReconciliationConfig(stage_order=("bogus",)).build_stages()

    def test_gate_threshold_is_respected(self) -> None:
        engine = ReconciliationEngine(ReconciliationConfig(gate_ms=50, stage_order=("time_gate",)))
        engine.reconcile("again", _at(0))
        self.assertIsNone(engine.reconcile("again", _at(40)))
        self.assertIsNotNone(engine.reconcile("again", _at(100)))

    def test_window_limits_trim(self) -> None:
        engine = ReconciliationEngine(ReconciliationConfig(overlap_window=2))
        engine.reconcile("one two three four", _at(0))
        segment = engine.reconcile("two three four five", _at(1000))
        assert segment is not None
        self.assertEqual(segment.source_text, "two three four five")

    def test_last_seen_base_updates_on_discard(self) -> None:
        engine = ReconciliationEngine(ReconciliationConfig(comparison_base=ComparisonBase.LAST_SEEN))
        engine.reconcile("the quick brown fox", _at(0))
        self.assertIsNone(engine.reconcile("brown fox", _at(1000)))
        self.assertEqual(engine.state.last_accepted_raw_text, "brown fox")

    def test_accepted_base_ignores_discards(self) -> None:
        engine = ReconciliationEngine()
        engine.reconcile("the quick brown fox", _at(0))
        engine.reconcile("brown fox", _at(1000))
        self.assertEqual(engine.state.last_accepted_raw_text, "the quick brown fox")


class StageTests(unittest.TestCase):
    def test_stages_do_not_fire_without_history(self) -> None:
        state = ReconciliationState()
        for stage in (TimeGateFilter(), ContainmentFilter(), OverlapTrimFilter()):
            result = stage.apply(state, "fresh text", _at(0))
            self.assertTrue(result.accepted)
            self.assertEqual(result.text, "fresh text")

    def test_discard_reports_stage_name(self) -> None:
        state = ReconciliationState(last_accepted_raw_text="hello there", last_accepted_at=_at(0))
        result = ContainmentFilter().apply(state, "there", _at(10))
        self.assertFalse(result.accepted)
        self.assertEqual(result.stage, "containment")


if __name__ == "__main__":
    unittest.main()
