from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from text_normalizer import ends_with_normalized, normalize, overlap_length, split_words


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    timestamp: datetime


@dataclass(frozen=True)
class ReconciliationState:
    last_accepted_raw_text: str = ""
    last_accepted_at: Optional[datetime] = None


@dataclass(frozen=True)
class CleanSegment:
    id: int
    source_text: str
    accepted_at: datetime


@dataclass(frozen=True)
class StageResult:
    accepted: bool
    text: str = ""
    stage: str = ""

    @classmethod
    def accept(cls, text: str) -> "StageResult":
        return cls(accepted=True, text=text)

    @classmethod
    def discard(cls, stage: str) -> "StageResult":
        return cls(accepted=False, stage=stage)


class ComparisonBase(str, Enum):
    ACCEPTED_RAW = "accepted"
    LAST_SEEN = "last_seen"


class ReconcileStage:
    name = "stage"

    def apply(self, state: ReconciliationState, text: str, now: datetime) -> StageResult:
        raise NotImplementedError


class TimeGateFilter(ReconcileStage):
    name = "time_gate"

    def __init__(self, gate_ms: float = 100.0) -> None:
        self.gate_ms = gate_ms

    def apply(self, state: ReconciliationState, text: str, now: datetime) -> StageResult:
        if state.last_accepted_at is None or text != state.last_accepted_raw_text:
            return StageResult.accept(text)
        elapsed_ms = (now - state.last_accepted_at).total_seconds() * 1000.0
        if elapsed_ms < self.gate_ms:
            return StageResult.discard(self.name)
        return StageResult.accept(text)


class ContainmentFilter(ReconcileStage):
    name = "containment"

    def apply(self, state: ReconciliationState, text: str, now: datetime) -> StageResult:
        if state.last_accepted_at is None:
            return StageResult.accept(text)
        if ends_with_normalized(state.last_accepted_raw_text, text):
            return StageResult.discard(self.name)
        return StageResult.accept(text)


class OverlapTrimFilter(ReconcileStage):
    name = "overlap_trim"

    def __init__(self, window: int = 10) -> None:
        self.window = window

    def apply(self, state: ReconciliationState, text: str, now: datetime) -> StageResult:
        new_words = split_words(text)
        overlap_n = overlap_length(split_words(state.last_accepted_raw_text), new_words, self.window)
        trimmed = " ".join(new_words[overlap_n:]).strip()
        if not trimmed:
            return StageResult.discard(self.name)
        return StageResult.accept(trimmed)


DEFAULT_STAGE_ORDER: tuple[str, ...] = (TimeGateFilter.name, ContainmentFilter.name, OverlapTrimFilter.name)


@dataclass(frozen=True)
class ReconciliationConfig:
    gate_ms: float = 100.0
    overlap_window: int = 10
    stage_order: tuple[str, ...] = DEFAULT_STAGE_ORDER
    comparison_base: ComparisonBase = ComparisonBase.ACCEPTED_RAW

    def build_stages(self) -> list[ReconcileStage]:
        stages: list[ReconcileStage] = []
        for name in self.stage_order:
            if name == TimeGateFilter.name:
                stages.append(TimeGateFilter(self.gate_ms))
            elif name == ContainmentFilter.name:
                stages.append(ContainmentFilter())
            elif name == OverlapTrimFilter.name:
                stages.append(OverlapTrimFilter(self.overlap_window))
            else:
                raise ValueError(f"Unknown reconciliation stage: {name}")
        return stages


class ReconciliationEngine:
    def __init__(
        self,
        config: Optional[ReconciliationConfig] = None,
        stages: Optional[Sequence[ReconcileStage]] = None,
    ) -> None:
        self.config = config or ReconciliationConfig()
        self._stages = list(stages) if stages is not None else self.config.build_stages()
        self._state = ReconciliationState()
        self._next_id = 1

    @property
    def state(self) -> ReconciliationState:
        return self._state

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self._stages]

    def reset_state(self) -> None:
        # Segment ids stay monotonic across recognition restarts.
        self._state = ReconciliationState()

    def reset(self) -> None:
        self._state = ReconciliationState()
        self._next_id = 1

    def reconcile(self, raw_text: str, now: datetime) -> Optional[CleanSegment]:
        cleaned = (raw_text or "").strip()
        if not cleaned:
            return None

        candidate = cleaned
        for stage in self._stages:
            result = stage.apply(self._state, candidate, now)
            if not result.accepted:
                logging.debug("reconcile_discard stage=%s text=%r", result.stage, cleaned[:120])
                if self.config.comparison_base is ComparisonBase.LAST_SEEN:
                    self._state = ReconciliationState(last_accepted_raw_text=cleaned, last_accepted_at=now)
                return None
            candidate = result.text

        # The untrimmed fragment becomes the next comparison base.
        self._state = replace(self._state, last_accepted_raw_text=cleaned, last_accepted_at=now)
        segment = CleanSegment(id=self._next_id, source_text=candidate, accepted_at=now)
        self._next_id += 1
        logging.debug("reconcile_accept id=%d text=%r", segment.id, candidate[:120])
        return segment

    def preview_interim(self, text: str) -> Optional[str]:
        cleaned = (text or "").strip()
        normalized = normalize(cleaned)
        if not normalized:
            return None
        if normalized == normalize(self._state.last_accepted_raw_text):
            return None
        return cleaned
