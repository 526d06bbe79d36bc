from typing import Dict, Mapping, Optional
from dataclasses import dataclass
from datetime import datetime, timezone
import time

from session_orchestrator.domain.engine.base import TokenMeter, TokenMeterState
from session_orchestrator.domain.models.chat_state import (
    PerformanceStats, SessionTokenStats, TokenStats, TurnRecord
)


@dataclass
class TurnMeasurement:
    """Meter snapshot taken right before a generation call"""
    before: TokenMeterState
    started_at: float


class TokenAccountant:
    """Per-turn token deltas and throughput, keyed by the user item's canonical position.

    Session totals are never summed from turns; they are read from the
    engine's cumulative meter, plus a baseline carried over from a chat that
    was preserved across a model unload.
    """

    def __init__(self):
        self._turns: Dict[int, TurnRecord] = {}
        self._baseline = SessionTokenStats()

    def begin(self, meter: Optional[TokenMeter]) -> TurnMeasurement:
        before = meter.get_state() if meter is not None else TokenMeterState()
        return TurnMeasurement(before=before, started_at=time.perf_counter())

    def complete(
        self,
        measurement: TurnMeasurement,
        meter: Optional[TokenMeter],
        position: int,
        user_text: str
    ) -> TurnRecord:
        after = meter.get_state() if meter is not None else measurement.before
        diff = after.diff(measurement.before)
        elapsed_ms = (time.perf_counter() - measurement.started_at) * 1000

        tokens_per_second = diff.total_tokens / elapsed_ms * 1000 if elapsed_ms > 0 else 0.0
        output_tokens_per_second = diff.output_tokens / elapsed_ms * 1000 if elapsed_ms > 0 else 0.0

        record = TurnRecord(
            position=position,
            user_text=user_text,
            completed_at=datetime.now(timezone.utc).isoformat(),
            token_stats=TokenStats(
                input_tokens=diff.input_tokens,
                output_tokens=diff.output_tokens,
                total_tokens=diff.total_tokens
            ),
            performance_stats=PerformanceStats(
                duration_ms=elapsed_ms,
                tokens_per_second=tokens_per_second,
                output_tokens_per_second=output_tokens_per_second
            )
        )
        self._turns[position] = record
        return record

    def lookup(self, position: int, user_text: str) -> Optional[TurnRecord]:
        record = self._turns.get(position)
        if record is None or record.user_text != user_text:
            return None
        return record

    def truncate(self, length: int):
        self._turns = {position: record for position, record in self._turns.items() if position < length}

    def clear(self):
        self._turns = {}

    def snapshot(self) -> Dict[int, TurnRecord]:
        return {position: record.model_copy(deep=True) for position, record in self._turns.items()}

    def restore(self, turns: Mapping[int, TurnRecord], baseline: Optional[SessionTokenStats] = None):
        self._turns = {int(position): record.model_copy(deep=True) for position, record in turns.items()}
        if baseline is not None:
            self._baseline = SessionTokenStats(
                total_input_tokens=baseline.total_input_tokens,
                total_output_tokens=baseline.total_output_tokens,
                total_tokens=baseline.total_tokens
            )

    def reset_baseline(self):
        self._baseline = SessionTokenStats()

    def session_totals(self, meter: Optional[TokenMeter], message_count: int) -> SessionTokenStats:
        state = meter.get_state() if meter is not None else TokenMeterState()
        return SessionTokenStats(
            total_input_tokens=self._baseline.total_input_tokens + state.input_tokens,
            total_output_tokens=self._baseline.total_output_tokens + state.output_tokens,
            total_tokens=self._baseline.total_tokens + state.total_tokens,
            message_count=message_count
        )
