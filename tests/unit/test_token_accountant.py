from session_orchestrator.domain.chat.token_accountant import TokenAccountant
from session_orchestrator.domain.models.chat_state import SessionTokenStats
from session_orchestrator.infrastructure.engine.mock_engine import MockTokenMeter


class TestTokenAccountant:
    def test_turn_stats_are_meter_deltas(self):
        meter = MockTokenMeter()
        meter.add(10, 0)
        accountant = TokenAccountant()

        measurement = accountant.begin(meter)
        meter.add(5, 7)
        record = accountant.complete(measurement, meter, position=1, user_text="hi")

        assert record.token_stats.input_tokens == 5
        assert record.token_stats.output_tokens == 7
        assert record.token_stats.total_tokens == 12
        assert record.performance_stats.duration_ms >= 0
        assert record.performance_stats.tokens_per_second >= 0

    def test_missing_meter_yields_zero_stats(self):
        accountant = TokenAccountant()

        record = accountant.complete(accountant.begin(None), None, position=1, user_text="hi")

        assert record.token_stats.total_tokens == 0

    def test_lookup_is_guarded_by_user_text(self):
        meter = MockTokenMeter()
        accountant = TokenAccountant()
        accountant.complete(accountant.begin(meter), meter, position=1, user_text="hi")

        assert accountant.lookup(1, "hi") is not None
        assert accountant.lookup(1, "hello") is None
        assert accountant.lookup(3, "hi") is None

    def test_same_text_twice_keeps_separate_stats(self):
        meter = MockTokenMeter()
        accountant = TokenAccountant()

        first = accountant.begin(meter)
        meter.add(1, 1)
        accountant.complete(first, meter, position=1, user_text="again")
        second = accountant.begin(meter)
        meter.add(3, 3)
        accountant.complete(second, meter, position=3, user_text="again")

        assert accountant.lookup(1, "again").token_stats.total_tokens == 2
        assert accountant.lookup(3, "again").token_stats.total_tokens == 6

    def test_truncate_drops_later_turns(self):
        meter = MockTokenMeter()
        accountant = TokenAccountant()
        accountant.complete(accountant.begin(meter), meter, position=1, user_text="a")
        accountant.complete(accountant.begin(meter), meter, position=3, user_text="c")

        accountant.truncate(3)

        assert accountant.lookup(1, "a") is not None
        assert accountant.lookup(3, "c") is None

    def test_session_totals_come_from_the_meter(self):
        meter = MockTokenMeter()
        meter.add(4, 6)

        totals = TokenAccountant().session_totals(meter, message_count=2)

        assert totals == SessionTokenStats(
            total_input_tokens=4, total_output_tokens=6, total_tokens=10, message_count=2
        )

    def test_baseline_is_added_and_can_be_reset(self):
        meter = MockTokenMeter()
        meter.add(1, 1)
        accountant = TokenAccountant()
        accountant.restore({}, SessionTokenStats(
            total_input_tokens=3, total_output_tokens=4, total_tokens=7, message_count=9
        ))

        totals = accountant.session_totals(meter, message_count=2)
        assert (totals.total_input_tokens, totals.total_output_tokens, totals.total_tokens) == (4, 5, 9)
        assert totals.message_count == 2

        accountant.reset_baseline()
        assert accountant.session_totals(meter, message_count=2).total_tokens == 2

    def test_snapshot_restore(self):
        meter = MockTokenMeter()
        accountant = TokenAccountant()
        accountant.complete(accountant.begin(meter), meter, position=1, user_text="a")

        restored = TokenAccountant()
        restored.restore(accountant.snapshot())

        assert restored.lookup(1, "a") == accountant.lookup(1, "a")
