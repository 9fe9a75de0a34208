"""DeterministicClock tests."""

from datetime import date, datetime, timezone

from export_kernel.domain.clock import DeterministicClock, SystemClock


class TestDeterministicClock:
    def test_default_time(self):
        clock = DeterministicClock()
        assert clock.now() == datetime(2025, 2, 3, 9, 0, 0, tzinfo=timezone.utc)
        assert clock.today() == date(2025, 2, 3)

    def test_repeatable_until_advanced(self):
        clock = DeterministicClock()
        assert clock.now() == clock.now()
        clock.advance(60)
        assert clock.now().minute == 1

    def test_tick_returns_new_time(self):
        clock = DeterministicClock()
        before = clock.now()
        assert (clock.tick() - before).total_seconds() == 1

    def test_set_time_resets_advance(self):
        clock = DeterministicClock()
        clock.advance(3600)
        target = datetime(2025, 3, 1, tzinfo=timezone.utc)
        clock.set_time(target)
        assert clock.now() == target


def test_system_clock_is_timezone_aware():
    assert SystemClock().now().tzinfo is not None
