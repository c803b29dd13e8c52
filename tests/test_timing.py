from datetime import datetime

from rfmpd.timing import Timing


def test_calculate_delay_range():
    timing = Timing(0.2, 0.4)
    for _ in range(100):
        assert 0.2 <= timing.calculate_delay() <= 0.6


def test_calculate_sync_delay_range():
    timing = Timing(0.2, 0.4)
    for _ in range(100):
        assert 0.2 <= timing.calculate_sync_delay() <= 2.6


def test_calculate_fragment_delay_first_fragment():
    timing = Timing(0.2, 0.4)
    for _ in range(100):
        assert 0.2 <= timing.calculate_fragment_delay(0, 5) <= 0.6


def test_calculate_fragment_delay_subsequent_fragments():
    timing = Timing(0.2, 0.4)
    for _ in range(100):
        assert 0.05 <= timing.calculate_fragment_delay(2, 5) <= 0.1


def test_calculate_rebroadcast_delay_range():
    timing = Timing(0.2, 0.4)
    for _ in range(100):
        assert 1.2 <= timing.calculate_rebroadcast_delay() <= 3.6


def test_zero_jitter_gives_base_delay():
    assert Timing(0.3, 0.0).calculate_delay() == 0.3


def test_record_transmission():
    timing = Timing(0.1, 0.1)
    stats = timing.get_stats()
    assert stats["transmissions"] == 0
    assert "last_transmit" not in stats

    timing.record_transmission()
    timing.record_transmission()

    stats = timing.get_stats()
    assert stats["transmissions"] == 2
    assert isinstance(datetime.fromisoformat(stats["last_transmit"]), datetime)


def test_get_stats():
    stats = Timing(0.5, 1.0).get_stats()
    assert stats["base_delay"] == 0.5
    assert stats["jitter"] == 1.0