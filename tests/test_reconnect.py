import pytest

from minexus.reconnect import ReconnectionManager


def test_reconnection_manager_progression():
    initial, maximum = 0.1, 5.0
    rm = ReconnectionManager(initial, maximum)
    rm.jitter_enabled = False

    assert rm.current_delay == initial
    assert rm.attempt_count == 0

    assert rm.next_delay() == pytest.approx(initial)
    assert rm.next_delay() == pytest.approx(2 * initial)
    assert rm.next_delay() == pytest.approx(4 * initial)

    later = [rm.next_delay() for _ in range(10)]
    assert max(later) <= maximum

    rm.reset_delay()
    assert rm.current_delay == initial
    assert rm.attempt_count == 0


def test_delay_caps_at_max():
    rm = ReconnectionManager(0.1, 5.0)
    rm.jitter_enabled = False
    for _ in range(13):
        rm.next_delay()
    assert rm.current_delay == 5.0
    assert rm.is_at_max_delay is True


def _jittered_first_delays(rm, count):
    delays = []
    for _ in range(count):
        delays.append(rm.next_delay())
        rm.reset_delay()
    return delays


def test_reconnection_manager_jitter():
    initial = 1.0
    rm = ReconnectionManager(initial, 10.0)
    rm.jitter_enabled = True

    delays = _jittered_first_delays(rm, 100)

    assert len(delays) == 100
    assert len(set(delays)) >= 3
    assert min(delays) >= 0.1
    assert max(delays) <= initial


def test_reconnection_manager_stats():
    initial, maximum = 0.5, 30.0
    rm = ReconnectionManager(initial, maximum)

    stats = rm.stats()
    assert stats.attempt_count == 0
    assert stats.current_delay == initial
    assert stats.initial_delay == initial
    assert stats.max_delay == maximum
    assert stats.is_at_max_delay is False
    assert stats.jitter_enabled is True

    for _ in range(5):
        rm.next_delay()

    stats = rm.stats()
    assert stats.attempt_count == 5
    assert stats.current_delay != initial


def test_edge_case_tiny_delay_with_jitter():
    rm = ReconnectionManager(1e-9, 1e-6)
    rm.jitter_enabled = True
    assert rm.next_delay() >= 0.1


def test_edge_case_initial_equals_max():
    rm = ReconnectionManager(5.0, 5.0)
    rm.jitter_enabled = True
    delays = [rm.next_delay() for _ in range(3)]
    assert max(delays) <= 5.0


def test_edge_case_zero_delays_with_jitter():
    rm = ReconnectionManager(0, 0)
    rm.jitter_enabled = True
    assert rm.next_delay() >= 0.1


def test_edge_case_tiny_delay_without_jitter_preserved():
    rm = ReconnectionManager(1e-9, 1e-6)
    rm.jitter_enabled = False
    assert rm.next_delay() == 1e-9


def test_backoff_multiplier_ignores_values_not_above_one():
    rm = ReconnectionManager(0.1, 5.0)
    rm.backoff_multiplier = 1.0
    assert rm.backoff_multiplier == 2.0
    rm.backoff_multiplier = 0.5
    assert rm.backoff_multiplier == 2.0


def test_backoff_multiplier_applies():
    rm = ReconnectionManager(0.1, 5.0)
    rm.jitter_enabled = False
    rm.backoff_multiplier = 3.0
    rm.next_delay()
    assert rm.next_delay() == pytest.approx(0.3)
    assert rm.stats().backoff_multiplier == 3.0


def test_jitter_can_be_disabled():
    rm = ReconnectionManager(0.1, 5.0)
    assert rm.jitter_enabled is True
    rm.jitter_enabled = False
    assert rm.stats().jitter_enabled is False