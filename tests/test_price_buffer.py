import pytest

from conftest import snap
from dumphedge.price_buffer import PriceBuffer


def test_capacity_is_never_exceeded(clock):
    buf = PriceBuffer(capacity=3, clock=clock)
    for i in range(5):
        buf.push(snap(clock.now + i, 0.5, 0.5))
    assert len(buf) == 3
    assert [s.timestamp for s in buf] == [clock.now + 2, clock.now + 3, clock.now + 4]


def test_get_recent_filters_by_window(clock):
    buf = PriceBuffer(capacity=10, clock=clock)
    buf.push(snap(clock.now - 10, 0.6, 0.4))
    buf.push(snap(clock.now - 2, 0.55, 0.45))
    buf.push(snap(clock.now - 1, 0.5, 0.5))

    recent = buf.get_recent(3.0)
    assert [s.up_best_ask for s in recent] == [0.55, 0.5]


def test_get_recent_empty_when_nothing_qualifies(clock):
    buf = PriceBuffer(capacity=10, clock=clock)
    assert buf.get_recent(3.0) == []
    buf.push(snap(clock.now - 60, 0.6, 0.4))
    assert buf.get_recent(3.0) == []


def test_out_of_order_pushes_are_sorted(clock):
    buf = PriceBuffer(capacity=10, clock=clock)
    buf.push(snap(clock.now - 1, 0.5, 0.5))
    buf.push(snap(clock.now - 2, 0.6, 0.4))
    buf.push(snap(clock.now - 30, 0.7, 0.3))

    recent = buf.get_recent(3.0)
    assert [s.timestamp for s in recent] == [clock.now - 2, clock.now - 1]


def test_result_is_a_copy(clock):
    buf = PriceBuffer(capacity=10, clock=clock)
    buf.push(snap(clock.now, 0.5, 0.5))
    recent = buf.get_recent(3.0)
    buf.push(snap(clock.now, 0.4, 0.6))
    assert len(recent) == 1


def test_latest_by_round(clock):
    buf = PriceBuffer(capacity=10, clock=clock)
    buf.push(snap(clock.now - 2, 0.5, 0.5, slug="a"))
    buf.push(snap(clock.now - 1, 0.4, 0.6, slug="b"))
    assert buf.latest().round_slug == "b"
    assert buf.latest("a").up_best_ask == 0.5
    assert buf.latest("missing") is None


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        PriceBuffer(capacity=0)
