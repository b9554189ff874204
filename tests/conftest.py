import logging

import pytest

from dumphedge.config import BotConfig, build_config
from dumphedge.models import PriceSnapshot


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def snap(ts, up_ask, down_ask, slug="btc-updown-15m-1", up_bid=None, down_bid=None):
    return PriceSnapshot(
        timestamp=ts,
        round_slug=slug,
        seconds_remaining=600.0,
        up_token_id="up-token",
        down_token_id="down-token",
        up_best_bid=up_bid if up_bid is not None else max(up_ask - 0.01, 0.0),
        up_best_ask=up_ask,
        down_best_bid=down_bid if down_bid is not None else max(down_ask - 0.01, 0.0),
        down_best_ask=down_ask,
    )


def make_config(**sections) -> BotConfig:
    raw = {"system": {"dry_run": True}}
    for name, values in sections.items():
        raw.setdefault(name, {}).update(values)
    return build_config(raw)


@pytest.fixture
def logger():
    log = logging.getLogger("dumphedge-tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_config()
