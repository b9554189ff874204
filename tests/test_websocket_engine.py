import asyncio
import json

from conftest import make_config
from dumphedge.event_bus import EventBus
from dumphedge.models import Events, RoundInfo
from dumphedge.price_buffer import PriceBuffer
from dumphedge.websocket_engine import MAX_MESSAGE_BYTES, MarketFeed


class StubRounds:
    def __init__(self):
        self.current_round = RoundInfo(slug="r1", up_token_id="UP", down_token_id="DN",
                                       start_time=0.0, end_time=None)

    def seconds_remaining(self):
        return 300.0


def _feed(logger):
    bus = EventBus(logger)
    updates = []
    bus.subscribe(Events.PRICE_UPDATE, updates.append)
    buf = PriceBuffer(capacity=50)
    feed = MarketFeed(make_config(), buf, bus, StubRounds(), logger)
    asyncio.run(feed.subscribe(["UP", "DN"]))
    return feed, buf, updates


def _book(asset, bids, asks):
    return {
        "event_type": "book",
        "asset_id": asset,
        "bids": [{"price": str(p), "size": "100"} for p in bids],
        "asks": [{"price": str(p), "size": "100"} for p in asks],
    }


def test_book_messages_produce_snapshots(logger):
    feed, buf, updates = _feed(logger)
    feed.handle_message(json.dumps([_book("UP", [0.48, 0.47], [0.52, 0.55]), _book("DN", [0.46], [0.50])]))

    assert len(buf) == 1
    s = buf.latest()
    assert (s.up_best_bid, s.up_best_ask) == (0.48, 0.52)
    assert (s.down_best_bid, s.down_best_ask) == (0.46, 0.50)
    assert s.round_slug == "r1"
    assert s.seconds_remaining == 300.0
    assert updates == [s]


def test_price_change_uses_reported_best_prices(logger):
    feed, buf, _ = _feed(logger)
    feed.handle_message(json.dumps([_book("UP", [0.48], [0.52]), _book("DN", [0.46], [0.50])]))
    feed.handle_message(json.dumps({
        "event_type": "price_change",
        "price_changes": [
            {"asset_id": "UP", "price": "0.40", "size": "50", "side": "SELL", "best_bid": "0.39", "best_ask": "0.40"},
        ],
    }))
    s = buf.latest()
    assert s.up_best_ask == 0.40
    assert s.up_best_bid == 0.39
    assert s.down_best_ask == 0.50
    assert len(buf) == 2


def test_level_removal_recomputes_best(logger):
    feed, buf, _ = _feed(logger)
    feed.handle_message(json.dumps([_book("UP", [0.48], [0.52, 0.55]), _book("DN", [0.46], [0.50])]))
    feed.handle_message(json.dumps({
        "event_type": "price_change",
        "asset_id": "UP",
        "changes": [{"price": "0.52", "size": "0", "side": "SELL"}],
    }))
    assert buf.latest().up_best_ask == 0.55


def test_unchanged_prices_do_not_duplicate(logger):
    feed, buf, _ = _feed(logger)
    msg = json.dumps([_book("UP", [0.48], [0.52]), _book("DN", [0.46], [0.50])])
    feed.handle_message(msg)
    feed.handle_message(msg)
    assert len(buf) == 1


def test_empty_side_reports_zero(logger):
    feed, buf, _ = _feed(logger)
    feed.handle_message(json.dumps([_book("UP", [0.48], []), _book("DN", [], [0.50])]))
    s = buf.latest()
    assert s.up_best_ask == 0.0
    assert s.down_best_bid == 0.0


def test_bad_and_foreign_messages_are_ignored(logger):
    feed, buf, _ = _feed(logger)
    feed.handle_message("{not json")
    feed.handle_message("x" * (MAX_MESSAGE_BYTES + 1))
    feed.handle_message(json.dumps(_book("OTHER", [0.1], [0.2])))
    feed.handle_message(json.dumps({"event_type": "last_trade_price", "asset_id": "UP", "price": "0.5"}))
    assert feed.dropped == 2
    assert len(buf) == 0
    assert feed.books["UP"].last_trade == 0.5


def test_resubscribe_drops_old_books(logger):
    feed, _, _ = _feed(logger)
    asyncio.run(feed.subscribe(["A", "B"]))
    assert set(feed.books) == {"A", "B"}
