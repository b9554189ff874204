# dumphedge/websocket_engine.py
import asyncio
import aiohttp
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import BotConfig
from .event_bus import EventBus
from .models import Events, PriceSnapshot
from .price_buffer import PriceBuffer

MAX_MESSAGE_BYTES = 1 << 20


@dataclass(slots=True)
class OrderBook:
    """Price levels for one token. Empty side reports 0.0."""
    bids: Dict[float, float] = field(default_factory=dict)
    asks: Dict[float, float] = field(default_factory=dict)
    best_bid: float = 0.0
    best_ask: float = 0.0
    last_trade: Optional[float] = None

    def recompute(self):
        self.best_bid = max(self.bids) if self.bids else 0.0
        self.best_ask = min(self.asks) if self.asks else 0.0

    def set_level(self, side: str, price: float, size: float):
        levels = self.bids if side.upper() in ("BUY", "BID") else self.asks
        if size <= 0:
            levels.pop(price, None)
        else:
            levels[price] = size


def _levels(raw: Any) -> Dict[float, float]:
    out = {}
    for lvl in raw or []:
        try:
            price, size = float(lvl["price"]), float(lvl["size"])
        except (KeyError, TypeError, ValueError):
            continue
        if size > 0:
            out[price] = size
    return out


class MarketFeed:
    """
    Streams the CLOB market channel for the active round's two tokens,
    keeps a book per token and pushes a PriceSnapshot into the buffer
    whenever either side's best price changes.
    """
    def __init__(self, config: BotConfig, buffer: PriceBuffer, bus: EventBus, round_tracker, logger):
        self.cfg = config.network
        self.buffer = buffer
        self.bus = bus
        self.rounds = round_tracker
        self.logger = logger

        self.books: Dict[str, OrderBook] = {}
        self.token_ids: List[str] = []
        self.connected = False
        self.running = False
        self.messages = 0
        self.dropped = 0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._last_emitted: Optional[tuple] = None
        self._opened = False

    # --- Subscription ---

    async def subscribe(self, token_ids: List[str]):
        """
        Replaces the subscribed token set. Books of tokens no longer watched are dropped.
        """
        self.token_ids = list(token_ids)
        self.books = {t: self.books.get(t, OrderBook()) for t in self.token_ids}
        self._last_emitted = None
        if self._ws is not None and not self._ws.closed and self.token_ids:
            await self._ws.send_json({"type": "market", "assets_ids": self.token_ids})
            self.logger.info(f"📡 Subscribed to {len(self.token_ids)} tokens")

    # --- Message handling ---

    def handle_message(self, raw: str):
        """
        Parses one text frame. Malformed or oversized frames are counted and ignored.
        """
        if len(raw) > MAX_MESSAGE_BYTES:
            self.dropped += 1
            return
        try:
            data = json.loads(raw)
        except ValueError:
            self.dropped += 1
            return

        self.messages += 1
        events = data if isinstance(data, list) else [data]
        changed = False
        for event in events:
            if isinstance(event, dict):
                changed |= self._apply_event(event)
        if changed:
            self._emit_snapshot()

    def _book(self, asset_id: Any) -> Optional[OrderBook]:
        return self.books.get(str(asset_id)) if asset_id is not None else None

    def _apply_event(self, event: Dict[str, Any]) -> bool:
        etype = event.get("event_type") or event.get("type")

        if etype == "book":
            book = self._book(event.get("asset_id"))
            if book is None:
                return False
            book.bids = _levels(event.get("bids") or event.get("buys"))
            book.asks = _levels(event.get("asks") or event.get("sells"))
            book.recompute()
            return True

        if etype == "price_change":
            changes = event.get("price_changes")
            if changes is None:
                # Older layout: one asset with a list of level changes
                changes = [dict(c, asset_id=event.get("asset_id")) for c in event.get("changes") or []]
            changed = False
            for change in changes:
                changed |= self._apply_price_change(change)
            return changed

        if etype == "last_trade_price":
            book = self._book(event.get("asset_id"))
            if book is not None:
                try:
                    book.last_trade = float(event["price"])
                except (KeyError, TypeError, ValueError):
                    pass
            return False

        return False

    def _apply_price_change(self, change: Dict[str, Any]) -> bool:
        book = self._book(change.get("asset_id"))
        if book is None:
            return False
        try:
            book.set_level(str(change.get("side", "")), float(change["price"]), float(change["size"]))
        except (KeyError, TypeError, ValueError):
            pass
        book.recompute()
        # Exchange-reported best prices win over our reconstructed levels
        if change.get("best_bid") not in (None, ""):
            book.best_bid = float(change["best_bid"])
        if change.get("best_ask") not in (None, ""):
            book.best_ask = float(change["best_ask"])
        return True

    def _emit_snapshot(self):
        r = self.rounds.current_round
        if r is None:
            return
        up, down = self.books.get(r.up_token_id), self.books.get(r.down_token_id)
        if up is None or down is None:
            return

        prices = (up.best_bid, up.best_ask, down.best_bid, down.best_ask)
        if prices == self._last_emitted:
            return
        self._last_emitted = prices

        snapshot = PriceSnapshot(
            timestamp=time.time(),
            round_slug=r.slug,
            seconds_remaining=self.rounds.seconds_remaining(),
            up_token_id=r.up_token_id,
            down_token_id=r.down_token_id,
            up_best_bid=up.best_bid,
            up_best_ask=up.best_ask,
            down_best_bid=down.best_bid,
            down_best_ask=down.best_ask,
        )
        self.buffer.push(snapshot)
        self.bus.publish(Events.PRICE_UPDATE, snapshot)

    # --- Connection ---

    async def _connect(self):
        async with self._session.ws_connect(self.cfg.ws_url, heartbeat=self.cfg.heartbeat,
                                            max_msg_size=MAX_MESSAGE_BYTES) as ws:
            self._ws = ws
            self.connected = True
            self._opened = True
            self.logger.info(f"🟢 WS CONNECTED: {self.cfg.ws_url}")
            self.bus.publish(Events.WS_CONNECTED, None)
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self.handle_message(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        break
            finally:
                self._ws = None
                self.connected = False

    async def _run_stream_forever(self):
        attempt = 0
        while self.running:
            self._opened = False
            try:
                await self._connect()
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self.logger.error(f"WS Error: {e}")
            if not self.running:
                break

            if self._opened:
                attempt = 0
                self.logger.warning("🔴 WS DISCONNECTED")
                self.bus.publish(Events.WS_DISCONNECTED, None)

            attempt += 1
            if attempt > self.cfg.max_reconnects:
                self.logger.critical(f"💀 WS gave up after {self.cfg.max_reconnects} reconnect attempts")
                self.bus.publish(Events.SYSTEM_ERROR, ConnectionError("market feed unavailable"))
                self.running = False
                break
            delay = self.cfg.reconnect_delay * 2 ** (attempt - 1)
            self.logger.warning(f"🔄 WS reconnecting in {delay:.1f}s (attempt {attempt}/{self.cfg.max_reconnects})")
            self.bus.publish(Events.WS_RECONNECTING, attempt)
            await asyncio.sleep(delay)

    async def start(self):
        self.running = True
        self._session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._run_stream_forever())

    async def shutdown(self):
        self.running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._session:
            await self._session.close()
