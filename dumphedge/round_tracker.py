# dumphedge/round_tracker.py
import asyncio
import json
import math
import time
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp

from .config import BotConfig
from .event_bus import EventBus
from .models import Events, RoundInfo, Side


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def window_start_for(ts: float, duration: int) -> int:
    return int(ts // duration * duration)


def parse_round_event(event: Dict[str, Any], slug: str, start_time: float, duration: int) -> Optional[RoundInfo]:
    """
    Extracts the UP/DOWN token ids from a Gamma event payload.
    Outcome labels are used when present, otherwise the first token is UP.
    """
    markets = event.get("markets") or []
    if not markets:
        return None
    market = markets[0]
    if market.get("closed") is True:
        return None

    token_ids = _maybe_json(market.get("clobTokenIds")) or _maybe_json(market.get("clob_token_ids"))
    if not isinstance(token_ids, list) or len(token_ids) < 2:
        return None
    token_ids = [str(t) for t in token_ids]

    up, down = token_ids[0], token_ids[1]
    outcomes = _maybe_json(market.get("outcomes"))
    if isinstance(outcomes, list) and len(outcomes) == len(token_ids):
        labels = [str(o).strip().lower() for o in outcomes]
        if "up" in labels and "down" in labels:
            up = token_ids[labels.index("up")]
            down = token_ids[labels.index("down")]

    return RoundInfo(
        slug=slug,
        up_token_id=up,
        down_token_id=down,
        start_time=float(start_time),
        end_time=float(start_time + duration),
    )


class RoundTracker:
    """
    Owns the active RoundInfo and announces round boundaries on the bus.

    Rounds are discovered by slug on the Gamma API. When discovery yields nothing
    and a static market is configured, that market is used as an open-ended round
    until discovery succeeds again.
    """
    def __init__(self, config: BotConfig, bus: EventBus, logger,
                 clock: Callable[[], float] = time.time, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = config.rounds
        self.gamma_url = config.network.gamma_api_url
        self.timeout = config.network.request_timeout
        self.bus = bus
        self.logger = logger
        self._clock = clock
        self._session = session
        self._owns_session = False

        self.current_round: Optional[RoundInfo] = None
        self._next_round: Optional[RoundInfo] = None
        self._ended: Set[str] = set()
        self._warned: Set[str] = set()
        self._last_discovery = -math.inf
        self.running = False
        self._task: Optional[asyncio.Task] = None

    # --- Accessors ---

    @property
    def current_slug(self) -> Optional[str]:
        return self.current_round.slug if self.current_round else None

    @property
    def using_static_fallback(self) -> bool:
        return self.current_round is not None and self.current_round.is_static

    def get_token_id(self, side: Side) -> Optional[str]:
        return self.current_round.token_id(side) if self.current_round else None

    def seconds_remaining(self) -> float:
        r = self.current_round
        if r is None:
            return 0.0
        if r.end_time is None:
            return math.inf
        return max(0.0, r.end_time - self._clock())

    def is_round_active(self) -> bool:
        r = self.current_round
        if r is None:
            return False
        return r.end_time is None or self._clock() < r.end_time

    def status_description(self) -> str:
        r = self.current_round
        if r is None:
            return "no active round"
        if r.end_time is None:
            return f"{r.slug} (static)"
        remaining = self.seconds_remaining()
        return f"{r.slug} | {int(remaining // 60)}m {int(remaining % 60)}s left"

    # --- Slugs ---

    def slug_for(self, window_start: int) -> str:
        return f"{self.cfg.asset.lower()}-updown-{self.cfg.duration_seconds // 60}m-{window_start}"

    def static_round(self) -> Optional[RoundInfo]:
        if not self.cfg.has_static_market:
            return None
        return RoundInfo(
            slug=self.cfg.static_slug,
            up_token_id=self.cfg.static_up_token_id,
            down_token_id=self.cfg.static_down_token_id,
            start_time=self._clock(),
            end_time=None,
            is_static=True,
        )

    # --- Mutation ---

    def set_round(self, info: RoundInfo):
        """Replaces the active round wholesale and announces it."""
        previous = self.current_round
        self.current_round = info
        if self._next_round is not None and self._next_round.slug == info.slug:
            self._next_round = None
        source = "static fallback" if info.is_static else "discovery"
        self.logger.info(f"🆕 NEW ROUND: {info.slug} ({source})")
        if previous is None or previous.slug != info.slug:
            self.bus.publish(Events.ROUND_NEW, info)

    def force_expire(self):
        r = self.current_round
        if r is None:
            return
        self.current_round = None
        if r.slug not in self._ended:
            self._ended.add(r.slug)
            self.logger.info(f"⏰ ROUND ENDED: {r.slug}")
            self.bus.publish(Events.ROUND_ENDED, r)

    # --- Periodic check ---

    async def check(self):
        now = self._clock()
        r = self.current_round

        if r is not None and r.end_time is not None:
            remaining = r.end_time - now
            if remaining <= 0:
                self.force_expire()
            elif remaining <= self.cfg.ending_warning_seconds and r.slug not in self._warned:
                self._warned.add(r.slug)
                self.logger.info(f"⏳ Round {r.slug} ending in {remaining:.0f}s")
                self.bus.publish(Events.ROUND_ENDING, r)

        nxt = self._next_round
        if self.current_round is None or self.current_round.is_static:
            if nxt is not None and nxt.start_time <= now < nxt.end_time:
                self.set_round(nxt)
            elif now - self._last_discovery >= self.cfg.discovery_interval:
                await self.discover()
        elif nxt is None and now - self._last_discovery >= self.cfg.discovery_interval:
            # Preload the following round while this one runs
            self._last_discovery = now
            start = window_start_for(now, self.cfg.duration_seconds) + self.cfg.duration_seconds
            self._next_round = await self.fetch_round(start)

    async def discover(self) -> Optional[RoundInfo]:
        now = self._clock()
        self._last_discovery = now
        duration = self.cfg.duration_seconds
        start = window_start_for(now, duration)

        found = await self.fetch_round(start)
        if found is not None and found.slug not in self._ended:
            self.set_round(found)
            self._next_round = await self.fetch_round(start + duration)
            return found

        if self.current_round is None:
            static = self.static_round()
            if static is not None:
                self.logger.warning("Round discovery found nothing, using static market")
                self.set_round(static)
                return static
            self.logger.warning(f"No active round found for {self.slug_for(start)}")
        return None

    async def fetch_round(self, window_start: int) -> Optional[RoundInfo]:
        slug = self.slug_for(window_start)
        events = await self._get_json("/events", {"slug": slug})
        if isinstance(events, dict):
            events = [events]
        if not events:
            return None
        return parse_round_event(events[0], slug, window_start, self.cfg.duration_seconds)

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Optional[List[Any]]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with self._session.get(f"{self.gamma_url}{path}", params=params, timeout=timeout) as r:
                r.raise_for_status()
                return await r.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.warning(f"Gamma request {path} {params} failed: {e}")
            return None

    # --- Lifecycle ---

    async def start(self):
        self.running = True
        await self.check()
        self._task = asyncio.create_task(self._run_forever())

    async def _run_forever(self):
        while self.running:
            await asyncio.sleep(self.cfg.check_interval)
            try:
                await self.check()
            except Exception as e:
                self.logger.error(f"Round check failed: {e}")
                self.bus.publish(Events.SYSTEM_ERROR, e)

    async def shutdown(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._owns_session and self._session:
            await self._session.close()
