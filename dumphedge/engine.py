# dumphedge/engine.py
import asyncio
import time
from typing import Callable, Optional, Set

from .alerts import AlertManager
from .config import BotConfig, apply_updates
from .dump_detector import DumpDetector
from .event_bus import EventBus
from .execution import ExecutionService
from .hedge import HedgeCalculator
from .models import CycleStatus, DumpSignal, Events, OrderResult, OrderStatus, RoundInfo, Side, TradeCycle
from .price_buffer import PriceBuffer
from .round_tracker import RoundTracker
from .state_machine import TradeCycleStateMachine


class TradingEngine:
    """
    Coordinator for the dump/hedge cycle.

    Sole writer of the detector, the state machine and the round bookkeeping.
    Every pending phase is entered synchronously before the order coroutine is
    scheduled, so a tick that fires while a leg is in flight sees LEG1_PENDING
    or LEG2_PENDING and does nothing.
    """
    def __init__(self, config: BotConfig, bus: EventBus, buffer: PriceBuffer, rounds: RoundTracker,
                 executor: ExecutionService, alerts: AlertManager, logger,
                 feed=None, store=None, audit_log=None, clock: Callable[[], float] = time.time):
        self.config = config
        self.bus = bus
        self.buffer = buffer
        self.rounds = rounds
        self.executor = executor
        self.alerts = alerts
        self.feed = feed
        self.logger = logger
        self._clock = clock

        self.detector = DumpDetector(config.strategy, logger, clock=clock)
        self.hedge = HedgeCalculator(config.strategy)
        self.sm = TradeCycleStateMachine(logger, store=store, audit_log=audit_log,
                                         on_cycle_complete=self._on_cycle_complete, clock=clock)

        self.auto_mode = config.system.auto_mode
        self.feed_paused = False
        self.running = False
        self._timer: Optional[asyncio.Task] = None
        self._legs: Set[asyncio.Task] = set()
        self._subscriptions: Set[asyncio.Task] = set()
        self._cycle_round: Optional[str] = None
        self._warned_cycles: Set[str] = set()

        bus.subscribe(Events.ROUND_NEW, self._on_round_new)
        bus.subscribe(Events.ROUND_ENDED, self._on_round_ended)
        bus.subscribe(Events.WS_DISCONNECTED, self._on_ws_disconnected)
        bus.subscribe(Events.WS_CONNECTED, self._on_ws_connected)
        bus.subscribe(Events.SYSTEM_ERROR, self._on_system_error)

    # --- Lifecycle ---

    async def start(self):
        self.running = True
        r = self.rounds.current_round
        if r is not None and self.detector.round_start_time is None:
            self._on_round_new(r)
        self._timer = asyncio.create_task(self._tick_loop())
        self.logger.info(f"🚀 Engine started | auto mode {'ON' if self.auto_mode else 'OFF'}")

    async def stop(self):
        """
        Stops the tick timer. Legs already submitted are allowed to finish.
        """
        self.running = False
        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        for task in list(self._subscriptions):
            task.cancel()
        if self._legs:
            self.logger.info(f"Waiting for {len(self._legs)} in-flight order(s)...")
            await asyncio.gather(*list(self._legs), return_exceptions=True)

    async def _tick_loop(self):
        while self.running:
            try:
                self.tick()
            except Exception as e:
                self.logger.error(f"Tick failed: {e}")
                self.bus.publish(Events.SYSTEM_ERROR, e)
            await asyncio.sleep(self.config.strategy.detection_interval)

    def tick(self):
        if not self.auto_mode or self.feed_paused or not self.rounds.is_round_active():
            return
        self._watchdog()
        self.run_detection_cycle()

    def run_detection_cycle(self):
        status = self.sm.status
        if status is CycleStatus.WATCHING:
            self._check_for_dump()
        elif status is CycleStatus.LEG1_FILLED:
            self._check_for_hedge()

    def set_auto_mode(self, enabled: bool):
        self.auto_mode = enabled
        if enabled:
            self.feed_paused = False
            r = self.rounds.current_round
            if r is not None and self.rounds.is_round_active():
                self._start_cycle(r.slug)
        self.logger.info(f"Auto mode {'ON' if enabled else 'OFF'}")

    # --- Leg 1 ---

    def _check_for_dump(self):
        slug = self.rounds.current_slug
        signal = self.detector.detect(self.buffer, slug)
        if signal is None:
            return
        token_id = self.rounds.get_token_id(signal.side)
        if not token_id:
            self.logger.warning(f"No token id for {signal.side.value}, signal ignored")
            return
        if not self.sm.on_dump_detected(signal):
            return

        cycle = self.sm.cycle
        self.detector.lock_side(signal.side)
        self.alerts.dump_detected(signal)
        self.bus.publish(Events.DUMP_DETECTED, signal)
        self._spawn(self._execute_leg1(cycle, signal, token_id, self.config.strategy.shares))

    async def _execute_leg1(self, cycle: TradeCycle, signal: DumpSignal, token_id: str, shares: int):
        result = await self._submit(signal.side, token_id, shares, signal.price)
        if result.is_fill:
            if self.sm.on_leg1_filled(result, cycle_id=cycle.id):
                self.bus.publish(Events.LEG_FILLED, {"leg": 1, "result": result})
            else:
                self._orphan_fill("Leg 1", cycle, result)
            return
        self._leg_failed("Leg 1", cycle, signal.side, result)

    # --- Leg 2 ---

    def _check_for_hedge(self):
        cycle = self.sm.cycle
        if cycle is None or cycle.leg1 is None:
            return
        snapshot = self.buffer.latest(self.rounds.current_slug)
        if snapshot is None:
            return

        calc = self.hedge.calculate_hedge(cycle.leg1, snapshot)
        self.logger.debug(self.hedge.describe(calc))
        if not calc.should_hedge or calc.opposite_price <= 0:
            return

        opposite = cycle.leg1.side.opposite
        token_id = self.rounds.get_token_id(opposite)
        if not token_id:
            return
        if not self.sm.on_leg2_started():
            return
        self.logger.info(f"🛡️ HEDGE: {self.hedge.describe(calc)}")
        self._spawn(self._execute_leg2(cycle, opposite, token_id, cycle.leg1.shares, calc.opposite_price))

    async def _execute_leg2(self, cycle: TradeCycle, side: Side, token_id: str, shares: float, price: float):
        result = await self._submit(side, token_id, shares, price)
        if not result.is_fill:
            self._leg_failed("Leg 2", cycle, side, result)
            return

        hedged = min(cycle.leg1.shares, result.shares)
        fees = self.hedge.guaranteed_profit(cycle.leg1.entry_price, result.avg_price, hedged).fees
        if self.sm.on_leg2_filled(result, fees=fees, cycle_id=cycle.id):
            self.bus.publish(Events.LEG_FILLED, {"leg": 2, "result": result})
            self.sm.reset()
        else:
            self._orphan_fill("Leg 2", cycle, result)

    # --- Order plumbing ---

    async def _submit(self, side: Side, token_id: str, shares: float, price: float) -> OrderResult:
        try:
            return await self.executor.buy(side, token_id, shares, price)
        except Exception as e:
            self.logger.error(f"Order submission raised: {e}")
            return OrderResult(order_id="", side=side, shares=0.0, avg_price=price, total_cost=0.0,
                               status=OrderStatus.REJECTED, timestamp=self._clock(), error=str(e))

    def _leg_failed(self, leg: str, cycle: TradeCycle, side: Side, result: OrderResult):
        error = result.error or f"order {result.status.value}"
        self.alerts.order_failed(leg, side, error)
        if self.sm.is_terminal:
            self.logger.warning(f"{leg} failure after cycle {cycle.id} closed: {error}")
            return
        if self.sm.on_error(f"{leg} {side.value}: {error}", cycle_id=cycle.id):
            self.bus.publish(Events.CYCLE_ERROR, self.sm.cycle)

    def _orphan_fill(self, leg: str, cycle: TradeCycle, result: OrderResult):
        # The submitting cycle is gone; the shares are still held
        self.logger.error(f"{leg} fill {result.order_id} arrived after cycle {cycle.id} "
                          f"({cycle.round_slug}) closed")
        self.alerts.orphan_fill(leg, result, cycle.round_slug)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._legs.add(task)
        task.add_done_callback(self._leg_done)

    def _leg_done(self, task: asyncio.Task):
        self._legs.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Leg task crashed: {task.exception()}")

    # --- Cycle bookkeeping ---

    def _start_cycle(self, slug: str):
        if self._cycle_round == slug or self.sm.status not in (CycleStatus.IDLE, CycleStatus.COMPLETED,
                                                                  CycleStatus.ROUND_EXPIRED):
            return
        if self.sm.start_new_cycle(slug):
            self._cycle_round = slug
            self.bus.publish(Events.CYCLE_STARTED, self.sm.cycle)

    def _on_cycle_complete(self, cycle: TradeCycle):
        self.logger.info(f"💰 CYCLE COMPLETE: {cycle.id} | profit ${cycle.profit:.4f}")
        self.alerts.trade_completed(cycle)
        self.bus.publish(Events.CYCLE_COMPLETED, cycle)

    def _expire_cycle(self):
        cycle = self.sm.cycle
        if cycle is None or self.sm.is_terminal:
            return
        if cycle.leg1 is not None and cycle.leg2 is None:
            self.alerts.round_expired_loss(cycle.round_slug, -cycle.leg1.total_cost)
        if self.sm.on_round_expired():
            self.bus.publish(Events.CYCLE_EXPIRED, cycle)

    def _watchdog(self):
        cycle = self.sm.cycle
        overdue = self.sm.check_timeout()
        if overdue is CycleStatus.LEG1_FILLED:
            if cycle is not None and cycle.id not in self._warned_cycles:
                self._warned_cycles.add(cycle.id)
                self.logger.warning(f"⏱️ Leg 1 unhedged for {self.sm.time_in_state():.0f}s in {cycle.round_slug}")
        elif overdue is not None:
            # The order task keeps running; a late fill is reported as unmatched
            reason = f"{overdue.value} timed out after {self.sm.time_in_state():.0f}s"
            self.logger.error(f"⏱️ {reason}")
            if self.sm.on_error(reason):
                self.bus.publish(Events.CYCLE_ERROR, cycle)
            return

        remaining = self.rounds.seconds_remaining()
        if self.sm.should_force_expire(remaining):
            self.logger.warning(f"Round closes in {remaining:.0f}s with {self.sm.status.value}, expiring cycle")
            self._expire_cycle()

    # --- Event handlers ---

    def _on_round_new(self, info: RoundInfo):
        cycle = self.sm.cycle
        if cycle is not None and cycle.round_slug != info.slug:
            self._expire_cycle()
        self.detector.set_round_start_time(info.start_time)
        self.sm.reset()
        if self.auto_mode and not self.feed_paused:
            self._start_cycle(info.slug)
        if self.feed is not None:
            self._resubscribe(info)

    def _on_round_ended(self, info: RoundInfo):
        self._expire_cycle()
        self.sm.reset()

    def _on_ws_disconnected(self, _):
        self.feed_paused = True
        if self.auto_mode:
            self.auto_mode = False
            self.logger.warning("Auto mode paused until re-enabled")
        self.alerts.ws_disconnected()

    async def _on_ws_connected(self, _):
        r = self.rounds.current_round
        if r is not None and self.feed is not None:
            await self.feed.subscribe(r.token_ids)

    def _on_system_error(self, error):
        self.alerts.system_error(error)

    def _resubscribe(self, info: RoundInfo):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        task = asyncio.create_task(self.feed.subscribe(info.token_ids))
        self._subscriptions.add(task)
        task.add_done_callback(self._subscription_done)

    def _subscription_done(self, task: asyncio.Task):
        self._subscriptions.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Feed subscription failed: {task.exception()}")

    # --- Runtime configuration ---

    def update_config(self, **changes) -> BotConfig:
        """
        Validates the changes into a new snapshot and swaps it in.
        Raises ConfigError and leaves everything untouched if invalid.
        """
        new = apply_updates(self.config, **changes)
        self.config = new
        self.detector.apply_config(new.strategy)
        self.hedge.apply_config(new.strategy)
        self.logger.info(f"⚙️ Config updated: {changes}")
        return new

    def status(self) -> dict:
        return {
            "auto_mode": self.auto_mode,
            "feed_paused": self.feed_paused,
            "round": self.rounds.status_description(),
            "static_fallback": self.rounds.using_static_fallback,
            "detector_window_left": round(self.detector.remaining_window_seconds(), 1),
            "locked_sides": sorted(s.value for s in self.detector.locked_sides),
            "buffer_size": len(self.buffer),
            "in_flight": len(self._legs),
            **self.sm.summary(),
        }
