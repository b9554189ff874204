# dumphedge/state_machine.py
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from .models import CycleStatus, DumpSignal, LegInfo, OrderResult, StateTransition, TradeCycle

S = CycleStatus

TERMINAL: FrozenSet[CycleStatus] = frozenset({S.COMPLETED, S.ROUND_EXPIRED, S.ERROR})
NON_TERMINAL: FrozenSet[CycleStatus] = frozenset(set(S) - TERMINAL)

# target -> allowed sources. ERROR and IDLE (reset) are reachable from anywhere.
VALID_TRANSITIONS: Dict[CycleStatus, FrozenSet[CycleStatus]] = {
    S.WATCHING: frozenset({S.IDLE, S.COMPLETED, S.ROUND_EXPIRED}),
    S.LEG1_PENDING: frozenset({S.WATCHING}),
    S.LEG1_FILLED: frozenset({S.LEG1_PENDING}),
    S.LEG2_PENDING: frozenset({S.LEG1_FILLED}),
    S.COMPLETED: frozenset({S.LEG2_PENDING}),
    S.ROUND_EXPIRED: NON_TERMINAL,
    S.ERROR: frozenset(S),
    S.IDLE: frozenset(S),
}

# Seconds a phase may last before check_timeout() reports it
TIMEOUTS = {
    S.LEG1_PENDING: 30.0,
    S.LEG1_FILLED: 120.0,
    S.LEG2_PENDING: 30.0,
}

TRANSITION_LOG_HEADER = ["timestamp", "cycle_id", "round_slug", "from", "to", "reason"]


class TradeCycleStateMachine:
    """
    Authoritative phase tracker for the current trade cycle.

    Every operation returns True when the transition happened. A call from a state
    that does not allow it is logged and returns False; nothing here raises, since
    timer-driven re-entrancy makes duplicate events expected.
    """
    def __init__(self, logger: logging.Logger, store=None, audit_log=None,
                 on_cycle_complete: Optional[Callable[[TradeCycle], None]] = None,
                 clock: Callable[[], float] = time.time, history_size: int = 200):
        self.logger = logger
        self.store = store
        self.audit_log = audit_log
        self.on_cycle_complete = on_cycle_complete
        self._clock = clock
        self._history_size = history_size

        self.status = S.IDLE
        self.cycle: Optional[TradeCycle] = None
        self.history: List[StateTransition] = []
        self._entered_at = clock()
        self._completed_ids = set()

    # --- Queries ---

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def is_pending(self) -> bool:
        return self.status in (S.LEG1_PENDING, S.LEG2_PENDING)

    def time_in_state(self) -> float:
        return self._clock() - self._entered_at

    def can_transition(self, target: CycleStatus) -> bool:
        return self.status in VALID_TRANSITIONS[target]

    # --- Internals ---

    def _transition(self, target: CycleStatus, reason: str) -> bool:
        if not self.can_transition(target):
            self.logger.warning(f"Ignored transition {self.status.value} -> {target.value} ({reason})")
            return False

        now = self._clock()
        record = StateTransition(from_status=self.status, to_status=target, timestamp=now, reason=reason)
        self.history.append(record)
        if len(self.history) > self._history_size:
            del self.history[0]

        if self.audit_log is not None:
            self.audit_log.write([
                datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
                self.cycle.id if self.cycle else "",
                self.cycle.round_slug if self.cycle else "",
                self.status.value,
                target.value,
                reason,
            ])

        self.logger.info(f"🔁 {self.status.value} -> {target.value} | {reason}")
        self.status = target
        self._entered_at = now
        # A reset detaches the cycle; its last recorded status stays as persisted
        if self.cycle is not None and target is not S.IDLE:
            self.cycle.status = target
            self.cycle.updated_at = now
        return True

    def _checkpoint(self, create: bool = False):
        if self.store is None or self.cycle is None:
            return
        try:
            if create:
                self.store.create_trade_cycle(self.cycle)
            else:
                self.store.update_trade_cycle(self.cycle)
        except Exception as e:
            self.logger.error(f"Checkpoint failed for cycle {self.cycle.id}: {e}")

    def _owns(self, cycle_id: Optional[str], what: str) -> bool:
        if cycle_id is None or (self.cycle is not None and self.cycle.id == cycle_id):
            return True
        current = self.cycle.id if self.cycle else None
        self.logger.warning(f"Ignored {what} for cycle {cycle_id}, current cycle is {current}")
        return False

    # --- Transitions ---

    def start_new_cycle(self, round_slug: str) -> bool:
        if not self.can_transition(S.WATCHING):
            self.logger.warning(f"Cannot start cycle for {round_slug} while {self.status.value}")
            return False
        self.cycle = TradeCycle(id=str(uuid.uuid4()), round_slug=round_slug, status=self.status,
                                created_at=self._clock(), updated_at=self._clock())
        self._transition(S.WATCHING, f"new cycle for {round_slug}")
        self._checkpoint(create=True)
        return True

    def on_dump_detected(self, signal: DumpSignal) -> bool:
        return self._transition(S.LEG1_PENDING, f"dump {signal.side.value} {signal.drop_pct * 100:.2f}%")

    def on_leg1_filled(self, result: OrderResult, cycle_id: Optional[str] = None) -> bool:
        if not self._owns(cycle_id, "leg1 fill"):
            return False
        if not self._transition(S.LEG1_FILLED, f"leg1 {result.side.value} @ {result.avg_price:.4f}"):
            return False
        self.cycle.leg1 = LegInfo.from_order(result)
        self._checkpoint()
        return True

    def on_leg2_started(self) -> bool:
        return self._transition(S.LEG2_PENDING, "hedge condition met")

    def on_leg2_filled(self, result: OrderResult, fees: float = 0.0, cycle_id: Optional[str] = None) -> bool:
        if not self._owns(cycle_id, "leg2 fill"):
            return False
        if self.cycle is None or self.cycle.leg1 is None:
            self.logger.warning("Ignored leg2 fill without a filled leg1")
            return False
        if not self._transition(S.COMPLETED, f"leg2 {result.side.value} @ {result.avg_price:.4f}"):
            return False

        leg1 = self.cycle.leg1
        leg2 = LegInfo.from_order(result)
        self.cycle.leg2 = leg2
        hedged = min(leg1.shares, leg2.shares)
        self.cycle.guaranteed_profit = hedged - (leg1.total_cost + leg2.total_cost)
        self.cycle.profit = self.cycle.guaranteed_profit - fees
        self._checkpoint()

        if self.on_cycle_complete is not None and self.cycle.id not in self._completed_ids:
            self._completed_ids.add(self.cycle.id)
            try:
                self.on_cycle_complete(self.cycle)
            except Exception as e:
                self.logger.error(f"Cycle completion callback failed: {e}")
        return True

    def on_round_expired(self) -> bool:
        if self.cycle is None:
            return False
        if not self._transition(S.ROUND_EXPIRED, "round ended"):
            return False
        if self.cycle.leg1 is not None and self.cycle.leg2 is None:
            self.cycle.profit = -self.cycle.leg1.total_cost
        self._checkpoint()
        return True

    def on_error(self, error, cycle_id: Optional[str] = None) -> bool:
        if not self._owns(cycle_id, "error"):
            return False
        message = str(error)
        if not self._transition(S.ERROR, message):
            return False
        if self.cycle is not None:
            self.cycle.error = message
        self._checkpoint()
        return True

    def reset(self) -> bool:
        if self.status is not S.IDLE:
            self._transition(S.IDLE, "reset")
        self.cycle = None
        return True

    # --- Watchdog ---

    def check_timeout(self) -> Optional[CycleStatus]:
        """Returns the current status if it has outlived its allowed duration."""
        limit = TIMEOUTS.get(self.status)
        if limit is not None and self.time_in_state() > limit:
            return self.status
        return None

    def should_force_expire(self, seconds_remaining: float) -> bool:
        if self.status is S.LEG1_FILLED:
            return seconds_remaining < 10
        if self.is_pending:
            return seconds_remaining < 5
        return False

    def summary(self) -> dict:
        c = self.cycle
        return {
            "status": self.status.value,
            "cycle_id": c.id if c else None,
            "cycle_round": c.round_slug if c else None,
            "leg1": f"{c.leg1.side.value} {c.leg1.shares}@{c.leg1.entry_price:.4f}" if c and c.leg1 else None,
            "leg2": f"{c.leg2.side.value} {c.leg2.shares}@{c.leg2.entry_price:.4f}" if c and c.leg2 else None,
            "profit": c.profit if c else None,
            "seconds_in_state": round(self.time_in_state(), 1),
        }
