# dumphedge/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
import time


class Side(Enum):
    """
    The two complementary outcome tokens of a round.
    """
    UP = "UP"
    DOWN = "DOWN"

    @property
    def opposite(self) -> "Side":
        return Side.DOWN if self is Side.UP else Side.UP


class CycleStatus(Enum):
    """
    Enum representing the lifecycle phases of a trade cycle.
    """
    IDLE = "IDLE"
    WATCHING = "WATCHING"
    LEG1_PENDING = "LEG1_PENDING"
    LEG1_FILLED = "LEG1_FILLED"
    LEG2_PENDING = "LEG2_PENDING"
    COMPLETED = "COMPLETED"
    ROUND_EXPIRED = "ROUND_EXPIRED"
    ERROR = "ERROR"


class OrderStatus(Enum):
    FILLED = "filled"
    PARTIAL = "partial"
    PENDING = "pending"
    REJECTED = "rejected"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"info": 0, "warning": 1, "critical": 2}[self.value]


class Events:
    """Domain event names published on the EventBus."""
    WS_CONNECTED = "ws:connected"
    WS_DISCONNECTED = "ws:disconnected"
    WS_RECONNECTING = "ws:reconnecting"
    PRICE_UPDATE = "price:update"
    ROUND_NEW = "round:new"
    ROUND_ENDING = "round:ending"
    ROUND_ENDED = "round:ended"
    DUMP_DETECTED = "dump:detected"
    LEG_FILLED = "leg:filled"
    CYCLE_STARTED = "cycle:started"
    CYCLE_COMPLETED = "cycle:completed"
    CYCLE_EXPIRED = "cycle:expired"
    CYCLE_ERROR = "cycle:error"
    SYSTEM_ERROR = "system:error"
    ALERT_SENT = "alert:sent"


@dataclass(slots=True, frozen=True)
class PriceSnapshot:
    """
    Best bid/ask of both sides of one round at one instant.
    A price of 0.0 means that side of the book is empty.
    """
    timestamp: float
    round_slug: str
    seconds_remaining: float
    up_token_id: str
    down_token_id: str
    up_best_bid: float
    up_best_ask: float
    down_best_bid: float
    down_best_ask: float

    def ask(self, side: Side) -> float:
        return self.up_best_ask if side is Side.UP else self.down_best_ask

    def bid(self, side: Side) -> float:
        return self.up_best_bid if side is Side.UP else self.down_best_bid

    @property
    def age(self) -> float:
        """Returns the age of the data in seconds."""
        return time.time() - self.timestamp


@dataclass(slots=True, frozen=True)
class DumpSignal:
    """
    Emitted once per side per round when the ask collapses inside the detection window.
    """
    side: Side
    drop_pct: float
    price: float
    previous_price: float
    timestamp: float
    round_slug: str


@dataclass(slots=True, frozen=True)
class OrderResult:
    order_id: str
    side: Side
    shares: float
    avg_price: float
    total_cost: float
    status: OrderStatus
    timestamp: float
    error: Optional[str] = None

    @property
    def is_fill(self) -> bool:
        return self.status in (OrderStatus.FILLED, OrderStatus.PARTIAL)


@dataclass(slots=True, frozen=True)
class LegInfo:
    order_id: str
    side: Side
    shares: float
    entry_price: float
    total_cost: float
    filled_at: float

    @classmethod
    def from_order(cls, result: OrderResult) -> "LegInfo":
        return cls(
            order_id=result.order_id,
            side=result.side,
            shares=result.shares,
            entry_price=result.avg_price,
            total_cost=result.total_cost,
            filled_at=result.timestamp,
        )


@dataclass(slots=True)
class TradeCycle:
    """
    One attempt at the dump/hedge sequence within a single round.
    Mutated only by the state machine.
    """
    id: str
    round_slug: str
    status: CycleStatus = CycleStatus.WATCHING
    leg1: Optional[LegInfo] = None
    leg2: Optional[LegInfo] = None
    profit: Optional[float] = None
    guaranteed_profit: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    error: Optional[str] = None


@dataclass(slots=True, frozen=True)
class RoundInfo:
    """
    A bounded trading period. end_time of None marks an open-ended static market.
    """
    slug: str
    up_token_id: str
    down_token_id: str
    start_time: float
    end_time: Optional[float] = None
    is_static: bool = False

    def token_id(self, side: Side) -> str:
        return self.up_token_id if side is Side.UP else self.down_token_id

    @property
    def token_ids(self) -> list:
        return [self.up_token_id, self.down_token_id]


@dataclass(slots=True, frozen=True)
class StateTransition:
    from_status: CycleStatus
    to_status: CycleStatus
    timestamp: float
    reason: str


@dataclass(slots=True, frozen=True)
class HedgeCalculation:
    should_hedge: bool
    current_sum: float
    target_sum: float
    opposite_price: float
    potential_profit: float


@dataclass(slots=True, frozen=True)
class ProfitBreakdown:
    gross: float
    fees: float
    net: float


@dataclass(slots=True, frozen=True)
class Alert:
    severity: AlertSeverity
    title: str
    message: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[dict] = None
