from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..utils.numeric import canonical_decimal, to_decimal


class Side(str, Enum):
    BID = "B"  # buy
    ASK = "A"  # sell

    @property
    def is_buy(self) -> bool:
        return self is Side.BID

    def opposite(self) -> "Side":
        return Side.ASK if self is Side.BID else Side.BID


class Direction(str, Enum):
    OPEN_LONG = "Open Long"
    CLOSE_LONG = "Close Long"
    OPEN_SHORT = "Open Short"
    CLOSE_SHORT = "Close Short"


class TradeAction(str, Enum):
    OPEN = "open"
    REDUCE = "reduce"
    CLOSE = "close"


class OrderType(str, Enum):
    MARKET = "Market"


@dataclass(frozen=True)
class FillEvent:
    coin: str
    price: str
    size: str
    side: Side
    direction: str  # a Direction value, or whatever else the exchange sent
    start_position: str
    timestamp: int  # ms
    hash: Optional[str] = None
    oid: Optional[int] = None
    closed_pnl: Optional[str] = None
    fee: Optional[str] = None
    crossed: Optional[bool] = None

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "FillEvent":
        """Build from an exchange ``userFills`` entry. Raises ValueError when malformed."""
        if not isinstance(raw, Mapping):
            raise ValueError(f"fill is not an object: {raw!r}")
        try:
            coin = str(raw["coin"])
            price = canonical_decimal(raw["px"])
            size = canonical_decimal(raw["sz"])
            side = Side(raw["side"])
            direction = str(raw["dir"])
            start_position = canonical_decimal(raw.get("startPosition", "0"))
            timestamp = int(raw["time"])
            oid = raw.get("oid")
            oid = int(oid) if oid is not None else None
        except KeyError as exc:
            raise ValueError(f"fill missing field {exc.args[0]!r}") from exc
        except (TypeError, ValueError) as exc:
            raise ValueError(f"malformed fill: {exc}") from exc
        if not coin:
            raise ValueError("fill has empty coin")
        return cls(
            coin=coin,
            price=price,
            size=size,
            side=side,
            direction=direction,
            start_position=start_position,
            timestamp=timestamp,
            hash=raw.get("hash"),
            oid=oid,
            closed_pnl=raw.get("closedPnl"),
            fee=raw.get("fee"),
            crossed=raw.get("crossed"),
        )

    @property
    def size_decimal(self) -> Decimal:
        return to_decimal(self.size)

    @property
    def price_decimal(self) -> Decimal:
        return to_decimal(self.price)


@dataclass(frozen=True)
class Position:
    coin: str
    size: str  # signed: > 0 long, < 0 short
    entry_price: Optional[str] = None
    leverage: Optional[int] = None
    liquidation_price: Optional[str] = None
    margin_used: Optional[str] = None
    unrealized_pnl: Optional[str] = None
    return_on_equity: Optional[str] = None

    @property
    def signed_size(self) -> Decimal:
        return to_decimal(self.size)


@dataclass(frozen=True)
class AccountEquity:
    account_value: str
    total_margin_used: str = "0"
    total_notional_position: str = "0"
    total_raw_usd: str = "0"
    cross_maintenance_margin_used: str = "0"

    @property
    def value(self) -> Decimal:
        return to_decimal(self.account_value)


@dataclass(frozen=True)
class CopyTradeParams:
    coin: str
    side: Side
    size: str
    order_type: OrderType = OrderType.MARKET
    reduce_only: bool = False
    leverage: int = 1


@dataclass(frozen=True)
class OrderRequest:
    coin: str
    side: Side
    size: str
    order_type: OrderType = OrderType.MARKET
    reduce_only: bool = False
    leverage: int = 1
    reference_price: Optional[str] = None
    time_in_force: str = "Gtc"


@dataclass(frozen=True)
class OrderAck:
    resting_oid: Optional[int] = None
    filled_oid: Optional[int] = None
    filled_size: Optional[str] = None
    average_price: Optional[str] = None

    @property
    def order_id(self) -> Optional[str]:
        oid = self.resting_oid if self.resting_oid is not None else self.filled_oid
        return str(oid) if oid is not None else None


@dataclass(frozen=True)
class TradeResult:
    success: bool
    params: CopyTradeParams
    order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DriftEntry:
    our_size: str
    target_size: str
    difference: str


@dataclass(frozen=True)
class HealthCheckResult:
    timestamp: int  # ms
    our_positions: List[Position]
    target_positions: List[Position]
    our_equity: str
    target_equity: str
    drift: Dict[str, DriftEntry] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return not self.drift
