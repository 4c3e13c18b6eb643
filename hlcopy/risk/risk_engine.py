"""
Sizing and risk gates for mirrored trades.

Everything here is pure: inputs are a fill, both accounts' equity, the target's
position and the frozen ``RiskConfig``; nothing touches the network or the
ledger.
"""

from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional

from loguru import logger

from ..core.models import CopyTradeParams, Direction, FillEvent, OrderType, Position, Side, TradeAction
from ..utils.config import RiskConfig
from ..utils.numeric import Number, canonical_decimal, is_positive_finite, quantize_size, to_decimal

_HUNDRED = Decimal(100)


class ValidationResult(NamedTuple):
    valid: bool
    reason: Optional[str] = None


def get_trade_action(fill: FillEvent) -> TradeAction:
    if fill.direction in (Direction.OPEN_LONG.value, Direction.OPEN_SHORT.value):
        return TradeAction.OPEN
    if fill.direction in (Direction.CLOSE_LONG.value, Direction.CLOSE_SHORT.value):
        # the fill flattened the position only if it was at least as big as what was there
        if abs(to_decimal(fill.start_position)) <= fill.size_decimal:
            return TradeAction.CLOSE
        return TradeAction.REDUCE
    return TradeAction.REDUCE


def resolve_side(action: TradeAction, fill: FillEvent, target_position: Optional[Position]) -> Side:
    if action is TradeAction.OPEN:
        return Side.BID if fill.direction == Direction.OPEN_LONG.value else Side.ASK
    if target_position is not None:
        signed = target_position.signed_size
        if signed > 0:
            return Side.ASK
        if signed < 0:
            return Side.BID
    return fill.side


def max_position_size(our_equity: Decimal, cfg: RiskConfig) -> Decimal:
    return our_equity * Decimal(str(cfg.max_position_size_percent)) / _HUNDRED


def cap_position_size(calculated_size: Decimal, our_equity: Decimal, cfg: RiskConfig) -> Decimal:
    return min(calculated_size, max_position_size(our_equity, cfg))


def calculate_position_size(
    target_size: Number,
    our_equity: Number,
    target_equity: Number,
    cfg: RiskConfig,
) -> Decimal:
    """(our_equity / target_equity) * target_size * multiplier, capped.

    A zero target equity falls back to target_size * multiplier; the cap still applies.
    """
    target_size = to_decimal(target_size)
    our_equity = to_decimal(our_equity)
    target_equity = to_decimal(target_equity)
    multiplier = Decimal(str(cfg.size_multiplier))

    # NaN/Infinity inputs yield NaN, which build_trade_params turns into a skip
    if not (target_size.is_finite() and our_equity.is_finite() and target_equity.is_finite()):
        return Decimal("NaN")

    if target_equity == 0:
        logger.warning("Target equity is zero, sizing from target size and multiplier only")
        calculated = target_size * multiplier
    else:
        try:
            calculated = our_equity / target_equity * target_size * multiplier
        except InvalidOperation:
            return Decimal("NaN")

    capped = cap_position_size(calculated, our_equity, cfg)
    logger.debug(
        f"Position size: target={target_size} our_eq={our_equity} target_eq={target_equity} "
        f"mult={multiplier} calculated={calculated} capped={capped}"
    )
    return capped


def cap_leverage(leverage: int, cfg: RiskConfig) -> int:
    return min(leverage, cfg.max_leverage)


def resolve_leverage(target_position: Optional[Position], cfg: RiskConfig) -> int:
    leverage = 1
    if target_position is not None and target_position.leverage:
        leverage = int(target_position.leverage)
    return cap_leverage(max(leverage, 1), cfg)


def is_asset_blocked(coin: str, cfg: RiskConfig) -> bool:
    return coin.upper() in cfg.blocked_assets


def validate_trade_params(params: CopyTradeParams, price: Number, our_equity: Number, cfg: RiskConfig) -> ValidationResult:
    """Run the gates in order; the first failing one wins."""
    if is_asset_blocked(params.coin, cfg):
        return ValidationResult(False, f"Asset {params.coin} is blocked")

    notional = to_decimal(params.size) * to_decimal(price)
    min_notional = Decimal(str(cfg.min_notional))
    if notional < min_notional:
        return ValidationResult(False, f"Position size {params.size} * {price} < {cfg.min_notional} minimum")

    if params.leverage > cfg.max_leverage:
        return ValidationResult(False, f"Leverage {params.leverage} exceeds max {cfg.max_leverage}")

    max_allowed = max_position_size(to_decimal(our_equity), cfg)
    if notional > max_allowed:
        return ValidationResult(
            False,
            f"Position value {canonical_decimal(notional)} exceeds {canonical_decimal(max_allowed)} max",
        )

    return ValidationResult(True)


def build_trade_params(
    fill: FillEvent,
    action: TradeAction,
    our_equity: Number,
    target_equity: Number,
    target_position: Optional[Position],
    active_trades: int,
    cfg: RiskConfig,
) -> Optional[CopyTradeParams]:
    """The order we would send to mirror ``fill``, or None when the fill is skipped."""
    if action is TradeAction.OPEN and active_trades >= cfg.max_concurrent_trades:
        logger.warning(
            f"Max concurrent trades reached ({active_trades}/{cfg.max_concurrent_trades}), skipping {fill.coin}"
        )
        return None

    side = resolve_side(action, fill, target_position)
    size = calculate_position_size(fill.size, our_equity, target_equity, cfg)
    if not is_positive_finite(size):
        logger.warning(f"Computed size {size} for {fill.coin} is not a positive number, skipping")
        return None
    size = quantize_size(size)
    if size <= 0:
        logger.warning(f"Computed size for {fill.coin} rounds to zero, skipping")
        return None

    return CopyTradeParams(
        coin=fill.coin,
        side=side,
        size=canonical_decimal(size),
        order_type=OrderType.MARKET,
        reduce_only=action is not TradeAction.OPEN,
        leverage=resolve_leverage(target_position, cfg),
    )


class RiskEngine:
    """Binds the pure risk functions to one ``RiskConfig``."""

    def __init__(self, cfg: RiskConfig):
        self.cfg = cfg

    def get_trade_action(self, fill: FillEvent) -> TradeAction:
        return get_trade_action(fill)

    def calculate_position_size(self, target_size: Number, our_equity: Number, target_equity: Number) -> Decimal:
        return calculate_position_size(target_size, our_equity, target_equity, self.cfg)

    def cap_position_size(self, calculated_size: Number, our_equity: Number) -> Decimal:
        return cap_position_size(to_decimal(calculated_size), to_decimal(our_equity), self.cfg)

    def cap_leverage(self, leverage: int) -> int:
        return cap_leverage(leverage, self.cfg)

    def validate(self, params: CopyTradeParams, price: Number, our_equity: Number) -> ValidationResult:
        return validate_trade_params(params, price, our_equity, self.cfg)

    def build_trade_params(
        self,
        fill: FillEvent,
        action: TradeAction,
        our_equity: Number,
        target_equity: Number,
        target_position: Optional[Position],
        active_trades: int,
    ) -> Optional[CopyTradeParams]:
        return build_trade_params(fill, action, our_equity, target_equity, target_position, active_trades, self.cfg)
