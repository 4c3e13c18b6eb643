"""
Hyperliquid implementation of ``ExchangeGateway``.

• Reads (equity, positions, asset meta) are plain POSTs to ``{base}/info``.
• Signed actions (leverage, orders) go through the official SDK ``Exchange``.
• Fills come from ``FillStream`` on ``{base}/ws``.
• Every blocking call runs in a worker thread, the event loop never waits on I/O.
"""

import asyncio
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.utils import constants
from hyperliquid.utils.error import ClientError, ServerError
from loguru import logger

from ..exchange.fill_stream import FillStream
from ..utils.config import Config
from ..utils.errors import (
    AccountError,
    ConfigError,
    CopyBotError,
    NetworkError,
    RateLimitError,
    SDKError,
    TradingError,
    is_retryable,
)
from ..utils.numeric import canonical_decimal, to_decimal
from .gateway import ExchangeGateway, FatalCallback, FillCallback, Unsubscribe
from .models import AccountEquity, OrderAck, OrderRequest, Position

StreamFactory = Callable[[str, Optional[FatalCallback]], FillStream]


def default_base_url(testnet: bool) -> str:
    return constants.TESTNET_API_URL if testnet else constants.MAINNET_API_URL


def ws_url_for(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + "/ws"


def round_size(size: Any, sz_decimals: int) -> Decimal:
    """Round down to the asset's lot size."""
    return to_decimal(size).quantize(Decimal(1).scaleb(-sz_decimals), rounding=ROUND_DOWN)


def slippage_price(reference_price: Any, is_buy: bool, slippage_percent: float, sz_decimals: int) -> float:
    """Aggressive limit price: 5 significant figures, at most ``6 - szDecimals`` decimals."""
    px = float(to_decimal(reference_price))
    px *= (1 + slippage_percent / 100.0) if is_buy else (1 - slippage_percent / 100.0)
    return round(float(f"{px:.5g}"), max(0, 6 - sz_decimals))


def parse_equity(state: Any) -> AccountEquity:
    if not isinstance(state, Mapping) or not isinstance(state.get("marginSummary"), Mapping):
        raise AccountError("Invalid clearinghouse state: missing marginSummary", context={"state": state})
    summary = state["marginSummary"]
    try:
        return AccountEquity(
            account_value=canonical_decimal(summary["accountValue"]),
            total_margin_used=canonical_decimal(summary.get("totalMarginUsed", "0")),
            total_notional_position=canonical_decimal(summary.get("totalNtlPos", "0")),
            total_raw_usd=canonical_decimal(summary.get("totalRawUsd", "0")),
            cross_maintenance_margin_used=canonical_decimal(state.get("crossMaintenanceMarginUsed", "0")),
        )
    except (KeyError, ValueError) as exc:
        raise AccountError(f"Invalid margin summary: {exc}", context={"marginSummary": summary}) from exc


def _optional_decimal(value: Any) -> Optional[str]:
    return canonical_decimal(value) if value is not None else None


def parse_position(entry: Any) -> Optional[Position]:
    """None for flat positions. Raises ValueError when the entry is malformed."""
    if not isinstance(entry, Mapping) or not isinstance(entry.get("position"), Mapping):
        raise ValueError(f"asset position is not an object: {entry!r}")
    pos = entry["position"]
    try:
        coin = str(pos["coin"])
        size = canonical_decimal(pos["szi"])
    except KeyError as exc:
        raise ValueError(f"position missing field {exc.args[0]!r}") from exc
    if to_decimal(size) == 0:
        return None
    leverage = pos.get("leverage")
    if isinstance(leverage, Mapping):
        leverage = leverage.get("value")
    return Position(
        coin=coin,
        size=size,
        entry_price=_optional_decimal(pos.get("entryPx")),
        leverage=int(leverage) if leverage is not None else None,
        liquidation_price=_optional_decimal(pos.get("liquidationPx")),
        margin_used=_optional_decimal(pos.get("marginUsed")),
        unrealized_pnl=_optional_decimal(pos.get("unrealizedPnl")),
        return_on_equity=_optional_decimal(pos.get("returnOnEquity")),
    )


def parse_positions(state: Any) -> List[Position]:
    entries = state.get("assetPositions") if isinstance(state, Mapping) else None
    if not isinstance(entries, list):
        raise AccountError("Invalid clearinghouse state: missing assetPositions", context={"state": state})
    positions: List[Position] = []
    for entry in entries:
        try:
            pos = parse_position(entry)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Skipping malformed position entry: {exc}")
            continue
        if pos is not None:
            positions.append(pos)
    return positions


def parse_order_response(resp: Any) -> OrderAck:
    if not isinstance(resp, Mapping):
        raise TradingError("Invalid order response", retryable=True, context={"response": resp})
    if resp.get("status") != "ok":
        raise TradingError(f"Order rejected: {resp.get('response')}", retryable=False, context={"response": resp})
    try:
        statuses = resp["response"]["data"]["statuses"]
    except (KeyError, TypeError) as exc:
        raise TradingError("Invalid order response", retryable=True, context={"response": resp}) from exc
    if not statuses or not isinstance(statuses[0], Mapping):
        raise TradingError("Invalid order response: no order status", retryable=True, context={"response": resp})
    status = statuses[0]
    if "error" in status:
        raise TradingError(f"Order rejected: {status['error']}", retryable=False, context={"response": resp})
    resting = status.get("resting") or {}
    filled = status.get("filled") or {}
    return OrderAck(
        resting_oid=resting.get("oid"),
        filled_oid=filled.get("oid"),
        filled_size=_optional_decimal(filled.get("totalSz")),
        average_price=_optional_decimal(filled.get("avgPx")),
    )


def _translate_sdk_error(exc: Exception, context: Dict[str, Any]) -> CopyBotError:
    if isinstance(exc, ClientError):
        if exc.status_code == 429:
            return RateLimitError("Exchange rate limit hit", context=context)
        return TradingError(f"Exchange rejected request: {exc.error_message}", retryable=False, context=context)
    if isinstance(exc, ServerError):
        return TradingError(f"Exchange server error {exc.status_code}", retryable=True, context=context)
    if isinstance(exc, requests.RequestException):
        return TradingError(f"Request to exchange failed: {exc}", retryable=True, context=context)
    if isinstance(exc, (KeyError, ValueError)):
        return TradingError(f"Invalid order parameters: {exc}", retryable=False, context=context)
    return SDKError(
        f"Exchange client error: {exc}",
        retryable=is_retryable(exc),
        context={**context, "original_error": type(exc).__name__},
    )


class HyperliquidGateway(ExchangeGateway):
    def __init__(
        self,
        cfg: Config,
        session: Optional[requests.Session] = None,
        exchange: Optional[Exchange] = None,
        stream_factory: Optional[StreamFactory] = None,
    ) -> None:
        self.cfg = cfg
        try:
            self.wallet = Account.from_key(cfg.private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigError("Invalid private key", context={"original_error": str(exc)}) from exc
        self._address = cfg.account_address or self.wallet.address
        self.base_url = (cfg.base_url or default_base_url(cfg.testnet)).rstrip("/")
        self.ws_url = cfg.stream.ws_url or ws_url_for(self.base_url)
        self.timeout = cfg.request_timeout_sec
        self.session = session or requests.Session()
        self.default_headers = {"Content-Type": "application/json"}
        self._exchange = exchange
        self._exchange_lock = asyncio.Lock()
        self._stream_factory = stream_factory or self._default_stream
        self._streams: List[FillStream] = []
        self._sz_decimals: Optional[Dict[str, int]] = None
        logger.info(f"Hyperliquid gateway for {self._address} on {self.base_url}")

    @property
    def address(self) -> str:
        return self._address

    # ------------------------------------------------------------------
    # info endpoint
    # ------------------------------------------------------------------
    def _post_info(self, body: Dict[str, Any]) -> Any:
        url = self.base_url + "/info"
        try:
            resp = self.session.post(url, json=body, headers=self.default_headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Info request failed: {exc}", context={"type": body.get("type")}) from exc
        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise RateLimitError(
                "Info endpoint rate limit hit",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                context={"type": body.get("type")},
            )
        if resp.status_code >= 500:
            raise NetworkError(f"Info endpoint returned {resp.status_code}", context={"type": body.get("type")})
        if resp.status_code != 200:
            raise AccountError(
                f"Info endpoint returned {resp.status_code}: {resp.text[:200]}", context={"type": body.get("type")}
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise AccountError("Info endpoint returned invalid JSON", context={"type": body.get("type")}) from exc

    def _clearinghouse_state(self, address: str) -> Any:
        return self._post_info({"type": "clearinghouseState", "user": address})

    async def get_account_equity(self, address: str) -> AccountEquity:
        state = await asyncio.to_thread(self._clearinghouse_state, address)
        return parse_equity(state)

    async def get_positions(self, address: str) -> List[Position]:
        state = await asyncio.to_thread(self._clearinghouse_state, address)
        return parse_positions(state)

    def _load_sz_decimals(self) -> Dict[str, int]:
        if self._sz_decimals is None:
            meta = self._post_info({"type": "meta"})
            universe = meta.get("universe") if isinstance(meta, Mapping) else None
            if not isinstance(universe, list):
                raise AccountError("Invalid meta response: missing universe")
            self._sz_decimals = {
                asset["name"]: int(asset["szDecimals"])
                for asset in universe
                if isinstance(asset, Mapping) and "name" in asset and "szDecimals" in asset
            }
        return self._sz_decimals

    async def sz_decimals(self, coin: str) -> int:
        table = await asyncio.to_thread(self._load_sz_decimals)
        if coin not in table:
            raise TradingError(f"Unknown asset {coin}", retryable=False, context={"coin": coin})
        return table[coin]

    # ------------------------------------------------------------------
    # signed actions
    # ------------------------------------------------------------------
    async def connect(self) -> Exchange:
        async with self._exchange_lock:
            if self._exchange is None:
                base_url = self.base_url
                account_address = self.cfg.account_address
                try:
                    self._exchange = await asyncio.to_thread(
                        Exchange, self.wallet, base_url, account_address=account_address, timeout=self.timeout
                    )
                except (ClientError, ServerError, requests.RequestException) as exc:
                    raise NetworkError(f"Failed to initialise exchange client: {exc}") from exc
                logger.info("Exchange client initialised")
        return self._exchange

    async def update_leverage(self, coin: str, leverage: int, is_cross: bool = False) -> None:
        exchange = await self.connect()
        context = {"coin": coin, "leverage": leverage, "is_cross": is_cross}
        try:
            resp = await asyncio.to_thread(exchange.update_leverage, leverage, coin, is_cross)
        except Exception as exc:
            raise _translate_sdk_error(exc, context) from exc
        if not isinstance(resp, Mapping) or resp.get("status") != "ok":
            raise TradingError(f"Leverage update rejected: {resp}", retryable=False, context=context)
        logger.debug(f"Leverage for {coin} set to {leverage}x ({'cross' if is_cross else 'isolated'})")

    async def place_order(self, request: OrderRequest) -> OrderAck:
        if request.reference_price is None:
            raise TradingError("Market order needs a reference price", retryable=False, context={"coin": request.coin})
        exchange = await self.connect()
        decimals = await self.sz_decimals(request.coin)
        size = round_size(request.size, decimals)
        if size <= 0:
            raise TradingError(
                f"Order size {request.size} rounds to zero at {decimals} decimals",
                retryable=False,
                context={"coin": request.coin, "size": request.size},
            )
        limit_px = slippage_price(request.reference_price, request.side.is_buy, self.cfg.slippage_percent, decimals)
        context = {
            "coin": request.coin,
            "side": request.side.value,
            "size": canonical_decimal(size),
            "limit_px": limit_px,
            "reduce_only": request.reduce_only,
        }
        logger.debug(f"Submitting order {context}")
        try:
            resp = await asyncio.to_thread(
                exchange.order,
                request.coin,
                request.side.is_buy,
                float(size),
                limit_px,
                {"limit": {"tif": request.time_in_force}},
                reduce_only=request.reduce_only,
            )
        except Exception as exc:
            raise _translate_sdk_error(exc, context) from exc
        return parse_order_response(resp)

    # ------------------------------------------------------------------
    # fills
    # ------------------------------------------------------------------
    def _default_stream(self, url: str, on_fatal: Optional[FatalCallback]) -> FillStream:
        return FillStream(
            url,
            self.cfg.stream.policy(),
            ping_interval=self.cfg.stream.ping_interval_sec,
            on_fatal=on_fatal,
        )

    async def subscribe_fills(
        self,
        address: str,
        on_fill: FillCallback,
        on_fatal: Optional[FatalCallback] = None,
    ) -> Unsubscribe:
        stream = self._stream_factory(self.ws_url, on_fatal)
        self._streams.append(stream)
        return await stream.subscribe(address, on_fill)

    async def close(self) -> None:
        streams, self._streams = self._streams, []
        for stream in streams:
            await stream.unsubscribe()
        self.session.close()
