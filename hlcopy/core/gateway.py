from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Union

from .models import AccountEquity, FillEvent, OrderAck, OrderRequest, Position

FillCallback = Callable[[FillEvent], Union[None, Awaitable[None]]]
FatalCallback = Callable[[Exception], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], Awaitable[None]]


class ExchangeGateway(ABC):
    """Everything the copy engine needs from the exchange."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Our own account address."""
        raise NotImplementedError

    @abstractmethod
    async def get_account_equity(self, address: str) -> AccountEquity:
        """AccountError on a malformed response, NetworkError otherwise."""
        raise NotImplementedError

    @abstractmethod
    async def get_positions(self, address: str) -> List[Position]:
        """Open positions; malformed entries are skipped, not fatal."""
        raise NotImplementedError

    @abstractmethod
    async def update_leverage(self, coin: str, leverage: int, is_cross: bool = False) -> None:
        raise NotImplementedError

    @abstractmethod
    async def place_order(self, request: OrderRequest) -> OrderAck:
        """TradingError, retryable or not depending on the cause."""
        raise NotImplementedError

    @abstractmethod
    async def subscribe_fills(
        self,
        address: str,
        on_fill: FillCallback,
        on_fatal: Optional[FatalCallback] = None,
    ) -> Unsubscribe:
        raise NotImplementedError

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None
