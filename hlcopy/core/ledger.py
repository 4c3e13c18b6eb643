from typing import FrozenSet, Set

from loguru import logger

from ..utils.errors import LedgerCapacityError


class TradeLedger:
    """Coins we currently hold open because we mirrored an opening fill.

    Not synchronized: the copy engine's single fill consumer is the only writer.
    """

    def __init__(self, max_concurrent_trades: int):
        if max_concurrent_trades < 1:
            raise ValueError("max_concurrent_trades must be >= 1")
        self.max_concurrent_trades = max_concurrent_trades
        self._coins: Set[str] = set()

    @staticmethod
    def _key(coin: str) -> str:
        return coin.strip().upper()

    def count(self) -> int:
        return len(self._coins)

    def __len__(self) -> int:
        return len(self._coins)

    def __contains__(self, coin: str) -> bool:
        return self._key(coin) in self._coins

    def is_full(self) -> bool:
        return len(self._coins) >= self.max_concurrent_trades

    def mark_opened(self, coin: str) -> None:
        key = self._key(coin)
        if key in self._coins:
            return
        if self.is_full():
            raise LedgerCapacityError(
                f"Cannot track {key}: {len(self._coins)}/{self.max_concurrent_trades} trades already open",
                context={"coin": key, "open": sorted(self._coins)},
            )
        self._coins.add(key)
        logger.debug(f"Ledger: opened {key} ({len(self._coins)}/{self.max_concurrent_trades})")

    def mark_closed(self, coin: str) -> None:
        key = self._key(coin)
        if key in self._coins:
            self._coins.discard(key)
            logger.debug(f"Ledger: closed {key} ({len(self._coins)}/{self.max_concurrent_trades})")

    def snapshot(self) -> FrozenSet[str]:
        return frozenset(self._coins)
