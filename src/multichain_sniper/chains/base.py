"""Abstract chain adapter contract."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable
from enum import Enum
from typing import TypeVar

from multichain_sniper.errors import ExecutionError, NetworkError
from multichain_sniper.types import AssetDescriptor, ChainId, PairEvent, TradeReceipt, TradeSide

T = TypeVar("T")


class DiscoveryMode(str, Enum):
    """How a chain surfaces new listings."""

    STREAM = "stream"  # push: async iterator of PairEvent
    POLL = "poll"  # pull: periodic list of PairEvent
    SPREAD = "spread"  # venue price comparison, no listings


class ChainAdapter(ABC):
    """Per-chain capability used by detection, safety and execution.

    One instance per chain, constructed explicitly and passed to the
    components that need it.
    """

    chain: ChainId
    discovery_mode: DiscoveryMode = DiscoveryMode.POLL

    def __init__(self, reference_asset: str) -> None:
        self.reference_asset = reference_asset
        self.initialized = False

    @abstractmethod
    async def initialize(self) -> bool:
        """Connect to the chain. Returns False when the chain is unreachable."""

    async def stream_new_pairs(self) -> AsyncIterator[PairEvent]:
        """Yield pair-creation events as they happen."""
        raise NotImplementedError(f"{self.chain.value} adapter does not stream pairs")
        yield  # pragma: no cover

    async def poll_new_assets(self) -> list[PairEvent]:
        """Return listings first seen since the previous poll."""
        raise NotImplementedError(f"{self.chain.value} adapter does not poll listings")

    @abstractmethod
    async def get_asset_info(self, address: str) -> AssetDescriptor:
        """Fetch asset metadata. Raises AdapterCallError on failure."""

    @abstractmethod
    async def get_asset_price(self, address: str) -> float:
        """Quote one unit of the asset in the reference currency; 0.0 on failure."""

    @abstractmethod
    async def get_balance(self, address: str) -> float:
        """Return the wallet balance of the asset in asset units."""

    @abstractmethod
    async def swap(
        self,
        asset_in: str,
        asset_out: str,
        amount: float,
        slippage_pct: float,
    ) -> TradeReceipt:
        """Swap ``amount`` of ``asset_in`` into ``asset_out``. Raises ExecutionError."""

    async def get_venue_prices(self) -> dict[str, float]:
        """Return the reference asset price per venue."""
        return {}

    async def execute_exchange_trade(self, venue: str, side: TradeSide, amount: float) -> TradeReceipt:
        """Place a market order on a centralized venue."""
        raise ExecutionError(f"{self.chain.value} adapter has no exchange venues")

    async def close(self) -> None:
        """Release network resources."""
        return None


async def call_adapter(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await an adapter call, mapping a timeout to NetworkError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        raise NetworkError(f"{operation}_timeout after {timeout}s") from exc
