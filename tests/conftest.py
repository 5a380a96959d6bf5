from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import AsyncIterator
from typing import Any

from multichain_sniper.chains.base import ChainAdapter, DiscoveryMode
from multichain_sniper.config import Settings
from multichain_sniper.detection.coordinator import DetectionCoordinator
from multichain_sniper.errors import AssetNotFoundError
from multichain_sniper.exec.arbitrage import SpreadArbitrage
from multichain_sniper.exec.positions import PositionManager
from multichain_sniper.exec.sniper import SnipeExecutor
from multichain_sniper.risk.validator import RiskValidator
from multichain_sniper.safety.filter import SafetyFilter
from multichain_sniper.types import (
    AssetDescriptor,
    ChainId,
    LiquiditySnapshot,
    PairEvent,
    Position,
    TradeReceipt,
    TradeSide,
)

REF = "0xREF"


def make_settings(**overrides: Any) -> Settings:
    return Settings(_env_file=None, **overrides)


class VirtualClock:
    """Deterministic clock: sleepers wake only when advance() passes their deadline."""

    def __init__(self) -> None:
        self.now = 0.0
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq = itertools.count()

    async def sleep(self, seconds: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + seconds, next(self._seq), future))
        await future

    async def settle(self) -> None:
        for _ in range(100):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline = self._sleepers[0][0]
            self.now = deadline
            while self._sleepers and self._sleepers[0][0] == deadline:
                _, _, future = heapq.heappop(self._sleepers)
                if not future.done():
                    future.set_result(None)
            await self.settle()
        self.now = target
        await self.settle()


def _next(values: dict[str, list[Any]], key: str, default: Any) -> Any:
    seq = values.get(key)
    if not seq:
        return default
    value = seq.pop(0) if len(seq) > 1 else seq[0]
    if isinstance(value, Exception):
        raise value
    return value


class FakeAdapter(ChainAdapter):
    """In-memory chain adapter driven by scripted sequences."""

    def __init__(
        self,
        chain: ChainId = ChainId.ETHEREUM,
        *,
        reference_asset: str = REF,
        discovery_mode: DiscoveryMode = DiscoveryMode.STREAM,
        initialized: bool = True,
    ) -> None:
        super().__init__(reference_asset=reference_asset)
        self.chain = chain
        self.discovery_mode = discovery_mode
        self.initialized = initialized
        self.init_result = True
        self.prices: dict[str, list[Any]] = {}
        self.balances: dict[str, list[Any]] = {}
        self.info: dict[str, AssetDescriptor] = {}
        self.missing: set[str] = set()
        self.info_errors: dict[str, Exception] = {}
        self.price_gates: dict[str, asyncio.Event] = {}
        self.swap_gate: asyncio.Event | None = None
        self.swap_errors: list[Exception | None] = []
        self.swap_fill_price: float | None = None
        self.swap_amount_out: float | None = None
        self.feed: asyncio.Queue[PairEvent] = asyncio.Queue()
        self.poll_batches: list[Any] = []
        self.venue_prices: dict[str, float] = {}
        self.stream_opens = 0
        self.info_calls: list[str] = []
        self.price_calls: list[str] = []
        self.balance_calls: list[str] = []
        self.swaps: list[tuple[str, str, float, float]] = []
        self.exchange_trades: list[tuple[str, str, float]] = []
        self.closed = False

    async def initialize(self) -> bool:
        self.initialized = self.init_result
        return self.init_result

    async def stream_new_pairs(self) -> AsyncIterator[PairEvent]:
        self.stream_opens += 1
        while True:
            yield await self.feed.get()

    async def poll_new_assets(self) -> list[PairEvent]:
        if not self.poll_batches:
            return []
        batch = self.poll_batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def get_asset_info(self, address: str) -> AssetDescriptor:
        self.info_calls.append(address)
        if address in self.info_errors:
            raise self.info_errors[address]
        if address in self.missing:
            raise AssetNotFoundError(address)
        return self.info.get(address) or AssetDescriptor(
            chain=self.chain, address=address, name="Token", symbol="TKN", decimals=18, total_supply=1e9
        )

    async def get_asset_price(self, address: str) -> float:
        self.price_calls.append(address)
        gate = self.price_gates.get(address)
        if gate is not None:
            await gate.wait()
        return float(_next(self.prices, address, 1.0))

    async def get_balance(self, address: str) -> float:
        self.balance_calls.append(address)
        return float(_next(self.balances, address, 0.0))

    async def swap(self, asset_in: str, asset_out: str, amount: float, slippage_pct: float) -> TradeReceipt:
        self.swaps.append((asset_in, asset_out, amount, slippage_pct))
        if self.swap_gate is not None:
            await self.swap_gate.wait()
        if self.swap_errors:
            error = self.swap_errors.pop(0)
            if error is not None:
                raise error
        return TradeReceipt(
            tx_hash=f"0xswap{len(self.swaps)}",
            amount_in=amount,
            amount_out=self.swap_amount_out,
            fill_price=self.swap_fill_price,
        )

    async def get_venue_prices(self) -> dict[str, float]:
        return dict(self.venue_prices)

    async def execute_exchange_trade(self, venue: str, side: TradeSide, amount: float) -> TradeReceipt:
        self.exchange_trades.append((venue, side, amount))
        return TradeReceipt(tx_hash=f"{venue}-{side}-{len(self.exchange_trades)}", amount_in=amount, venue=venue)

    async def close(self) -> None:
        self.closed = True


def make_asset(address: str, chain: ChainId = ChainId.ETHEREUM, **kwargs: Any) -> AssetDescriptor:
    return AssetDescriptor(chain=chain, address=address, **kwargs)


def make_pair_event(
    token: str,
    *,
    chain: ChainId = ChainId.ETHEREUM,
    reference: str = REF,
    has_reference_asset: bool = True,
    reference_reserve: float = 50.0,
    liquidity_usd: float = 200_000.0,
) -> PairEvent:
    other = reference if has_reference_asset else "0xOTHER"
    return PairEvent(
        chain=chain,
        pair_address=f"pair-{token}",
        asset0=make_asset(token, chain),
        asset1=make_asset(other, chain, symbol="WETH"),
        has_reference_asset=has_reference_asset,
        liquidity=LiquiditySnapshot(
            reserve0=1_000_000.0,
            reserve1=reference_reserve,
            reference_reserve=reference_reserve,
            liquidity_usd=liquidity_usd,
        ),
    )


def make_position(
    position_id: str = "pos-1",
    *,
    chain: ChainId = ChainId.ETHEREUM,
    address: str = "0xTOKEN",
    entry_price: float = 100.0,
    quantity: float = 1000.0,
    take_profit_pct: float = 10.0,
    stop_loss_pct: float = 5.0,
    simulated: bool = False,
) -> Position:
    return Position(
        position_id=position_id,
        chain=chain,
        asset=make_asset(address, chain),
        entry_amount=0.1,
        quantity=quantity,
        entry_price=entry_price,
        take_profit_pct=take_profit_pct,
        stop_loss_pct=stop_loss_pct,
        simulated=simulated,
    )


class Stack:
    """Fully wired core components over fake adapters."""

    def __init__(self, settings: Settings, adapters: dict[ChainId, ChainAdapter], clock: VirtualClock) -> None:
        self.settings = settings
        self.adapters = adapters
        self.clock = clock
        self.risk = RiskValidator(settings)
        self.positions = PositionManager(adapters, settings, clock=clock)
        self.safety = SafetyFilter(adapters, settings)
        self.sniper = SnipeExecutor(adapters, self.risk, self.positions, settings)
        self.arbitrage = SpreadArbitrage(self.risk, settings)
        self.coordinator = DetectionCoordinator(
            adapters,
            self.safety,
            self.sniper,
            settings,
            arbitrage=self.arbitrage,
            clock=clock,
        )

    async def close(self) -> None:
        await self.coordinator.stop_all()
        await self.coordinator.wait_idle()
        await self.positions.stop_all()
