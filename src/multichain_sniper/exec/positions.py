"""Position lifecycle: one monitoring loop per open position."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping

from multichain_sniper.chains.base import ChainAdapter, call_adapter
from multichain_sniper.config import Settings
from multichain_sniper.errors import PositionNotFoundError, SniperError
from multichain_sniper.types import ChainId, CloseReason, CloseResult, Position, TradeReceipt
from multichain_sniper.utils.logging import get_logger, log_position_closed, log_position_opened
from multichain_sniper.utils.periodic import Clock, PeriodicTask


def exit_reason(position: Position, price: float) -> CloseReason | None:
    """Return the threshold hit at ``price``. Take-profit is checked first."""
    if position.entry_price <= 0 or price <= 0:
        return None
    if position.take_profit_price > 0 and price >= position.take_profit_price:
        return CloseReason.TAKE_PROFIT
    if price <= position.stop_loss_price:
        return CloseReason.STOP_LOSS
    return None


class PositionManager:
    """Owns every position from entry until a terminal condition closes it.

    Each position gets a PeriodicTask that polls balance and price. Poll
    errors and failed exit trades are logged and retried on the next tick.
    """

    def __init__(
        self,
        adapters: Mapping[ChainId, ChainAdapter],
        settings: Settings,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._adapters = adapters
        self._settings = settings
        self._clock = clock
        self._positions: dict[str, Position] = {}
        self._loops: dict[str, PeriodicTask] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed: dict[str, asyncio.Event] = {}
        self._stopped = False
        self._logger = get_logger("multichain_sniper.exec.positions")

    # ------------------------------------------------------------------ registry

    def get(self, position_id: str) -> Position:
        try:
            return self._positions[position_id]
        except KeyError:
            raise PositionNotFoundError(position_id) from None

    def active_positions(self) -> list[Position]:
        return [p for p in self._positions.values() if p.is_active]

    def closed_positions(self) -> list[Position]:
        return [p for p in self._positions.values() if not p.is_active]

    def has_active(self, chain: ChainId, address: str) -> bool:
        key = address.lower()
        return any(p.chain == chain and p.asset.key == key for p in self.active_positions())

    def is_monitoring(self, position_id: str) -> bool:
        loop = self._loops.get(position_id)
        return loop is not None and loop.running

    # ------------------------------------------------------------------ lifecycle

    def open(self, position: Position) -> Position:
        """Register a position and start its monitoring loop.

        After `stop_all` the position is still registered but no loop starts.
        """
        if position.position_id in self._positions:
            raise ValueError(f"duplicate position id: {position.position_id}")
        cfg = self._settings.chain(position.chain)
        self._positions[position.position_id] = position
        self._locks[position.position_id] = asyncio.Lock()
        self._closed[position.position_id] = asyncio.Event()
        loop = PeriodicTask(
            f"position:{position.position_id}",
            cfg.position_poll_interval_sec,
            lambda: self._poll(position.position_id),
            clock=self._clock,
        )
        log_position_opened(self._logger, position)
        if self._stopped:
            self._logger.warning("position_loop_not_started", position_id=position.position_id, reason="stopped")
            return position
        self._loops[position.position_id] = loop
        loop.start()
        return position

    async def close_now(self, position_id: str, reason: CloseReason = CloseReason.MANUAL) -> CloseResult:
        """Close a position immediately, exiting through the adapter unless the balance is dust."""
        position = self.get(position_id)
        async with self._locks[position_id]:
            if not position.is_active and position.close_result is not None:
                return position.close_result
            adapter = self._adapters[position.chain]
            if reason is CloseReason.ZERO_BALANCE:
                result = CloseResult(position_id=position_id, reason=reason, success=True)
            else:
                try:
                    balance = await self._read_balance(position, adapter)
                except SniperError as exc:
                    self._logger.warning("position_close_failed", position_id=position_id, error=str(exc))
                    return CloseResult(position_id=position_id, reason=reason, success=False, error=str(exc))
                if balance < self._settings.chain(position.chain).dust_threshold:
                    result = CloseResult(position_id=position_id, reason=CloseReason.ZERO_BALANCE, success=True)
                else:
                    price = await self._read_price_or_zero(position, adapter)
                    result = await self._exit(position, adapter, balance, reason, price)
                    if not result.success:
                        return result
            self._finish(position, result)
        loop = self._loops.get(position_id)
        if loop is not None:
            await loop.stop()
        return result

    async def stop_all(self) -> None:
        """Cancel every monitoring loop. Positions stay active."""
        self._stopped = True
        loops = list(self._loops.values())
        await asyncio.gather(*(loop.stop() for loop in loops))
        self._logger.info("position_loops_stopped", count=len(loops), active=len(self.active_positions()))

    async def wait_closed(self, position_id: str) -> Position:
        position = self.get(position_id)
        await self._closed[position_id].wait()
        return position

    # ------------------------------------------------------------------ monitoring

    async def _poll(self, position_id: str) -> bool:
        """One monitoring tick. Returns False once the position is closed."""
        position = self._positions.get(position_id)
        if position is None:
            return False
        async with self._locks[position_id]:
            if not position.is_active:
                return False
            adapter = self._adapters[position.chain]
            cfg = self._settings.chain(position.chain)
            if position.entry_price <= 0:
                await self._anchor(position, adapter)
                return True
            try:
                balance = await self._read_balance(position, adapter)
                if balance < cfg.dust_threshold:
                    self._finish(
                        position,
                        CloseResult(position_id=position_id, reason=CloseReason.ZERO_BALANCE, success=True),
                    )
                    return False
                price = await call_adapter(
                    adapter.get_asset_price(position.asset.address),
                    self._settings.adapter_timeout_sec,
                    "get_asset_price",
                )
            except SniperError as exc:
                self._logger.warning("position_poll_failed", position_id=position_id, error=str(exc))
                return True

            if price <= 0:
                self._logger.warning("position_price_unavailable", position_id=position_id)
                return True

            reason = exit_reason(position, price)
            self._logger.debug(
                "position_polled",
                position_id=position_id,
                price=price,
                balance=balance,
                exit_reason=reason.value if reason else None,
            )
            if reason is None:
                return True
            result = await self._exit(position, adapter, balance, reason, price)
            if not result.success:
                return True
            self._finish(position, result)
            return False

    async def _anchor(self, position: Position, adapter: ChainAdapter) -> None:
        """Fix an unknown entry price to the first positive quote."""
        price = await self._read_price_or_zero(position, adapter)
        if price <= 0:
            self._logger.warning("position_price_unavailable", position_id=position.position_id)
            return
        position.anchor(price)
        if position.simulated and position.quantity <= 0:
            position.quantity = position.entry_amount / price
        self._logger.info(
            "position_entry_anchored",
            position_id=position.position_id,
            entry_price=price,
            take_profit_price=position.take_profit_price,
            stop_loss_price=position.stop_loss_price,
        )

    async def _read_balance(self, position: Position, adapter: ChainAdapter) -> float:
        if position.simulated:
            return position.quantity
        return await call_adapter(
            adapter.get_balance(position.asset.address),
            self._settings.adapter_timeout_sec,
            "get_balance",
        )

    async def _read_price_or_zero(self, position: Position, adapter: ChainAdapter) -> float:
        try:
            return await call_adapter(
                adapter.get_asset_price(position.asset.address),
                self._settings.adapter_timeout_sec,
                "get_asset_price",
            )
        except SniperError:
            return 0.0

    async def _exit(
        self,
        position: Position,
        adapter: ChainAdapter,
        balance: float,
        reason: CloseReason,
        price: float,
    ) -> CloseResult:
        """Sell the configured fraction of the balance back to the reference asset."""
        cfg = self._settings.chain(position.chain)
        sell_amount = balance * cfg.exit_fraction
        if position.simulated:
            receipt = TradeReceipt(
                tx_hash=f"sim-{uuid.uuid4().hex[:16]}",
                amount_in=sell_amount,
                amount_out=sell_amount * price if price > 0 else None,
                fill_price=price if price > 0 else None,
                simulated=True,
            )
            return CloseResult(
                position_id=position.position_id,
                reason=reason,
                success=True,
                sell_amount=sell_amount,
                receipt=receipt,
            )
        try:
            receipt = await call_adapter(
                adapter.swap(position.asset.address, adapter.reference_asset, sell_amount, cfg.exit_slippage_pct),
                self._settings.trade_timeout_sec,
                "swap",
            )
        except SniperError as exc:
            self._logger.error(
                "position_exit_failed",
                position_id=position.position_id,
                reason=reason.value,
                sell_amount=sell_amount,
                error=str(exc),
            )
            return CloseResult(
                position_id=position.position_id,
                reason=reason,
                success=False,
                sell_amount=sell_amount,
                error=str(exc),
            )
        return CloseResult(
            position_id=position.position_id,
            reason=reason,
            success=True,
            sell_amount=sell_amount,
            receipt=receipt,
        )

    def _finish(self, position: Position, result: CloseResult) -> None:
        position.mark_closed(result.reason, result)
        log_position_closed(self._logger, position, result)
        self._closed[position.position_id].set()
