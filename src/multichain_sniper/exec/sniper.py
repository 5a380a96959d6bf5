"""Entry execution: turn an approved asset into a monitored position."""

from __future__ import annotations

import uuid
from collections.abc import Mapping

from multichain_sniper.chains.base import ChainAdapter, call_adapter
from multichain_sniper.config import ChainSettings, Settings
from multichain_sniper.errors import SniperError
from multichain_sniper.exec.positions import PositionManager
from multichain_sniper.risk.validator import RiskValidator
from multichain_sniper.types import AssetDescriptor, ChainId, Position, SnipeFailure, SnipeFailureReason
from multichain_sniper.utils.logging import get_logger, log_snipe_attempt, log_snipe_result


class SnipeExecutor:
    """One-shot entry trades. A missed snipe is never retried."""

    def __init__(
        self,
        adapters: Mapping[ChainId, ChainAdapter],
        risk: RiskValidator,
        positions: PositionManager,
        settings: Settings,
    ) -> None:
        self._adapters = adapters
        self._risk = risk
        self._positions = positions
        self._settings = settings
        self._inflight: set[tuple[ChainId, str]] = set()
        self._logger = get_logger("multichain_sniper.exec.sniper")

    async def snipe(self, chain: ChainId, asset: AssetDescriptor) -> Position | SnipeFailure:
        chain = ChainId(chain)
        key = (chain, asset.key)
        guarded = self._settings.max_one_position_per_asset
        if guarded:
            if key in self._inflight or self._positions.has_active(chain, asset.address):
                return self._fail(chain, asset, "position-active", "an entry or active position already exists")
            self._inflight.add(key)
        try:
            return await self._snipe(chain, asset)
        finally:
            if guarded:
                self._inflight.discard(key)

    async def _snipe(self, chain: ChainId, asset: AssetDescriptor) -> Position | SnipeFailure:
        cfg = self._settings.chain(chain)
        amount, slippage = cfg.snipe_amount, cfg.snipe_slippage_pct

        adapter = self._adapters.get(chain)
        if adapter is None:
            return self._fail(chain, asset, "execution-error", f"no adapter for chain {chain.value}")

        decision = await self._risk.validate(chain, amount, "snipe")
        if not decision.approved:
            return self._fail(chain, asset, "risk-rejected", decision.reason or "")

        simulated = not cfg.trading_enabled
        log_snipe_attempt(
            self._logger,
            chain=chain.value,
            asset=asset.address,
            amount=amount,
            slippage_pct=slippage,
            simulated=simulated,
        )

        if simulated:
            price = await self._quote_or_zero(adapter, asset)
            position = self._build_position(
                chain,
                asset,
                cfg,
                entry_price=price,
                quantity=amount / price if price > 0 else 0.0,
                simulated=True,
                entry_tx=None,
            )
            return self._register(position)

        try:
            receipt = await call_adapter(
                adapter.swap(adapter.reference_asset, asset.address, amount, slippage),
                self._settings.trade_timeout_sec,
                "swap",
            )
        except Exception as exc:  # noqa: BLE001 - any adapter failure is a failed snipe.
            self._logger.exception("snipe_execution_failed", chain=chain.value, asset=asset.address, error=str(exc))
            return self._fail(chain, asset, "execution-error", str(exc))

        entry_price = receipt.fill_price or await self._quote_or_zero(adapter, asset)
        quantity = receipt.amount_out
        if not quantity:
            quantity = amount / entry_price if entry_price > 0 else 0.0
        position = self._build_position(
            chain,
            asset,
            cfg,
            entry_price=entry_price,
            quantity=quantity,
            simulated=False,
            entry_tx=receipt.tx_hash,
        )
        return self._register(position)

    async def _quote_or_zero(self, adapter: ChainAdapter, asset: AssetDescriptor) -> float:
        try:
            price = await call_adapter(
                adapter.get_asset_price(asset.address),
                self._settings.adapter_timeout_sec,
                "get_asset_price",
            )
        except SniperError as exc:
            self._logger.warning("snipe_quote_failed", asset=asset.address, error=str(exc))
            return 0.0
        return max(0.0, float(price or 0.0))

    def _build_position(
        self,
        chain: ChainId,
        asset: AssetDescriptor,
        cfg: ChainSettings,
        *,
        entry_price: float,
        quantity: float,
        simulated: bool,
        entry_tx: str | None,
    ) -> Position:
        return Position(
            position_id=uuid.uuid4().hex,
            chain=chain,
            asset=asset,
            entry_amount=cfg.snipe_amount,
            quantity=quantity,
            entry_price=entry_price,
            take_profit_pct=cfg.take_profit_pct,
            stop_loss_pct=cfg.stop_loss_pct,
            simulated=simulated,
            entry_tx=entry_tx,
        )

    def _register(self, position: Position) -> Position:
        self._positions.open(position)
        log_snipe_result(self._logger, position)
        return position

    def _fail(
        self,
        chain: ChainId,
        asset: AssetDescriptor,
        reason: SnipeFailureReason,
        detail: str,
    ) -> SnipeFailure:
        failure = SnipeFailure(chain=chain, asset=asset, reason=reason, detail=detail)
        log_snipe_result(self._logger, failure)
        return failure
