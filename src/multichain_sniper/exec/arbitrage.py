"""Buy-low / sell-high execution for venue price spreads."""

from __future__ import annotations

from multichain_sniper.chains.base import ChainAdapter, call_adapter
from multichain_sniper.config import Settings
from multichain_sniper.risk.validator import RiskValidator
from multichain_sniper.types import ArbitrageResult, SpreadOpportunity, TradeReceipt
from multichain_sniper.utils.logging import get_logger


class SpreadArbitrage:
    """Act on a SpreadOpportunity. Failures are reported, never retried."""

    def __init__(self, risk: RiskValidator, settings: Settings) -> None:
        self._risk = risk
        self._settings = settings
        self._logger = get_logger("multichain_sniper.exec.arbitrage")

    async def execute(self, adapter: ChainAdapter, opportunity: SpreadOpportunity) -> ArbitrageResult:
        cfg = self._settings.chain(opportunity.chain)
        amount = cfg.arbitrage_amount
        chain = opportunity.chain.value

        if opportunity.spread_pct <= cfg.min_arbitrage_profit_pct:
            self._logger.info(
                "arbitrage_skipped",
                chain=chain,
                spread_pct=round(opportunity.spread_pct, 4),
                min_profit_pct=cfg.min_arbitrage_profit_pct,
            )
            return ArbitrageResult(opportunity=opportunity, executed=False, reason="profit too low")

        decision = await self._risk.validate(opportunity.chain, amount, "arbitrage")
        if not decision.approved:
            return ArbitrageResult(
                opportunity=opportunity,
                executed=False,
                reason=f"risk-rejected: {decision.reason}",
            )

        self._logger.info(
            "arbitrage_executing",
            chain=chain,
            buy_venue=opportunity.buy_venue,
            sell_venue=opportunity.sell_venue,
            buy_price=opportunity.buy_price,
            sell_price=opportunity.sell_price,
            spread_pct=round(opportunity.spread_pct, 4),
            amount=amount,
            simulated=not cfg.trading_enabled,
        )

        if not cfg.trading_enabled:
            return ArbitrageResult(
                opportunity=opportunity,
                executed=True,
                reason="simulated",
                amount=amount,
                simulated=True,
                buy_receipt=TradeReceipt(
                    tx_hash="sim-buy",
                    amount_in=amount,
                    fill_price=opportunity.buy_price,
                    venue=opportunity.buy_venue,
                    simulated=True,
                ),
                sell_receipt=TradeReceipt(
                    tx_hash="sim-sell",
                    amount_in=amount,
                    fill_price=opportunity.sell_price,
                    venue=opportunity.sell_venue,
                    simulated=True,
                ),
            )

        timeout = self._settings.trade_timeout_sec
        buy_receipt: TradeReceipt | None = None
        try:
            buy_receipt = await call_adapter(
                adapter.execute_exchange_trade(opportunity.buy_venue, "buy", amount),
                timeout,
                "exchange_buy",
            )
            sell_receipt = await call_adapter(
                adapter.execute_exchange_trade(opportunity.sell_venue, "sell", amount),
                timeout,
                "exchange_sell",
            )
        except Exception as exc:  # noqa: BLE001 - reported in the result, not raised.
            self._logger.error(
                "arbitrage_failed",
                chain=chain,
                leg="sell" if buy_receipt else "buy",
                error=str(exc),
            )
            return ArbitrageResult(
                opportunity=opportunity,
                executed=False,
                reason=f"error: {exc}",
                amount=amount,
                buy_receipt=buy_receipt,
            )

        self._logger.info(
            "arbitrage_executed",
            chain=chain,
            buy_order=buy_receipt.tx_hash,
            sell_order=sell_receipt.tx_hash,
        )
        return ArbitrageResult(
            opportunity=opportunity,
            executed=True,
            amount=amount,
            buy_receipt=buy_receipt,
            sell_receipt=sell_receipt,
        )
