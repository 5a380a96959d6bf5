from __future__ import annotations

import pytest

from conftest import FakeAdapter, make_settings
from multichain_sniper.chains.base import DiscoveryMode
from multichain_sniper.detection.spread import find_spread_opportunity
from multichain_sniper.exec.arbitrage import SpreadArbitrage
from multichain_sniper.risk.validator import RiskValidator
from multichain_sniper.types import ChainId, SpreadOpportunity, TradeReceipt, TradeSide


def test_spread_pairs_cheapest_and_dearest_venue() -> None:
    opportunity = find_spread_opportunity(
        ChainId.BITCOIN,
        {"binance": 100.0, "kraken": 102.0, "coinbase": 101.0},
        0.5,
    )
    assert opportunity is not None
    assert (opportunity.buy_venue, opportunity.sell_venue) == ("binance", "kraken")
    assert opportunity.spread_pct == pytest.approx(2.0)


def test_spread_needs_two_priced_venues_and_threshold() -> None:
    assert find_spread_opportunity(ChainId.BITCOIN, {"binance": 100.0}, 0.5) is None
    assert find_spread_opportunity(ChainId.BITCOIN, {"binance": 100.0, "kraken": 0.0}, 0.5) is None
    assert find_spread_opportunity(ChainId.BITCOIN, {"binance": 100.0, "kraken": 100.5}, 0.5) is None


def _opportunity(spread_pct: float) -> SpreadOpportunity:
    return SpreadOpportunity(
        chain=ChainId.BITCOIN,
        buy_venue="binance",
        buy_price=100_000.0,
        sell_venue="kraken",
        sell_price=100_000.0 * (1 + spread_pct / 100),
        spread_pct=spread_pct,
    )


def _btc_adapter() -> FakeAdapter:
    return FakeAdapter(ChainId.BITCOIN, reference_asset="BTC", discovery_mode=DiscoveryMode.SPREAD)


@pytest.mark.asyncio
async def test_low_profit_is_skipped() -> None:
    settings = make_settings(bitcoin={"trading_enabled": True, "min_arbitrage_profit_pct": 1.0})
    adapter = _btc_adapter()
    result = await SpreadArbitrage(RiskValidator(settings), settings).execute(adapter, _opportunity(0.8))
    assert not result.executed
    assert result.reason == "profit too low"
    assert adapter.exchange_trades == []


@pytest.mark.asyncio
async def test_risk_rejection_blocks_both_legs() -> None:
    settings = make_settings(bitcoin={"trading_enabled": True, "arbitrage_amount": 0.5})
    adapter = _btc_adapter()
    result = await SpreadArbitrage(RiskValidator(settings), settings).execute(adapter, _opportunity(1.0))
    assert not result.executed
    assert result.reason.startswith("risk-rejected")
    assert adapter.exchange_trades == []


@pytest.mark.asyncio
async def test_simulated_arbitrage_places_no_orders() -> None:
    settings = make_settings()
    adapter = _btc_adapter()
    result = await SpreadArbitrage(RiskValidator(settings), settings).execute(adapter, _opportunity(1.0))
    assert result.executed
    assert result.simulated
    assert result.buy_receipt is not None and result.buy_receipt.venue == "binance"
    assert adapter.exchange_trades == []


@pytest.mark.asyncio
async def test_failed_sell_leg_keeps_buy_receipt() -> None:
    class SellFails(FakeAdapter):
        async def execute_exchange_trade(self, venue: str, side: TradeSide, amount: float) -> TradeReceipt:
            if side == "sell":
                raise RuntimeError("kraken maintenance")
            return await super().execute_exchange_trade(venue, side, amount)

    settings = make_settings(bitcoin={"trading_enabled": True})
    adapter = SellFails(ChainId.BITCOIN, reference_asset="BTC", discovery_mode=DiscoveryMode.SPREAD)
    result = await SpreadArbitrage(RiskValidator(settings), settings).execute(adapter, _opportunity(1.0))
    assert not result.executed
    assert result.reason == "error: kraken maintenance"
    assert result.buy_receipt is not None
    assert result.sell_receipt is None
