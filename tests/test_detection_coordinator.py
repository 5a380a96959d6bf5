from __future__ import annotations

import asyncio

import pytest

from conftest import FakeAdapter, Stack, VirtualClock, make_pair_event, make_settings
from multichain_sniper.chains.base import DiscoveryMode
from multichain_sniper.errors import AdapterUnavailableError, NetworkError
from multichain_sniper.types import ChainId, PairEvent

SOL_REF = "So11111111111111111111111111111111111111112"


def _eth_stack(**settings: object) -> tuple[Stack, FakeAdapter]:
    adapter = FakeAdapter()
    stack = Stack(make_settings(**settings), {ChainId.ETHEREUM: adapter}, VirtualClock())
    return stack, adapter


def _sniped(stack: Stack, chain: ChainId) -> list[str]:
    return [p.asset.address for p in stack.positions.active_positions() if p.chain is chain]


@pytest.mark.asyncio
async def test_pipeline_filters_then_snipes() -> None:
    stack, adapter = _eth_stack()
    await stack.coordinator.start(ChainId.ETHEREUM)

    adapter.feed.put_nowait(make_pair_event("0xnoref", has_reference_asset=False))
    adapter.feed.put_nowait(make_pair_event("0xthin", reference_reserve=2.0))
    adapter.feed.put_nowait(make_pair_event("0xcheap", liquidity_usd=10_000.0))
    adapter.feed.put_nowait(make_pair_event("0xgood"))
    await stack.clock.settle()
    await stack.coordinator.wait_idle()

    assert adapter.info_calls == ["0xgood"]
    assert _sniped(stack, ChainId.ETHEREUM) == ["0xgood"]
    await stack.close()


@pytest.mark.asyncio
async def test_usd_filter_disabled_when_threshold_is_zero() -> None:
    stack, adapter = _eth_stack(ethereum={"min_liquidity_usd": 0})
    await stack.coordinator.start(ChainId.ETHEREUM)

    adapter.feed.put_nowait(make_pair_event("0xunpriced", liquidity_usd=0.0))
    await stack.clock.settle()
    await stack.coordinator.wait_idle()

    assert _sniped(stack, ChainId.ETHEREUM) == ["0xunpriced"]
    await stack.close()


@pytest.mark.asyncio
async def test_events_handled_in_emission_order() -> None:
    stack, adapter = _eth_stack()
    await stack.coordinator.start(ChainId.ETHEREUM)

    for token in ("0x01", "0x02", "0x03"):
        adapter.feed.put_nowait(make_pair_event(token))
    await stack.clock.settle()
    await stack.coordinator.wait_idle()

    assert adapter.info_calls == ["0x01", "0x02", "0x03"]
    await stack.close()


@pytest.mark.asyncio
async def test_reference_asset_side_is_skipped() -> None:
    stack, adapter = _eth_stack()
    await stack.coordinator.start(ChainId.ETHEREUM)

    event = make_pair_event("0xtoken")
    flipped = PairEvent(
        chain=event.chain,
        pair_address=event.pair_address,
        asset0=event.asset1,
        asset1=event.asset0,
        has_reference_asset=True,
        liquidity=event.liquidity,
    )
    adapter.feed.put_nowait(flipped)
    await stack.clock.settle()
    await stack.coordinator.wait_idle()

    assert adapter.info_calls == ["0xtoken"]
    await stack.close()


@pytest.mark.asyncio
async def test_slow_safety_check_does_not_block_other_chains() -> None:
    eth = FakeAdapter()
    sol = FakeAdapter(ChainId.SOLANA, reference_asset=SOL_REF, discovery_mode=DiscoveryMode.POLL)
    clock = VirtualClock()
    stack = Stack(make_settings(), {ChainId.ETHEREUM: eth, ChainId.SOLANA: sol}, clock)

    gate = asyncio.Event()
    eth.price_gates["0xslow"] = gate
    sol.poll_batches.append(
        [make_pair_event("MintFast", chain=ChainId.SOLANA, reference=SOL_REF, reference_reserve=80.0)]
    )

    await stack.coordinator.start(ChainId.ETHEREUM)
    await stack.coordinator.start(ChainId.SOLANA)
    eth.feed.put_nowait(make_pair_event("0xslow"))
    eth.feed.put_nowait(make_pair_event("0xnext"))
    await clock.settle()

    assert _sniped(stack, ChainId.SOLANA) == ["MintFast"]
    assert _sniped(stack, ChainId.ETHEREUM) == ["0xnext"]

    gate.set()
    await stack.coordinator.wait_idle()
    assert sorted(_sniped(stack, ChainId.ETHEREUM)) == ["0xnext", "0xslow"]
    await stack.close()


@pytest.mark.asyncio
async def test_poll_failure_does_not_stop_detection() -> None:
    sol = FakeAdapter(ChainId.SOLANA, reference_asset=SOL_REF, discovery_mode=DiscoveryMode.POLL)
    clock = VirtualClock()
    stack = Stack(make_settings(), {ChainId.SOLANA: sol}, clock)
    sol.poll_batches = [
        NetworkError("dexscreener down"),
        [make_pair_event("MintA", chain=ChainId.SOLANA, reference=SOL_REF, reference_reserve=80.0)],
    ]

    await stack.coordinator.start(ChainId.SOLANA)
    await clock.settle()
    assert _sniped(stack, ChainId.SOLANA) == []

    await clock.advance(60)
    await stack.coordinator.wait_idle()
    assert _sniped(stack, ChainId.SOLANA) == ["MintA"]
    await stack.close()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_drops_later_events() -> None:
    stack, adapter = _eth_stack()
    await stack.coordinator.start(ChainId.ETHEREUM)
    assert stack.coordinator.is_running(ChainId.ETHEREUM)

    await stack.coordinator.stop(ChainId.ETHEREUM)
    await stack.coordinator.stop(ChainId.ETHEREUM)
    await stack.coordinator.stop(ChainId.SOLANA)
    assert stack.coordinator.active_chains() == []

    adapter.feed.put_nowait(make_pair_event("0xlate"))
    await stack.clock.settle()
    await stack.coordinator.wait_idle()
    assert adapter.info_calls == []
    await stack.close()


@pytest.mark.asyncio
async def test_stop_prevents_snipe_for_inflight_pipeline() -> None:
    stack, adapter = _eth_stack()
    gate = asyncio.Event()
    adapter.price_gates["0xpending"] = gate
    await stack.coordinator.start(ChainId.ETHEREUM)

    adapter.feed.put_nowait(make_pair_event("0xpending"))
    await stack.clock.settle()
    assert adapter.info_calls == ["0xpending"]

    await stack.coordinator.stop(ChainId.ETHEREUM)
    gate.set()
    await stack.coordinator.wait_idle()
    assert stack.positions.active_positions() == []
    await stack.close()


@pytest.mark.asyncio
async def test_start_is_idempotent() -> None:
    stack, adapter = _eth_stack()
    await stack.coordinator.start(ChainId.ETHEREUM)
    await stack.coordinator.start(ChainId.ETHEREUM)
    await stack.clock.settle()
    assert adapter.stream_opens == 1
    await stack.close()


@pytest.mark.asyncio
async def test_start_requires_reachable_adapter() -> None:
    adapter = FakeAdapter(initialized=False)
    adapter.init_result = False
    stack = Stack(make_settings(), {ChainId.ETHEREUM: adapter}, VirtualClock())

    with pytest.raises(AdapterUnavailableError):
        await stack.coordinator.start(ChainId.ETHEREUM)
    with pytest.raises(AdapterUnavailableError):
        await stack.coordinator.start(ChainId.BITCOIN)
    assert not stack.coordinator.is_running(ChainId.ETHEREUM)


@pytest.mark.asyncio
async def test_sniping_disabled_only_evaluates() -> None:
    stack, adapter = _eth_stack(ethereum={"sniping_enabled": False})
    await stack.coordinator.start(ChainId.ETHEREUM)

    adapter.feed.put_nowait(make_pair_event("0xgood"))
    await stack.clock.settle()
    await stack.coordinator.wait_idle()

    assert adapter.info_calls == ["0xgood"]
    assert stack.positions.active_positions() == []
    await stack.close()


@pytest.mark.asyncio
async def test_spread_detection_runs_arbitrage() -> None:
    btc = FakeAdapter(ChainId.BITCOIN, reference_asset="BTC", discovery_mode=DiscoveryMode.SPREAD)
    btc.venue_prices = {"binance": 100_000.0, "kraken": 101_000.0}
    clock = VirtualClock()
    settings = make_settings(bitcoin={"arbitrage_enabled": True, "trading_enabled": True})
    stack = Stack(settings, {ChainId.BITCOIN: btc}, clock)

    await stack.coordinator.start(ChainId.BITCOIN)
    await clock.settle()

    assert len(stack.coordinator.recent_opportunities) == 1
    opportunity = stack.coordinator.recent_opportunities[0]
    assert opportunity.buy_venue == "binance"
    assert opportunity.sell_venue == "kraken"
    assert opportunity.spread_pct == pytest.approx(1.0)
    assert btc.exchange_trades == [("binance", "buy", 0.001), ("kraken", "sell", 0.001)]

    btc.venue_prices = {"binance": 100_000.0, "kraken": 100_100.0}
    await clock.advance(30)
    assert len(stack.coordinator.recent_opportunities) == 1
    await stack.close()
