from __future__ import annotations

import pytest

from conftest import REF, FakeAdapter, VirtualClock, make_position, make_settings
from multichain_sniper.errors import ExecutionError, NetworkError, PositionNotFoundError
from multichain_sniper.exec.positions import PositionManager, exit_reason
from multichain_sniper.types import ChainId, CloseReason, PositionStatus, build_exit_prices

POLL = 30.0


def _manager(adapter: FakeAdapter, clock: VirtualClock, **settings: object) -> PositionManager:
    return PositionManager({ChainId.ETHEREUM: adapter}, make_settings(**settings), clock=clock)


def test_exit_prices_from_entry() -> None:
    take_profit, stop_loss = build_exit_prices(100.0, 10.0, 5.0)
    assert take_profit == pytest.approx(110.0)
    assert stop_loss == pytest.approx(95.0)
    assert build_exit_prices(0.0, 10.0, 5.0) == (0.0, 0.0)

    position = make_position(entry_price=100.0)
    assert position.take_profit_price == pytest.approx(110.0)
    assert position.stop_loss_price == pytest.approx(95.0)


def test_exit_reason_thresholds() -> None:
    position = make_position(entry_price=100.0)
    assert exit_reason(position, 105.0) is None
    assert exit_reason(position, 110.0) is CloseReason.TAKE_PROFIT
    assert exit_reason(position, 95.0) is CloseReason.STOP_LOSS
    assert exit_reason(position, 0.0) is None


def test_exit_reason_prefers_take_profit_on_tie() -> None:
    position = make_position(entry_price=100.0, take_profit_pct=0.0, stop_loss_pct=0.0)
    assert exit_reason(position, 100.0) is CloseReason.TAKE_PROFIT


@pytest.mark.asyncio
async def test_take_profit_closes_on_third_poll() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [100.0, 105.0, 111.0]
    adapter.balances["0xTOKEN"] = [1000.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    await clock.advance(POLL)
    assert position.is_active
    assert adapter.swaps == []

    await clock.advance(POLL)
    assert position.status is PositionStatus.CLOSED
    assert position.close_reason is CloseReason.TAKE_PROFIT
    assert position.close_result is not None
    assert position.close_result.sell_amount == pytest.approx(950.0)
    assert len(adapter.swaps) == 1
    asset_in, asset_out, amount, slippage = adapter.swaps[0]
    assert (asset_in, asset_out) == ("0xTOKEN", REF)
    assert amount == pytest.approx(950.0)
    assert slippage == 5.0
    assert not manager.is_monitoring(position.position_id)

    await clock.advance(POLL * 3)
    assert len(adapter.swaps) == 1


@pytest.mark.asyncio
async def test_stop_loss_closes_position() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [94.0]
    adapter.balances["0xTOKEN"] = [500.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    assert position.close_reason is CloseReason.STOP_LOSS
    assert adapter.swaps[0][2] == pytest.approx(475.0)


@pytest.mark.asyncio
async def test_zero_balance_closes_without_trade() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [100.0]
    adapter.balances["0xTOKEN"] = [1000.0, 0.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    assert position.is_active
    await clock.advance(POLL)
    assert position.close_reason is CloseReason.ZERO_BALANCE
    assert adapter.swaps == []
    assert manager.closed_positions() == [position]


@pytest.mark.asyncio
async def test_stop_all_leaves_positions_active() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [100.0, 200.0]
    adapter.balances["0xTOKEN"] = [1000.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    await manager.stop_all()
    await clock.advance(POLL * 4)

    assert position.is_active
    assert adapter.swaps == []
    assert not manager.is_monitoring(position.position_id)
    assert manager.active_positions() == [position]


@pytest.mark.asyncio
async def test_open_after_stop_all_registers_without_loop() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xLATE"] = [500.0]
    manager = _manager(adapter, clock)
    await manager.stop_all()

    late = manager.open(make_position(position_id="pos-late", address="0xLATE"))
    await clock.advance(POLL * 3)

    assert manager.get("pos-late") is late
    assert late.is_active
    assert not manager.is_monitoring("pos-late")
    assert adapter.price_calls == []
    assert adapter.swaps == []


@pytest.mark.asyncio
async def test_poll_error_is_retried_next_tick() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [NetworkError("rpc down"), 111.0]
    adapter.balances["0xTOKEN"] = [1000.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    assert position.is_active
    assert manager.is_monitoring(position.position_id)
    await clock.advance(POLL)
    assert position.close_reason is CloseReason.TAKE_PROFIT


@pytest.mark.asyncio
async def test_failed_exit_is_retried_next_tick() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [111.0]
    adapter.balances["0xTOKEN"] = [1000.0]
    adapter.swap_errors = [ExecutionError("reverted"), None]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    assert position.is_active
    assert len(adapter.swaps) == 1
    await clock.advance(POLL)
    assert position.close_reason is CloseReason.TAKE_PROFIT
    assert len(adapter.swaps) == 2
    assert position.close_result is not None
    assert position.close_result.success


@pytest.mark.asyncio
async def test_simulated_position_anchors_then_exits_without_swap() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [0.0, 50.0, 56.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position(entry_price=0.0, quantity=0.0, simulated=True))

    await clock.advance(POLL)
    assert position.entry_price == 0.0
    await clock.advance(POLL)
    assert position.entry_price == 50.0
    assert position.take_profit_price == pytest.approx(55.0)
    assert position.quantity == pytest.approx(0.1 / 50.0)

    await clock.advance(POLL)
    assert position.close_reason is CloseReason.TAKE_PROFIT
    assert adapter.swaps == []
    assert adapter.balance_calls == []
    assert position.close_result is not None
    assert position.close_result.receipt is not None
    assert position.close_result.receipt.simulated


@pytest.mark.asyncio
async def test_manual_close_sells_and_stops_loop() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.prices["0xTOKEN"] = [100.0]
    adapter.balances["0xTOKEN"] = [1000.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    result = await manager.close_now(position.position_id)
    assert result.success
    assert result.reason is CloseReason.MANUAL
    assert position.status is PositionStatus.CLOSED
    assert adapter.swaps[0][2] == pytest.approx(950.0)
    assert not manager.is_monitoring(position.position_id)

    again = await manager.close_now(position.position_id)
    assert again is result
    assert len(adapter.swaps) == 1


@pytest.mark.asyncio
async def test_manual_close_failure_keeps_position_open() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.balances["0xTOKEN"] = [1000.0]
    adapter.swap_errors = [ExecutionError("reverted")]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    result = await manager.close_now(position.position_id)
    assert not result.success
    assert position.is_active
    assert manager.is_monitoring(position.position_id)
    await manager.stop_all()


@pytest.mark.asyncio
async def test_wait_closed_and_unknown_position() -> None:
    clock = VirtualClock()
    adapter = FakeAdapter()
    adapter.balances["0xTOKEN"] = [0.0]
    manager = _manager(adapter, clock)
    position = manager.open(make_position())

    await clock.advance(POLL)
    closed = await manager.wait_closed(position.position_id)
    assert closed.close_reason is CloseReason.ZERO_BALANCE

    with pytest.raises(PositionNotFoundError):
        manager.get("missing")
    with pytest.raises(ValueError):
        manager.open(make_position())
