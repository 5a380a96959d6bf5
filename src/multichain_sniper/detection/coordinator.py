"""Per-chain detection: discovery -> filters -> safety -> snipe.

Each started chain gets:
    - a producer (stream task) or a PeriodicTask poller feeding a bounded queue
    - a consumer task that drains the queue in emission order
Every accepted event is handed to an independent pipeline task so a slow
safety evaluation never delays the next event.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass

from multichain_sniper.chains.base import ChainAdapter, DiscoveryMode, call_adapter
from multichain_sniper.config import Settings
from multichain_sniper.detection.spread import find_spread_opportunity
from multichain_sniper.errors import AdapterUnavailableError, SniperError
from multichain_sniper.exec.arbitrage import SpreadArbitrage
from multichain_sniper.exec.sniper import SnipeExecutor
from multichain_sniper.safety.filter import SafetyFilter
from multichain_sniper.types import AssetDescriptor, ChainId, PairEvent, SpreadOpportunity
from multichain_sniper.utils.logging import get_logger, log_discovery
from multichain_sniper.utils.periodic import Clock, PeriodicTask, WallClock


@dataclass(slots=True)
class _ChainMonitor:
    chain: ChainId
    adapter: ChainAdapter
    queue: asyncio.Queue[PairEvent]
    producer: asyncio.Task[None] | None = None
    poller: PeriodicTask | None = None
    consumer: asyncio.Task[None] | None = None
    active: bool = False
    events_seen: int = 0


class DetectionCoordinator:
    """Owns one detector per chain and the pipelines it spawns."""

    def __init__(
        self,
        adapters: Mapping[ChainId, ChainAdapter],
        safety: SafetyFilter,
        sniper: SnipeExecutor,
        settings: Settings,
        *,
        arbitrage: SpreadArbitrage | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._adapters = adapters
        self._safety = safety
        self._sniper = sniper
        self._settings = settings
        self._arbitrage = arbitrage
        self._clock = clock or WallClock()
        self._monitors: dict[ChainId, _ChainMonitor] = {}
        self._pipelines: set[asyncio.Task[None]] = set()
        self.recent_opportunities: deque[SpreadOpportunity] = deque(maxlen=100)
        self._logger = get_logger("multichain_sniper.detection.coordinator")

    # ------------------------------------------------------------------ lifecycle

    def active_chains(self) -> list[ChainId]:
        return [chain for chain, monitor in self._monitors.items() if monitor.active]

    def is_running(self, chain: ChainId) -> bool:
        monitor = self._monitors.get(ChainId(chain))
        return monitor is not None and monitor.active

    async def start(self, chain: ChainId) -> None:
        """Start detection for ``chain``. No-op when already running."""
        chain = ChainId(chain)
        if self.is_running(chain):
            return
        adapter = self._adapters.get(chain)
        if adapter is None:
            raise AdapterUnavailableError(f"no adapter registered for {chain.value}")
        if not adapter.initialized:
            try:
                ok = await call_adapter(adapter.initialize(), self._settings.adapter_timeout_sec, "initialize")
            except SniperError as exc:
                self._logger.error("adapter_initialize_failed", chain=chain.value, error=str(exc))
                ok = False
            if not ok:
                raise AdapterUnavailableError(f"{chain.value} adapter failed to initialize")

        cfg = self._settings.chain(chain)
        monitor = _ChainMonitor(
            chain=chain,
            adapter=adapter,
            queue=asyncio.Queue(maxsize=self._settings.event_queue_size),
        )
        monitor.active = True
        mode = adapter.discovery_mode
        if mode is DiscoveryMode.STREAM:
            monitor.producer = asyncio.create_task(self._stream(monitor), name=f"stream:{chain.value}")
        elif mode is DiscoveryMode.POLL:
            monitor.poller = PeriodicTask(
                f"poll:{chain.value}",
                cfg.discovery_interval_sec,
                lambda: self._poll(monitor),
                clock=self._clock,
                immediate=True,
            )
        else:
            monitor.poller = PeriodicTask(
                f"spread:{chain.value}",
                cfg.discovery_interval_sec,
                lambda: self._check_spread(monitor),
                clock=self._clock,
                immediate=True,
            )
        if mode is not DiscoveryMode.SPREAD:
            monitor.consumer = asyncio.create_task(self._consume(monitor), name=f"consume:{chain.value}")
        if monitor.poller is not None:
            monitor.poller.start()
        self._monitors[chain] = monitor
        self._logger.info(
            "detector_started",
            chain=chain.value,
            mode=mode.value,
            interval_sec=cfg.discovery_interval_sec,
            sniping_enabled=cfg.sniping_enabled,
            trading_enabled=cfg.trading_enabled,
        )

    async def stop(self, chain: ChainId) -> None:
        """Stop detection for ``chain``. Queued events are discarded."""
        monitor = self._monitors.pop(ChainId(chain), None)
        if monitor is None:
            return
        monitor.active = False
        if monitor.poller is not None:
            await monitor.poller.stop()
        tasks = [task for task in (monitor.producer, monitor.consumer) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._logger.info(
            "detector_stopped",
            chain=monitor.chain.value,
            events_seen=monitor.events_seen,
            discarded=monitor.queue.qsize(),
        )

    async def stop_all(self) -> None:
        for chain in list(self._monitors):
            await self.stop(chain)

    async def wait_idle(self) -> None:
        """Wait until queued events are consumed and every pipeline has finished."""
        while True:
            for monitor in list(self._monitors.values()):
                if monitor.consumer is not None and not monitor.consumer.done():
                    await monitor.queue.join()
            if not self._pipelines:
                return
            await asyncio.gather(*list(self._pipelines), return_exceptions=True)

    # ------------------------------------------------------------------ producers

    async def _stream(self, monitor: _ChainMonitor) -> None:
        interval = self._settings.chain(monitor.chain).discovery_interval_sec
        while monitor.active:
            try:
                async for event in monitor.adapter.stream_new_pairs():
                    await monitor.queue.put(event)
                self._logger.warning("pair_stream_ended", chain=monitor.chain.value)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - reopen the stream after a pause.
                self._logger.exception("pair_stream_failed", chain=monitor.chain.value, error=str(exc))
            await self._clock.sleep(interval)

    async def _poll(self, monitor: _ChainMonitor) -> bool:
        try:
            events = await call_adapter(
                monitor.adapter.poll_new_assets(),
                self._settings.adapter_timeout_sec,
                "poll_new_assets",
            )
        except SniperError as exc:
            self._logger.warning("asset_poll_failed", chain=monitor.chain.value, error=str(exc))
            return True
        for event in events:
            await monitor.queue.put(event)
        return True

    async def _check_spread(self, monitor: _ChainMonitor) -> bool:
        cfg = self._settings.chain(monitor.chain)
        try:
            prices = await call_adapter(
                monitor.adapter.get_venue_prices(),
                self._settings.adapter_timeout_sec,
                "get_venue_prices",
            )
        except SniperError as exc:
            self._logger.warning("venue_prices_failed", chain=monitor.chain.value, error=str(exc))
            return True
        self._logger.debug("venue_prices", chain=monitor.chain.value, prices=prices)
        opportunity = find_spread_opportunity(monitor.chain, prices, cfg.min_spread_pct)
        if opportunity is None:
            return True
        self.recent_opportunities.append(opportunity)
        self._logger.info(
            "spread_detected",
            chain=monitor.chain.value,
            buy_venue=opportunity.buy_venue,
            buy_price=opportunity.buy_price,
            sell_venue=opportunity.sell_venue,
            sell_price=opportunity.sell_price,
            spread_pct=round(opportunity.spread_pct, 4),
        )
        if cfg.arbitrage_enabled and self._arbitrage is not None and monitor.active:
            await self._arbitrage.execute(monitor.adapter, opportunity)
        return True

    # ------------------------------------------------------------------ consumer

    async def _consume(self, monitor: _ChainMonitor) -> None:
        while True:
            event = await monitor.queue.get()
            try:
                self._handle_event(monitor, event)
            except Exception as exc:  # noqa: BLE001 - one bad event must not stop the chain.
                self._logger.exception("pair_event_failed", chain=monitor.chain.value, error=str(exc))
            finally:
                monitor.queue.task_done()

    def _handle_event(self, monitor: _ChainMonitor, event: PairEvent) -> None:
        monitor.events_seen += 1
        log_discovery(self._logger, event)
        if not monitor.active:
            return

        cfg = self._settings.chain(monitor.chain)
        reason: str | None = None
        if not event.has_reference_asset:
            reason = "no reference asset"
        elif event.liquidity.reference_reserve < cfg.min_liquidity:
            reason = f"reference liquidity {event.liquidity.reference_reserve} below {cfg.min_liquidity}"
        elif cfg.min_liquidity_usd > 0 and event.liquidity.liquidity_usd < cfg.min_liquidity_usd:
            reason = f"usd liquidity {event.liquidity.liquidity_usd} below {cfg.min_liquidity_usd}"
        if reason is not None:
            self._logger.debug("pair_dropped", chain=monitor.chain.value, pair=event.pair_address, reason=reason)
            return

        asset = event.non_reference_asset(monitor.adapter.reference_asset)
        task = asyncio.create_task(
            self._pipeline(monitor, asset),
            name=f"pipeline:{monitor.chain.value}:{asset.address}",
        )
        self._pipelines.add(task)
        task.add_done_callback(self._pipelines.discard)

    async def _pipeline(self, monitor: _ChainMonitor, asset: AssetDescriptor) -> None:
        try:
            verdict = await self._safety.evaluate(asset)
            if not verdict.tradeable:
                return
            if not self._settings.chain(monitor.chain).sniping_enabled:
                self._logger.info(
                    "snipe_skipped", chain=monitor.chain.value, asset=asset.address, reason="sniping disabled"
                )
                return
            if not monitor.active:
                self._logger.info(
                    "snipe_skipped", chain=monitor.chain.value, asset=asset.address, reason="detector stopped"
                )
                return
            await self._sniper.snipe(monitor.chain, verdict.asset)
        except Exception as exc:  # noqa: BLE001 - pipelines are independent.
            self._logger.exception("pipeline_failed", chain=monitor.chain.value, asset=asset.address, error=str(exc))
