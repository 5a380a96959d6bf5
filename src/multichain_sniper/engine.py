"""Composition root: wires adapters, risk, safety, execution and detection."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from collections.abc import Mapping

from multichain_sniper.chains.base import ChainAdapter, call_adapter
from multichain_sniper.chains.registry import build_adapters
from multichain_sniper.config import Settings
from multichain_sniper.detection.coordinator import DetectionCoordinator
from multichain_sniper.errors import AdapterUnavailableError, SniperError
from multichain_sniper.exec.arbitrage import SpreadArbitrage
from multichain_sniper.exec.positions import PositionManager
from multichain_sniper.exec.sniper import SnipeExecutor
from multichain_sniper.risk.validator import RiskValidator
from multichain_sniper.safety.filter import SafetyFilter
from multichain_sniper.types import AssetDescriptor, ChainId, SafetyVerdict
from multichain_sniper.utils.logging import get_logger
from multichain_sniper.utils.periodic import Clock


class SniperEngine:
    """Owns one instance of every component for a single process."""

    def __init__(
        self,
        settings: Settings,
        adapters: Mapping[ChainId, ChainAdapter] | None = None,
        *,
        chains: list[ChainId] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self.adapters: dict[ChainId, ChainAdapter] = (
            dict(adapters) if adapters is not None else build_adapters(settings, chains)
        )
        self.risk = RiskValidator(settings)
        self.positions = PositionManager(self.adapters, settings, clock=clock)
        self.safety = SafetyFilter(self.adapters, settings)
        self.sniper = SnipeExecutor(self.adapters, self.risk, self.positions, settings)
        self.arbitrage = SpreadArbitrage(self.risk, settings)
        self.coordinator = DetectionCoordinator(
            self.adapters,
            self.safety,
            self.sniper,
            settings,
            arbitrage=self.arbitrage,
            clock=clock,
        )
        self._logger = get_logger("multichain_sniper.engine")

    async def start(self, chains: list[ChainId] | None = None) -> list[ChainId]:
        """Start detectors; a chain that cannot start is logged and skipped."""
        selected = chains if chains is not None else list(self.adapters)
        started: list[ChainId] = []
        for chain in selected:
            try:
                await self.coordinator.start(chain)
            except AdapterUnavailableError as exc:
                self._logger.error("chain_start_failed", chain=ChainId(chain).value, error=str(exc))
                continue
            started.append(ChainId(chain))
        if not started:
            raise AdapterUnavailableError("no chain detector could be started")
        return started

    async def shutdown(self) -> None:
        """Stop detectors, let in-flight snipes settle, stop position loops, then release adapters."""
        started = time.perf_counter()
        await self.coordinator.stop_all()
        await self.coordinator.wait_idle()
        await self.positions.stop_all()
        for chain, adapter in self.adapters.items():
            try:
                await adapter.close()
            except Exception as exc:  # noqa: BLE001 - keep closing the rest.
                self._logger.warning("adapter_close_failed", chain=chain.value, error=str(exc))
        self._logger.info(
            "engine_stopped",
            open_positions=len(self.positions.active_positions()),
            closed_positions=len(self.positions.closed_positions()),
            risk=self.risk.report(),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    async def run(self, chains: list[ChainId] | None = None, stop_event: asyncio.Event | None = None) -> None:
        """Run until ``stop_event`` is set or SIGINT/SIGTERM arrives."""
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop_event.set)
        try:
            started = await self.start(chains)
            self._logger.info(
                "engine_running",
                chains=[c.value for c in started],
                mode=self.settings.mode.value,
            )
            await stop_event.wait()
        finally:
            await self.shutdown()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(sig)

    async def evaluate(self, chain: ChainId, address: str) -> SafetyVerdict:
        """Run the safety filter once for an arbitrary asset."""
        chain = ChainId(chain)
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise AdapterUnavailableError(f"no adapter registered for {chain.value}")
        if not adapter.initialized:
            try:
                ok = await call_adapter(adapter.initialize(), self.settings.adapter_timeout_sec, "initialize")
            except SniperError:
                ok = False
            if not ok:
                raise AdapterUnavailableError(f"{chain.value} adapter failed to initialize")
        try:
            return await self.safety.evaluate(AssetDescriptor(chain=chain, address=address))
        finally:
            await adapter.close()
