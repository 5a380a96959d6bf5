"""Pre-trade safety classification of newly listed assets.

Order of evaluation:
    1. blacklist (blocking, short-circuit)
    2. exclusive whitelist when non-empty (blocking, short-circuit)
    3. metadata fetch (blocking on failure)
    4. pluggable checks: name/symbol red flags (warnings), price quote (blocking)

The filter fails closed: lookup errors become blocking reasons and
``evaluate`` always returns a verdict.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from multichain_sniper.chains.base import ChainAdapter, call_adapter
from multichain_sniper.config import Settings
from multichain_sniper.errors import SniperError
from multichain_sniper.types import AssetDescriptor, ChainId, SafetyVerdict
from multichain_sniper.utils.logging import get_logger, log_safety_verdict

DEFAULT_RED_FLAGS = frozenset({"scam", "ponzi", "moon", "elon", "safe", "gem", "pump", "100x", "1000x"})

UNPRICEABLE_REASON = "unpriceable: possible honeypot"


@dataclass(slots=True)
class CheckContext:
    adapter: ChainAdapter
    timeout: float


class SafetyCheck(Protocol):
    """A heuristic that appends warnings or blocking reasons to a verdict."""

    name: str

    async def apply(self, verdict: SafetyVerdict, ctx: CheckContext) -> None: ...


class NameRedFlagCheck:
    """Warn when name or symbol contains a red-flag substring."""

    name = "name_red_flags"

    def __init__(self, red_flags: set[str]) -> None:
        self._red_flags = red_flags

    async def apply(self, verdict: SafetyVerdict, ctx: CheckContext) -> None:
        text = f"{verdict.asset.name} {verdict.asset.symbol}".lower()
        for flag in sorted(self._red_flags):
            if flag in text:
                verdict.warnings.append(f"red flag in name/symbol: {flag}")


class PriceQuoteCheck:
    """Block assets that cannot be quoted against the reference currency."""

    name = "price_quote"

    async def apply(self, verdict: SafetyVerdict, ctx: CheckContext) -> None:
        try:
            price = await call_adapter(
                ctx.adapter.get_asset_price(verdict.asset.address),
                ctx.timeout,
                "get_asset_price",
            )
        except SniperError as exc:
            verdict.blocking_reasons.append(f"{UNPRICEABLE_REASON} ({exc})")
            return
        if not price or price <= 0:
            verdict.blocking_reasons.append(UNPRICEABLE_REASON)
            return
        verdict.quoted_price = float(price)


class SafetyFilter:
    """Classify assets as tradeable before capital is committed."""

    def __init__(
        self,
        adapters: Mapping[ChainId, ChainAdapter],
        settings: Settings,
        *,
        red_flags: Iterable[str] = DEFAULT_RED_FLAGS,
        whitelist: Iterable[str] = (),
        blacklist: Iterable[str] = (),
        checks: list[SafetyCheck] | None = None,
    ) -> None:
        self._adapters = adapters
        self._settings = settings
        self._red_flags: set[str] = {flag.lower() for flag in red_flags}
        self._whitelist: set[str] = {address.lower() for address in whitelist}
        self._blacklist: set[str] = {address.lower() for address in blacklist}
        self._checks: list[SafetyCheck] = (
            checks if checks is not None else [NameRedFlagCheck(self._red_flags), PriceQuoteCheck()]
        )
        self._logger = get_logger("multichain_sniper.safety.filter")

    @property
    def red_flags(self) -> frozenset[str]:
        return frozenset(self._red_flags)

    @property
    def whitelist(self) -> frozenset[str]:
        return frozenset(self._whitelist)

    @property
    def blacklist(self) -> frozenset[str]:
        return frozenset(self._blacklist)

    def add_to_whitelist(self, *addresses: str) -> None:
        self._whitelist.update(address.lower() for address in addresses)

    def add_to_blacklist(self, *addresses: str) -> None:
        self._blacklist.update(address.lower() for address in addresses)

    def add_red_flags(self, *flags: str) -> None:
        # In place: NameRedFlagCheck shares this set.
        self._red_flags.update(flag.lower() for flag in flags)

    async def evaluate(self, asset: AssetDescriptor) -> SafetyVerdict:
        """Return a verdict for ``asset``. Never raises."""
        verdict = SafetyVerdict(asset=asset)
        try:
            await self._evaluate(verdict)
        except Exception as exc:  # noqa: BLE001 - fail closed on anything unexpected.
            self._logger.exception("safety_evaluation_failed", asset=asset.address, error=str(exc))
            verdict.blocking_reasons.append(f"evaluation error: {exc}")
        log_safety_verdict(self._logger, verdict)
        return verdict

    async def _evaluate(self, verdict: SafetyVerdict) -> None:
        asset = verdict.asset
        if asset.key in self._blacklist:
            verdict.blocking_reasons.append("blacklisted")
            return
        if self._whitelist and asset.key not in self._whitelist:
            verdict.blocking_reasons.append("not in whitelist")
            return

        adapter = self._adapters.get(asset.chain)
        if adapter is None:
            verdict.blocking_reasons.append(f"no adapter for chain {asset.chain.value}")
            return

        timeout = self._settings.adapter_timeout_sec
        try:
            info = await call_adapter(adapter.get_asset_info(asset.address), timeout, "get_asset_info")
        except SniperError as exc:
            verdict.blocking_reasons.append(f"metadata unavailable: {exc}")
            return
        verdict.asset = asset.merged_with(info)

        ctx = CheckContext(adapter=adapter, timeout=timeout)
        for check in self._checks:
            await check.apply(verdict, ctx)
