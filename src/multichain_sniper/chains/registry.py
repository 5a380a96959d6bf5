"""Construct one adapter per enabled chain from settings."""

from __future__ import annotations

from multichain_sniper.chains.base import ChainAdapter
from multichain_sniper.chains.bitcoin import BitcoinVenueAdapter
from multichain_sniper.chains.evm import EvmAdapter
from multichain_sniper.chains.solana import SolanaAdapter
from multichain_sniper.config import Settings
from multichain_sniper.types import ChainId


def build_adapter(chain: ChainId, settings: Settings) -> ChainAdapter:
    """Build the concrete adapter for one chain."""
    cfg = settings.chain(chain)
    if chain is ChainId.ETHEREUM:
        return EvmAdapter(
            cfg,
            request_timeout=settings.adapter_timeout_sec,
            confirm_timeout=settings.trade_timeout_sec,
        )
    if chain is ChainId.SOLANA:
        return SolanaAdapter(
            cfg,
            request_timeout=settings.adapter_timeout_sec,
            confirm_timeout=settings.trade_timeout_sec,
        )
    return BitcoinVenueAdapter(cfg, request_timeout=settings.adapter_timeout_sec)


def build_adapters(settings: Settings, chains: list[ChainId] | None = None) -> dict[ChainId, ChainAdapter]:
    """Build adapters for the given chains, or every enabled chain."""
    selected = chains if chains is not None else settings.enabled_chains()
    return {chain: build_adapter(chain, settings) for chain in selected}
