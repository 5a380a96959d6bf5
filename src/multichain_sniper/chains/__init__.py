"""Chain adapter exports."""

from multichain_sniper.chains.base import ChainAdapter, DiscoveryMode, call_adapter

__all__ = [
    "ChainAdapter",
    "DiscoveryMode",
    "call_adapter",
]
