"""Multi-chain liquidity sniper: new-pair detection, safety filtering and position lifecycle."""

__version__ = "0.1.0"
