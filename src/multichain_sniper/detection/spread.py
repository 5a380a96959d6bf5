"""Cross-venue price spread detection."""

from __future__ import annotations

from collections.abc import Mapping

from multichain_sniper.types import ChainId, SpreadOpportunity


def find_spread_opportunity(
    chain: ChainId,
    prices: Mapping[str, float],
    min_spread_pct: float,
) -> SpreadOpportunity | None:
    """Pair the cheapest and the most expensive venue.

    Returns None with fewer than two priced venues or when the spread
    does not exceed ``min_spread_pct``.
    """
    quoted = {venue: price for venue, price in prices.items() if price and price > 0}
    if len(quoted) < 2:
        return None
    buy_venue = min(quoted, key=quoted.__getitem__)
    sell_venue = max(quoted, key=quoted.__getitem__)
    low, high = quoted[buy_venue], quoted[sell_venue]
    spread_pct = (high - low) / low * 100.0
    if spread_pct <= min_spread_pct:
        return None
    return SpreadOpportunity(
        chain=chain,
        buy_venue=buy_venue,
        buy_price=low,
        sell_venue=sell_venue,
        sell_price=high,
        spread_pct=spread_pct,
    )
