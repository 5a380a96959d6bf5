"""Shared domain types for detection, safety filtering and position lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Literal


class ChainId(str, Enum):
    """Supported chains."""

    ETHEREUM = "ethereum"
    BITCOIN = "bitcoin"
    SOLANA = "solana"


class PositionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class CloseReason(str, Enum):
    TAKE_PROFIT = "take-profit"
    STOP_LOSS = "stop-loss"
    ZERO_BALANCE = "zero-balance"
    MANUAL = "manual"


SnipeFailureReason = Literal["risk-rejected", "execution-error", "position-active"]
TradeSide = Literal["buy", "sell"]


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class AssetDescriptor:
    """On-chain asset identity and metadata."""

    chain: ChainId
    address: str
    name: str = ""
    symbol: str = ""
    decimals: int = 18
    total_supply: float | None = None

    @property
    def key(self) -> str:
        """Case-insensitive lookup key for list membership and registries."""
        return self.address.lower()

    def merged_with(self, other: AssetDescriptor) -> AssetDescriptor:
        """Fill empty metadata fields from a freshly fetched descriptor."""
        return replace(
            self,
            name=self.name or other.name,
            symbol=self.symbol or other.symbol,
            decimals=other.decimals,
            total_supply=other.total_supply if other.total_supply is not None else self.total_supply,
        )


@dataclass(frozen=True, slots=True)
class LiquiditySnapshot:
    """Pool reserves at discovery time."""

    reserve0: float
    reserve1: float
    reference_reserve: float
    liquidity_usd: float = 0.0


@dataclass(frozen=True, slots=True)
class PairEvent:
    """A newly discovered pool emitted by a chain adapter."""

    chain: ChainId
    pair_address: str
    asset0: AssetDescriptor
    asset1: AssetDescriptor
    has_reference_asset: bool
    liquidity: LiquiditySnapshot
    discovered_at: str = field(default_factory=utc_now_iso)
    venue: str = ""
    block_number: int | None = None
    tx_hash: str | None = None

    def non_reference_asset(self, reference_address: str) -> AssetDescriptor:
        """Return the asset of the pair that is not the chain's base currency."""
        if self.asset0.key == reference_address.lower():
            return self.asset1
        return self.asset0


@dataclass(slots=True)
class SafetyVerdict:
    """Outcome of evaluating one asset before capital is committed."""

    asset: AssetDescriptor
    warnings: list[str] = field(default_factory=list)
    blocking_reasons: list[str] = field(default_factory=list)
    quoted_price: float | None = None

    @property
    def tradeable(self) -> bool:
        return not self.blocking_reasons


@dataclass(frozen=True, slots=True)
class TradeReceipt:
    """Result of a swap or an exchange order."""

    tx_hash: str
    amount_in: float
    amount_out: float | None = None
    fill_price: float | None = None
    venue: str = ""
    simulated: bool = False
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class CloseResult:
    """Outcome of closing (or attempting to close) a position."""

    position_id: str
    reason: CloseReason
    success: bool
    sell_amount: float = 0.0
    receipt: TradeReceipt | None = None
    error: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class Position:
    """A live (or simulated) holding of a sniped asset."""

    position_id: str
    chain: ChainId
    asset: AssetDescriptor
    entry_amount: float
    quantity: float
    entry_price: float
    take_profit_pct: float
    stop_loss_pct: float
    take_profit_price: float = field(default=0.0, init=False)
    stop_loss_price: float = field(default=0.0, init=False)
    status: PositionStatus = PositionStatus.ACTIVE
    simulated: bool = False
    entry_tx: str | None = None
    opened_at: str = field(default_factory=utc_now_iso)
    closed_at: str | None = None
    close_reason: CloseReason | None = None
    close_result: CloseResult | None = None

    def __post_init__(self) -> None:
        self.anchor(self.entry_price)

    @property
    def is_active(self) -> bool:
        return self.status is PositionStatus.ACTIVE

    def anchor(self, entry_price: float) -> None:
        """Set the entry price and derive exit thresholds from it."""
        self.entry_price = float(entry_price)
        self.take_profit_price, self.stop_loss_price = build_exit_prices(
            self.entry_price, self.take_profit_pct, self.stop_loss_pct
        )

    def mark_closed(self, reason: CloseReason, result: CloseResult) -> None:
        self.status = PositionStatus.CLOSED
        self.close_reason = reason
        self.close_result = result
        self.closed_at = result.timestamp


def build_exit_prices(
    entry_price: float,
    take_profit_pct: float,
    stop_loss_pct: float,
) -> tuple[float, float]:
    """Return (take_profit_price, stop_loss_price) for percent thresholds."""
    if entry_price <= 0:
        return 0.0, 0.0
    take_profit = entry_price * (1.0 + take_profit_pct / 100.0)
    stop_loss = entry_price * (1.0 - stop_loss_pct / 100.0)
    return take_profit, max(0.0, stop_loss)


@dataclass(slots=True)
class SnipeFailure:
    """A snipe that did not produce a position."""

    chain: ChainId
    asset: AssetDescriptor
    reason: SnipeFailureReason
    detail: str = ""


@dataclass(slots=True)
class RiskDecision:
    """Result of validating a proposed transaction against limits."""

    approved: bool
    reason: str | None = None


@dataclass(slots=True)
class SuspiciousActivity:
    """An anomalous sequence of approved transactions."""

    kind: Literal["rapid-transactions", "unusual-amounts"]
    chain: ChainId
    detail: dict[str, object] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True, slots=True)
class SpreadOpportunity:
    """A price gap for the same asset between two venues."""

    chain: ChainId
    buy_venue: str
    buy_price: float
    sell_venue: str
    sell_price: float
    spread_pct: float
    detected_at: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class ArbitrageResult:
    """Outcome of acting on a spread opportunity."""

    opportunity: SpreadOpportunity
    executed: bool
    reason: str = ""
    amount: float = 0.0
    simulated: bool = False
    buy_receipt: TradeReceipt | None = None
    sell_receipt: TradeReceipt | None = None
