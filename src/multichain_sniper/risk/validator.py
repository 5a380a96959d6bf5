"""Per-chain transaction limits and anomalous-sequence detection."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from multichain_sniper.config import Settings
from multichain_sniper.types import ChainId, RiskDecision, SuspiciousActivity
from multichain_sniper.utils.logging import get_logger, log_risk_event

RAPID_WINDOW = 5
RAPID_AVG_GAP_SEC = 10.0
UNUSUAL_AMOUNT_FACTOR = 5.0
SUSPICIOUS_HISTORY = 500


@dataclass(slots=True)
class ApprovedTransaction:
    amount: float
    kind: str
    at: datetime


@dataclass(slots=True)
class DailyCounter:
    day: date
    total: float = 0.0
    count: int = 0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RiskValidator:
    """Approve or reject proposed transactions against configured limits.

    Counters only move on approval and reset when the UTC date changes.
    """

    def __init__(self, settings: Settings, now: Callable[[], datetime] = _utc_now) -> None:
        self._settings = settings
        self._now = now
        self._lock = asyncio.Lock()
        today = now().date()
        self._daily: dict[ChainId, DailyCounter] = {chain: DailyCounter(day=today) for chain in ChainId}
        self._history: dict[ChainId, list[ApprovedTransaction]] = {chain: [] for chain in ChainId}
        self.suspicious_activities: deque[SuspiciousActivity] = deque(maxlen=SUSPICIOUS_HISTORY)
        self._logger = get_logger("multichain_sniper.risk.validator")

    def _roll_day_if_needed(self, chain: ChainId) -> DailyCounter:
        today = self._now().date()
        counter = self._daily[chain]
        if counter.day != today:
            counter = DailyCounter(day=today)
            self._daily[chain] = counter
            self._history[chain] = []
            self._logger.info("daily_counters_reset", chain=chain.value, day=today.isoformat())
        return counter

    async def validate(self, chain: ChainId, amount: float, kind: str) -> RiskDecision:
        """Check one proposed transaction; record it when approved."""
        chain = ChainId(chain)
        limits = self._settings.chain(chain)
        async with self._lock:
            counter = self._roll_day_if_needed(chain)
            if amount <= 0:
                decision = RiskDecision(approved=False, reason="amount must be positive")
            elif amount > limits.max_transaction_amount:
                decision = RiskDecision(
                    approved=False,
                    reason=f"amount {amount} exceeds max transaction amount {limits.max_transaction_amount}",
                )
            elif counter.total + amount > limits.daily_limit:
                decision = RiskDecision(
                    approved=False,
                    reason=(
                        f"daily limit {limits.daily_limit} would be exceeded "
                        f"(used {counter.total}, requested {amount})"
                    ),
                )
            else:
                counter.total += amount
                counter.count += 1
                self._history[chain].append(ApprovedTransaction(amount=amount, kind=kind, at=self._now()))
                decision = RiskDecision(approved=True)

        if not decision.approved:
            log_risk_event(
                self._logger,
                event_type="transaction_rejected",
                action="reject",
                chain=chain.value,
                amount=amount,
                kind=kind,
                reason=decision.reason,
            )
            return decision

        self._logger.debug(
            "transaction_approved",
            chain=chain.value,
            amount=amount,
            kind=kind,
            daily_total=counter.total,
            daily_count=counter.count,
        )
        self._flag_newest(chain)
        return decision

    def detect_suspicious_activity(self, chain: ChainId) -> list[SuspiciousActivity]:
        """Scan today's approvals for rapid sequences and outsized amounts.

        Read-only; ``validate`` records a flag only when the newest approval
        creates the condition.
        """
        chain = ChainId(chain)
        history = self._history[chain]
        found: list[SuspiciousActivity] = []

        avg_gap = _rapid_gap(history)
        if avg_gap is not None:
            found.append(_rapid_flag(chain, avg_gap))

        if history:
            average = sum(tx.amount for tx in history) / len(history)
            unusual = [tx.amount for tx in history if tx.amount > average * UNUSUAL_AMOUNT_FACTOR]
            if unusual:
                found.append(_unusual_flag(chain, average, unusual))
        return found

    def _flag_newest(self, chain: ChainId) -> None:
        history = self._history[chain]
        found: list[SuspiciousActivity] = []

        avg_gap = _rapid_gap(history)
        if avg_gap is not None and _rapid_gap(history[:-1]) is None:
            found.append(_rapid_flag(chain, avg_gap))

        newest = history[-1]
        average = sum(tx.amount for tx in history) / len(history)
        if newest.amount > average * UNUSUAL_AMOUNT_FACTOR:
            found.append(_unusual_flag(chain, average, [newest.amount]))

        for activity in found:
            self.suspicious_activities.append(activity)
            log_risk_event(
                self._logger,
                event_type=activity.kind,
                action="flag",
                chain=chain.value,
                **activity.detail,
            )

    def report(self) -> dict[str, dict[str, float | int | str]]:
        """Return configured limits and today's counters per chain."""
        summary: dict[str, dict[str, float | int | str]] = {}
        for chain in ChainId:
            limits = self._settings.chain(chain)
            counter = self._roll_day_if_needed(chain)
            summary[chain.value] = {
                "day": counter.day.isoformat(),
                "max_transaction_amount": limits.max_transaction_amount,
                "daily_limit": limits.daily_limit,
                "daily_total": counter.total,
                "daily_count": counter.count,
                "daily_remaining": max(0.0, limits.daily_limit - counter.total),
            }
        return summary


def _rapid_gap(history: list[ApprovedTransaction]) -> float | None:
    """Average gap of the last window when it is below the rapid threshold."""
    if len(history) < RAPID_WINDOW:
        return None
    window = history[-RAPID_WINDOW:]
    gaps = [(b.at - a.at).total_seconds() for a, b in zip(window, window[1:], strict=False)]
    avg_gap = sum(gaps) / len(gaps)
    return avg_gap if avg_gap < RAPID_AVG_GAP_SEC else None


def _rapid_flag(chain: ChainId, avg_gap: float) -> SuspiciousActivity:
    return SuspiciousActivity(
        kind="rapid-transactions",
        chain=chain,
        detail={"avg_gap_sec": round(avg_gap, 3), "transactions": RAPID_WINDOW},
    )


def _unusual_flag(chain: ChainId, average: float, amounts: list[float]) -> SuspiciousActivity:
    return SuspiciousActivity(kind="unusual-amounts", chain=chain, detail={"average": average, "amounts": amounts})
