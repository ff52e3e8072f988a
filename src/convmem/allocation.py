"""Token-budget allocation strategies for compositions.

Every computed strategy returns integer quotas that sum exactly to the
budget; the custom strategy uses caller quotas verbatim and only flags
an over-budget total.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from .errors import ValidationFailed


class AllocationStrategy(StrEnum):
    EQUAL = "equal"
    PROPORTIONAL = "proportional"
    RECENCY = "recency"
    INVERSE_RECENCY = "inverse-recency"
    CUSTOM = "custom"

    @classmethod
    def _missing_(cls, value: object) -> AllocationStrategy | None:
        # Accept "inverse_recency" and mixed case from request payloads.
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


@dataclass
class AllocationInput:
    """What a strategy needs to know about one component."""

    session_id: str
    original_tokens: int = 0
    timestamp: str | None = None
    requested_tokens: int | None = None


@dataclass
class Allocation:
    strategy: AllocationStrategy
    budget: int
    quotas: list[int]
    over_budget: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.quotas)


# ---------------------------------------------------------------------------
# Splitting primitives
# ---------------------------------------------------------------------------


def equal_split(budget: int, n: int) -> list[int]:
    """``budget // n`` each; the first ``budget % n`` get one extra unit."""
    base, extra = divmod(budget, n)
    return [base + (1 if i < extra else 0) for i in range(n)]


def weighted_split(budget: int, weights: list[int]) -> list[int]:
    """Floor of each share for all but the last; the last takes the remainder."""
    total = sum(weights)
    if total <= 0:
        return equal_split(budget, len(weights))
    quotas = [budget * w // total for w in weights[:-1]]
    quotas.append(budget - sum(quotas))
    return quotas


def _recency_weights(items: list[AllocationInput], newest_first: bool) -> list[int]:
    n = len(items)
    # Missing timestamps rank as oldest; ties keep declared order.
    ranked = sorted(
        range(n),
        key=lambda i: items[i].timestamp or "",
        reverse=True,
    )
    if not newest_first:
        ranked.reverse()
    weights = [0] * n
    for rank, idx in enumerate(ranked):
        weights[idx] = n - rank
    return weights


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def allocate(
    budget: int,
    items: list[AllocationInput],
    strategy: AllocationStrategy | str,
) -> Allocation:
    """Split *budget* across *items* (quotas are returned in declared order)."""
    if budget <= 0:
        raise ValidationFailed("budget", "must be a positive integer")
    if not items:
        raise ValidationFailed("components", "at least one component is required")
    try:
        strategy = AllocationStrategy(strategy)
    except ValueError as exc:
        valid = ", ".join(s.value for s in AllocationStrategy)
        raise ValidationFailed("strategy", f"expected one of {valid}") from exc

    if strategy is AllocationStrategy.CUSTOM:
        return _custom(budget, items)
    if strategy is AllocationStrategy.EQUAL:
        quotas = equal_split(budget, len(items))
    elif strategy is AllocationStrategy.PROPORTIONAL:
        quotas = weighted_split(budget, [max(0, i.original_tokens) for i in items])
    elif strategy is AllocationStrategy.RECENCY:
        quotas = weighted_split(budget, _recency_weights(items, newest_first=True))
    else:
        quotas = weighted_split(budget, _recency_weights(items, newest_first=False))
    return Allocation(strategy=strategy, budget=budget, quotas=quotas)


def _custom(budget: int, items: list[AllocationInput]) -> Allocation:
    quotas: list[int] = []
    for item in items:
        if item.requested_tokens is None or item.requested_tokens < 0:
            msg = f"custom allocation needs a non-negative token count for {item.session_id}"
            raise ValidationFailed("token_allocation", msg)
        quotas.append(item.requested_tokens)
    allocation = Allocation(strategy=AllocationStrategy.CUSTOM, budget=budget, quotas=quotas)
    if allocation.total > budget:
        allocation.over_budget = True
        allocation.warnings.append(
            f"Custom allocations total {allocation.total} tokens, "
            f"{allocation.total - budget} over the {budget} budget"
        )
    return allocation


def suggest_strategy(items: list[AllocationInput]) -> AllocationStrategy:
    """Proportional for very uneven sizes, recency for many sessions, else equal."""
    sizes = [max(0, i.original_tokens) for i in items]
    if len(sizes) >= 2 and max(sizes) > 0:
        smallest = min(sizes)
        if smallest == 0 or max(sizes) / smallest > 3:
            return AllocationStrategy.PROPORTIONAL
    if len(items) > 5:
        return AllocationStrategy.RECENCY
    return AllocationStrategy.EQUAL
