"""Aggregate quantity detection against the limit table."""
from __future__ import annotations

from typing import Dict, List

from .policy import LimitTable
from .state import AuditContext, CollectionSnapshot, Violation


class QuantityDetector:
    """Flags item kinds whose total quantity in a collection exceeds its limit."""

    def detect(
        self,
        snapshot: CollectionSnapshot,
        limits: LimitTable,
        context: AuditContext,
    ) -> List[Violation]:
        if not len(limits):
            return []

        # dicts keep insertion order, so kinds are reported in slot order
        totals: Dict[str, int] = {}
        for _, stack in snapshot.stacks():
            totals[stack.kind] = totals.get(stack.kind, 0) + stack.quantity

        violations: List[Violation] = []
        for kind, total in totals.items():
            limit = limits.get(kind)
            if limit is None or total <= limit:
                continue
            violations.append(
                Violation(
                    actor_id=context.actor_id,
                    kind=kind,
                    observed_quantity=total,
                    limit=limit,
                    container_kind=context.container_kind,
                    container_location=context.container_location,
                )
            )
        return violations


__all__ = ["QuantityDetector"]
