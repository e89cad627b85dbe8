"""Content-fingerprint duplicate detection."""
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from .policy import FingerprintRule, FingerprintTable
from .state import AuditContext, CollectionSnapshot, ItemStackView, Violation

logger = logging.getLogger(__name__)


def signature_for(stack: ItemStackView, rule: FingerprintRule) -> Optional[str]:
    """Return the grouping signature for ``stack`` under ``rule``.

    Without structural checking the signature is the kind alone. With it,
    each present field is appended as ``tag=<json>`` in a fixed order; JSON
    quoting keeps a separator inside a value from reading as a field
    boundary. Returns ``None`` for a stack with no structural data, which
    never joins a group.
    """

    if not rule.check_structural:
        return stack.kind
    structural = stack.structural
    if structural is None or structural.is_blank:
        return None
    parts = [stack.kind]
    for tag, value in structural.tagged_fields():
        encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        parts.append(f"{tag}={encoded}")
    return ";".join(parts)


class FingerprintDetector:
    """Groups identical stacks of monitored kinds and flags large groups."""

    def detect(
        self,
        snapshot: CollectionSnapshot,
        table: FingerprintTable,
        context: AuditContext,
    ) -> List[Violation]:
        if not len(table):
            return []

        groups: Dict[str, int] = {}
        kinds: Dict[str, str] = {}
        for index, stack in snapshot.stacks():
            rule = table.get(stack.kind)
            if rule is None:
                continue
            try:
                signature = signature_for(stack, rule)
            except (TypeError, ValueError) as exc:
                logger.debug("Skipping slot %d (%s): %s", index, stack.kind, exc)
                continue
            if signature is None:
                continue
            groups[signature] = groups.get(signature, 0) + stack.quantity
            kinds[signature] = stack.kind

        violations: List[Violation] = []
        for signature, total in groups.items():
            kind = kinds[signature]
            rule = table.get(kind)
            if rule is None or total < rule.min_duplicates:
                continue
            violations.append(
                Violation(
                    actor_id=context.actor_id,
                    kind=kind,
                    observed_quantity=total,
                    limit=rule.min_duplicates,
                    container_kind=context.container_kind,
                    container_location=context.container_location,
                    signature=signature,
                )
            )
        return violations


__all__ = ["FingerprintDetector", "signature_for"]
