"""DupeGuard orchestration engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
from uuid import UUID

from .cooldown import CooldownGate
from .exemptions import ExemptionRegistry
from .fingerprint import FingerprintDetector
from .handler import HandlingOutcome, ViolationHandler
from .policy import DetectionPolicy, PolicyStore
from .quantity import QuantityDetector
from .state import (
    FINGERPRINT_DETECTOR,
    PLAYER_CONTAINER,
    QUANTITY_DETECTOR,
    AuditContext,
    CollectionSnapshot,
    ContainerLocation,
    MutableCollection,
    ViolationBatch,
)

logger = logging.getLogger(__name__)

SKIP_EXEMPT = "exempt"
SKIP_COOLDOWN = "cooldown"


@dataclass
class AuditReport:
    """Everything one audit decided, returned by :class:`DupeDetectionEngine`."""

    context: AuditContext
    skipped_reason: Optional[str]
    outcomes: Sequence[HandlingOutcome] = ()

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def violation_count(self) -> int:
        return sum(len(outcome.batch) for outcome in self.outcomes)

    @property
    def actor_removed(self) -> bool:
        return any(outcome.actor_removed for outcome in self.outcomes)

    def as_dict(self) -> dict[str, object]:
        return {
            "context": self.context.as_dict(),
            "skipped_reason": self.skipped_reason,
            "violation_count": self.violation_count,
            "actor_removed": self.actor_removed,
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
        }


class DupeDetectionEngine:
    """Gates audits, runs both detectors and hands their batches to the handler."""

    def __init__(
        self,
        *,
        policy_store: Optional[PolicyStore] = None,
        exemptions: Optional[ExemptionRegistry] = None,
        cooldown: Optional[CooldownGate] = None,
        handler: Optional[ViolationHandler] = None,
    ) -> None:
        self.policy_store = policy_store if policy_store is not None else PolicyStore()
        self.exemptions = exemptions if exemptions is not None else ExemptionRegistry()
        self.cooldown = cooldown if cooldown is not None else CooldownGate()
        self.handler = handler if handler is not None else ViolationHandler()
        self.quantity = QuantityDetector()
        self.fingerprint = FingerprintDetector()

    @property
    def policy(self) -> DetectionPolicy:
        return self.policy_store.current

    # ------------------------------------------------------------------
    # Host entry points
    # ------------------------------------------------------------------
    def on_collection_closed(
        self,
        actor_id: UUID | str,
        display_name: str,
        snapshot: CollectionSnapshot,
        container_kind: str = PLAYER_CONTAINER,
        container_location: Optional[ContainerLocation] = None,
        collection: Optional[MutableCollection] = None,
        now: Optional[float] = None,
    ) -> AuditReport:
        """Audit a collection the actor just closed.

        Exempt actors are skipped first, then actors still inside their
        cooldown window. ``collection`` is the live handle used by
        ``REMOVE_EXCESS``; without it removals are logged and skipped.
        """

        context = AuditContext(
            actor_id=str(actor_id),
            display_name=display_name,
            container_kind=container_kind,
            container_location=container_location,
        )
        policy = self.policy_store.current

        if self.exemptions.is_exempt(context.actor_id, display_name):
            self._trace(policy, "Skipping audit for exempt actor %s", display_name)
            return AuditReport(context=context, skipped_reason=SKIP_EXEMPT)
        if not self.cooldown.should_run(context.actor_id, now):
            self._trace(policy, "Skipping audit for %s: cooldown active", display_name)
            return AuditReport(context=context, skipped_reason=SKIP_COOLDOWN)

        return self._audit(context, snapshot, policy, collection)

    def check(
        self,
        actor_id: UUID | str,
        display_name: str,
        snapshot: CollectionSnapshot,
        container_kind: str = PLAYER_CONTAINER,
        container_location: Optional[ContainerLocation] = None,
        collection: Optional[MutableCollection] = None,
        *,
        include_exempt: bool = False,
    ) -> AuditReport:
        """On-demand audit that ignores and does not touch the cooldown."""

        context = AuditContext(
            actor_id=str(actor_id),
            display_name=display_name,
            container_kind=container_kind,
            container_location=container_location,
        )
        if not include_exempt and self.exemptions.is_exempt(context.actor_id, display_name):
            return AuditReport(context=context, skipped_reason=SKIP_EXEMPT)
        return self._audit(context, snapshot, self.policy_store.current, collection)

    def on_actor_left(self, actor_id: UUID | str) -> None:
        self.cooldown.forget(str(actor_id))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _audit(
        self,
        context: AuditContext,
        snapshot: CollectionSnapshot,
        policy: DetectionPolicy,
        collection: Optional[MutableCollection],
    ) -> AuditReport:
        batches: List[ViolationBatch] = []
        if policy.large_stack_enabled:
            violations = self.quantity.detect(snapshot, policy.limits, context)
            batches.append(ViolationBatch(QUANTITY_DETECTOR, context, tuple(violations)))
        if policy.fingerprint_enabled:
            violations = self.fingerprint.detect(snapshot, policy.fingerprints, context)
            batches.append(ViolationBatch(FINGERPRINT_DETECTOR, context, tuple(violations)))

        outcomes: List[HandlingOutcome] = []
        actor_removed = False
        for batch in batches:
            outcome = self.handler.handle(
                batch,
                policy,
                collection=collection,
                skip_actions=actor_removed,
            )
            if outcome is None:
                continue
            outcomes.append(outcome)
            actor_removed = actor_removed or outcome.actor_removed

        return AuditReport(context=context, skipped_reason=None, outcomes=tuple(outcomes))

    @staticmethod
    def _trace(policy: DetectionPolicy, message: str, *args: object) -> None:
        logger.log(logging.INFO if policy.debug else logging.DEBUG, message, *args)


__all__ = ["AuditReport", "DupeDetectionEngine", "SKIP_COOLDOWN", "SKIP_EXEMPT"]
