"""Violation handling and corrective action dispatch."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

from .fingerprint import signature_for
from .policy import DetectionPolicy, FingerprintRule
from .state import (
    FINGERPRINT_DETECTOR,
    ActionKind,
    AuditContext,
    MutableCollection,
    Violation,
    ViolationBatch,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Host collaborators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertEvent:
    """Structured alert emitted once per violation batch."""

    batch: ViolationBatch
    summary: str
    actions: Sequence[str] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def context(self) -> AuditContext:
        return self.batch.context

    @property
    def detector(self) -> str:
        return self.batch.detector

    def as_dict(self) -> dict[str, object]:
        payload = self.batch.as_dict()
        payload["summary"] = self.summary
        payload["actions"] = list(self.actions)
        payload["created_at"] = self.created_at.isoformat()
        return payload


class AlertSink(Protocol):
    """Outbound alert transport. ``publish`` must not block."""

    def publish(self, event: AlertEvent) -> bool:
        ...


class SessionControl(Protocol):
    """Host hook that removes an actor from the session."""

    def disconnect(self, actor_id: str, message: str) -> None:
        ...


class AdminNotifier(Protocol):
    """Host hook that tells privileged observers about a batch."""

    def notify(self, message: str) -> None:
        ...


class LoggingAdminNotifier:
    """Fallback notifier that writes admin notices to the log."""

    def notify(self, message: str) -> None:
        logger.info("Admin notice: %s", message)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionRecord:
    """One action applied for one violation."""

    violation: Violation
    action: ActionKind
    units_removed: int = 0
    skipped: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.violation.kind,
            "signature": self.violation.signature,
            "action": self.action.value,
            "units_removed": self.units_removed,
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class HandlingOutcome:
    """Result of handling one batch."""

    batch: ViolationBatch
    actions: Sequence[ActionRecord]
    actor_removed: bool
    alert_published: bool
    log_line: str

    @property
    def units_removed(self) -> int:
        return sum(record.units_removed for record in self.actions)

    def as_dict(self) -> dict[str, object]:
        return {
            "batch": self.batch.as_dict(),
            "actions": [record.as_dict() for record in self.actions],
            "actor_removed": self.actor_removed,
            "alert_published": self.alert_published,
            "units_removed": self.units_removed,
            "log_line": self.log_line,
        }


# ---------------------------------------------------------------------------
# Corrective mutation
# ---------------------------------------------------------------------------


def remove_excess(
    collection: MutableCollection,
    kind: str,
    amount: int,
    *,
    signature: Optional[str] = None,
    rule: Optional[FingerprintRule] = None,
) -> int:
    """Remove up to ``amount`` units of ``kind`` from ``collection``.

    Slots are visited in order; each is reduced without going below zero and
    cleared when emptied. When ``signature`` is given only stacks with that
    signature under ``rule`` are touched. Returns the number of units removed.
    """

    remaining = max(0, amount)
    removed = 0
    for index in range(len(collection)):
        if remaining <= 0:
            break
        stack = collection.get(index)
        if stack is None or stack.is_empty or stack.kind != kind:
            continue
        if signature is not None:
            if rule is None or signature_for(stack, rule) != signature:
                continue
        if stack.quantity <= remaining:
            collection.clear(index)
            remaining -= stack.quantity
            removed += stack.quantity
        else:
            collection.set_quantity(index, stack.quantity - remaining)
            removed += remaining
            remaining = 0
    return removed


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class ViolationHandler:
    """Turns a detector batch into a log line, an alert and corrective actions.

    Handling is a single pass with no retries: log and alert, apply each
    violation's action, then notify admins.
    """

    def __init__(
        self,
        *,
        alerts: Optional[AlertSink] = None,
        sessions: Optional[SessionControl] = None,
        notifier: Optional[AdminNotifier] = None,
    ) -> None:
        self._alerts = alerts
        self._sessions = sessions
        self._notifier = notifier if notifier is not None else LoggingAdminNotifier()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def handle(
        self,
        batch: ViolationBatch,
        policy: DetectionPolicy,
        *,
        collection: Optional[MutableCollection] = None,
        skip_actions: bool = False,
    ) -> Optional[HandlingOutcome]:
        """Handle ``batch``; returns ``None`` for an empty batch.

        ``skip_actions`` is set when the actor was already removed earlier in
        the same audit, so only logging and alerting still apply.
        """

        if not batch.violations:
            return None

        log_line = self._describe(batch)
        if policy.log_suspicious:
            logger.warning("%s", log_line)

        planned = [policy.action_for(violation).value for violation in batch]
        alert_published = self._publish(AlertEvent(batch=batch, summary=log_line, actions=planned))

        records: List[ActionRecord] = []
        actor_removed = False
        for violation in batch:
            action = policy.action_for(violation)
            if skip_actions or actor_removed:
                records.append(ActionRecord(violation=violation, action=action, skipped=True))
                continue
            if action is ActionKind.REMOVE_EXCESS:
                records.append(self._remove_excess(violation, policy, collection))
            elif action is ActionKind.REMOVE_ACTOR:
                actor_removed = self._remove_actor(batch.context, violation)
                records.append(ActionRecord(violation=violation, action=action, skipped=not actor_removed))
            else:
                records.append(ActionRecord(violation=violation, action=action))

        self._notify_admins(batch, records, actor_removed)
        return HandlingOutcome(
            batch=batch,
            actions=tuple(records),
            actor_removed=actor_removed,
            alert_published=alert_published,
            log_line=log_line,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _publish(self, event: AlertEvent) -> bool:
        if self._alerts is None:
            return False
        try:
            return bool(self._alerts.publish(event))
        except Exception:
            logger.exception("Failed to publish alert for %s", event.context.display_name)
            return False

    def _remove_excess(
        self,
        violation: Violation,
        policy: DetectionPolicy,
        collection: Optional[MutableCollection],
    ) -> ActionRecord:
        if collection is None:
            logger.warning(
                "Cannot remove %d excess %s for %s: no live collection handle",
                violation.excess,
                violation.kind,
                violation.actor_id,
            )
            return ActionRecord(violation=violation, action=ActionKind.REMOVE_EXCESS, skipped=True)

        rule = policy.fingerprints.get(violation.kind) if violation.is_fingerprint else None
        removed = remove_excess(
            collection,
            violation.kind,
            violation.excess,
            signature=violation.signature,
            rule=rule,
        )
        if removed < violation.excess:
            logger.info(
                "Removed %d of %d excess %s; collection changed since capture",
                removed,
                violation.excess,
                violation.kind,
            )
        return ActionRecord(violation=violation, action=ActionKind.REMOVE_EXCESS, units_removed=removed)

    def _remove_actor(self, context: AuditContext, violation: Violation) -> bool:
        if self._sessions is None:
            logger.warning("No session control configured; cannot remove %s", context.display_name)
            return False
        if violation.is_fingerprint:
            message = (
                f"Dupe Detection: Identical items detected "
                f"({violation.observed_quantity} {violation.kind})"
            )
        else:
            message = (
                f"Dupe Detection: Excessive items detected "
                f"({violation.observed_quantity} {violation.kind})"
            )
        try:
            self._sessions.disconnect(context.actor_id, message)
        except Exception:
            logger.exception("Failed to remove %s from the session", context.display_name)
            return False
        return True

    def _notify_admins(
        self,
        batch: ViolationBatch,
        records: Sequence[ActionRecord],
        actor_removed: bool,
    ) -> None:
        context = batch.context
        label = "Duplicate item" if batch.detector == FINGERPRINT_DETECTOR else "Large stack"
        if len(batch) == 1:
            violation = batch.violations[0]
            message = (
                f"{label} violation for {context.display_name}: "
                f"{violation.observed_quantity} {violation.kind} (limit: {violation.limit})"
            )
        else:
            message = f"{len(batch)} {label.lower()} violations detected for {context.display_name}"
        removed = sum(record.units_removed for record in records)
        if removed:
            message += f" - removed {removed} items"
        if actor_removed:
            message += " - player removed"
        message += " - see alerts for details"
        try:
            self._notifier.notify(message)
        except Exception:
            logger.exception("Failed to notify admins")

    @staticmethod
    def _describe(batch: ViolationBatch) -> str:
        context = batch.context
        where = context.container_kind.lower().replace("_", " ")
        if context.container_location is not None:
            where = f"{where} at {context.container_location.describe()}"
        if batch.detector == FINGERPRINT_DETECTOR:
            details = ", ".join(
                f"{violation.observed_quantity} identical {violation.kind} (minimum: {violation.limit})"
                for violation in batch
            )
            return f"Duplicate items detected: {context.display_name} accessed {where} with {details}"
        details = ", ".join(
            f"{violation.observed_quantity} {violation.kind} (limit: {violation.limit})"
            for violation in batch
        )
        return f"Large stack detected: {context.display_name} accessed {where} with {details}"


__all__ = [
    "ActionRecord",
    "AdminNotifier",
    "AlertEvent",
    "AlertSink",
    "HandlingOutcome",
    "LoggingAdminNotifier",
    "SessionControl",
    "ViolationHandler",
    "remove_excess",
]
