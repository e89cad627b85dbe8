from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dupeguard.fingerprint import signature_for  # noqa: E402
from dupeguard.handler import ViolationHandler, remove_excess  # noqa: E402
from dupeguard.policy import DetectionPolicy, FingerprintRule, FingerprintTable, LimitTable  # noqa: E402
from dupeguard.state import (  # noqa: E402
    FINGERPRINT_DETECTOR,
    QUANTITY_DETECTOR,
    ActionKind,
    AuditContext,
    ContainerLocation,
    ItemStackView,
    ListCollection,
    StructuralData,
    Violation,
    ViolationBatch,
)

CONTEXT = AuditContext(
    actor_id="actor-1",
    display_name="Steve",
    container_kind="CHEST",
    container_location=ContainerLocation("world", 10, 64, -5),
)


class RecordingSink:
    def __init__(self, accept: bool = True) -> None:
        self.events = []
        self.accept = accept

    def publish(self, event) -> bool:
        self.events.append(event)
        return self.accept


class ExplodingSink:
    def publish(self, event) -> bool:
        raise RuntimeError("transport down")


class RecordingSessions:
    def __init__(self) -> None:
        self.disconnected = []

    def disconnect(self, actor_id: str, message: str) -> None:
        self.disconnected.append((actor_id, message))


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages = []

    def notify(self, message: str) -> None:
        self.messages.append(message)


def quantity_violation(kind: str = "GOLD_INGOT", observed: int = 192, limit: int = 64) -> Violation:
    return Violation(
        actor_id=CONTEXT.actor_id,
        kind=kind,
        observed_quantity=observed,
        limit=limit,
        container_kind=CONTEXT.container_kind,
        container_location=CONTEXT.container_location,
    )


def quantity_batch(*violations: Violation) -> ViolationBatch:
    return ViolationBatch(QUANTITY_DETECTOR, CONTEXT, tuple(violations or (quantity_violation(),)))


def policy(action: ActionKind, **overrides) -> DetectionPolicy:
    return DetectionPolicy(large_stack_action=action, limits=LimitTable.build({"GOLD_INGOT": 64}), **overrides)


def test_log_action_publishes_one_alert_and_notifies(caplog) -> None:
    sink, notifier = RecordingSink(), RecordingNotifier()
    handler = ViolationHandler(alerts=sink, notifier=notifier)

    with caplog.at_level("WARNING"):
        outcome = handler.handle(quantity_batch(), policy(ActionKind.LOG))

    assert outcome is not None
    assert outcome.alert_published
    assert len(sink.events) == 1
    assert sink.events[0].actions == ["LOG"]
    assert "Large stack detected: Steve accessed chest at world (10, 64, -5) with 192 GOLD_INGOT" in caplog.text
    assert len(notifier.messages) == 1
    assert outcome.units_removed == 0


def test_log_line_is_suppressed_when_disabled(caplog) -> None:
    handler = ViolationHandler(notifier=RecordingNotifier())
    with caplog.at_level("WARNING"):
        handler.handle(quantity_batch(), policy(ActionKind.LOG, log_suspicious=False))
    assert "Large stack detected" not in caplog.text


def test_empty_batch_is_ignored() -> None:
    sink = RecordingSink()
    handler = ViolationHandler(alerts=sink)
    assert handler.handle(ViolationBatch(QUANTITY_DETECTOR, CONTEXT), policy(ActionKind.LOG)) is None
    assert sink.events == []


def test_alert_failure_is_logged_not_raised(caplog) -> None:
    handler = ViolationHandler(alerts=ExplodingSink(), notifier=RecordingNotifier())
    with caplog.at_level("ERROR"):
        outcome = handler.handle(quantity_batch(), policy(ActionKind.LOG))
    assert outcome is not None
    assert outcome.alert_published is False
    assert "Failed to publish alert" in caplog.text


def test_remove_excess_trims_collection_to_limit() -> None:
    collection = ListCollection([ItemStackView("GOLD_INGOT", 64) for _ in range(3)])
    handler = ViolationHandler(notifier=RecordingNotifier())

    outcome = handler.handle(quantity_batch(), policy(ActionKind.REMOVE_EXCESS), collection=collection)

    assert outcome is not None
    assert outcome.units_removed == 128
    assert collection.total("GOLD_INGOT") == 64
    assert collection.get(0) is None
    assert collection.get(1) is None
    assert collection.get(2).quantity == 64


def test_remove_excess_without_handle_is_skipped(caplog) -> None:
    handler = ViolationHandler(notifier=RecordingNotifier())
    with caplog.at_level("WARNING"):
        outcome = handler.handle(quantity_batch(), policy(ActionKind.REMOVE_EXCESS))
    assert outcome is not None
    assert outcome.actions[0].skipped
    assert "no live collection handle" in caplog.text


def test_remove_excess_helper_never_goes_negative() -> None:
    collection = ListCollection([ItemStackView("GOLD_INGOT", 10), ItemStackView("STONE", 5), ItemStackView("GOLD_INGOT", 7)])
    removed = remove_excess(collection, "GOLD_INGOT", 100)
    assert removed == 17
    assert collection.total("GOLD_INGOT") == 0
    assert collection.get(1).quantity == 5

    collection = ListCollection([ItemStackView("GOLD_INGOT", 10), ItemStackView("GOLD_INGOT", 10)])
    assert remove_excess(collection, "GOLD_INGOT", 15) == 15
    assert collection.get(0) is None
    assert collection.get(1).quantity == 5


def test_remove_excess_only_touches_matching_signature() -> None:
    rule = FingerprintRule(min_duplicates=2, action=ActionKind.REMOVE_EXCESS)
    named = ItemStackView("DIAMOND_SWORD", 1, StructuralData(display_name="Dupe"))
    other = ItemStackView("DIAMOND_SWORD", 1, StructuralData(display_name="Legit"))
    collection = ListCollection([other, named, named, named])
    fingerprint_policy = DetectionPolicy(fingerprints=FingerprintTable.build({"DIAMOND_SWORD": rule}))
    violation = Violation(
        actor_id=CONTEXT.actor_id,
        kind="DIAMOND_SWORD",
        observed_quantity=3,
        limit=2,
        container_kind=CONTEXT.container_kind,
        signature=signature_for(named, rule),
    )
    batch = ViolationBatch(FINGERPRINT_DETECTOR, CONTEXT, (violation,))

    outcome = ViolationHandler(notifier=RecordingNotifier()).handle(batch, fingerprint_policy, collection=collection)

    assert outcome is not None
    assert outcome.units_removed == 1
    assert collection.get(0) == other
    assert collection.get(1) is None
    assert collection.get(2) == named


def test_remove_actor_disconnects_once_and_skips_the_rest() -> None:
    sessions = RecordingSessions()
    handler = ViolationHandler(sessions=sessions, notifier=RecordingNotifier())
    batch = quantity_batch(quantity_violation(), quantity_violation("DIAMOND", 100, 10))
    active = DetectionPolicy(
        large_stack_action=ActionKind.REMOVE_ACTOR,
        limits=LimitTable.build({"GOLD_INGOT": 64, "DIAMOND": 10}),
    )

    outcome = handler.handle(batch, active)

    assert outcome is not None
    assert outcome.actor_removed
    assert len(sessions.disconnected) == 1
    actor_id, message = sessions.disconnected[0]
    assert actor_id == "actor-1"
    assert "Excessive items detected (192 GOLD_INGOT)" in message
    assert [record.skipped for record in outcome.actions] == [False, True]


def test_skip_actions_still_alerts() -> None:
    sink, sessions = RecordingSink(), RecordingSessions()
    handler = ViolationHandler(alerts=sink, sessions=sessions, notifier=RecordingNotifier())
    outcome = handler.handle(quantity_batch(), policy(ActionKind.REMOVE_ACTOR), skip_actions=True)
    assert outcome is not None
    assert sessions.disconnected == []
    assert len(sink.events) == 1
    assert outcome.actions[0].skipped


def test_alert_event_serialises_batch() -> None:
    sink = RecordingSink()
    ViolationHandler(alerts=sink, notifier=RecordingNotifier()).handle(quantity_batch(), policy(ActionKind.LOG))
    payload = sink.events[0].as_dict()
    assert payload["detector"] == "quantity"
    assert payload["context"]["display_name"] == "Steve"
    assert payload["violations"][0]["excess"] == 128
    assert payload["summary"].startswith("Large stack detected")
