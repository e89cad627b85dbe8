from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dupeguard.cooldown import CooldownGate  # noqa: E402
from dupeguard.engine import SKIP_COOLDOWN, SKIP_EXEMPT, DupeDetectionEngine  # noqa: E402
from dupeguard.exemptions import ExemptionRegistry  # noqa: E402
from dupeguard.handler import ViolationHandler  # noqa: E402
from dupeguard.policy import PolicyStore, policy_from_mapping  # noqa: E402
from dupeguard.state import CollectionSnapshot, ListCollection  # noqa: E402


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    def publish(self, event) -> bool:
        self.events.append(event)
        return True


class RecordingSessions:
    def __init__(self) -> None:
        self.disconnected = []

    def disconnect(self, actor_id: str, message: str) -> None:
        self.disconnected.append(actor_id)


class SilentNotifier:
    def notify(self, message: str) -> None:
        pass


def build_config(**overrides):
    config = {
        "large-stack": {"enabled": True, "action": "LOG", "limits": {"GOLD_INGOT": 64}},
        "nbt-duplicate": {
            "enabled": True,
            "items": {"DIAMOND_SWORD": {"minimum-duplicates": 3, "action": "LOG"}},
        },
    }
    config.update(overrides)
    return config


def build_engine(config=None, *, exemptions=None, sessions=None):
    sink = RecordingSink()
    engine = DupeDetectionEngine(
        policy_store=PolicyStore(policy_from_mapping(config or build_config())),
        exemptions=exemptions if exemptions is not None else ExemptionRegistry(),
        cooldown=CooldownGate(5.0),
        handler=ViolationHandler(alerts=sink, sessions=sessions, notifier=SilentNotifier()),
    )
    return engine, sink


def gold_and_swords():
    sword = {"kind": "DIAMOND_SWORD", "quantity": 1, "structural": {"name": "Dupe", "enchantments": {"sharpness": 5}}}
    return CollectionSnapshot.from_payload([{"kind": "GOLD_INGOT", "quantity": 64}] * 3 + [sword] * 3)


def test_engine_runs_both_detectors_and_emits_one_alert_each() -> None:
    engine, sink = build_engine()
    report = engine.on_collection_closed("actor-1", "Steve", gold_and_swords(), now=0.0)

    assert report.skipped_reason is None
    assert [outcome.batch.detector for outcome in report.outcomes] == ["quantity", "fingerprint"]
    assert report.violation_count == 2
    assert [event.detector for event in sink.events] == ["quantity", "fingerprint"]

    payload = report.as_dict()
    assert payload["context"]["actor_id"] == "actor-1"
    assert payload["outcomes"][0]["batch"]["violations"][0]["observed_quantity"] == 192


def test_clean_inventory_produces_no_outcomes() -> None:
    engine, sink = build_engine()
    snapshot = CollectionSnapshot.from_payload([{"kind": "GOLD_INGOT", "quantity": 64}])
    report = engine.on_collection_closed("actor-1", "Steve", snapshot, now=0.0)
    assert report.skipped_reason is None
    assert report.outcomes == ()
    assert sink.events == []


def test_exempt_actor_is_skipped_before_cooldown() -> None:
    exemptions = ExemptionRegistry()
    exemptions.add("steve")
    engine, sink = build_engine(exemptions=exemptions)

    report = engine.on_collection_closed("actor-1", "Steve", gold_and_swords(), now=0.0)

    assert report.skipped_reason == SKIP_EXEMPT
    assert sink.events == []
    assert len(engine.cooldown) == 0


def test_cooldown_limits_audits_per_actor() -> None:
    engine, sink = build_engine()
    snapshot = gold_and_swords()

    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=0.0).skipped_reason is None
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=1.0).skipped_reason == SKIP_COOLDOWN
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=5.0).skipped_reason is None


def test_injected_empty_cooldown_gate_is_kept() -> None:
    gate = CooldownGate(60.0)
    engine = DupeDetectionEngine(
        policy_store=PolicyStore(policy_from_mapping(build_config())),
        cooldown=gate,
        handler=ViolationHandler(alerts=RecordingSink(), notifier=SilentNotifier()),
    )
    snapshot = gold_and_swords()

    assert engine.cooldown is gate
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=0.0).skipped_reason is None
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=10.0).skipped_reason == SKIP_COOLDOWN
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=59.0).skipped_reason == SKIP_COOLDOWN
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=60.0).skipped_reason is None


def test_actor_leaving_clears_cooldown() -> None:
    engine, _ = build_engine()
    snapshot = gold_and_swords()
    engine.on_collection_closed("actor-1", "Steve", snapshot, now=0.0)
    engine.on_actor_left("actor-1")
    assert engine.on_collection_closed("actor-1", "Steve", snapshot, now=1.0).skipped_reason is None


def test_check_bypasses_cooldown_and_optionally_exemptions() -> None:
    exemptions = ExemptionRegistry()
    exemptions.add("Steve")
    engine, _ = build_engine(exemptions=exemptions)
    snapshot = gold_and_swords()

    assert engine.check("actor-1", "Steve", snapshot).skipped_reason == SKIP_EXEMPT
    report = engine.check("actor-1", "Steve", snapshot, include_exempt=True)
    assert report.violation_count == 2
    assert len(engine.cooldown) == 0


def test_disabled_sections_do_not_run() -> None:
    config = build_config()
    config["large-stack"]["enabled"] = False
    config["nbt-duplicate"]["enabled"] = "false"
    engine, sink = build_engine(config)
    report = engine.on_collection_closed("actor-1", "Steve", gold_and_swords(), now=0.0)
    assert report.outcomes == ()
    assert sink.events == []


def test_actor_removal_skips_actions_in_later_batches() -> None:
    config = build_config()
    config["large-stack"]["action"] = "KICK"
    config["nbt-duplicate"]["items"]["DIAMOND_SWORD"]["action"] = "REMOVE_EXCESS"
    sessions = RecordingSessions()
    engine, sink = build_engine(config, sessions=sessions)
    snapshot = gold_and_swords()
    collection = ListCollection.from_snapshot(snapshot)

    report = engine.on_collection_closed("actor-1", "Steve", snapshot, collection=collection, now=0.0)

    assert sessions.disconnected == ["actor-1"]
    assert report.actor_removed
    assert report.outcomes[1].actions[0].skipped
    assert collection.total("DIAMOND_SWORD") == 3
    assert len(sink.events) == 2


def test_reload_swaps_policy_between_audits() -> None:
    engine, _ = build_engine()
    snapshot = gold_and_swords()
    engine.policy_store.swap(policy_from_mapping(build_config(**{"large-stack": {"limits": {"GOLD_INGOT": 500}}})))
    report = engine.check("actor-1", "Steve", snapshot)
    assert [outcome.batch.detector for outcome in report.outcomes] == ["fingerprint"]
