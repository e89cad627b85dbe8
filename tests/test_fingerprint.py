from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dupeguard.fingerprint import FingerprintDetector, signature_for  # noqa: E402
from dupeguard.policy import FingerprintRule, FingerprintTable  # noqa: E402
from dupeguard.state import (  # noqa: E402
    AuditContext,
    CollectionSnapshot,
    ItemStackView,
    StructuralData,
)

CONTEXT = AuditContext(actor_id="actor-1", display_name="Steve")
RULE = FingerprintRule(min_duplicates=3)


def sword(name: str = "Excalibur", **extra) -> ItemStackView:
    structural = StructuralData.from_payload({"name": name, "enchantments": {"sharpness": 5}, **extra})
    return ItemStackView("DIAMOND_SWORD", 1, structural)


def table(**rules) -> FingerprintTable:
    return FingerprintTable.build(rules or {"DIAMOND_SWORD": RULE})


def test_three_identical_swords_violate() -> None:
    snapshot = CollectionSnapshot.of([sword(), sword(), sword()])
    violations = FingerprintDetector().detect(snapshot, table(), CONTEXT)

    assert len(violations) == 1
    violation = violations[0]
    assert violation.kind == "DIAMOND_SWORD"
    assert violation.observed_quantity == 3
    assert violation.limit == 3
    assert violation.signature == signature_for(sword(), RULE)


def test_renamed_sword_splits_the_group() -> None:
    snapshot = CollectionSnapshot.of([sword(), sword(), sword("Renamed")])
    assert FingerprintDetector().detect(snapshot, table(), CONTEXT) == []


@pytest.mark.parametrize("count,expected", [(2, 0), (3, 1), (4, 1)])
def test_threshold_boundary(count: int, expected: int) -> None:
    snapshot = CollectionSnapshot.of([sword() for _ in range(count)])
    assert len(FingerprintDetector().detect(snapshot, table(), CONTEXT)) == expected


def test_quantities_are_summed_within_a_group() -> None:
    stack = ItemStackView("ENCHANTED_BOOK", 2, StructuralData.from_payload({"stored_enchantments": {"mending": 1}}))
    snapshot = CollectionSnapshot.of([stack, stack])
    violations = FingerprintDetector().detect(snapshot, table(ENCHANTED_BOOK=FingerprintRule(min_duplicates=4)), CONTEXT)
    assert [v.observed_quantity for v in violations] == [4]


def test_blank_items_never_group_with_structural_checks() -> None:
    snapshot = CollectionSnapshot.of([ItemStackView("DIAMOND_SWORD", 1) for _ in range(5)])
    assert FingerprintDetector().detect(snapshot, table(), CONTEXT) == []


def test_kind_only_signature_without_structural_checks() -> None:
    rule = FingerprintRule(min_duplicates=3, check_structural=False)
    snapshot = CollectionSnapshot.of([ItemStackView("TOTEM_OF_UNDYING", 1) for _ in range(3)])
    violations = FingerprintDetector().detect(snapshot, table(TOTEM_OF_UNDYING=rule), CONTEXT)
    assert len(violations) == 1
    assert violations[0].signature == "TOTEM_OF_UNDYING"


def test_unmonitored_kinds_are_ignored() -> None:
    snapshot = CollectionSnapshot.of([sword() for _ in range(5)])
    assert FingerprintDetector().detect(snapshot, FingerprintTable(), CONTEXT) == []


def test_groups_reported_in_first_appearance_order() -> None:
    snapshot = CollectionSnapshot.of([sword("B"), sword("A"), sword("B"), sword("A"), sword("B"), sword("A")])
    violations = FingerprintDetector().detect(snapshot, table(), CONTEXT)
    assert [v.signature for v in violations] == [signature_for(sword("B"), RULE), signature_for(sword("A"), RULE)]


def test_signature_ignores_enchantment_and_effect_order() -> None:
    first = StructuralData.from_payload(
        {
            "enchantments": {"sharpness": 5, "unbreaking": 3},
            "potion_effects": [{"effect": "speed", "amplifier": 1}, "regeneration"],
        }
    )
    second = StructuralData.from_payload(
        {
            "enchantments": [["unbreaking", 3], ["sharpness", 5]],
            "potion_effects": ["regeneration", {"effect": "SPEED", "amplifier": 1}],
        }
    )
    assert signature_for(ItemStackView("POTION", 1, first), RULE) == signature_for(
        ItemStackView("POTION", 1, second), RULE
    )


def test_signature_keeps_lore_order() -> None:
    first = ItemStackView("PAPER", 1, StructuralData.from_payload({"lore": ["one", "two"]}))
    second = ItemStackView("PAPER", 1, StructuralData.from_payload({"lore": ["two", "one"]}))
    assert signature_for(first, RULE) != signature_for(second, RULE)


def test_signature_field_boundaries_cannot_collide() -> None:
    crafted = ItemStackView("PAPER", 1, StructuralData(display_name='a";lore=["b"]'))
    honest = ItemStackView("PAPER", 1, StructuralData(display_name="a", lore=("b",)))
    assert signature_for(crafted, RULE) != signature_for(honest, RULE)

    joined = ItemStackView("PAPER", 1, StructuralData(lore=("a,b",)))
    split = ItemStackView("PAPER", 1, StructuralData(lore=("a", "b")))
    assert signature_for(joined, RULE) != signature_for(split, RULE)


def test_signature_of_blank_item_is_none() -> None:
    assert signature_for(ItemStackView("PAPER", 1, None), RULE) is None
    assert signature_for(ItemStackView("PAPER", 1, StructuralData()), RULE) is None
