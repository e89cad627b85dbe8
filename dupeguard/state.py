"""Item, collection and violation types shared across DupeGuard."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)

EMPTY_KINDS = frozenset({"AIR", "CAVE_AIR", "VOID_AIR"})
PLAYER_CONTAINER = "PLAYER"
QUANTITY_DETECTOR = "quantity"
FINGERPRINT_DETECTOR = "fingerprint"

_KIND_PATTERN = re.compile(r"^[A-Z0-9_]+$")

EnchantmentSet = Tuple[Tuple[str, int], ...]


def normalize_kind(name: object) -> str:
    """Return the canonical item kind for ``name``.

    ``minecraft:golden_apple`` and ``golden-apple`` both map to
    ``GOLDEN_APPLE``. Raises :class:`ValueError` when the name cannot
    identify an item kind.
    """

    text = str(name or "").strip()
    if ":" in text:
        text = text.split(":", 1)[1]
    text = text.replace("-", "_").replace(" ", "_").upper()
    if not text or not _KIND_PATTERN.match(text):
        raise ValueError(f"invalid item kind {name!r}")
    return text


class ActionKind(str, Enum):
    """Corrective action applied to a violation."""

    LOG = "LOG"
    REMOVE_EXCESS = "REMOVE_EXCESS"
    REMOVE_ACTOR = "REMOVE_ACTOR"

    @classmethod
    def parse(cls, value: object) -> "ActionKind":
        if isinstance(value, ActionKind):
            return value
        text = str(value or "").strip().upper().replace("-", "_")
        text = _ACTION_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"unknown action {value!r}") from None


# Names used by older configuration files.
_ACTION_ALIASES = {"WARN": "LOG", "KICK": "REMOVE_ACTOR", "BAN": "REMOVE_ACTOR"}


# ---------------------------------------------------------------------------
# Item stacks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PotionEffect:
    """Custom potion effect carried by a potion-like item."""

    effect: str
    amplifier: int = 0
    duration: int = 0

    @classmethod
    def from_payload(cls, payload: object) -> "PotionEffect":
        if isinstance(payload, str):
            return cls(effect=payload.strip().upper())
        if isinstance(payload, Mapping):
            effect = str(payload.get("effect") or payload.get("type") or "").strip().upper()
            if not effect:
                raise ValueError("potion effect without a type")
            return cls(
                effect=effect,
                amplifier=int(payload.get("amplifier", 0)),
                duration=int(payload.get("duration", 0)),
            )
        raise ValueError(f"unsupported potion effect payload {payload!r}")

    def as_dict(self) -> dict[str, object]:
        return {"effect": self.effect, "amplifier": self.amplifier, "duration": self.duration}


@dataclass(frozen=True)
class StructuralData:
    """Rich per-stack attributes captured once when a snapshot is taken.

    Every field is optional; a field is ``None`` when the item does not carry
    that capability or carries an empty value. Enchantment sets are stored
    sorted so that equal sets compare equal regardless of source order, while
    lore keeps its line order.
    """

    display_name: Optional[str] = None
    lore: Optional[Tuple[str, ...]] = None
    enchantments: Optional[EnchantmentSet] = None
    custom_model_data: Optional[int] = None
    damage: Optional[int] = None
    stored_enchantments: Optional[EnchantmentSet] = None
    potion_effects: Optional[Tuple[PotionEffect, ...]] = None

    @property
    def is_blank(self) -> bool:
        return all(value is None for _, value in self.tagged_fields(include_missing=True))

    def tagged_fields(self, *, include_missing: bool = False) -> Iterator[Tuple[str, object]]:
        """Yield ``(tag, value)`` pairs in the fixed fingerprint field order."""

        ordered = (
            ("name", self.display_name),
            ("lore", list(self.lore) if self.lore is not None else None),
            ("enchantments", dict(self.enchantments) if self.enchantments is not None else None),
            ("custom_model", self.custom_model_data),
            ("damage", self.damage),
            (
                "stored_enchantments",
                dict(self.stored_enchantments) if self.stored_enchantments is not None else None,
            ),
            (
                "potion_effects",
                [effect.as_dict() for effect in self.potion_effects]
                if self.potion_effects is not None
                else None,
            ),
        )
        for tag, value in ordered:
            if value is None and not include_missing:
                continue
            yield tag, value

    def as_dict(self) -> dict[str, object]:
        return dict(self.tagged_fields())

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "StructuralData":
        """Build structural data from a loosely shaped mapping."""

        display_name = payload.get("display_name", payload.get("name"))
        lore_raw = payload.get("lore")
        if isinstance(lore_raw, str):
            lore_lines: Sequence[object] = lore_raw.splitlines()
        elif isinstance(lore_raw, Sequence):
            lore_lines = lore_raw
        elif lore_raw is None:
            lore_lines = ()
        else:
            raise ValueError(f"unsupported lore payload {lore_raw!r}")

        effects_raw = payload.get("potion_effects") or ()
        if not isinstance(effects_raw, Sequence) or isinstance(effects_raw, str):
            raise ValueError(f"unsupported potion effect list {effects_raw!r}")
        effects = tuple(
            sorted(
                (PotionEffect.from_payload(entry) for entry in effects_raw),
                key=lambda effect: (effect.effect, effect.amplifier, effect.duration),
            )
        )

        damage = _optional_int(payload.get("damage"))
        return cls(
            display_name=str(display_name) if display_name not in (None, "") else None,
            lore=tuple(str(line) for line in lore_lines) or None,
            enchantments=_enchantment_set(payload.get("enchantments")),
            custom_model_data=_optional_int(payload.get("custom_model_data")),
            # An undamaged item reports no damage at all.
            damage=damage if damage else None,
            stored_enchantments=_enchantment_set(payload.get("stored_enchantments")),
            potion_effects=effects or None,
        )


@dataclass(frozen=True)
class ItemStackView:
    """Read-only view of one slot."""

    kind: str
    quantity: int
    structural: Optional[StructuralData] = None

    @property
    def is_empty(self) -> bool:
        return self.quantity <= 0 or self.kind in EMPTY_KINDS

    def with_quantity(self, quantity: int) -> "ItemStackView":
        return replace(self, quantity=quantity)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind, "quantity": self.quantity}
        if self.structural is not None:
            payload["structural"] = self.structural.as_dict()
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ItemStackView":
        kind = normalize_kind(payload.get("kind") or payload.get("type") or payload.get("material"))
        quantity = int(payload.get("quantity", payload.get("amount", 1)))
        if quantity < 0:
            raise ValueError(f"negative quantity {quantity} for {kind}")
        structural_raw = payload.get("structural", payload.get("meta"))
        structural: Optional[StructuralData] = None
        if isinstance(structural_raw, Mapping):
            structural = StructuralData.from_payload(structural_raw)
            if structural.is_blank:
                structural = None
        elif structural_raw is not None:
            raise ValueError(f"unsupported structural payload for {kind}")
        return cls(kind=kind, quantity=quantity, structural=structural)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CollectionSnapshot:
    """Immutable, ordered capture of one audited collection."""

    slots: Tuple[Optional[ItemStackView], ...] = ()

    def __len__(self) -> int:
        return len(self.slots)

    def __iter__(self) -> Iterator[Optional[ItemStackView]]:
        return iter(self.slots)

    def stacks(self) -> Iterator[Tuple[int, ItemStackView]]:
        """Yield ``(slot_index, stack)`` for every non-empty slot."""

        for index, stack in enumerate(self.slots):
            if stack is not None and not stack.is_empty:
                yield index, stack

    def as_dict(self) -> list[Optional[dict[str, object]]]:
        return [stack.as_dict() if stack is not None else None for stack in self.slots]

    @classmethod
    def of(cls, stacks: Iterable[Optional[ItemStackView]]) -> "CollectionSnapshot":
        return cls(slots=tuple(stacks))

    @classmethod
    def from_payload(cls, entries: Iterable[object]) -> "CollectionSnapshot":
        """Capture a snapshot from slot payloads.

        Slots that cannot be parsed are recorded as empty so that a single
        malformed item never aborts the audit of the whole collection.
        """

        slots: List[Optional[ItemStackView]] = []
        for index, entry in enumerate(entries):
            if entry is None:
                slots.append(None)
                continue
            if isinstance(entry, ItemStackView):
                slots.append(entry)
                continue
            try:
                if not isinstance(entry, Mapping):
                    raise ValueError(f"unsupported slot payload {entry!r}")
                slots.append(ItemStackView.from_payload(entry))
            except (TypeError, ValueError) as exc:
                logger.debug("Skipping unreadable slot %d: %s", index, exc)
                slots.append(None)
        return cls(slots=tuple(slots))


class MutableCollection(Protocol):
    """Live, slot-indexed handle over the collection a snapshot was taken from."""

    def __len__(self) -> int:
        ...

    def get(self, index: int) -> Optional[ItemStackView]:
        ...

    def set_quantity(self, index: int, quantity: int) -> None:
        ...

    def clear(self, index: int) -> None:
        ...


class ListCollection:
    """In-memory :class:`MutableCollection` backed by a list of slots."""

    def __init__(self, slots: Iterable[Optional[ItemStackView]] = ()) -> None:
        self._slots: List[Optional[ItemStackView]] = list(slots)

    def __len__(self) -> int:
        return len(self._slots)

    def get(self, index: int) -> Optional[ItemStackView]:
        return self._slots[index]

    def set_quantity(self, index: int, quantity: int) -> None:
        stack = self._slots[index]
        if stack is None:
            return
        if quantity <= 0:
            self._slots[index] = None
        else:
            self._slots[index] = stack.with_quantity(quantity)

    def clear(self, index: int) -> None:
        self._slots[index] = None

    def snapshot(self) -> CollectionSnapshot:
        return CollectionSnapshot(slots=tuple(self._slots))

    def total(self, kind: str) -> int:
        return sum(stack.quantity for stack in self._slots if stack is not None and stack.kind == kind)

    @classmethod
    def from_snapshot(cls, snapshot: CollectionSnapshot) -> "ListCollection":
        return cls(snapshot.slots)


# ---------------------------------------------------------------------------
# Audit context and findings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContainerLocation:
    """Block coordinates of an audited container."""

    world: str
    x: int
    y: int
    z: int

    def describe(self) -> str:
        return f"{self.world} ({self.x}, {self.y}, {self.z})"

    def as_dict(self) -> dict[str, object]:
        return {"world": self.world, "x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_payload(cls, payload: object) -> Optional["ContainerLocation"]:
        if isinstance(payload, ContainerLocation):
            return payload
        if not isinstance(payload, Mapping):
            return None
        try:
            return cls(
                world=str(payload.get("world") or "world"),
                x=int(payload["x"]),
                y=int(payload["y"]),
                z=int(payload["z"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class AuditContext:
    """Who closed which collection, and where."""

    actor_id: str
    display_name: str
    container_kind: str = PLAYER_CONTAINER
    container_location: Optional[ContainerLocation] = None

    @property
    def is_personal(self) -> bool:
        return self.container_kind == PLAYER_CONTAINER

    def as_dict(self) -> dict[str, object]:
        return {
            "actor_id": self.actor_id,
            "display_name": self.display_name,
            "container_kind": self.container_kind,
            "container_location": (
                self.container_location.as_dict() if self.container_location is not None else None
            ),
        }


@dataclass(frozen=True)
class Violation:
    """A detector finding that exceeds configured policy.

    For fingerprint violations ``limit`` carries the rule's minimum duplicate
    count and ``signature`` identifies the group of identical stacks.
    """

    actor_id: str
    kind: str
    observed_quantity: int
    limit: int
    container_kind: str
    container_location: Optional[ContainerLocation] = None
    signature: Optional[str] = None

    @property
    def is_fingerprint(self) -> bool:
        return self.signature is not None

    @property
    def excess(self) -> int:
        return max(0, self.observed_quantity - self.limit)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "actor_id": self.actor_id,
            "kind": self.kind,
            "observed_quantity": self.observed_quantity,
            "limit": self.limit,
            "excess": self.excess,
            "container_kind": self.container_kind,
            "container_location": (
                self.container_location.as_dict() if self.container_location is not None else None
            ),
        }
        if self.signature is not None:
            payload["signature"] = self.signature
        return payload


@dataclass(frozen=True)
class ViolationBatch:
    """Violations one detector produced for one audit."""

    detector: str
    context: AuditContext
    violations: Tuple[Violation, ...] = ()
    detected_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def __len__(self) -> int:
        return len(self.violations)

    def __iter__(self) -> Iterator[Violation]:
        return iter(self.violations)

    def as_dict(self) -> dict[str, object]:
        return {
            "detector": self.detector,
            "context": self.context.as_dict(),
            "detected_at": self.detected_at.isoformat(),
            "violations": [violation.as_dict() for violation in self.violations],
        }


def _optional_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)  # type: ignore[arg-type]


def _enchantment_set(value: object) -> Optional[EnchantmentSet]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        items = value.items()
    elif isinstance(value, Sequence) and not isinstance(value, str):
        # Accept legacy [[id, level], ...] structures
        items = [tuple(entry) for entry in value]
    else:
        raise ValueError(f"unsupported enchantment payload {value!r}")
    pairs = []
    for entry in items:
        if len(entry) != 2:
            raise ValueError(f"malformed enchantment entry {entry!r}")
        name, level = entry
        pairs.append((str(name).strip().lower(), int(level)))
    return tuple(sorted(pairs)) or None


__all__ = [
    "ActionKind",
    "AuditContext",
    "CollectionSnapshot",
    "ContainerLocation",
    "EMPTY_KINDS",
    "FINGERPRINT_DETECTOR",
    "ItemStackView",
    "ListCollection",
    "MutableCollection",
    "PLAYER_CONTAINER",
    "PotionEffect",
    "QUANTITY_DETECTOR",
    "StructuralData",
    "Violation",
    "ViolationBatch",
    "normalize_kind",
]
