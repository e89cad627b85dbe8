"""Limit and fingerprint tables, and the swap-on-reload policy store."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Collection, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigError
from .state import ActionKind, Violation, normalize_kind

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


@dataclass(frozen=True)
class LimitTable:
    """Maximum permitted aggregate quantity per item kind.

    A kind that is absent has no limit; it never means "limit zero".
    """

    limits: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, entries: Mapping[str, int] | Iterable[Tuple[str, int]]) -> "LimitTable":
        items = entries.items() if isinstance(entries, Mapping) else entries
        return cls(limits=MappingProxyType({normalize_kind(kind): int(limit) for kind, limit in items}))

    def get(self, kind: str) -> Optional[int]:
        return self.limits.get(kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self.limits

    def __len__(self) -> int:
        return len(self.limits)

    def items(self) -> List[Tuple[str, int]]:
        return sorted(self.limits.items())

    def with_limit(self, kind: str, limit: int) -> "LimitTable":
        updated = dict(self.limits)
        updated[normalize_kind(kind)] = int(limit)
        return LimitTable(limits=MappingProxyType(updated))

    def as_dict(self) -> Dict[str, int]:
        return dict(self.items())


@dataclass(frozen=True)
class FingerprintRule:
    """Duplicate-detection settings for one monitored item kind."""

    min_duplicates: int = 3
    action: ActionKind = ActionKind.LOG
    check_structural: bool = True

    def __post_init__(self) -> None:
        if self.min_duplicates < 1:
            raise ValueError("min_duplicates must be at least 1")

    def as_dict(self) -> dict[str, object]:
        return {
            "minimum_duplicates": self.min_duplicates,
            "action": self.action.value,
            "check_structural": self.check_structural,
        }


@dataclass(frozen=True)
class FingerprintTable:
    """Monitored item kinds and their duplicate rules."""

    rules: Mapping[str, FingerprintRule] = field(default_factory=lambda: MappingProxyType({}))
    default: FingerprintRule = field(default_factory=FingerprintRule)

    @classmethod
    def build(
        cls,
        rules: Mapping[str, FingerprintRule],
        *,
        default: Optional[FingerprintRule] = None,
    ) -> "FingerprintTable":
        normalized = {normalize_kind(kind): rule for kind, rule in rules.items()}
        return cls(rules=MappingProxyType(normalized), default=default if default is not None else FingerprintRule())

    def get(self, kind: str) -> Optional[FingerprintRule]:
        return self.rules.get(kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self.rules

    def __len__(self) -> int:
        return len(self.rules)

    def items(self) -> List[Tuple[str, FingerprintRule]]:
        return sorted(self.rules.items())

    def as_dict(self) -> dict[str, object]:
        return {
            "default": self.default.as_dict(),
            "items": {kind: rule.as_dict() for kind, rule in self.items()},
        }


@dataclass(frozen=True)
class DetectionPolicy:
    """Everything a single audit reads from configuration."""

    large_stack_enabled: bool = True
    large_stack_action: ActionKind = ActionKind.LOG
    limits: LimitTable = field(default_factory=LimitTable)
    fingerprint_enabled: bool = True
    fingerprints: FingerprintTable = field(default_factory=FingerprintTable)
    log_suspicious: bool = True
    debug: bool = False

    def action_for(self, violation: Violation) -> ActionKind:
        if violation.is_fingerprint:
            rule = self.fingerprints.get(violation.kind)
            return rule.action if rule is not None else ActionKind.LOG
        return self.large_stack_action

    def with_limit(self, kind: str, limit: int) -> "DetectionPolicy":
        return replace(self, limits=self.limits.with_limit(kind, limit))

    def as_dict(self) -> dict[str, object]:
        return {
            "large_stack": {
                "enabled": self.large_stack_enabled,
                "action": self.large_stack_action.value,
                "limits": self.limits.as_dict(),
            },
            "nbt_duplicate": {
                "enabled": self.fingerprint_enabled,
                **self.fingerprints.as_dict(),
            },
            "logging": {"log_suspicious": self.log_suspicious},
            "general": {"debug": self.debug},
        }


class PolicyStore:
    """Holds the active :class:`DetectionPolicy`.

    Readers grab :attr:`current` once per audit. Writers build a complete new
    policy and swap the reference, so a reader never sees a partial reload.
    """

    def __init__(self, policy: Optional[DetectionPolicy] = None) -> None:
        self._policy = policy if policy is not None else DetectionPolicy()
        self._lock = threading.RLock()

    @property
    def current(self) -> DetectionPolicy:
        return self._policy

    def swap(self, policy: DetectionPolicy) -> DetectionPolicy:
        with self._lock:
            previous = self._policy
            self._policy = policy
            return previous

    def update(self, transform: Callable[[DetectionPolicy], DetectionPolicy]) -> DetectionPolicy:
        with self._lock:
            self._policy = transform(self._policy)
            return self._policy


# ---------------------------------------------------------------------------
# Configuration parsing
# ---------------------------------------------------------------------------


def policy_from_mapping(
    raw: Mapping[str, object],
    *,
    known_kinds: Optional[Collection[str]] = None,
) -> DetectionPolicy:
    """Build a :class:`DetectionPolicy` from a parsed configuration mapping.

    Invalid entries are logged and skipped; the rest of the configuration
    still loads. ``known_kinds`` optionally restricts item kinds to a
    catalogue supplied by the host.
    """

    general = _section(raw, "general")
    debug = _parse_bool(general.get("debug"), "general.debug", False)
    log_suspicious = _parse_bool(
        _section(raw, "logging").get("log-suspicious"), "logging.log-suspicious", True
    )

    large_stack = _section(raw, "large-stack", "large-stack-detection")
    large_stack_enabled = _parse_bool(large_stack.get("enabled"), "large-stack.enabled", True)
    large_stack_action = _parse_action(large_stack.get("action"), "large-stack.action", ActionKind.LOG)
    limits = _parse_limits(_ensure_mapping(large_stack.get("limits")), known_kinds, debug=debug)

    nbt = _section(raw, "nbt-duplicate", "nbt-duplicate-detection")
    fingerprint_enabled = _parse_bool(nbt.get("enabled"), "nbt-duplicate.enabled", True)
    default_rule = _parse_rule(
        _ensure_mapping(nbt.get("default")),
        "nbt-duplicate.default",
        FingerprintRule(),
        strict=False,
    )
    fingerprints = _parse_fingerprints(nbt, default_rule, known_kinds, debug=debug)

    return DetectionPolicy(
        large_stack_enabled=large_stack_enabled,
        large_stack_action=large_stack_action,
        limits=limits,
        fingerprint_enabled=fingerprint_enabled,
        fingerprints=fingerprints,
        log_suspicious=log_suspicious,
        debug=debug,
    )


def _parse_limits(
    section: Mapping[str, object],
    known_kinds: Optional[Collection[str]],
    *,
    debug: bool,
) -> LimitTable:
    limits: Dict[str, int] = {}
    for name, value in section.items():
        key = f"large-stack.limits.{name}"
        try:
            kind = _parse_kind(name, key, known_kinds)
            limits[kind] = _parse_count(value, key, minimum=0)
        except ConfigError as exc:
            logger.warning("Skipping invalid limit entry %s", exc)
            continue
        if debug:
            logger.info("Loaded limit for %s: %d", kind, limits[kind])
    return LimitTable(limits=MappingProxyType(limits))


def _parse_fingerprints(
    section: Mapping[str, object],
    default_rule: FingerprintRule,
    known_kinds: Optional[Collection[str]],
    *,
    debug: bool,
) -> FingerprintTable:
    entries: Dict[str, object] = {}
    monitored = section.get("monitored-items")
    if isinstance(monitored, (list, tuple)):
        for name in monitored:
            entries[str(name)] = None
    entries.update(_ensure_mapping(section.get("items")))

    rules: Dict[str, FingerprintRule] = {}
    for name, value in entries.items():
        key = f"nbt-duplicate.items.{name}"
        try:
            kind = _parse_kind(name, key, known_kinds)
            rule = _parse_rule(_ensure_mapping(value), key, default_rule, strict=True)
        except ConfigError as exc:
            logger.warning("Skipping invalid fingerprint entry %s", exc)
            continue
        rules[kind] = rule
        if debug:
            logger.info(
                "Monitoring duplicates for %s (min: %d, action: %s, check-nbt: %s)",
                kind,
                rule.min_duplicates,
                rule.action.value,
                rule.check_structural,
            )
    return FingerprintTable(rules=MappingProxyType(rules), default=default_rule)


def _parse_rule(
    section: Mapping[str, object],
    key: str,
    fallback: FingerprintRule,
    *,
    strict: bool,
) -> FingerprintRule:
    """Parse a rule; ``strict`` raises on bad fields, otherwise each bad field falls back."""

    values: Dict[str, object] = {}
    parsers = (
        ("minimum-duplicates", "min_duplicates", lambda v, k: _parse_count(v, k, minimum=1)),
        ("action", "action", lambda v, k: _parse_action(v, k, None)),
        ("check-nbt", "check_structural", lambda v, k: _parse_bool(v, k, None)),
    )
    for option, attribute, parser in parsers:
        raw_value = section.get(option)
        if raw_value is None:
            continue
        try:
            values[attribute] = parser(raw_value, f"{key}.{option}")
        except ConfigError as exc:
            if strict:
                raise
            logger.warning("Ignoring invalid setting %s", exc)
    return replace(fallback, **values)


def _parse_kind(name: object, key: str, known_kinds: Optional[Collection[str]]) -> str:
    try:
        kind = normalize_kind(name)
    except ValueError:
        raise ConfigError(key, f"invalid item kind {name!r}") from None
    if known_kinds is not None and kind not in known_kinds:
        raise ConfigError(key, f"unknown item kind {kind}")
    return kind


def _parse_count(value: object, key: str, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(key, f"expected an integer, got {value!r}")
    try:
        count = int(str(value).strip()) if isinstance(value, str) else int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(key, f"expected an integer, got {value!r}") from None
    if isinstance(value, float) and not value.is_integer():
        raise ConfigError(key, f"expected an integer, got {value!r}")
    if count < minimum:
        raise ConfigError(key, f"must be at least {minimum}, got {count}")
    return count


def _parse_action(value: object, key: str, default: Optional[ActionKind]) -> ActionKind:
    if value is None:
        if default is None:
            raise ConfigError(key, "missing action")
        return default
    try:
        return ActionKind.parse(value)
    except ValueError:
        if default is None:
            raise ConfigError(key, f"unknown action {value!r}") from None
        logger.warning("Unknown action %r for %s, using %s", value, key, default.value)
        return default


def _parse_bool(value: object, key: str, default: Optional[bool]) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    if value is None and default is not None:
        return default
    if default is None:
        raise ConfigError(key, f"expected a boolean, got {value!r}")
    logger.warning("Expected a boolean for %s, got %r; using %s", key, value, default)
    return default


def _section(raw: Mapping[str, object], *names: str) -> Mapping[str, object]:
    for name in names:
        value = raw.get(name)
        if isinstance(value, Mapping):
            return value
    return {}


def _ensure_mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return value
    return {}


__all__ = [
    "DetectionPolicy",
    "FingerprintRule",
    "FingerprintTable",
    "LimitTable",
    "PolicyStore",
    "policy_from_mapping",
]
