"""DupeGuard core exports."""

from .cooldown import CooldownGate
from .engine import AuditReport, DupeDetectionEngine
from .errors import ConfigError, DeliveryError, DupeGuardError, PersistenceError
from .exemptions import ExemptionRegistry
from .fingerprint import FingerprintDetector, signature_for
from .handler import (
    AlertEvent,
    AlertSink,
    HandlingOutcome,
    LoggingAdminNotifier,
    ViolationHandler,
)
from .policy import (
    DetectionPolicy,
    FingerprintRule,
    FingerprintTable,
    LimitTable,
    PolicyStore,
    policy_from_mapping,
)
from .quantity import QuantityDetector
from .state import (
    ActionKind,
    AuditContext,
    CollectionSnapshot,
    ContainerLocation,
    ItemStackView,
    ListCollection,
    StructuralData,
    Violation,
    ViolationBatch,
)

__version__ = "1.0.0"

__all__ = [
    "ActionKind",
    "AlertEvent",
    "AlertSink",
    "AuditContext",
    "AuditReport",
    "CollectionSnapshot",
    "ConfigError",
    "ContainerLocation",
    "CooldownGate",
    "DeliveryError",
    "DetectionPolicy",
    "DupeDetectionEngine",
    "DupeGuardError",
    "ExemptionRegistry",
    "FingerprintDetector",
    "FingerprintRule",
    "FingerprintTable",
    "HandlingOutcome",
    "ItemStackView",
    "LimitTable",
    "ListCollection",
    "LoggingAdminNotifier",
    "PersistenceError",
    "PolicyStore",
    "QuantityDetector",
    "StructuralData",
    "Violation",
    "ViolationBatch",
    "ViolationHandler",
    "policy_from_mapping",
    "signature_for",
]
