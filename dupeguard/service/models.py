"""Pydantic models used by the DupeGuard admin API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LocationModel(BaseModel):
    """Block coordinates of a shared container."""

    world: str
    x: int
    y: int
    z: int


class LimitUpdate(BaseModel):
    amount: int = Field(..., ge=0, description="Maximum aggregate quantity permitted")


class LimitsEnvelope(BaseModel):
    enabled: bool
    action: str
    limits: Dict[str, int] = Field(default_factory=dict)


class RuleModel(BaseModel):
    minimum_duplicates: int
    action: str
    check_structural: bool


class FingerprintsEnvelope(BaseModel):
    enabled: bool
    default: RuleModel
    items: Dict[str, RuleModel] = Field(default_factory=dict)


class InfoEnvelope(BaseModel):
    """Summary of the running configuration."""

    version: str
    large_stack_enabled: bool
    large_stack_action: str
    fingerprint_enabled: bool
    limit_count: int
    monitored_count: int
    exemption_count: int
    cooldown_seconds: float
    webhook_configured: bool
    log_suspicious: bool
    debug: bool


class ExemptionRequest(BaseModel):
    identifier: str = Field(..., min_length=1, description="Player UUID or username")


class ExemptionsEnvelope(BaseModel):
    exemptions: List[str] = Field(default_factory=list)
    count: int = 0


class ExemptionChange(BaseModel):
    identifier: str
    changed: bool
    count: int


class CheckRequest(BaseModel):
    """An on-demand audit of a captured collection."""

    actor_id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    container_kind: str = "PLAYER"
    location: Optional[LocationModel] = None
    slots: List[Optional[Dict[str, Any]]] = Field(default_factory=list)
    include_exempt: bool = False


class CheckResponse(BaseModel):
    context: Dict[str, Any]
    skipped_reason: Optional[str] = None
    violation_count: int = 0
    actor_removed: bool = False
    outcomes: List[Dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "CheckRequest",
    "CheckResponse",
    "ExemptionChange",
    "ExemptionRequest",
    "ExemptionsEnvelope",
    "FingerprintsEnvelope",
    "InfoEnvelope",
    "LimitUpdate",
    "LimitsEnvelope",
    "LocationModel",
    "RuleModel",
]
