"""FastAPI application exposing the DupeGuard admin API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .. import __version__
from ..cooldown import CooldownGate
from ..engine import DupeDetectionEngine
from ..errors import ConfigError, PersistenceError
from ..exemptions import ExemptionRegistry
from ..handler import AdminNotifier, SessionControl, ViolationHandler
from ..state import CollectionSnapshot, ContainerLocation
from .config import ConfigManager, Settings, get_settings
from .models import (
    CheckRequest,
    CheckResponse,
    ExemptionChange,
    ExemptionRequest,
    ExemptionsEnvelope,
    FingerprintsEnvelope,
    InfoEnvelope,
    LimitsEnvelope,
    LimitUpdate,
)
from .webhook import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()

_KEPT_IN_MEMORY = "the change is active in memory but was not saved to disk"


def get_engine(request: Request) -> DupeDetectionEngine:
    return request.app.state.engine


def get_config(request: Request) -> ConfigManager:
    return request.app.state.config


def get_exemptions(request: Request) -> ExemptionRegistry:
    return request.app.state.engine.exemptions


def _info(request: Request) -> InfoEnvelope:
    engine: DupeDetectionEngine = request.app.state.engine
    config: ConfigManager = request.app.state.config
    policy = engine.policy
    return InfoEnvelope(
        version=__version__,
        large_stack_enabled=policy.large_stack_enabled,
        large_stack_action=policy.large_stack_action.value,
        fingerprint_enabled=policy.fingerprint_enabled,
        limit_count=len(policy.limits),
        monitored_count=len(policy.fingerprints),
        exemption_count=engine.exemptions.count,
        cooldown_seconds=engine.cooldown.window,
        webhook_configured=config.webhook.is_configured,
        log_suspicious=policy.log_suspicious,
        debug=policy.debug,
    )


@router.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@router.get("/api/info", response_model=InfoEnvelope)
def info(request: Request) -> InfoEnvelope:
    return _info(request)


@router.post("/api/reload", response_model=InfoEnvelope)
def reload_configuration(
    request: Request,
    config: ConfigManager = Depends(get_config),
    exemptions: ExemptionRegistry = Depends(get_exemptions),
) -> InfoEnvelope:
    config.reload()
    exemptions.reload()
    logger.info("Configuration reloaded through the admin API")
    return _info(request)


@router.get("/api/limits", response_model=LimitsEnvelope)
def list_limits(engine: DupeDetectionEngine = Depends(get_engine)) -> LimitsEnvelope:
    policy = engine.policy
    return LimitsEnvelope(
        enabled=policy.large_stack_enabled,
        action=policy.large_stack_action.value,
        limits=policy.limits.as_dict(),
    )


@router.put("/api/limits/{kind}", response_model=LimitsEnvelope)
def set_limit(
    kind: str,
    update: LimitUpdate,
    config: ConfigManager = Depends(get_config),
) -> LimitsEnvelope:
    try:
        policy = config.set_limit(kind, update.amount)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=f"{exc}; {_KEPT_IN_MEMORY}") from exc
    return LimitsEnvelope(
        enabled=policy.large_stack_enabled,
        action=policy.large_stack_action.value,
        limits=policy.limits.as_dict(),
    )


@router.get("/api/fingerprints", response_model=FingerprintsEnvelope)
def list_fingerprints(engine: DupeDetectionEngine = Depends(get_engine)) -> FingerprintsEnvelope:
    policy = engine.policy
    table = policy.fingerprints.as_dict()
    return FingerprintsEnvelope(enabled=policy.fingerprint_enabled, **table)


@router.post("/api/check", response_model=CheckResponse)
def check(request_body: CheckRequest, engine: DupeDetectionEngine = Depends(get_engine)) -> CheckResponse:
    snapshot = CollectionSnapshot.from_payload(request_body.slots)
    location = None
    if request_body.location is not None:
        location = ContainerLocation.from_payload(request_body.location.model_dump())
    report = engine.check(
        request_body.actor_id,
        request_body.display_name,
        snapshot,
        container_kind=request_body.container_kind.strip().upper() or "PLAYER",
        container_location=location,
        include_exempt=request_body.include_exempt,
    )
    return CheckResponse(**report.as_dict())


@router.get("/api/exemptions", response_model=ExemptionsEnvelope)
def list_exemptions(exemptions: ExemptionRegistry = Depends(get_exemptions)) -> ExemptionsEnvelope:
    entries = exemptions.list()
    return ExemptionsEnvelope(exemptions=entries, count=len(entries))


@router.post("/api/exemptions", response_model=ExemptionChange)
def add_exemption(
    body: ExemptionRequest,
    exemptions: ExemptionRegistry = Depends(get_exemptions),
) -> ExemptionChange:
    if not body.identifier.strip():
        raise HTTPException(status_code=400, detail="identifier must not be blank")
    try:
        changed = exemptions.add(body.identifier)
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=f"{exc}; {_KEPT_IN_MEMORY}") from exc
    return ExemptionChange(identifier=body.identifier.strip(), changed=changed, count=exemptions.count)


@router.delete("/api/exemptions/{identifier}", response_model=ExemptionChange)
def remove_exemption(
    identifier: str,
    exemptions: ExemptionRegistry = Depends(get_exemptions),
) -> ExemptionChange:
    try:
        changed = exemptions.remove(identifier)
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=f"{exc}; {_KEPT_IN_MEMORY}") from exc
    if not changed:
        raise HTTPException(status_code=404, detail=f"'{identifier}' is not exempt")
    return ExemptionChange(identifier=identifier, changed=True, count=exemptions.count)


@router.delete("/api/exemptions", response_model=ExemptionChange)
def clear_exemptions(exemptions: ExemptionRegistry = Depends(get_exemptions)) -> ExemptionChange:
    try:
        removed = exemptions.clear()
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=f"{exc}; {_KEPT_IN_MEMORY}") from exc
    return ExemptionChange(identifier="*", changed=removed > 0, count=exemptions.count)


@router.post("/api/exemptions/reload", response_model=ExemptionsEnvelope)
def reload_exemptions(exemptions: ExemptionRegistry = Depends(get_exemptions)) -> ExemptionsEnvelope:
    exemptions.reload()
    entries = exemptions.list()
    return ExemptionsEnvelope(exemptions=entries, count=len(entries))


def create_app(
    settings: Optional[Settings] = None,
    *,
    config: Optional[ConfigManager] = None,
    exemptions: Optional[ExemptionRegistry] = None,
    dispatcher: Optional[WebhookDispatcher] = None,
    sessions: Optional[SessionControl] = None,
    notifier: Optional[AdminNotifier] = None,
) -> FastAPI:
    """Wire the engine and its collaborators into an admin application."""

    settings = settings if settings is not None else get_settings()
    if config is None:
        config = ConfigManager.from_settings(settings)
    if exemptions is None:
        exemptions = ExemptionRegistry(settings.exemptions_path)
    if dispatcher is None:
        dispatcher = WebhookDispatcher.from_settings(settings, config)
    engine = DupeDetectionEngine(
        policy_store=config.store,
        exemptions=exemptions,
        cooldown=CooldownGate(settings.cooldown_seconds, max_entries=settings.cooldown_max_entries),
        handler=ViolationHandler(alerts=dispatcher, sessions=sessions, notifier=notifier),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        dispatcher.start()
        try:
            yield
        finally:
            dispatcher.stop()

    app = FastAPI(title="DupeGuard Admin API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.config = config
    app.state.engine = engine
    app.state.dispatcher = dispatcher
    app.include_router(router)
    return app


__all__ = ["create_app", "router"]
