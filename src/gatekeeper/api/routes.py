"""
REST API routes for USB Gatekeeper.

Provides endpoints for connected devices, manual overrides and rule
management. All state changes go through the authorization engine.
"""

from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, Body, Depends, HTTPException, status

from gatekeeper import __version__
from gatekeeper.api.auth import require_api_key
from gatekeeper.api.schemas import (
    DeviceListResponse,
    DeviceResponse,
    ErrorResponse,
    HealthCheck,
    OverrideRequest,
    RuleCreateRequest,
    RuleListResponse,
    RuleResponse,
)
from gatekeeper.core.engine import AuthorizationEngine
from gatekeeper.policy.parser import validate_rules

logger = logging.getLogger(__name__)

# API Router with prefix
router = APIRouter(prefix="/api")


# ============================================================================
# Dependencies
# ============================================================================


class ServiceDependencies:
    """
    Container for service dependencies.

    Set after app initialization to inject the engine.
    """

    engine: AuthorizationEngine | None = None
    start_time: float = time.time()


deps = ServiceDependencies()


def get_engine() -> AuthorizationEngine:
    """Get the authorization engine."""
    if deps.engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authorization engine not initialized",
        )
    return deps.engine


ERROR_RESPONSES = {
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


# ============================================================================
# Health Check Endpoints
# ============================================================================


@router.get("/health", response_model=HealthCheck, tags=["Health"])
async def health_check(
    engine: AuthorizationEngine = Depends(get_engine),
) -> HealthCheck:
    """Report engine state and uptime."""
    stats = engine.get_statistics()
    return HealthCheck(
        status="healthy" if engine.running else "stopped",
        version=__version__,
        uptime_seconds=time.time() - deps.start_time,
        engine_running=engine.running,
        connected_devices=stats["connected"],
        pending_retry=stats["pending_retry"],
        rules_version=stats["rules_version"],
    )


# ============================================================================
# Device Endpoints
# ============================================================================


@router.get(
    "/devices",
    response_model=DeviceListResponse,
    tags=["Devices"],
    dependencies=[Depends(require_api_key)],
)
async def list_devices(
    engine: AuthorizationEngine = Depends(get_engine),
) -> DeviceListResponse:
    """List connected devices and their enforcement state."""
    items = [DeviceResponse(**record.to_dict()) for record in engine.list_devices()]
    return DeviceListResponse(items=items, total=len(items))


@router.get(
    "/devices/{key}",
    response_model=DeviceResponse,
    tags=["Devices"],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
async def get_device(
    key: str,
    engine: AuthorizationEngine = Depends(get_engine),
) -> DeviceResponse:
    """Get one connected device by key (vid:pid:serial@port)."""
    return DeviceResponse(**engine.get_device(key).to_dict())


async def _override(
    engine: AuthorizationEngine,
    key: str,
    action: str,
    request: OverrideRequest | None,
) -> DeviceResponse:
    permanent = request.permanent if request is not None else False
    record = await engine.manual_override(key, action, permanent=permanent)
    logger.info("API override: %s %s (permanent=%s)", action, key, permanent)
    return DeviceResponse(**record.to_dict())


@router.post(
    "/devices/{key}/allow",
    response_model=DeviceResponse,
    tags=["Devices"],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
async def allow_device(
    key: str,
    request: OverrideRequest | None = Body(None),
    engine: AuthorizationEngine = Depends(get_engine),
) -> DeviceResponse:
    """Allow a connected device ahead of all rules."""
    return await _override(engine, key, "allow", request)


@router.post(
    "/devices/{key}/block",
    response_model=DeviceResponse,
    tags=["Devices"],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
async def block_device(
    key: str,
    request: OverrideRequest | None = Body(None),
    engine: AuthorizationEngine = Depends(get_engine),
) -> DeviceResponse:
    """Block a connected device ahead of all rules."""
    return await _override(engine, key, "block", request)


# ============================================================================
# Rule Endpoints
# ============================================================================


@router.get(
    "/rules",
    response_model=RuleListResponse,
    tags=["Rules"],
    dependencies=[Depends(require_api_key)],
)
async def list_rules(
    engine: AuthorizationEngine = Depends(get_engine),
) -> RuleListResponse:
    """List rules in evaluation order, temporary overrides first."""
    snapshot = engine.store.snapshot()
    return RuleListResponse(
        items=[RuleResponse(**rule.to_dict()) for rule in snapshot.rules],
        total=len(snapshot.rules),
        version=snapshot.version,
        default_action=engine.store.evaluator.default_action.value,
        warnings=validate_rules(snapshot.rules),
    )


@router.post(
    "/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Rules"],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
async def add_rule(
    request: RuleCreateRequest,
    engine: AuthorizationEngine = Depends(get_engine),
) -> RuleResponse:
    """Append a persisted rule."""
    # Rule writes fsync the file; keep them off the event loop
    rule = await asyncio.to_thread(engine.add_rule, request.pattern, request.action.value)
    return RuleResponse(**rule.to_dict())


@router.delete(
    "/rules/{rule_id}",
    response_model=RuleResponse,
    tags=["Rules"],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_api_key)],
)
async def remove_rule(
    rule_id: int,
    engine: AuthorizationEngine = Depends(get_engine),
) -> RuleResponse:
    """Remove a rule by id."""
    rule = await asyncio.to_thread(engine.remove_rule, rule_id)
    return RuleResponse(**rule.to_dict())
