"""
Pydantic schemas for API request/response validation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================


class ActionType(str, Enum):
    """Rule and override actions."""

    ALLOW = "allow"
    BLOCK = "block"


class DeviceStateType(str, Enum):
    """Enforcement state of a connected device."""

    EVALUATING = "evaluating"
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    REMOVED = "removed"


# ============================================================================
# Device Schemas
# ============================================================================


class DecisionSchema(BaseModel):
    """Decision applied to a device."""

    action: ActionType
    matched: int | str = Field(..., description="Rule id, or 'default'")
    pattern: str | None = None
    rules_version: int | None = None


class DeviceResponse(BaseModel):
    """Connected device response model."""

    key: str = Field(..., description="vid:pid:serial@port")
    vid: str = Field(..., pattern=r"^[0-9a-f]{4}$")
    pid: str = Field(..., pattern=r"^[0-9a-f]{4}$")
    serial: str | None = None
    port: str
    name: str | None = None
    manufacturer: str | None = None
    interface_classes: list[int] = []
    class_names: list[str] = []
    state: DeviceStateType
    decision: DecisionSchema | None = None
    retry_needed: bool = False
    updated_at: datetime


class DeviceListResponse(BaseModel):
    """Connected device list."""

    items: list[DeviceResponse]
    total: int


class OverrideRequest(BaseModel):
    """Options for a manual allow/block."""

    permanent: bool = Field(
        False, description="Also persist a rule for this device ahead of all rules"
    )


# ============================================================================
# Rule Schemas
# ============================================================================


class RuleCreateRequest(BaseModel):
    """Request to append a rule."""

    pattern: str | dict[str, Any] = Field(
        ..., description="'*', 'field=value,...' or a field mapping"
    )
    action: ActionType


class RuleResponse(BaseModel):
    """Rule response model."""

    id: int
    pattern: str | dict[str, Any]
    action: ActionType
    created_at: datetime
    temporary: bool = False


class RuleListResponse(BaseModel):
    """Rules in evaluation order."""

    items: list[RuleResponse]
    total: int
    version: int
    default_action: ActionType
    warnings: list[str] = []


# ============================================================================
# System Schemas
# ============================================================================


class HealthCheck(BaseModel):
    """Health check response."""

    status: str
    version: str
    uptime_seconds: float
    engine_running: bool
    connected_devices: int
    pending_retry: int
    rules_version: int


class ErrorResponse(BaseModel):
    """Error response body."""

    error: dict[str, Any]
