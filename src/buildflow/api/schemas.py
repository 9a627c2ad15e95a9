"""Response schemas for the API layer."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Session ---


class SessionResponse(BaseModel):
    """Response for ``GET /api/auth/me``."""

    user_id: str
    email: str
    agency_id: str | None
    agency_database: str | None
    is_super_admin: bool
    expires_at: int = Field(description="Token expiry, seconds since the epoch.")


# --- Agencies ---


class AgencyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    domain: str | None
    database_name: str | None
    is_active: bool
    subscription_plan: str
    max_users: int
    created_at: datetime


class AgencyListResponse(BaseModel):
    """Page of active agencies from the registry."""

    items: list[AgencyResponse]
    limit: int
    offset: int


# --- Pools ---


class PoolStatsResponse(BaseModel):
    """Counters of the process-wide pool manager.

    ``main_pool`` is null until the main database is first used.
    """

    main_pool: dict[str, Any] | None
    agency_pools: dict[str, Any]
    total_agency_connections: int
    pool_details: list[dict[str, Any]]


class PoolReleaseResponse(BaseModel):
    database_name: str
    released: bool
