"""System administration endpoints: agency registry and pool control."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query

from buildflow.api.deps import AdminOrHigher, SuperAdmin, get_main_pool, get_pool_manager
from buildflow.api.errors import ApiError
from buildflow.api.schemas import (
    AgencyListResponse,
    AgencyResponse,
    PoolReleaseResponse,
    PoolStatsResponse,
)
from buildflow.storage.agency_repository import AgencyRepository
from buildflow.storage.database import DatabasePool
from buildflow.storage.pool_manager import PoolManager

logger = structlog.get_logger()

router = APIRouter(prefix="/system", tags=["system"])

MainPoolDep = Annotated[DatabasePool, Depends(get_main_pool)]
PoolManagerDep = Annotated[PoolManager, Depends(get_pool_manager)]


@router.get("/agencies")
async def list_agencies(
    caller: AdminOrHigher,
    main: MainPoolDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> AgencyListResponse:
    """Active agencies in the registry, oldest first."""
    async with main.session() as session:
        agencies = await AgencyRepository(session).list_active(
            limit=limit, offset=offset
        )
        items = [AgencyResponse.model_validate(a) for a in agencies]
    return AgencyListResponse(items=items, limit=limit, offset=offset)


@router.get("/pools")
async def get_pool_stats(caller: SuperAdmin, pools: PoolManagerDep) -> PoolStatsResponse:
    return PoolStatsResponse.model_validate(pools.stats())


@router.delete("/pools/{database_name}")
async def release_agency_pool(
    database_name: str,
    caller: SuperAdmin,
    pools: PoolManagerDep,
) -> PoolReleaseResponse:
    """Dispose the connection pool of one agency database.

    The next request for that agency builds a fresh pool.
    """
    released = await pools.release_pool(database_name)
    if not released:
        raise ApiError(
            "POOL_NOT_FOUND",
            f"No open pool for database {database_name}",
            status_code=404,
        )
    logger.info(
        "agency_pool_release_requested",
        database=database_name,
        user_id=caller.user.user_id,
    )
    return PoolReleaseResponse(database_name=database_name, released=True)
