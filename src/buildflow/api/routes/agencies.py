"""Agency-scoped API endpoints."""

from __future__ import annotations

from typing import Annotated, cast

from fastapi import APIRouter, Depends

from buildflow.api.deps import AgencyUser, get_main_pool, require_role_or_higher
from buildflow.api.errors import ApiError
from buildflow.api.schemas import AgencyResponse
from buildflow.auth.context import AuthorizedUser
from buildflow.auth.roles import Role
from buildflow.storage.agency_repository import AgencyRepository
from buildflow.storage.database import DatabasePool

router = APIRouter(prefix="/agencies", tags=["agencies"])

MainPoolDep = Annotated[DatabasePool, Depends(get_main_pool)]
EmployeeDep = Annotated[AuthorizedUser, Depends(require_role_or_higher(Role.EMPLOYEE))]


@router.get("/current")
async def get_current_agency(
    user: AgencyUser,
    caller: EmployeeDep,
    main: MainPoolDep,
) -> AgencyResponse:
    """Registry record of the caller's agency.

    Returns 404 if the agency was deactivated after the token was issued.
    """
    database_name = cast(str, user.agency_database)
    async with main.session() as session:
        agency = await AgencyRepository(session).get_by_database_name(database_name)
        if agency is None:
            raise ApiError(
                "AGENCY_NOT_FOUND",
                "Agency not found or inactive",
                status_code=404,
            )
        return AgencyResponse.model_validate(agency)
