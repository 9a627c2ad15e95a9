"""Session API endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from buildflow.api.deps import CurrentUser
from buildflow.api.schemas import SessionResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
async def get_session_info(user: CurrentUser) -> SessionResponse:
    """Verified session of the caller, with its resolved agency database."""
    return SessionResponse(
        user_id=user.user_id,
        email=user.email,
        agency_id=user.agency_id,
        agency_database=user.agency_database,
        is_super_admin=user.is_super_admin,
        expires_at=user.expires_at,
    )
