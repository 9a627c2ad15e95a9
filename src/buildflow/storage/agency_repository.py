"""Repository for the agency registry in the main database."""

from __future__ import annotations

import uuid

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from buildflow.storage.orm import Agency

AGENCY_DATABASE_PREFIX = "agency_"


class AgencyRepository:
    """Registry lookups and provisioning bookkeeping.

    Not tenant-scoped: the registry lives in the main database and spans
    every agency.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(
        self, agency_id: uuid.UUID, *, active_only: bool = True
    ) -> Agency | None:
        """Get an agency by primary key."""
        stmt = select(Agency).where(Agency.id == agency_id)
        if active_only:
            stmt = stmt.where(Agency.is_active.is_(True))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_database_name(self, database_name: str) -> Agency | None:
        stmt = select(Agency).where(
            Agency.database_name == database_name,
            Agency.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self, *, limit: int = 100, offset: int = 0) -> list[Agency]:
        """Active agencies ordered by creation time."""
        stmt = (
            select(Agency)
            .where(Agency.is_active.is_(True))
            .order_by(Agency.created_at)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        name: str,
        domain: str | None = None,
        database_name: str | None = None,
        subscription_plan: str = "basic",
        max_users: int = 50,
        owner_user_id: uuid.UUID | None = None,
    ) -> Agency:
        agency = Agency(
            name=name,
            domain=domain,
            database_name=database_name,
            subscription_plan=subscription_plan,
            max_users=max_users,
            owner_user_id=owner_user_id,
        )
        self._session.add(agency)
        await self._session.flush()
        return agency

    async def deactivate(self, agency_id: uuid.UUID) -> bool:
        """Soft-delete an agency.

        Returns:
            True if an active agency was deactivated.
        """
        stmt = (
            update(Agency)
            .where(Agency.id == agency_id, Agency.is_active.is_(True))
            .values(is_active=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def set_database_name(self, agency_id: uuid.UUID, database_name: str) -> None:
        stmt = (
            update(Agency)
            .where(Agency.id == agency_id)
            .values(database_name=database_name)
        )
        await self._session.execute(stmt)

    async def list_agency_databases(self) -> list[str]:
        """Names of physical databases on the server that look like agency ones."""
        result = await self._session.execute(
            text(
                "SELECT datname FROM pg_database "
                "WHERE datname LIKE :pattern AND NOT datistemplate "
                "ORDER BY datname"
            ),
            {"pattern": f"{AGENCY_DATABASE_PREFIX}%"},
        )
        return [row[0] for row in result.all()]
