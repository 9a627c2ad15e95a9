"""Agency resolver: tenant identifier -> agency database name."""

from __future__ import annotations

import re
import time
import uuid

import structlog

from buildflow.auth.tokens import SessionClaims
from buildflow.errors import InvalidDatabaseNameError
from buildflow.storage.agency_repository import AgencyRepository
from buildflow.storage.identifiers import validate_database_name
from buildflow.storage.pool_manager import PoolManager

logger = structlog.get_logger()

AGENCY_ID_PREFIX_LENGTH = 8

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")


def sanitize_domain(domain: str) -> str:
    """First DNS label of ``domain`` reduced to ``[a-z0-9_]``."""
    label = domain.strip().lower().split(".")[0]
    label = _NON_ALNUM_RE.sub("_", label)
    return _REPEATED_UNDERSCORE_RE.sub("_", label).strip("_")


def match_agency_database(
    agency_id: str, domain: str | None, candidates: list[str]
) -> str | None:
    """Pick the database that belongs to an agency from a list of names.

    Tries the agency id prefix first, then the sanitized domain.
    """
    prefix = agency_id[:AGENCY_ID_PREFIX_LENGTH].lower()
    if prefix:
        for name in candidates:
            if prefix in name:
                return name
    if domain:
        label = sanitize_domain(domain)
        if label:
            for name in candidates:
                if label in name:
                    return name
    return None


class AgencyResolver:
    """Maps an authenticated session onto the agency database it may use.

    A database name bound into the token is used as is for the token's
    lifetime. Tokens carrying only an agency id are resolved through the
    registry in the main database, with results cached for ``ttl``
    seconds.
    """

    def __init__(self, pools: PoolManager, ttl: float = 60.0) -> None:
        self._pools = pools
        self._ttl = ttl
        self._cache: dict[str, tuple[float, str | None]] = {}

    async def resolve(self, claims: SessionClaims) -> str | None:
        if claims.agency_database:
            return claims.agency_database
        if not claims.agency_id:
            return None
        return await self.lookup(claims.agency_id)

    async def lookup(self, agency_id: str) -> str | None:
        """Database name registered for an active agency, discovering it if unset."""
        now = time.monotonic()
        cached = self._cache.get(agency_id)
        if cached is not None and cached[0] > now:
            return cached[1]

        database_name = await self._lookup_registry(agency_id)
        self._cache[agency_id] = (now + self._ttl, database_name)
        return database_name

    def invalidate(self, agency_id: str | None = None) -> None:
        if agency_id is None:
            self._cache.clear()
        else:
            self._cache.pop(agency_id, None)

    async def _lookup_registry(self, agency_id: str) -> str | None:
        try:
            key = uuid.UUID(agency_id)
        except ValueError:
            logger.warning("agency_id_malformed", agency_id=agency_id)
            return None

        main = self._pools.get_main_pool()
        async with main.session() as session:
            repo = AgencyRepository(session)
            agency = await repo.get_by_id(key)
            if agency is None:
                logger.info("agency_not_registered", agency_id=agency_id)
                return None
            if agency.database_name:
                return agency.database_name

            candidates = await repo.list_agency_databases()
            found = match_agency_database(agency_id, agency.domain, candidates)
            if found is None:
                logger.warning("agency_database_not_discovered", agency_id=agency_id)
                return None
            try:
                validate_database_name(found)
            except InvalidDatabaseNameError:
                logger.warning("agency_database_name_invalid", agency_id=agency_id)
                return None
            await repo.set_database_name(key, found)
            await session.commit()
            logger.info(
                "agency_database_discovered", agency_id=agency_id, database=found
            )
            return found
