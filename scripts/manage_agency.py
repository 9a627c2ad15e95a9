"""CLI for the agency registry, roles and session tokens.

Usage::

    uv run python -m scripts.manage_agency <command> [options]

Commands:
    create-agency       Register a new agency and its database name
    list-agencies       List all agencies
    deactivate-agency   Deactivate an agency (existing tokens keep working until expiry)
    grant-role          Grant a role to a user, creating the user if needed
    issue-token         Print a signed session token for a user
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from buildflow.auth.roles import Role
from buildflow.auth.tokens import TokenCodec
from buildflow.config import settings
from buildflow.errors import ConfigurationError, InvalidDatabaseNameError
from buildflow.storage.identifiers import validate_database_name
from buildflow.storage.orm import Agency, User, UserRole


def get_sync_session() -> Session:
    """Create sync session for CLI operations.

    Uses the same main database as the async app (psycopg v3
    handles both sync and async natively).
    """
    engine = create_engine(settings.main_database().to_sqlalchemy("postgresql+psycopg"))
    return Session(engine)


def _fail(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


def _find_agency(session: Session, database_name: str) -> Agency | None:
    return session.execute(
        select(Agency).where(Agency.database_name == database_name)
    ).scalar_one_or_none()


def create_agency(args: argparse.Namespace) -> None:
    """Register a new agency."""
    try:
        database_name = validate_database_name(args.database_name)
    except InvalidDatabaseNameError as exc:
        _fail(f"Invalid database name: {exc}")
        return

    with get_sync_session() as session:
        if _find_agency(session, database_name) is not None:
            _fail(f"Agency already exists for database: {database_name}")
            return

        agency = Agency(
            name=args.name,
            domain=args.domain,
            database_name=database_name,
            subscription_plan=args.plan,
            max_users=args.max_users,
        )
        session.add(agency)
        session.commit()
        print(f"Agency created: {args.name} (id: {agency.id}, database: {database_name})")


def list_agencies(_args: argparse.Namespace) -> None:
    """List all agencies."""
    with get_sync_session() as session:
        agencies = (
            session.execute(select(Agency).order_by(Agency.created_at)).scalars().all()
        )

        if not agencies:
            print("No agencies found.")
            return

        print("Agencies:")
        for i, agency in enumerate(agencies, 1):
            status = "active" if agency.is_active else "inactive"
            database = agency.database_name or "unmapped"
            print(f"  {i}. {agency.name} [{database}] {agency.subscription_plan} ({status})")


def deactivate_agency(args: argparse.Namespace) -> None:
    """Deactivate an agency."""
    with get_sync_session() as session:
        agency = _find_agency(session, args.database_name)
        if agency is None:
            _fail(f"Agency not found: {args.database_name}")
            return

        if not agency.is_active:
            _fail(f"Agency already inactive: {args.database_name}")
            return

        agency.is_active = False
        session.commit()
        print(f"Agency deactivated: {agency.name}")


def grant_role(args: argparse.Namespace) -> None:
    """Grant a role to a user, optionally scoped to one agency."""
    try:
        role = Role(args.role)
    except ValueError:
        _fail(f"Unknown role: {args.role}")
        return

    with get_sync_session() as session:
        agency_id = None
        if args.agency:
            agency = _find_agency(session, args.agency)
            if agency is None:
                _fail(f"Agency not found: {args.agency}")
                return
            agency_id = agency.id

        user = session.execute(
            select(User).where(User.email == args.email)
        ).scalar_one_or_none()
        if user is None:
            user = User(email=args.email)
            session.add(user)
            session.flush()
            print(f"User created: {args.email}")

        existing = session.execute(
            select(UserRole).where(
                UserRole.user_id == user.id,
                UserRole.role == role.value,
                UserRole.agency_id.is_(None)
                if agency_id is None
                else UserRole.agency_id == agency_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            _fail(f"{args.email} already has role {role.value}")
            return

        session.add(UserRole(user_id=user.id, role=role.value, agency_id=agency_id))
        session.commit()
        scope = args.agency or "system"
        print(f"Role granted: {args.email} -> {role.value} ({scope})")


def issue_token(args: argparse.Namespace) -> None:
    """Print a signed session token."""
    try:
        codec = TokenCodec.from_settings(settings)
    except ConfigurationError as exc:
        _fail(str(exc))
        return

    with get_sync_session() as session:
        user = session.execute(
            select(User).where(User.email == args.email)
        ).scalar_one_or_none()
        if user is None:
            _fail(f"User not found: {args.email}")
            return

        agency_id = None
        database_name = None
        if args.agency:
            agency = _find_agency(session, args.agency)
            if agency is None or not agency.is_active:
                _fail(f"Active agency not found: {args.agency}")
                return
            agency_id = str(agency.id)
            database_name = agency.database_name

        token = codec.issue(
            user_id=str(user.id),
            email=user.email,
            agency_id=agency_id,
            agency_database=database_name,
        )
        print(token)


def main() -> None:
    """Parse arguments and dispatch to command handler."""
    parser = argparse.ArgumentParser(description="Agency management CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # create-agency
    p = sub.add_parser("create-agency", help="Register a new agency")
    p.add_argument("--name", required=True, help="Agency display name")
    p.add_argument("--database-name", required=True, help="Agency database name")
    p.add_argument("--domain", default=None, help="Agency domain")
    p.add_argument("--plan", default="basic", help="Subscription plan")
    p.add_argument("--max-users", type=int, default=50, help="User limit")

    # list-agencies
    sub.add_parser("list-agencies", help="List all agencies")

    # deactivate-agency
    p = sub.add_parser("deactivate-agency", help="Deactivate an agency")
    p.add_argument("--database-name", required=True, help="Agency database name")

    # grant-role
    p = sub.add_parser("grant-role", help="Grant a role to a user")
    p.add_argument("--email", required=True, help="User email")
    p.add_argument("--role", required=True, help="Role name, e.g. admin")
    p.add_argument("--agency", default=None, help="Agency database name (omit for system)")

    # issue-token
    p = sub.add_parser("issue-token", help="Print a session token")
    p.add_argument("--email", required=True, help="User email")
    p.add_argument("--agency", default=None, help="Agency database name")

    args = parser.parse_args()
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "create-agency": create_agency,
        "list-agencies": list_agencies,
        "deactivate-agency": deactivate_agency,
        "grant-role": grant_role,
        "issue-token": issue_token,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
