"""Session tokens, roles and access control.

Note: ``RoleAuthorizer`` lives in ``auth.rbac`` and is NOT re-exported here
because it depends on ``api.errors``. Import directly:
``from buildflow.auth.rbac import RoleAuthorizer``.
"""

from buildflow.auth.context import AuthenticatedUser, AuthorizedUser
from buildflow.auth.roles import ROLE_HIERARCHY, Role, effective_role
from buildflow.auth.tokens import SessionClaims, TokenCodec

__all__ = [
    "ROLE_HIERARCHY",
    "AuthenticatedUser",
    "AuthorizedUser",
    "Role",
    "SessionClaims",
    "TokenCodec",
    "effective_role",
]
