"""
Per-request caller identity.

The fronting gateway authenticates the user and forwards X-User-Id and
X-User-Roles (comma separated). Handlers receive an AuthContext instead of
reading a global session.
"""
from dataclasses import dataclass, field

from fastapi import Header, HTTPException

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class AuthContext:
    current_user: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles


def get_auth_context(
    x_user_id: str | None = Header(None),
    x_user_roles: str | None = Header(None),
) -> AuthContext:
    roles = frozenset(r.strip().lower() for r in (x_user_roles or "").split(",") if r.strip())
    return AuthContext(current_user=x_user_id or "anonymous", roles=roles)


def require_role(auth: AuthContext, role: str = ADMIN_ROLE) -> None:
    if not auth.has_role(role):
        raise HTTPException(status_code=403, detail=f"'{role}' role required")
