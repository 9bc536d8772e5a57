"""
Authentication and authorization.

The user directory is a fixed credential list built once at startup and
read-only afterwards. Identities travel in HS256-signed bearer tokens that
expire after a fixed number of hours.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional, Tuple

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from cemetery_cloud.models.enums import Permission, Role
from cemetery_cloud.services.errors import Forbidden, Unauthenticated

TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AuthenticatedUser:
    username: str
    role: str
    permission: str

    @property
    def can_mutate(self) -> bool:
        return self.permission == Permission.FULL.value

    def as_dict(self) -> Dict[str, str]:
        return {"username": self.username, "role": self.role, "permission": self.permission}


# (username, password, role, permission)
DEFAULT_ACCOUNTS: Tuple[Tuple[str, str, Role, Permission], ...] = (
    ("manager", "Manager@123", Role.MANAGER, Permission.FULL),
    ("administrator", "Admin@123", Role.ADMINISTRATOR, Permission.FULL),
    ("supervisor", "Supervisor@123", Role.SUPERVISOR, Permission.READ),
)


class UserDirectory:
    """In-memory credential list. Passwords are kept only as hashes."""

    def __init__(self, accounts: Iterable[Tuple[str, str, Role, Permission]] = DEFAULT_ACCOUNTS):
        self._users: Dict[str, Tuple[AuthenticatedUser, str]] = {}
        for username, password, role, permission in accounts:
            user = AuthenticatedUser(username.lower(), Role(role).value, Permission(permission).value)
            self._users[user.username] = (user, generate_password_hash(password))

    def authenticate(self, username: Optional[str], password: Optional[str]) -> AuthenticatedUser:
        found = self._users.get(str(username or "").strip().lower())
        if found is None or not check_password_hash(found[1], password or ""):
            raise Unauthenticated("Invalid login")
        return found[0]


class TokenAuthority:
    """Issues and verifies signed bearer tokens."""

    def __init__(self, secret: str, ttl_hours: int = 8):
        self.secret = secret
        self.ttl = timedelta(hours=ttl_hours)

    def issue(self, user: AuthenticatedUser, now: Optional[datetime] = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            **user.as_dict(),
            "iat": issued_at,
            "exp": issued_at + self.ttl,
        }
        return jwt.encode(payload, self.secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: Optional[str]) -> AuthenticatedUser:
        if not token:
            raise Unauthenticated("Missing token")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
            return AuthenticatedUser(
                username=str(claims["username"]),
                role=Role(claims["role"]).value,
                permission=Permission(claims["permission"]).value,
            )
        except (jwt.InvalidTokenError, KeyError, ValueError):
            raise Unauthenticated("Invalid token")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the credential from an 'Authorization: Bearer <token>' header value."""
    parts = (authorization or "").split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def require_full_permission(user: AuthenticatedUser) -> AuthenticatedUser:
    if not user.can_mutate:
        raise Forbidden("Read-only role")
    return user
