from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Annotated, Any

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from helpdesk.core.config import get_settings
from helpdesk.core.errors import AuthenticationError, PermissionDeniedError


class Role(str, Enum):
    """Supported roles."""

    ADMIN = "admin"
    EMPLOYEE = "employee"
    CUSTOMER = "customer"


STAFF_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.EMPLOYEE})


class User:
    """Authenticated actor as carried by the bearer token."""

    def __init__(self, id: int, role: Role):
        self.id = id
        self.role = role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles

    def __repr__(self) -> str:
        return f"User(id={self.id!r}, role={self.role.value!r})"


bearer_scheme = HTTPBearer(auto_error=False)


def resolve_user_from_token(token: str | None) -> User:
    """Decode a bearer token into the ``{id, role}`` pair it carries."""

    if not token:
        raise AuthenticationError("No token provided")

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except JWTError as exc:
        raise AuthenticationError("Invalid token") from exc

    try:
        user_id = int(payload["id"])
        role = Role(str(payload["role"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid token") from exc
    return User(id=user_id, role=role)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> User:
    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = resolve_user_from_token(token)
    request.state.user = user
    return user


def role_required(*roles: Role) -> Callable[[User], Awaitable[User]]:
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(*roles):
            raise PermissionDeniedError("Access denied. Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
