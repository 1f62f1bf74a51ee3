"""
Gate adapter: FastAPI dependencies for route protection.

Implements:
- Bearer JWT -> Principal (401 when absent or invalid)
- Boolean predicates authorize / authorize_any / authorize_all
- Dependency factories that answer 403 when the principal lacks rights
"""
from typing import Annotated, Any, Iterable, List, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from rbac_engine.bootstrap import PermissionEngine
from rbac_engine.core import config
from rbac_engine.features.permissions.resolver import PermissionResolver
from rbac_engine.features.permissions.schemas import Principal, ResourceScope
from rbac_engine.utils import get_logger


log = get_logger(__name__)

security = HTTPBearer(auto_error=False)


# ============================================================================
# Principal
# ============================================================================

def get_engine(request: Request) -> PermissionEngine:
    """The engine built at startup and kept on the application state."""
    return request.app.state.engine


def verify_jwt_token(token: str) -> dict:
    """
    Decode a bearer token and return its payload.

    With JWT_SECRET set the signature is verified; without it the token is
    trusted as issued by an upstream gateway and only its expiry is checked.

    Raises:
        HTTPException: 401 if the token is invalid or expired
    """
    try:
        if config.JWT_SECRET:
            return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        return jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Get the calling principal from the bearer token.

    The token's ``sub`` is the principal id; ``principal_type`` (default
    "user"), ``guard`` and ``team_id`` claims are optional.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User is not logged in.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_jwt_token(credentials.credentials)
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return Principal(
        principal_type=payload.get("principal_type", "user"),
        principal_id=subject,
        guard_name=payload.get("guard"),
        team_id=payload.get("team_id"),
    )


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"


# ============================================================================
# Predicates
# ============================================================================

async def authorize(
    resolver: PermissionResolver,
    principal: Principal,
    permission: Any,
    resource: Optional[ResourceScope] = None,
) -> bool:
    return await resolver.has_permission(principal, permission, resource)


async def authorize_any(
    resolver: PermissionResolver,
    principal: Principal,
    permissions: Iterable[Any],
    resource: Optional[ResourceScope] = None,
) -> bool:
    return await resolver.has_any_permission(principal, permissions, resource)


async def authorize_all(
    resolver: PermissionResolver,
    principal: Principal,
    permissions: Iterable[Any],
    resource: Optional[ResourceScope] = None,
) -> bool:
    return await resolver.has_all_permissions(principal, permissions, resource)


def _denied(kind: str, names: List[str]) -> HTTPException:
    if len(names) == 1:
        detail = f"User does not have the right {kind}: {names[0]}."
    else:
        detail = f"User does not have any of the necessary {kind}s: {', '.join(names)}."
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(*permissions: str, resource: Optional[ResourceScope] = None):
    """
    FastAPI dependency to require ANY of the given permissions.

    Usage:
        @router.post("/posts")
        async def create_post(
            principal: Principal = Depends(require_permission("create posts"))
        ):
            # Principal holds "create posts"
            pass

    Returns:
        Dependency function that returns the principal if allowed

    Raises:
        HTTPException: 401 without a principal, 403 without the permission
    """
    names = list(permissions)

    async def permission_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        engine: Annotated[PermissionEngine, Depends(get_engine)],
    ) -> Principal:
        if not await authorize_any(engine.resolver, principal, names, resource):
            log.debug(f"Denied {principal.principal_type}:{principal.principal_id}, requires one of {names}")
            raise _denied("permission", names)
        return principal

    return permission_dependency


def require_all_permissions(*permissions: str, resource: Optional[ResourceScope] = None):
    """FastAPI dependency to require ALL of the given permissions."""
    names = list(permissions)

    async def permission_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        engine: Annotated[PermissionEngine, Depends(get_engine)],
    ) -> Principal:
        if not await authorize_all(engine.resolver, principal, names, resource):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User does not have all of the necessary permissions: {', '.join(names)}.",
            )
        return principal

    return permission_dependency


def require_role(*roles: str):
    """FastAPI dependency to require ANY of the given roles."""
    names = list(roles)

    async def role_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        engine: Annotated[PermissionEngine, Depends(get_engine)],
    ) -> Principal:
        if not await engine.resolver.has_any_role(principal, names):
            raise _denied("role", names)
        return principal

    return role_dependency


def require_role_or_permission(*names: str):
    """FastAPI dependency to require any of the names, as a role or as a permission."""
    wanted = list(names)

    async def access_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        engine: Annotated[PermissionEngine, Depends(get_engine)],
    ) -> Principal:
        if await engine.resolver.has_any_role(principal, wanted):
            return principal
        if await authorize_any(engine.resolver, principal, wanted):
            return principal
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User does not have any of the necessary access rights.",
        )

    return access_dependency
