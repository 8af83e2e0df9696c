"""
verify.py
---------
Purpose:
    JWT verification for the admin API (HS256, shared secret).

Notes:
    - `auth_dependency` verifies the bearer token.
    - `admin_dependency` additionally requires one of settings.ADMIN_ROLES in
      the token's `role` or `roles` claim.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from deauth.config import settings

_security = HTTPBearer()


def verify_jwt(token: str) -> dict:
    if not settings.JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        decoded = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
            options={"verify_exp": True},
        )
        return decoded
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def _claimed_roles(claims: dict) -> set[str]:
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    role = claims.get("role")
    if role:
        roles = [*roles, role]
    return {str(r).lower() for r in roles}


def admin_dependency(claims: dict = Depends(auth_dependency)) -> dict:
    allowed = {r.lower() for r in settings.ADMIN_ROLES}
    if not _claimed_roles(claims) & allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return claims
