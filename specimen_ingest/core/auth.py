from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings


bearer = HTTPBearer(auto_error=False)

UPLOAD_SCOPES = frozenset({"uploads", "admin"})


@dataclass(frozen=True)
class AuthContext:
    """Caller identity as far as the upload service cares: who, and with which scopes."""

    user_id: Optional[str] = None
    scopes: tuple[str, ...] = ()

    @property
    def can_upload(self) -> bool:
        return bool(UPLOAD_SCOPES.intersection(self.scopes))


def _scopes_from_claims(claims: dict[str, Any]) -> tuple[str, ...]:
    # Dev tokens carry a list; OAuth-style issuers send a space-delimited "scope".
    raw = claims.get("scopes")
    if raw is None:
        raw = claims.get("scope", "")
    if isinstance(raw, str):
        return tuple(raw.split())
    if isinstance(raw, (list, tuple)) and all(isinstance(item, str) for item in raw):
        return tuple(raw)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_scopes_claim")


def _verify_bearer(token: str, settings: Settings) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.secrets.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")

    claims = _verify_bearer(credentials.credentials, settings)
    context = AuthContext(
        user_id=claims.get("sub") or claims.get("user_id"),
        scopes=_scopes_from_claims(claims),
    )
    request.state.auth = context
    return context


async def require_upload_scope(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Gate for every upload operation. Per-specimen policy lives outside this service."""
    if not context.can_upload:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="upload_scope_required")
    return context


__all__ = ["AuthContext", "get_auth_context", "require_upload_scope", "UPLOAD_SCOPES"]
