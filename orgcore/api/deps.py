from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, NoReturn

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from orgcore.domain.errors import (
    ConflictError,
    CoreError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from orgcore.domain.permissions import has_capability
from orgcore.infra.auth import decode_access_token
from orgcore.infra.context import set_request_context

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

ERROR_STATUS: tuple[tuple[type[CoreError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
)


def handle_core_error(exc: CoreError) -> NoReturn:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_detail()) from exc


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("sub"))
    return claims


def require_capability(capability: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not has_capability(claims["role"], capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing capability: {capability}",
            )
        return claims

    return _checker


def require_any_capability(*capabilities: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    expected = [item for item in capabilities if item]

    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not expected:
            return claims
        if any(has_capability(claims["role"], capability) for capability in expected):
            return claims
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing any capability: {', '.join(expected)}",
        )

    return _checker
