from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, NoReturn

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from loguru import logger

from app.domain.errors import (
    AuditWriteError,
    AuthzError,
    ConflictError,
    ForbiddenError,
    InconsistentError,
    InvalidArgumentError,
    NotFoundError,
    UnauthenticatedError,
)
from app.infra.audit import AuditActor, resolve_audit_actor
from app.infra.auth import decode_access_token
from app.infra.request_context import get_audit_context
from app.services.context_service import ContextService
from app.services.permission_resolver import SIGNAL_INCONSISTENT, PermissionResolver

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


def get_permission_resolver() -> PermissionResolver:
    return PermissionResolver()


def get_context_service() -> ContextService:
    return ContextService()


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
    if not claims.get("sub") or not claims.get("sid"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    request.state.claims = claims
    audit_context = get_audit_context()
    if audit_context is not None:
        audit_context.update(user_id=claims["sub"], username=claims.get("username"), session_id=claims["sid"])
    return claims


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Resolver = Annotated[PermissionResolver, Depends(get_permission_resolver)]
Contexts = Annotated[ContextService, Depends(get_context_service)]


def get_audit_actor(request: Request, claims: Claims) -> AuditActor:
    return resolve_audit_actor(request)


Actor = Annotated[AuditActor, Depends(get_audit_actor)]


def caller_has_permission(
    claims: dict[str, Any],
    permission: str,
    resolver: PermissionResolver,
    contexts: ContextService,
) -> bool:
    context = contexts.current_context(claims["sub"], claims["sid"])
    decision = resolver.check(claims["sub"], permission, context)
    if decision.signal == SIGNAL_INCONSISTENT:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")
    return decision.allowed


def require_perm(permission: str) -> Callable[..., dict[str, Any]]:
    def _checker(claims: Claims, resolver: Resolver, contexts: Contexts) -> dict[str, Any]:
        if not caller_has_permission(claims, permission, resolver, contexts):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
        return claims

    return _checker


def require_self_or_perm(claims: dict[str, Any], user_id: str, permission: str) -> None:
    if claims["sub"] == user_id:
        return
    if not caller_has_permission(claims, permission, get_permission_resolver(), get_context_service()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


def handle_authz_error(exc: AuthzError) -> NoReturn:
    if isinstance(exc, UnauthenticatedError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, ForbiddenError):
        logger.bind(event="forbidden").info("request denied: {}", exc)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden") from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, InvalidArgumentError):
        raise HTTPException(
            status_code=422,
            detail={"field": exc.field, "message": exc.message},
        ) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InconsistentError):
        logger.bind(event="integrity_error", detail=exc.detail).error("inconsistent authorization state: {}", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error") from exc
    if isinstance(exc, AuditWriteError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="audit unavailable") from exc
    raise exc
