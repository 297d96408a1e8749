from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from orgcore.domain.models import AuditLog
from orgcore.infra.db import engine

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
# Reads that expose money, recruits or the whole tree are logged like writes.
SENSITIVE_READ_MARKERS = ("/financial/", "/recruited-users", "/integrity", "/statistics")
UNAUDITED_PATHS = {"/healthz", "/readyz"}
AUDIT_STATE_KEY = "orgcore_audit"


@dataclass
class RequestAudit:
    action: str | None = None
    resource: str | None = None
    facts: dict[str, Any] = field(default_factory=dict)


def _request_audit(request: Request) -> RequestAudit:
    audit = getattr(request.state, AUDIT_STATE_KEY, None)
    if not isinstance(audit, RequestAudit):
        audit = RequestAudit()
        setattr(request.state, AUDIT_STATE_KEY, audit)
    return audit


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    **facts: Any,
) -> None:
    """Name the audited operation and attach flat facts to the request's audit row."""
    audit = _request_audit(request)
    if action is not None:
        audit.action = action
    if resource is not None:
        audit.resource = resource
    audit.facts.update(facts)


def classify_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def is_audited(method: str, path: str) -> bool:
    if path in UNAUDITED_PATHS:
        return False
    return method in WRITE_METHODS or any(marker in path for marker in SENSITIVE_READ_MARKERS)


def write_audit_log(
    *,
    actor_id: str | None,
    actor_role: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any],
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                actor_role=actor_role,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail,
            )
        )
        session.commit()


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        method = request.method
        path = request.url.path
        if not is_audited(method, path):
            return response

        audit = _request_audit(request)
        claims = getattr(request.state, "claims", {})
        role = claims.get("role")
        route = request.scope.get("route")
        detail = {
            **audit.facts,
            "route": getattr(route, "path", path),
            "client_ip": request.client.host if request.client is not None else None,
            "outcome": classify_outcome(response.status_code),
        }
        try:
            write_audit_log(
                actor_id=claims.get("sub"),
                actor_role=None if role is None else str(role),
                action=audit.action or f"{method}:{path}",
                resource=audit.resource or path,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            logger.exception("request audit write failed for %s %s", method, path)
        return response
