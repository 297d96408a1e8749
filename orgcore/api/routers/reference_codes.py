from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, status

from orgcore.api.deps import get_current_claims, handle_core_error, require_capability
from orgcore.domain.errors import CoreError
from orgcore.domain.models import (
    CodeGenerateRequest,
    CodeUsageStatsRead,
    CodeValidateRead,
    CodeValidateRequest,
    RecruitedUsersPage,
    RecruitmentCodeRead,
    RecruitmentCodeWithStatsRead,
)
from orgcore.domain.permissions import CAP_GENERATE_REFERENCE_CODES, CAP_VIEW_REFERENCE_CODES
from orgcore.infra.audit import set_audit_context
from orgcore.services.recruitment_code_service import RecruitmentCodeService

router = APIRouter()


def get_code_service() -> RecruitmentCodeService:
    return RecruitmentCodeService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[RecruitmentCodeService, Depends(get_code_service)]


@router.post("/validate", response_model=CodeValidateRead)
def validate_code(payload: CodeValidateRequest, request: Request, service: Service) -> CodeValidateRead:
    result = service.describe(payload.code)
    set_audit_context(
        request,
        action="reference_code.validate",
        is_valid=result.is_valid,
        reason=None if result.reason is None else str(result.reason),
    )
    return result


@router.get(
    "/mine",
    response_model=list[RecruitmentCodeWithStatsRead],
    dependencies=[Depends(require_capability(CAP_VIEW_REFERENCE_CODES))],
)
def list_my_codes(claims: Claims, service: Service) -> list[RecruitmentCodeWithStatsRead]:
    return service.list_for_owner(claims["sub"])


@router.post(
    "/generate",
    response_model=list[RecruitmentCodeRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(CAP_GENERATE_REFERENCE_CODES))],
)
def generate_codes(
    payload: CodeGenerateRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> list[RecruitmentCodeRead]:
    try:
        if payload.code_type is None:
            codes = service.generate_for_owner(claims["sub"], expires_at=payload.expires_at)
        else:
            codes = [service.generate(claims["sub"], payload.code_type, expires_at=payload.expires_at)]
    except CoreError as exc:
        handle_core_error(exc)
    set_audit_context(
        request,
        action="reference_code.generate",
        code_ids=[item.id for item in codes],
    )
    return [RecruitmentCodeRead.model_validate(item) for item in codes]


@router.patch(
    "/{code_id}/deactivate",
    response_model=RecruitmentCodeRead,
    dependencies=[Depends(require_capability(CAP_GENERATE_REFERENCE_CODES))],
)
def deactivate_code(code_id: str, request: Request, claims: Claims, service: Service) -> RecruitmentCodeRead:
    set_audit_context(request, action="reference_code.deactivate", resource=f"reference_code:{code_id}")
    try:
        code = service.deactivate(code_id, claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)
    return RecruitmentCodeRead.model_validate(code)


@router.patch(
    "/{code_id}/reactivate",
    response_model=RecruitmentCodeRead,
    dependencies=[Depends(require_capability(CAP_GENERATE_REFERENCE_CODES))],
)
def reactivate_code(code_id: str, request: Request, claims: Claims, service: Service) -> RecruitmentCodeRead:
    set_audit_context(request, action="reference_code.reactivate", resource=f"reference_code:{code_id}")
    try:
        code = service.reactivate(code_id, claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)
    return RecruitmentCodeRead.model_validate(code)


@router.post(
    "/{code_id}/regenerate",
    response_model=RecruitmentCodeRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(CAP_GENERATE_REFERENCE_CODES))],
)
def regenerate_code(code_id: str, request: Request, claims: Claims, service: Service) -> RecruitmentCodeRead:
    try:
        code = service.regenerate(code_id, claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)
    set_audit_context(
        request,
        action="reference_code.regenerate",
        resource=f"reference_code:{code_id}",
        replacement_id=code.id,
    )
    return RecruitmentCodeRead.model_validate(code)


@router.get(
    "/{code_id}/stats",
    response_model=CodeUsageStatsRead,
    dependencies=[Depends(require_capability(CAP_VIEW_REFERENCE_CODES))],
)
def code_stats(code_id: str, claims: Claims, service: Service) -> CodeUsageStatsRead:
    try:
        return service.usage_stats(code_id, claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)


@router.get(
    "/{code_id}/recruited-users",
    response_model=RecruitedUsersPage,
    dependencies=[Depends(require_capability(CAP_VIEW_REFERENCE_CODES))],
)
def recruited_users(
    code_id: str,
    claims: Claims,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> RecruitedUsersPage:
    try:
        return service.recruited_users(code_id, claims["sub"], page=page, limit=limit)
    except CoreError as exc:
        handle_core_error(exc)
