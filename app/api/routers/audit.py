from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import Actor, handle_authz_error, require_perm
from app.domain.errors import AuthzError
from app.domain.models import (
    AuditLogRead,
    AuditReviewRequest,
    AuditStatisticsRead,
    ComplianceFramework,
    ComplianceReportRead,
    ReportFormat,
)
from app.domain.permissions import Perm
from app.services.compliance_service import ComplianceService

router = APIRouter()


def get_compliance_service() -> ComplianceService:
    return ComplianceService()


Service = Annotated[ComplianceService, Depends(get_compliance_service)]


@router.get(
    "/compliance-report",
    response_model=ComplianceReportRead,
    dependencies=[Depends(require_perm(Perm.AUDIT_READ))],
)
def get_compliance_report(
    start_date: datetime,
    end_date: datetime,
    service: Service,
    user_id: str | None = None,
    framework: str = ComplianceFramework.PCI_DSS.value,
    include_metadata: bool = False,
    report_format: Annotated[ReportFormat, Query(alias="format")] = ReportFormat.SUMMARY,
) -> ComplianceReportRead:
    try:
        report = service.generate_report(
            start_date=start_date,
            end_date=end_date,
            framework=framework,
            user_id=user_id,
            include_metadata=include_metadata,
            report_format=report_format,
        )
    except AuthzError as exc:
        handle_authz_error(exc)
    return ComplianceReportRead(report=report)


@router.get(
    "/statistics",
    response_model=AuditStatisticsRead,
    dependencies=[Depends(require_perm(Perm.AUDIT_READ))],
)
def get_audit_statistics(
    service: Service,
    time_frame: str = "7d",
    framework: str = ComplianceFramework.PCI_DSS.value,
) -> AuditStatisticsRead:
    try:
        stats = service.audit_statistics(time_frame=time_frame, framework=framework)
    except AuthzError as exc:
        handle_authz_error(exc)
    return AuditStatisticsRead(stats=stats)


@router.get(
    "/entries/{entry_id}",
    response_model=AuditLogRead,
    dependencies=[Depends(require_perm(Perm.AUDIT_READ))],
)
def get_audit_entry(
    entry_id: str,
    actor: Actor,
    service: Service,
    include_metadata: bool = False,
) -> AuditLogRead:
    try:
        entry = service.get_entry(entry_id, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    request_meta = service.request_meta(entry) if include_metadata else {}
    return AuditLogRead.model_validate(entry).model_copy(update={"request_meta": request_meta})


@router.post(
    "/entries/{entry_id}/review",
    response_model=AuditLogRead,
    dependencies=[Depends(require_perm(Perm.AUDIT_READ))],
)
def review_audit_entry(
    entry_id: str,
    payload: AuditReviewRequest,
    actor: Actor,
    service: Service,
) -> AuditLogRead:
    try:
        entry = service.review_entry(entry_id, actor=actor, notes=payload.notes)
    except AuthzError as exc:
        handle_authz_error(exc)
    return AuditLogRead.model_validate(entry).model_copy(update={"request_meta": {}})
