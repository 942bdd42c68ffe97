from __future__ import annotations

import os
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import func, update
from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from app.domain.models import AuditAction, AuditLog, AuditSeverity, ComplianceFramework, ReportFormat
from app.infra.audit import AuditActor
from app.infra.clock import as_utc, now_utc
from app.infra.crypto import open_metadata
from app.infra.db import get_engine
from app.infra.store import RecordStore

FRAMEWORK_RETENTION: dict[ComplianceFramework, timedelta] = {
    ComplianceFramework.PCI_DSS: timedelta(days=365),
    ComplianceFramework.SOX: timedelta(days=7 * 365),
    ComplianceFramework.GDPR: timedelta(days=6 * 365),
}

TIME_FRAMES: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

HIGH_SEVERITY_REVIEW_THRESHOLD = 10
# Upper bound on audit rows loaded for a single report.
AUDIT_QUERY_LIMIT = int(os.getenv("AUDIT_QUERY_LIMIT", "1000"))


def parse_framework(value: str | ComplianceFramework) -> ComplianceFramework:
    try:
        return ComplianceFramework(value)
    except ValueError as exc:
        raise InvalidArgumentError("framework", f"unsupported compliance framework: {value}") from exc


def compliance_status(by_severity: dict[str, int]) -> str:
    if by_severity.get(AuditSeverity.CRITICAL.value, 0) > 0:
        return "non-compliant"
    if by_severity.get(AuditSeverity.HIGH.value, 0) > HIGH_SEVERITY_REVIEW_THRESHOLD:
        return "requires-review"
    return "compliant"


def compliance_score(critical: int, high: int, pending_reviews: int) -> int:
    return max(0, 100 - critical * 20 - high * 5 - pending_reviews * 2)


class ComplianceService:
    def __init__(self, store: RecordStore | None = None, *, query_limit: int | None = None) -> None:
        self.store = store or RecordStore()
        self.query_limit = query_limit or AUDIT_QUERY_LIMIT

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _window(framework: ComplianceFramework, start: datetime, end: datetime) -> list[Any]:
        return [
            AuditLog.framework == framework,
            col(AuditLog.ts) >= start,
            col(AuditLog.ts) <= end,
        ]

    def _entries(
        self,
        framework: ComplianceFramework,
        start: datetime,
        end: datetime,
        user_id: str | None = None,
    ) -> tuple[list[AuditLog], bool]:
        """Load the newest entries of the window, oldest first.

        The second item is True when the window held more rows than the limit.
        """
        statement = select(AuditLog).where(*self._window(framework, start, end))
        if user_id is not None:
            statement = statement.where(AuditLog.user_id == user_id)
        statement = statement.order_by(col(AuditLog.ts).desc()).limit(self.query_limit + 1)
        with self._session() as session:
            rows = list(session.exec(statement).all())
        truncated = len(rows) > self.query_limit
        rows = rows[: self.query_limit]
        rows.reverse()
        return rows, truncated

    def generate_report(
        self,
        *,
        start_date: datetime,
        end_date: datetime,
        framework: str | ComplianceFramework = ComplianceFramework.PCI_DSS,
        user_id: str | None = None,
        include_metadata: bool = False,
        report_format: ReportFormat = ReportFormat.SUMMARY,
    ) -> dict[str, Any]:
        resolved = parse_framework(framework)
        start = as_utc(start_date)
        end = as_utc(end_date)
        if start > end:
            raise InvalidArgumentError("start_date", "start_date must not be after end_date")

        entries, truncated = self._entries(resolved, start, end, user_id)
        if truncated:
            logger.bind(event="compliance_report_truncated", limit=self.query_limit).warning(
                "compliance report for {} capped at {} entries", resolved.value, self.query_limit
            )
        by_severity = Counter(str(item.severity.value) for item in entries)
        generated_at = now_utc()
        report: dict[str, Any] = {
            "framework": resolved.value,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "user_id": user_id,
            "format": report_format.value,
            "summary": {
                "total_records": len(entries),
                "truncated": truncated,
                "record_limit": self.query_limit,
                "records_by_action": dict(Counter(item.action for item in entries)),
                "records_by_entity_type": dict(Counter(item.entity_type for item in entries)),
                "records_by_severity": dict(by_severity),
                "records_by_user": dict(Counter(item.username or item.user_id or "anonymous" for item in entries)),
                "compliance_status": compliance_status(by_severity),
            },
            "retention_until": (generated_at + FRAMEWORK_RETENTION[resolved]).isoformat(),
            "generated_at": generated_at.isoformat(),
        }
        if report_format == ReportFormat.DETAILED:
            report["records"] = [self._record(item, include_metadata) for item in entries]
        return report

    def request_meta(self, entry: AuditLog) -> dict[str, Any]:
        return open_metadata(entry.request_meta, entry.id)

    def _record(self, entry: AuditLog, include_metadata: bool) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": entry.id,
            "user_id": entry.user_id,
            "username": entry.username,
            "action": entry.action,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "entity_name": entry.entity_name,
            "severity": entry.severity.value,
            "requires_review": entry.requires_review,
            "reviewed": entry.reviewed,
            "ts": as_utc(entry.ts).isoformat(),
        }
        if include_metadata:
            record["changes"] = entry.changes
            record["request_meta"] = self.request_meta(entry)
        return record

    def audit_statistics(
        self,
        *,
        time_frame: str = "7d",
        framework: str | ComplianceFramework = ComplianceFramework.PCI_DSS,
    ) -> dict[str, Any]:
        resolved = parse_framework(framework)
        window = TIME_FRAMES.get(time_frame)
        if window is None:
            raise InvalidArgumentError("time_frame", f"must be one of {', '.join(TIME_FRAMES)}")
        end = now_utc()
        conditions = self._window(resolved, end - window, end)

        by_severity = {item.value: 0 for item in AuditSeverity}
        with self._session() as session:
            for severity, total in session.exec(
                select(AuditLog.severity, func.count()).where(*conditions).group_by(AuditLog.severity)
            ).all():
                by_severity[AuditSeverity(severity).value] = total
            by_action = {
                action: total
                for action, total in session.exec(
                    select(AuditLog.action, func.count()).where(*conditions).group_by(AuditLog.action)
                ).all()
            }
            pending = session.exec(
                select(func.count())
                .select_from(AuditLog)
                .where(*conditions)
                .where(col(AuditLog.requires_review).is_(True))
                .where(col(AuditLog.reviewed).is_(False))
            ).one()
        return {
            "time_frame": time_frame,
            "framework": resolved.value,
            "window_start": (end - window).isoformat(),
            "window_end": end.isoformat(),
            "total_events": sum(by_severity.values()),
            "events_by_severity": by_severity,
            "events_by_action": by_action,
            "pending_reviews": pending,
            "compliance_score": compliance_score(
                by_severity[AuditSeverity.CRITICAL.value],
                by_severity[AuditSeverity.HIGH.value],
                pending,
            ),
        }

    def get_entry(self, entry_id: str, *, actor: AuditActor) -> AuditLog:
        entry = self.store.get(AuditLog, entry_id, actor=actor)
        if entry is None:
            raise NotFoundError("audit entry not found")
        return entry

    def review_entry(self, entry_id: str, *, actor: AuditActor, notes: str | None = None) -> AuditLog:
        """Mark an entry that requires review as reviewed.

        Nobody reviews their own action. Of two concurrent reviews only one wins.
        """
        with self._session() as session:
            entry = session.get(AuditLog, entry_id)
            if entry is None:
                raise NotFoundError("audit entry not found")
            if not entry.requires_review:
                raise ConflictError("audit entry does not require review")
            if not actor.is_system and actor.user_id is not None and actor.user_id == entry.user_id:
                raise ForbiddenError("audit entries cannot be reviewed by the user who caused them")
            reviewed_at = now_utc()
            result = session.execute(
                update(AuditLog)
                .where(col(AuditLog.id) == entry_id)
                .where(col(AuditLog.reviewed).is_(False))
                .values(reviewed=True, reviewed_by=actor.user_id, reviewed_at=reviewed_at, review_notes=notes)
            )
            if result.rowcount == 0:
                raise ConflictError("audit entry already reviewed")
            session.commit()
            session.refresh(entry)

        self.store.recorder.record(
            AuditAction.AUDIT_REVIEWED,
            actor=actor,
            entity_type="AuditLog",
            entity_id=entry.id,
            entity_name=entry.action,
            changes={"reviewed": {"from": False, "to": True}, "notes": notes},
        )
        logger.bind(event="audit_entry_reviewed", entry_id=entry.id, reviewer=actor.user_id).info(
            "audit entry {} reviewed", entry.id
        )
        return entry
