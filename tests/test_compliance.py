from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from app.domain.errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from app.domain.models import AuditAction, ComplianceFramework, ReportFormat
from app.infra import clock, db
from app.infra.audit import AuditActor, AuditRecorder, AuditWriter, audit_recorder
from app.infra.clock import as_utc
from app.services.compliance_service import (
    ComplianceService,
    compliance_score,
    compliance_status,
)

NOW = datetime(2026, 9, 30, 12, 0, tzinfo=UTC)
AGENT = AuditActor(user_id="agent-7", username="agent", ip="10.1.1.7", method="POST")
AUDITOR = AuditActor(user_id="auditor-1", username="auditor", ip="10.1.1.9", method="GET")


@pytest.fixture()
def compliance_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "compliance_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    clock.freeze(NOW)
    yield test_engine
    audit_recorder.flush()
    clock.unfreeze()


def _record(recorder: AuditRecorder, action: AuditAction, entity_id: str, **changes: object) -> None:
    recorder.record(
        action,
        actor=AGENT,
        entity_type="PermissionDelegation" if action != AuditAction.EMERGENCY_PERMISSION else "PermissionElevation",
        entity_id=entity_id,
        changes=dict(changes),
    )


@pytest.fixture()
def pci_recorder(compliance_engine: Engine) -> AuditRecorder:
    return AuditRecorder(AuditWriter(asynchronous=False), framework=ComplianceFramework.PCI_DSS.value)


def test_summary_report_counts_and_status(pci_recorder: AuditRecorder) -> None:
    _record(pci_recorder, AuditAction.PERMISSION_DELEGATED, "d-1", reason="cover")
    _record(pci_recorder, AuditAction.DELEGATION_REVOKED, "d-1", reason="back")
    _record(pci_recorder, AuditAction.CREATE, "d-2")

    report = ComplianceService().generate_report(
        start_date=NOW - timedelta(days=1),
        end_date=NOW + timedelta(minutes=1),
    )
    summary = report["summary"]
    assert report["framework"] == "PCI_DSS"
    assert report["format"] == "summary"
    assert "records" not in report
    assert summary["total_records"] == 3
    assert summary["records_by_action"] == {"PERMISSION_DELEGATED": 1, "DELEGATION_REVOKED": 1, "CREATE": 1}
    assert summary["records_by_severity"] == {"medium": 2, "low": 1}
    assert summary["records_by_user"] == {"agent": 3}
    assert summary["compliance_status"] == "compliant"
    assert report["retention_until"] == (NOW + timedelta(days=365)).isoformat()


def test_critical_entry_makes_report_non_compliant(pci_recorder: AuditRecorder) -> None:
    _record(pci_recorder, AuditAction.EMERGENCY_PERMISSION, "e-1", reason="outage")

    report = ComplianceService().generate_report(start_date=NOW - timedelta(hours=1), end_date=NOW)
    assert report["summary"]["compliance_status"] == "non-compliant"


def test_detailed_report_includes_metadata_only_on_request(pci_recorder: AuditRecorder) -> None:
    _record(pci_recorder, AuditAction.OVERRIDE_CREATED, "o-1", permission="reports.read")
    service = ComplianceService()

    plain = service.generate_report(
        start_date=NOW - timedelta(hours=1),
        end_date=NOW,
        report_format=ReportFormat.DETAILED,
    )
    assert len(plain["records"]) == 1
    assert "changes" not in plain["records"][0]

    full = service.generate_report(
        start_date=NOW - timedelta(hours=1),
        end_date=NOW,
        report_format=ReportFormat.DETAILED,
        include_metadata=True,
    )
    record = full["records"][0]
    assert record["changes"] == {"permission": "reports.read"}
    assert "10.1.1.7" not in str(plain["records"])
    assert record["request_meta"]["ip"] == "10.1.1.7"
    assert record["requires_review"] is True


def test_report_filters_by_framework_user_and_range(pci_recorder: AuditRecorder) -> None:
    _record(pci_recorder, AuditAction.CREATE, "c-1")
    sox_recorder = AuditRecorder(AuditWriter(asynchronous=False), framework=ComplianceFramework.SOX.value)
    _record(sox_recorder, AuditAction.CREATE, "c-2")
    service = ComplianceService()
    window = {"start_date": NOW - timedelta(hours=1), "end_date": NOW}

    assert service.generate_report(framework="SOX", **window)["summary"]["total_records"] == 1
    assert service.generate_report(user_id="someone-else", **window)["summary"]["total_records"] == 0
    assert (
        service.generate_report(start_date=NOW + timedelta(hours=1), end_date=NOW + timedelta(hours=2))["summary"][
            "total_records"
        ]
        == 0
    )


def test_report_rejects_bad_arguments(compliance_engine: Engine) -> None:
    service = ComplianceService()
    with pytest.raises(InvalidArgumentError) as exc_info:
        service.generate_report(start_date=NOW, end_date=NOW - timedelta(days=1))
    assert exc_info.value.field == "start_date"
    with pytest.raises(InvalidArgumentError):
        service.generate_report(start_date=NOW - timedelta(days=1), end_date=NOW, framework="HIPAA")
    with pytest.raises(InvalidArgumentError):
        service.audit_statistics(time_frame="1y")


def test_statistics_window_and_score(pci_recorder: AuditRecorder) -> None:
    clock.freeze(NOW - timedelta(days=10))
    _record(pci_recorder, AuditAction.CREATE, "old-1")
    clock.freeze(NOW)
    _record(pci_recorder, AuditAction.EMERGENCY_PERMISSION, "e-2")
    _record(pci_recorder, AuditAction.PERMISSION_DELEGATED, "d-3")
    service = ComplianceService()

    stats = service.audit_statistics(time_frame="7d")
    assert stats["total_events"] == 2
    assert stats["events_by_severity"] == {"low": 0, "medium": 1, "high": 0, "critical": 1}
    assert stats["pending_reviews"] == 2
    assert stats["compliance_score"] == 100 - 20 - 2 * 2

    assert service.audit_statistics(time_frame="30d")["total_events"] == 3


def test_status_and_score_helpers() -> None:
    assert compliance_status({"high": 11}) == "requires-review"
    assert compliance_status({"high": 10}) == "compliant"
    assert compliance_status({"critical": 1}) == "non-compliant"
    assert compliance_score(critical=10, high=0, pending_reviews=0) == 0


def test_get_entry_is_an_audited_read(pci_recorder: AuditRecorder) -> None:
    _record(pci_recorder, AuditAction.CREATE, "c-9")
    service = ComplianceService()
    report = service.generate_report(
        start_date=NOW - timedelta(hours=1),
        end_date=NOW,
        report_format=ReportFormat.DETAILED,
    )
    entry_id = report["records"][0]["id"]

    entry = service.get_entry(entry_id, actor=AUDITOR)
    assert entry.entity_id == "c-9"
    audit_recorder.flush()
    reads = service.generate_report(start_date=NOW - timedelta(hours=1), end_date=NOW, user_id="auditor-1")
    assert reads["summary"]["records_by_action"] == {"READ": 1}
    with pytest.raises(NotFoundError):
        service.get_entry("missing", actor=AUDITOR)


def _detailed_records(service: ComplianceService) -> list[dict[str, object]]:
    report = service.generate_report(
        start_date=NOW - timedelta(hours=1),
        end_date=NOW,
        report_format=ReportFormat.DETAILED,
    )
    return report["records"]


def test_reviewing_entries_clears_pending_reviews(pci_recorder: AuditRecorder) -> None:
    _record(pci_recorder, AuditAction.EMERGENCY_PERMISSION, "e-3", reason="outage")
    _record(pci_recorder, AuditAction.PERMISSION_DELEGATED, "d-4")
    _record(pci_recorder, AuditAction.CREATE, "c-3")
    service = ComplianceService()
    records = {item["action"]: item["id"] for item in _detailed_records(service)}
    assert service.audit_statistics(time_frame="24h")["pending_reviews"] == 2

    reviewed = service.review_entry(records["EMERGENCY_PERMISSION"], actor=AUDITOR, notes="incident closed")
    assert reviewed.reviewed is True
    assert reviewed.reviewed_by == "auditor-1"
    assert as_utc(reviewed.reviewed_at) == NOW
    assert reviewed.review_notes == "incident closed"
    audit_recorder.flush()

    stats = service.audit_statistics(time_frame="24h")
    assert stats["pending_reviews"] == 1
    assert stats["compliance_score"] == 100 - 20 - 2
    assert stats["events_by_action"]["AUDIT_REVIEWED"] == 1

    with pytest.raises(ConflictError):
        service.review_entry(records["EMERGENCY_PERMISSION"], actor=AUDITOR)
    with pytest.raises(ConflictError):
        service.review_entry(records["CREATE"], actor=AUDITOR)
    with pytest.raises(ForbiddenError):
        service.review_entry(records["PERMISSION_DELEGATED"], actor=AGENT)
    with pytest.raises(NotFoundError):
        service.review_entry("missing", actor=AUDITOR)
    assert service.audit_statistics(time_frame="24h")["pending_reviews"] == 1


def test_report_keeps_newest_entries_up_to_the_limit(pci_recorder: AuditRecorder) -> None:
    clock.freeze(NOW - timedelta(days=2))
    _record(pci_recorder, AuditAction.CREATE, "before-window")
    for index in range(3):
        clock.freeze(NOW - timedelta(minutes=30 - index))
        _record(pci_recorder, AuditAction.CREATE, f"c-{index}")
    clock.freeze(NOW)

    capped = ComplianceService(query_limit=2).generate_report(
        start_date=NOW - timedelta(hours=1),
        end_date=NOW,
        report_format=ReportFormat.DETAILED,
    )
    assert capped["summary"]["truncated"] is True
    assert capped["summary"]["total_records"] == 2
    assert [item["entity_id"] for item in capped["records"]] == ["c-1", "c-2"]

    full = ComplianceService().generate_report(start_date=NOW - timedelta(hours=1), end_date=NOW)
    assert full["summary"]["truncated"] is False
    assert full["summary"]["total_records"] == 3
