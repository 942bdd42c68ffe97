from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy import inspect as sa_inspect
from sqlmodel import Session, SQLModel, select

from app.domain.errors import AuditWriteError
from app.domain.models import AuditAction, AuditLog
from app.infra.audit import AuditActor, AuditRecorder, audit_recorder, entity_name_of, snapshot
from app.infra.db import get_engine

RecordT = TypeVar("RecordT", bound=SQLModel)


class RecordStore:
    """Keyed record store; every call passes through the audit hooks.

    Callers always name the acting user. Internal jobs pass ``SYSTEM_ACTOR``.
    """

    def __init__(self, recorder: AuditRecorder | None = None) -> None:
        self.recorder = recorder or audit_recorder

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def get(self, model: type[RecordT], record_id: str, *, actor: AuditActor) -> RecordT | None:
        with self._session() as session:
            record = session.get(model, record_id)
        if record is not None:
            self.recorder.after_read([record], actor=actor)
        return record

    def find(
        self,
        model: type[RecordT],
        *criteria: Any,
        actor: AuditActor,
        order_by: Any = None,
        limit: int | None = None,
    ) -> list[RecordT]:
        statement = select(model)
        for criterion in criteria:
            statement = statement.where(criterion)
        if order_by is not None:
            statement = statement.order_by(order_by)
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            records = list(session.exec(statement).all())
        self.recorder.after_read(records, actor=actor)
        return records

    def save(self, record: RecordT, *, actor: AuditActor) -> RecordT:
        created = not sa_inspect(record).has_identity
        changes = self.recorder.before_save(record)
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        self.recorder.after_save(record, actor=actor, created=created, changes=changes)
        return record

    def delete(
        self,
        record: SQLModel,
        *,
        actor: AuditActor,
        dependents: Sequence[SQLModel] = (),
    ) -> None:
        """Delete a record together with its dependent rows in one transaction.

        Dependents are removed first; if anything fails nothing is deleted.
        """
        # The attempt is recorded even if the delete itself fails.
        self.recorder.before_delete(record, actor=actor)
        with self._session() as session:
            for dependent in dependents:
                session.delete(session.merge(dependent))
            session.flush()
            session.delete(session.merge(record))
            session.commit()

    def save_confirmed(
        self,
        records: Sequence[RecordT],
        *,
        actor: AuditActor,
        entry: AuditLog,
    ) -> list[RecordT]:
        """Persist new records and their audit entry in one transaction.

        Nothing is written unless the audit entry commits too; a failure
        raises ``AuditWriteError`` and is logged at CRITICAL.
        """
        try:
            with self._session() as session:
                for record in records:
                    session.add(record)
                    session.add(
                        self.recorder.build_entry(
                            AuditAction.CREATE,
                            actor=actor,
                            entity_type=type(record).__name__,
                            entity_id=getattr(record, "id", None),
                            entity_name=entity_name_of(record),
                            changes=snapshot(record),
                        )
                    )
                session.add(entry)
                session.commit()
                for record in records:
                    session.refresh(record)
        except Exception as exc:
            logger.bind(event="audit_confirmed_write_failed", entry=snapshot(entry)).critical(
                "confirmed audit write failed for {} on {}",
                entry.action,
                entry.entity_id,
            )
            raise AuditWriteError("audit entry could not be confirmed") from exc
        return list(records)
