from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from loguru import logger
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select
from starlette.requests import Request

from app.domain.models import (
    AuditAction,
    AuditLog,
    AuditSeverity,
    AuthSession,
    ClientCreate,
    ClientUpdate,
    SessionContext,
    User,
    UserCreate,
    UserUpdate,
)
from app.infra import audit, clock, db
from app.infra.audit import (
    ANONYMOUS_ACTOR,
    SYSTEM_ACTOR,
    AuditActor,
    AuditRecorder,
    AuditWriter,
    audit_recorder,
    resolve_audit_actor,
)
from app.infra.crypto import SEALED_ALGORITHM, open_metadata, seal_metadata
from app.infra.request_context import audit_context_ctx
from app.infra.store import RecordStore
from app.services.identity_service import IdentityService
from app.services.role_catalog_service import RoleCatalogService

OPERATOR = AuditActor(user_id="operator-1", username="operator", ip="192.0.2.10", method="POST")


@pytest.fixture()
def audit_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "audit_test.db"
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
    RoleCatalogService().seed_system_roles()
    with Session(test_engine) as session:
        session.add(User(id="operator-1", username="operator", password_hash="-", role_name="admin"))
        session.commit()
    yield test_engine
    audit_recorder.flush()
    clock.unfreeze()


def _entries(entity_type: str, action: AuditAction | None = None) -> list[AuditLog]:
    audit_recorder.flush()
    with Session(db.get_engine(), expire_on_commit=False) as session:
        statement = select(AuditLog).where(AuditLog.entity_type == entity_type)
        if action is not None:
            statement = statement.where(AuditLog.action == action.value)
        return list(session.exec(statement).all())


def _request(headers: dict[str, str] | None = None) -> Request:
    return Request(
        {
            "type": "http",
            "method": "PATCH",
            "path": "/api/identity/clients/1",
            "query_string": b"",
            "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
            "client": ("203.0.113.5", 51000),
        }
    )


def test_create_update_delete_write_exactly_one_entry_each(audit_engine: Engine) -> None:
    identity = IdentityService()
    client = identity.create_client(ClientCreate(name="Acme Travel", email="ops@acme.test"), actor=OPERATOR)
    identity.update_client(client.id, ClientUpdate(phone="+52 55 0000 0000"), actor=OPERATOR)
    identity.delete_client(client.id, actor=OPERATOR)

    created = _entries("Client", AuditAction.CREATE)
    updated = _entries("Client", AuditAction.UPDATE)
    deleted = _entries("Client", AuditAction.DELETE)
    assert len(created) == len(updated) == len(deleted) == 1

    assert created[0].entity_id == client.id
    assert created[0].entity_name == "Acme Travel"
    assert created[0].changes["email"] == "ops@acme.test"
    assert created[0].user_id == "operator-1"
    assert open_metadata(created[0].request_meta, created[0].id)["ip"] == "192.0.2.10"
    assert created[0].severity == AuditSeverity.LOW

    assert updated[0].changes["phone"] == {"from": None, "to": "+52 55 0000 0000"}
    assert "name" not in updated[0].changes

    assert deleted[0].severity == AuditSeverity.MEDIUM
    assert deleted[0].changes["name"] == "Acme Travel"


def test_single_sensitive_read_is_audited_bulk_read_is_not(audit_engine: Engine) -> None:
    identity = IdentityService()
    first = identity.create_client(ClientCreate(name="Acme Travel"), actor=OPERATOR)
    identity.create_client(ClientCreate(name="Borealis Tours"), actor=OPERATOR)

    assert len(identity.list_clients(actor=OPERATOR)) == 2
    assert _entries("Client", AuditAction.READ) == []

    identity.get_client(first.id, actor=OPERATOR)
    reads = _entries("Client", AuditAction.READ)
    assert len(reads) == 1
    assert reads[0].entity_id == first.id
    assert reads[0].changes == {"accessed": True}


def test_reads_of_non_sensitive_records_are_not_audited(audit_engine: Engine) -> None:
    store = RecordStore()
    role = RoleCatalogService().get_role("driver")

    store.get(type(role), role.id, actor=OPERATOR)
    assert _entries("Role", AuditAction.READ) == []


def test_denylisted_fields_never_reach_the_log(audit_engine: Engine) -> None:
    identity = IdentityService()
    user = identity.create_user(
        UserCreate(username="dispatcher", password="first-secret", role_name="employee_amexing"),
        actor=OPERATOR,
    )
    identity.update_user(user.id, UserUpdate(password="second-secret", email="d@amexing.test"), actor=OPERATOR)

    rows = _entries("User")
    assert {item.action for item in rows} == {AuditAction.CREATE.value, AuditAction.UPDATE.value}
    for row in rows:
        assert "password_hash" not in row.changes
        assert "password" not in row.changes
        assert "first-secret" not in str(row.changes)
    update = next(item for item in rows if item.action == AuditAction.UPDATE.value)
    assert update.changes["email"] == {"from": None, "to": "d@amexing.test"}


def test_excluded_classes_are_never_audited(audit_engine: Engine) -> None:
    recorder = AuditRecorder(AuditWriter(asynchronous=False))
    store = RecordStore(recorder)
    user = IdentityService(store=store).create_user(
        UserCreate(username="courier", password="pw", role_name="driver"),
        actor=OPERATOR,
    )

    store.save(AuthSession(user_id=user.id, session_token="tok-1"), actor=OPERATOR)
    store.save(SessionContext(user_id=user.id, session_id="s-1"), actor=OPERATOR)
    assert _entries("AuthSession") == []
    assert _entries("SessionContext") == []
    assert recorder.is_excluded(AuditLog(action="READ", entity_type="User")) is True


def test_audit_write_failure_does_not_fail_the_save(
    audit_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    audit_recorder.flush()
    # A database without tables: every audit insert fails.
    monkeypatch.setattr(audit, "get_engine", lambda: create_engine(f"sqlite:///{tmp_path / 'no_tables.db'}"))
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(str(message)), level="ERROR")
    try:
        client = IdentityService().create_client(ClientCreate(name="Cenote Shuttles"), actor=OPERATOR)
        audit_recorder.flush()
    finally:
        logger.remove(sink_id)

    with Session(db.get_engine()) as session:
        assert session.get(type(client), client.id) is not None
        assert session.exec(select(AuditLog).where(AuditLog.entity_type == "Client")).all() == []
    assert any("audit write failed" in item for item in messages)


def test_resolve_actor_falls_back_to_anonymous(audit_engine: Engine) -> None:
    actor = resolve_audit_actor(_request())
    assert actor.user_id is None
    assert actor.username == ANONYMOUS_ACTOR.username
    assert actor.ip == "203.0.113.5"
    assert actor.method == "PATCH"


def test_resolve_actor_prefers_request_context(audit_engine: Engine) -> None:
    token = audit_context_ctx.set({"user_id": "ctx-user", "username": "ctx", "ip": "198.51.100.1"})
    try:
        actor = resolve_audit_actor(_request({"X-Audit-User-Id": "header-user"}))
    finally:
        audit_context_ctx.reset(token)
    assert actor.user_id == "ctx-user"
    assert actor.ip == "198.51.100.1"

    actor = resolve_audit_actor(_request({"X-Audit-User-Id": "header-user", "X-Audit-Username": "gateway"}))
    assert (actor.user_id, actor.username) == ("header-user", "gateway")


def test_resolve_actor_from_session_token_and_master_key(
    audit_engine: Engine,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    user = IdentityService().create_user(
        UserCreate(username="night_agent", password="pw", role_name="employee_amexing"),
        actor=SYSTEM_ACTOR,
    )
    with Session(db.get_engine()) as session:
        session.add(AuthSession(user_id=user.id, session_token="session-abc"))
        session.commit()

    actor = resolve_audit_actor(_request({"X-Session-Token": "session-abc"}))
    assert (actor.user_id, actor.username) == (user.id, "night_agent")

    monkeypatch.setattr(audit, "SYSTEM_MASTER_KEY", "master-key")
    actor = resolve_audit_actor(_request({"X-Session-Token": "unknown", "X-Master-Key": "master-key"}))
    assert actor.is_system is True
    assert actor.user_id == SYSTEM_ACTOR.user_id


def test_request_metadata_is_stored_encrypted(audit_engine: Engine) -> None:
    IdentityService().create_client(ClientCreate(name="Ixtapa Tours"), actor=OPERATOR)
    entry = _entries("Client", AuditAction.CREATE)[0]

    assert entry.request_meta["alg"] == SEALED_ALGORITHM
    assert "192.0.2.10" not in str(entry.request_meta)
    assert open_metadata(entry.request_meta, entry.id)["method"] == "POST"


def test_metadata_bound_to_its_entry_fails_to_open_elsewhere() -> None:
    messages: list[str] = []
    sealed = seal_metadata({"ip": "198.51.100.4"}, "entry-a")
    tampered = {**sealed, "ciphertext": sealed["ciphertext"][:-4] + "AAAA"}

    sink_id = logger.add(lambda message: messages.append(str(message)), level="ERROR")
    try:
        assert open_metadata(sealed, "entry-b") == {"error": "metadata could not be decrypted"}
        assert open_metadata(tampered, "entry-a") == {"error": "metadata could not be decrypted"}
    finally:
        logger.remove(sink_id)

    assert open_metadata(sealed, "entry-a") == {"ip": "198.51.100.4"}
    assert open_metadata({"ip": "198.51.100.4"}, "legacy") == {"ip": "198.51.100.4"}
    assert sum("could not be decrypted" in item for item in messages) == 2
