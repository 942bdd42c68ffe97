from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import AuditAction, AuditLog, AuthSession
from app.infra import clock, db
from app.infra.audit import audit_recorder
from app.infra.crypto import open_metadata


@pytest.fixture()
def identity_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
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
    client = TestClient(app_main.app)
    yield client
    client.close()
    audit_recorder.flush()
    clock.unfreeze()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _bootstrap(client: TestClient, username: str = "root", password: str = "root-pass") -> str:
    response = client.post("/api/identity/bootstrap", json={"username": username, "password": password})
    assert response.status_code == 201
    return response.json()["id"]


def _login(client: TestClient, username: str, password: str) -> str:
    response = client.post("/api/identity/dev-login", json={"username": username, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _create_user(client: TestClient, token: str, username: str, role_name: str, **extra: object) -> str:
    response = client.post(
        "/api/identity/users",
        json={"username": username, "password": f"{username}-pass", "role_name": role_name, **extra},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()["id"]


def _latest_audit(action: str, entity_type: str) -> AuditLog:
    audit_recorder.flush()
    with Session(db.get_engine(), expire_on_commit=False) as session:
        rows = list(
            session.exec(
                select(AuditLog).where(AuditLog.action == action).where(AuditLog.entity_type == entity_type)
            ).all()
        )
    assert rows
    return sorted(rows, key=lambda item: item.ts)[-1]


def test_bootstrap_only_once(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    again = identity_client.post("/api/identity/bootstrap", json={"username": "other", "password": "x"})
    assert again.status_code == 409


def test_dev_login_rejects_bad_credentials(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    response = identity_client.post("/api/identity/dev-login", json={"username": "root", "password": "nope"})
    assert response.status_code == 401


def test_requests_without_token_are_unauthenticated(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    assert identity_client.get("/api/identity/users").status_code == 401
    bad = identity_client.get("/api/identity/users", headers=_auth_header("not-a-jwt"))
    assert bad.status_code == 401


def test_user_crud_is_permission_guarded_and_audited(identity_client: TestClient) -> None:
    root_id = _bootstrap(identity_client)
    root_token = _login(identity_client, "root", "root-pass")
    driver_id = _create_user(identity_client, root_token, "driver_ana", "driver")

    created = _latest_audit(AuditAction.CREATE.value, "User")
    assert created.entity_id == driver_id
    assert created.user_id == root_id
    assert created.username == "root"
    assert "password_hash" not in created.changes

    driver_token = _login(identity_client, "driver_ana", "driver_ana-pass")
    forbidden = identity_client.get("/api/identity/users", headers=_auth_header(driver_token))
    assert forbidden.status_code == 403

    fetched = identity_client.get(f"/api/identity/users/{driver_id}", headers=_auth_header(root_token))
    assert fetched.status_code == 200
    assert fetched.json()["role_name"] == "driver"
    read = _latest_audit(AuditAction.READ.value, "User")
    assert read.entity_id == driver_id
    assert open_metadata(read.request_meta, read.id)["method"] == "GET"

    patched = identity_client.patch(
        f"/api/identity/users/{driver_id}",
        json={"email": "ana@amexing.test"},
        headers=_auth_header(root_token),
    )
    assert patched.status_code == 200
    assert _latest_audit(AuditAction.UPDATE.value, "User").changes["email"]["to"] == "ana@amexing.test"

    deleted = identity_client.delete(f"/api/identity/users/{driver_id}", headers=_auth_header(root_token))
    assert deleted.status_code == 204
    assert _latest_audit(AuditAction.DELETE.value, "User").entity_id == driver_id
    with Session(db.get_engine()) as session:
        assert session.exec(select(AuthSession).where(AuthSession.user_id == driver_id)).all() == []
    missing = identity_client.get(f"/api/identity/users/{driver_id}", headers=_auth_header(root_token))
    assert missing.status_code == 404


def test_user_validation_errors(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    root_token = _login(identity_client, "root", "root-pass")
    _create_user(identity_client, root_token, "sam", "employee")

    duplicate = identity_client.post(
        "/api/identity/users",
        json={"username": "sam", "password": "x", "role_name": "employee"},
        headers=_auth_header(root_token),
    )
    assert duplicate.status_code == 409
    unknown_role = identity_client.post(
        "/api/identity/users",
        json={"username": "kim", "password": "x", "role_name": "pilot"},
        headers=_auth_header(root_token),
    )
    assert unknown_role.status_code == 422
    assert unknown_role.json()["detail"]["field"] == "role_name"


def test_role_management(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    root_token = _login(identity_client, "root", "root-pass")

    roles = identity_client.get("/api/identity/roles", headers=_auth_header(root_token))
    assert roles.status_code == 200
    assert {item["name"] for item in roles.json()} >= {"superadmin", "admin", "employee", "guest"}

    created = identity_client.post(
        "/api/identity/roles",
        json={
            "name": "dispatcher",
            "level": 3,
            "scope": "operations",
            "base_permissions": ["schedules.read"],
            "inherits_from": "driver",
        },
        headers=_auth_header(root_token),
    )
    assert created.status_code == 201
    assert created.json()["display_name"] == "Dispatcher"

    cyclic = identity_client.patch(
        "/api/identity/roles/driver",
        json={"inherits_from": "dispatcher"},
        headers=_auth_header(root_token),
    )
    assert cyclic.status_code == 422

    admin_id = _create_user(identity_client, root_token, "office_admin", "admin")
    assert admin_id
    admin_token = _login(identity_client, "office_admin", "office_admin-pass")
    denied = identity_client.post(
        "/api/identity/roles",
        json={"name": "shadow_admin", "level": 6},
        headers=_auth_header(admin_token),
    )
    assert denied.status_code == 403


def test_client_crud(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    root_token = _login(identity_client, "root", "root-pass")

    created = identity_client.post(
        "/api/identity/clients",
        json={"name": "Hotel Alameda", "is_corporate": True},
        headers=_auth_header(root_token),
    )
    assert created.status_code == 201
    client_id = created.json()["id"]
    listed = identity_client.get("/api/identity/clients", headers=_auth_header(root_token))
    assert [item["id"] for item in listed.json()] == [client_id]
    updated = identity_client.patch(
        f"/api/identity/clients/{client_id}",
        json={"phone": "+52 415 000 0000"},
        headers=_auth_header(root_token),
    )
    assert updated.json()["phone"] == "+52 415 000 0000"
    removed = identity_client.delete(f"/api/identity/clients/{client_id}", headers=_auth_header(root_token))
    assert removed.status_code == 204
    assert _latest_audit(AuditAction.DELETE.value, "Client").entity_name == "Hotel Alameda"


def test_users_only_manage_lower_roles(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    root_token = _login(identity_client, "root", "root-pass")
    manager_id = _create_user(identity_client, root_token, "lucia", "department_manager")
    employee_id = _create_user(identity_client, root_token, "tomas", "employee")
    admin_id = _create_user(identity_client, root_token, "office_admin", "admin")
    _create_user(identity_client, root_token, "hotel_admin", "client")
    manager_token = _login(identity_client, "lucia", "lucia-pass")

    promoted = identity_client.patch(
        f"/api/identity/users/{manager_id}",
        json={"role_name": "superadmin"},
        headers=_auth_header(manager_token),
    )
    assert promoted.status_code == 403
    current = identity_client.get(f"/api/identity/users/{manager_id}", headers=_auth_header(root_token))
    assert current.json()["role_name"] == "department_manager"
    check = identity_client.post(
        "/api/authz/check",
        json={"user_id": manager_id, "permission": "permissions.emergency"},
        headers=_auth_header(manager_token),
    )
    assert check.json()["has_permission"] is False

    raise_employee = identity_client.patch(
        f"/api/identity/users/{employee_id}",
        json={"role_name": "department_manager"},
        headers=_auth_header(manager_token),
    )
    assert raise_employee.status_code == 403
    reset_admin = identity_client.patch(
        f"/api/identity/users/{admin_id}",
        json={"password": "taken-over"},
        headers=_auth_header(manager_token),
    )
    assert reset_admin.status_code == 403
    reset_employee = identity_client.patch(
        f"/api/identity/users/{employee_id}",
        json={"password": "fresh-pass"},
        headers=_auth_header(manager_token),
    )
    assert reset_employee.status_code == 200
    own_email = identity_client.patch(
        f"/api/identity/users/{manager_id}",
        json={"email": "lucia@amexing.test"},
        headers=_auth_header(manager_token),
    )
    assert own_email.status_code == 200

    client_token = _login(identity_client, "hotel_admin", "hotel_admin-pass")
    minted = identity_client.post(
        "/api/identity/users",
        json={"username": "shadow", "password": "x", "role_name": "superadmin"},
        headers=_auth_header(client_token),
    )
    assert minted.status_code == 403
    _create_user(identity_client, client_token, "hotel_staff", "employee")

    admin_token = _login(identity_client, "office_admin", "office_admin-pass")
    root = identity_client.get("/api/identity/users", headers=_auth_header(root_token)).json()
    root_id = next(item["id"] for item in root if item["username"] == "root")
    removed_root = identity_client.delete(f"/api/identity/users/{root_id}", headers=_auth_header(admin_token))
    assert removed_root.status_code == 403


def test_deleting_a_referenced_user_keeps_their_sessions(identity_client: TestClient) -> None:
    _bootstrap(identity_client)
    root_token = _login(identity_client, "root", "root-pass")
    manager_id = _create_user(identity_client, root_token, "lucia", "department_manager", department_id="ops")
    employee_id = _create_user(identity_client, root_token, "tomas", "employee", department_id="ops")
    manager_token = _login(identity_client, "lucia", "lucia-pass")
    _login(identity_client, "tomas", "tomas-pass")

    delegated = identity_client.post(
        "/api/authz/delegations",
        json={
            "delegator_id": manager_id,
            "delegate_id": employee_id,
            "permissions": ["bookings.approve_team"],
            "reason": "vacation cover",
        },
        headers=_auth_header(manager_token),
    )
    assert delegated.status_code == 201

    refused = identity_client.delete(f"/api/identity/users/{employee_id}", headers=_auth_header(root_token))
    assert refused.status_code == 409
    with Session(db.get_engine()) as session:
        assert len(session.exec(select(AuthSession).where(AuthSession.user_id == employee_id)).all()) == 1
    assert _login(identity_client, "tomas", "tomas-pass")
