from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from app.api.deps import Actor, handle_authz_error, require_perm
from app.domain.errors import AuthzError
from app.domain.models import (
    BootstrapRequest,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    DevLoginRequest,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.domain.permissions import Perm
from app.infra.auth import create_access_token
from app.services.identity_service import IdentityService
from app.services.role_catalog_service import RoleCatalogService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


def get_role_catalog_service() -> RoleCatalogService:
    return RoleCatalogService()


Service = Annotated[IdentityService, Depends(get_identity_service)]
Catalog = Annotated[RoleCatalogService, Depends(get_role_catalog_service)]


@router.post("/bootstrap", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap(payload: BootstrapRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap(payload)
    except AuthzError as exc:
        handle_authz_error(exc)
    return UserRead.model_validate(user)


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user, auth_session = service.dev_login(payload)
    except AuthzError as exc:
        handle_authz_error(exc)
    token = create_access_token(user_id=user.id, session_id=auth_session.id, username=user.username)
    return TokenResponse(access_token=token, session_id=auth_session.id)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.USERS_CREATE))],
)
def create_user(payload: UserCreate, actor: Actor, service: Service) -> UserRead:
    try:
        user = service.create_user(payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return UserRead.model_validate(user)


@router.get(
    "/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(Perm.USERS_READ))],
)
def list_users(actor: Actor, service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users(actor=actor)]


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(Perm.USERS_READ))],
)
def get_user(user_id: str, actor: Actor, service: Service) -> UserRead:
    try:
        user = service.get_user(user_id, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return UserRead.model_validate(user)


@router.patch(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(Perm.USERS_UPDATE))],
)
def update_user(user_id: str, payload: UserUpdate, actor: Actor, service: Service) -> UserRead:
    try:
        user = service.update_user(user_id, payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return UserRead.model_validate(user)


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(Perm.USERS_DELETE))],
)
def delete_user(user_id: str, actor: Actor, service: Service) -> Response:
    try:
        service.delete_user(user_id, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/roles",
    response_model=list[RoleRead],
    dependencies=[Depends(require_perm(Perm.PERMISSIONS_READ))],
)
def list_roles(catalog: Catalog) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in catalog.list_roles()]


@router.post(
    "/roles",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.ROLES_MANAGE))],
)
def create_role(payload: RoleCreate, actor: Actor, catalog: Catalog) -> RoleRead:
    try:
        role = catalog.create_role(payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return RoleRead.model_validate(role)


@router.patch(
    "/roles/{role_name}",
    response_model=RoleRead,
    dependencies=[Depends(require_perm(Perm.ROLES_MANAGE))],
)
def update_role(role_name: str, payload: RoleUpdate, actor: Actor, catalog: Catalog) -> RoleRead:
    try:
        role = catalog.update_role(role_name, payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return RoleRead.model_validate(role)


@router.post(
    "/clients",
    response_model=ClientRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(Perm.CLIENTS_CREATE))],
)
def create_client(payload: ClientCreate, actor: Actor, service: Service) -> ClientRead:
    try:
        client = service.create_client(payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return ClientRead.model_validate(client)


@router.get(
    "/clients",
    response_model=list[ClientRead],
    dependencies=[Depends(require_perm(Perm.CLIENTS_READ))],
)
def list_clients(actor: Actor, service: Service) -> list[ClientRead]:
    return [ClientRead.model_validate(item) for item in service.list_clients(actor=actor)]


@router.get(
    "/clients/{client_id}",
    response_model=ClientRead,
    dependencies=[Depends(require_perm(Perm.CLIENTS_READ))],
)
def get_client(client_id: str, actor: Actor, service: Service) -> ClientRead:
    try:
        client = service.get_client(client_id, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return ClientRead.model_validate(client)


@router.patch(
    "/clients/{client_id}",
    response_model=ClientRead,
    dependencies=[Depends(require_perm(Perm.CLIENTS_UPDATE))],
)
def update_client(client_id: str, payload: ClientUpdate, actor: Actor, service: Service) -> ClientRead:
    try:
        client = service.update_client(client_id, payload, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return ClientRead.model_validate(client)


@router.delete(
    "/clients/{client_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(Perm.CLIENTS_DELETE))],
)
def delete_client(client_id: str, actor: Actor, service: Service) -> Response:
    try:
        service.delete_client(client_id, actor=actor)
    except AuthzError as exc:
        handle_authz_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
