"""
api/routes/v1/users.py -- User management REST endpoints.

Routes:
  GET    /api/v1/users          -- list users            (manage_users)
  POST   /api/v1/users          -- create user, any role (manage_users)
  GET    /api/v1/users/{id}     -- read one user         (owner or admin)
  PATCH  /api/v1/users/{id}     -- update                (owner: username/email; admin: all)
  DELETE /api/v1/users/{id}     -- delete                (admin; never the last admin)

The permission checks and the account invariants (no self-deactivation, the
last admin stays) live in AuthService, so they hold for any caller. The
route-level Depends(require_permission(...)) is a fast reject before any
body parsing or storage work.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import UserCreate, UserPatch, UserResponse
from auth.dependencies import get_auth_service, get_identity, require_admin, require_permission
from auth.models import Identity
from auth.policy import Permission

router = APIRouter()

_manage_users = require_permission(Permission.MANAGE_USERS)


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, identity: Identity = Depends(_manage_users)) -> list[UserResponse]:
    users = get_auth_service(request).list_users(identity)
    return [UserResponse.from_user(u) for u in users]


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate, identity: Identity = Depends(_manage_users)) -> UserResponse:
    user = get_auth_service(request).create_user(identity, body.username, body.email, body.password, body.role)
    return UserResponse.from_user(user)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, identity: Identity = Depends(get_identity)) -> UserResponse:
    """Owners may read their own record; admins may read any record."""
    user = get_auth_service(request).get_user(identity, user_id)
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    identity: Identity = Depends(get_identity),
) -> UserResponse:
    changes = body.model_dump(exclude_unset=True)
    user = get_auth_service(request).update_user(identity, user_id, **changes)
    return UserResponse.from_user(user)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: int, identity: Identity = Depends(require_admin)) -> Response:
    get_auth_service(request).delete_user(identity, user_id)
    return Response(status_code=204)
