"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

get_identity() runs the AuthenticationGate against the request's headers
and cookies and returns the typed Identity. Handlers receive it as a
parameter; nothing is attached to the request object.

require_admin() and require_permission(...) compose the AuthorizationPolicy
guards on top of get_identity().

These helpers raise the auth/ exception taxonomy (Unauthenticated,
Forbidden, AccountDeactivated). api/main.py registers one exception handler
that maps the taxonomy to status codes, so the mapping lives in one place.

Layer rule: may import from fastapi (this module is part of the FastAPI
dependency injection system). No imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth import policy
from auth.models import Identity
from auth.policy import Permission
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_identity(request: Request) -> Identity:
    """Require authentication. Raises Unauthenticated / AccountDeactivated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    service = get_auth_service(request)
    return service.authenticate_request(request.headers, request.cookies)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    return policy.require_admin(identity)


def require_permission(permission: Permission | str) -> Callable[[Identity], Identity]:
    """Build a dependency that requires the given permission.

        @router.get("/users", dependencies=[Depends(require_permission(Permission.MANAGE_USERS))])
    """

    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        return policy.require_permission(identity, permission)

    return dependency
