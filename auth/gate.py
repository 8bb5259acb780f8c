"""
auth/gate.py -- Per-request authentication pipeline.

    extract -> validate (access) -> load user -> active? -> Identity

Credential sources, in priority order:
  1. "<header>: Bearer <token>" (Authorization by default) -- API clients.
  2. Access-token cookie (access_token by default) -- browser clients.

Every failure before the active-check collapses to Unauthenticated:
no credential, malformed token, bad signature, expired token, unknown user.
A caller cannot tell these apart; the log can. A deactivated account is the
one distinguishable outcome (AccountDeactivated) and only reachable with a
validly signed, unexpired token for that account.

Transport-agnostic: takes plain mappings, so the FastAPI dependency in
auth/dependencies.py and any other binding share one implementation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from auth.errors import AccountDeactivated, TokenError, Unauthenticated
from auth.models import Identity
from auth.store import AuthRepository
from auth.tokens import ACCESS, TokenIssuer

logger = logging.getLogger("retailmaster.auth.gate")

_BEARER_PREFIX = "bearer "


def extract_token(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    header_name: str = "Authorization",
    cookie_name: str = "access_token",
) -> str | None:
    """Return the bearer credential from the header, else the cookie, else None.

    The scheme match is case-insensitive ("Bearer", "bearer"). A header with
    any other scheme is ignored and the cookie is consulted.
    """
    header = headers.get(header_name) or ""
    if header[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        token = header[len(_BEARER_PREFIX) :].strip()
        if token:
            return token
    token = cookies.get(cookie_name) or ""
    return token.strip() or None


class AuthenticationGate:
    """Resolve an inbound access token to an Identity."""

    def __init__(
        self,
        issuer: TokenIssuer,
        repository: AuthRepository,
        header_name: str = "Authorization",
        cookie_name: str = "access_token",
    ) -> None:
        self.issuer = issuer
        self.repository = repository
        self.header_name = header_name
        self.cookie_name = cookie_name

    def authenticate_request(self, headers: Mapping[str, str], cookies: Mapping[str, str]) -> Identity:
        token = extract_token(headers, cookies, self.header_name, self.cookie_name)
        if token is None:
            logger.debug("Request rejected: no credential presented")
            raise Unauthenticated()
        return self.authenticate_token(token)

    def authenticate_token(self, token: str) -> Identity:
        try:
            claims = self.issuer.validate(token, ACCESS)
        except TokenError as exc:
            logger.info("Request rejected: access token %s", exc.code)
            raise Unauthenticated() from None

        user = self.repository.get_by_id(claims.user_id)
        if user is None:
            logger.info("Request rejected: token subject user_id=%s not found", claims.user_id)
            raise Unauthenticated()
        if not user.is_active:
            logger.info("Request rejected: user_id=%s is deactivated", user.id)
            raise AccountDeactivated()

        # Role and email come from the stored user, not the token, so a role
        # change takes effect on the next request rather than at token expiry.
        return Identity(id=user.id, email=user.email, role=user.role, is_active=user.is_active)
