"""
auth/csrf.py -- Double-submit cookie CSRF guard.

The guard issues a random token in an HttpOnly, SameSite=Strict cookie and
returns the same value in the GET /api/v1/auth/csrf body. A mutating request
passes when the X-CSRF-Token header (or the csrf_token form field) equals
the cookie, compared in constant time. A cross-site attacker can make the
browser send the cookie but cannot read it to forge the matching header.

Only cookie-authenticated requests need the check; bearer-token clients are
not exposed to ambient-credential CSRF. That policy lives in
auth/dependencies.py, not here.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from auth.manager import resolve_client_ip
from auth.tokens import constant_time_equals, random_token
from core.config import Settings

logger = logging.getLogger("admingate.auth.csrf")

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class CSRFGuard:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.csrf_enabled

    @staticmethod
    def generate_token() -> str:
        """64 hex characters (32 random bytes)."""
        return random_token(32)

    def get_or_create_token(self, request: Request, response: Response) -> str:
        """Return the request's CSRF cookie value, minting and setting one if absent."""
        existing = request.cookies.get(self._settings.csrf_cookie_name, "")
        if existing:
            return existing
        token = self.generate_token()
        self.set_cookie(response, token)
        return token

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self._settings.csrf_cookie_name,
            value=token,
            path="/",
            httponly=True,
            secure=self._settings.cookie_secure,
            samesite="strict",
        )

    def validate_token(self, cookie_value: str, submitted: str) -> bool:
        if not self.enabled:
            return True
        if not cookie_value or not submitted:
            return False
        return constant_time_equals(cookie_value, submitted)

    async def validate_request(self, request: Request) -> bool:
        """Check the submitted token (header, then form field) against the cookie."""
        if not self.enabled:
            return True
        cookie_value = request.cookies.get(self._settings.csrf_cookie_name, "")
        submitted = request.headers.get(self._settings.csrf_header_name, "")
        if not submitted and request.headers.get("content-type", "").startswith(_FORM_CONTENT_TYPES):
            form = await request.form()
            value = form.get(self._settings.csrf_field_name)
            submitted = value if isinstance(value, str) else ""
        if self.validate_token(cookie_value, submitted):
            return True
        client_ip = resolve_client_ip(
            request.headers.get("X-Forwarded-For"),
            request.headers.get("X-Real-IP"),
            request.client.host if request.client else "",
        )
        reason = "missing cookie" if not cookie_value else "token mismatch"
        logger.warning("CSRF violation (%s) from %s on %s %s", reason, client_ip, request.method, request.url.path)
        return False
