"""Typed failure outcomes shared by the stores, engines and HTTP layer."""

from __future__ import annotations


class WgError(Exception):
    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class NotFound(WgError):
    status_code = 404
    default_message = "Not found"


class Unauthenticated(WgError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(WgError):
    status_code = 403
    default_message = "You are not allowed to perform that action."


class Invalid(WgError):
    status_code = 422
    default_message = "Invalid input"


class Unexpected(WgError):
    status_code = 500
