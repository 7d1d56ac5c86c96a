"""
oauth_errors.py: Error taxonomy shared by the OAuth2 server and bearer checks.

Protocol code raises OAuthError; the HTTP layer turns it into a status code
and an RFC 6749 style ``{"error": ..., "error_description": ...}`` body.
"""

from enum import Enum


class ErrorKind(Enum):
    INVALID_REQUEST = ("invalid_request", 400)
    INVALID_CLIENT = ("invalid_client", 401)
    INVALID_GRANT = ("invalid_grant", 400)
    INVALID_TARGET = ("invalid_target", 400)
    UNSUPPORTED_GRANT_TYPE = ("unsupported_grant_type", 400)
    MISSING_TOKEN = ("missing_token", 401)
    INVALID_OR_EXPIRED_TOKEN = ("invalid_or_expired_token", 401)
    NO_SUBJECT = ("no_subject", 401)
    SERVER_ERROR = ("server_error", 500)

    def __init__(self, code: str, status: int):
        self.code = code
        self.status = status


class OAuthError(Exception):
    def __init__(self, kind: ErrorKind, description: str | None = None):
        super().__init__(description or kind.code)
        self.kind = kind
        self.description = description

    @property
    def status(self) -> int:
        return self.kind.status

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.kind.code}
        if self.description:
            body["error_description"] = self.description
        return body


class HatenaOAuthError(Exception):
    """The upstream provider rejected a call or answered with garbage."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body
