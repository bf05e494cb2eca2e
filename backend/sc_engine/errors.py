"""
SC Engine - Error Classes

Every domain failure maps to one class. Each class carries the HTTP status it
is rendered with and the severity used for the audit log, so routers and
scheduled jobs report failures the same way.
"""
from typing import Any, Dict, Optional


class SCEngineError(Exception):
    """Base class for all SC Engine failures."""

    status_code = 500
    severity = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SCEngineError):
    """Malformed payload or missing required fields. Whole request rejected."""

    status_code = 400
    severity = "warning"


class AuthorizationError(SCEngineError):
    """Unknown/disabled peer or insufficient role."""

    status_code = 403
    severity = "warning"


class IntegrityError(SCEngineError):
    """
    Content-hash mismatch, signature failure or clock skew.

    Always recorded as a security event in addition to the system log.
    `reason` is one of: hash_mismatch, bad_signature, clock_skew.
    """

    status_code = 403
    severity = "security"

    def __init__(
        self,
        message: str,
        reason: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.reason = reason
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(SCEngineError):
    """Missing policy, wallet or proposal. A broken precondition, not user input."""

    status_code = 500


class ConfigurationError(SCEngineError):
    """Node is missing required configuration (e.g. signing key)."""

    status_code = 500


class PreconditionError(SCEngineError):
    """Operation not allowed in the current state. No side effects, no retry."""

    status_code = 409
    severity = "warning"


class TransientError(SCEngineError):
    """Peer unreachable or data source timeout. Captured per item."""

    status_code = 503
    severity = "warning"
