"""Error taxonomy shared by the approval engine and the encryption layer.

Callers map these to transport-level responses (see ``safee.api.errors``).
``retryable`` tells a caller or worker whether repeating the same call may
succeed without changing its inputs.
"""

from typing import Any, Dict, Optional


class SafeeError(Exception):
    """Base class for all domain errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class NotFoundError(SafeeError):
    """Workflow, request, step, key or metadata does not exist."""

    code = "not_found"


class ConflictError(SafeeError):
    """State changed underneath the caller, or the action was already taken."""

    code = "conflict"
    retryable = True


class ValidationError(SafeeError):
    """Malformed input or unsupported configuration."""

    code = "validation_error"


class PermissionDeniedError(SafeeError):
    """Actor lacks the permission a transition requires."""

    code = "permission_denied"

    def __init__(self, required_permission: str):
        super().__init__(f"Permission denied: requires {required_permission}")
        self.required_permission = required_permission


class AuthenticationFailure(SafeeError):
    """Key unwrap or AEAD tag check failed.

    The message is fixed: a wrong passphrase and a tampered ciphertext
    must be indistinguishable to the caller. Never retried automatically.
    """

    code = "authentication_failed"
    retryable = False
    MESSAGE = "Unable to unlock encryption key"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.MESSAGE)


class KeyUnavailableError(SafeeError):
    """The key version recorded for a file no longer exists."""

    code = "key_unavailable"


class OperationFailed(SafeeError):
    """Unexpected backend failure; the operation was rolled back."""

    code = "operation_failed"
    retryable = True
