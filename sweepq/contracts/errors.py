"""
Error taxonomy for the cleanup engine.

All failures are scoped to one user or one message; none of these are
process-fatal. Duplicate messages and unknown categories are deliberately
not exceptions: they surface as AlreadyProcessed and as the safe fallback
policy respectively.
"""

from __future__ import annotations


class SweepqError(Exception):
    """Base class for engine errors"""


class QuotaExceededError(SweepqError):
    """User's token budget for the current period is spent.

    Halts further classification for the user until the period rolls over;
    already committed cleanup continues.
    """

    def __init__(self, user_email: str, reason: str):
        super().__init__(f"Token quota exceeded: {reason}")
        self.user_email = user_email
        self.reason = reason


class NeedsReauthenticationError(SweepqError):
    """User's credentials are unusable until a human re-links the account"""

    def __init__(self, user_email: str):
        super().__init__("Account needs reauthentication")
        self.user_email = user_email


class TerminalRefreshError(SweepqError):
    """Raised by the credential exchange collaborator when the grant is revoked or invalid.

    Any other exception from a refresh call is treated as transient.
    """


class ExternalCallFailedError(SweepqError):
    """A collaborator call (classifier, mailbox, delivery) failed; safe to retry next cycle"""

    def __init__(self, operation: str, cause: BaseException | str | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"External call '{operation}' failed{detail}")
        self.operation = operation
        self.cause = cause


class CategoryConflictError(SweepqError):
    """Custom category collides with a built-in or existing custom category name"""


class CredentialEncryptionError(SweepqError):
    """Raised when credential encryption/decryption fails"""


class NotFoundError(SweepqError):
    """Referenced user or record does not exist"""
