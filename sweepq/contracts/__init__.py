"""
Type Contracts for sweepq

Protocol-based contracts for the engine's external collaborators (classifier,
message source, mailbox, credential exchange, digest delivery) and the error
taxonomy shared by every component.

Re-exports for convenience:
"""

from sweepq.contracts.collaborators import (
    ClassificationResult,
    Classifier,
    CredentialExchange,
    DigestSender,
    InboundMessage,
    MailboxClient,
    MessageSource,
    RefreshedCredentials,
)
from sweepq.contracts.errors import (
    CategoryConflictError,
    CredentialEncryptionError,
    ExternalCallFailedError,
    NeedsReauthenticationError,
    NotFoundError,
    QuotaExceededError,
    SweepqError,
    TerminalRefreshError,
)

__all__ = [
    # Collaborator protocols
    "Classifier",
    "CredentialExchange",
    "DigestSender",
    "MailboxClient",
    "MessageSource",
    # Value types
    "ClassificationResult",
    "InboundMessage",
    "RefreshedCredentials",
    # Errors
    "CategoryConflictError",
    "CredentialEncryptionError",
    "ExternalCallFailedError",
    "NeedsReauthenticationError",
    "NotFoundError",
    "QuotaExceededError",
    "SweepqError",
    "TerminalRefreshError",
]
