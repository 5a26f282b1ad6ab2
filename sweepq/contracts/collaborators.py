"""
External Collaborator Protocols

The engine never talks to a mail provider, a model, an OAuth server or an
outbound mailer directly. It consumes these narrow interfaces instead, so
concrete adapters live outside this package and tests can use fakes.

Return-value conventions:
- Mailbox and delivery calls signal failure by raising; any exception is
  treated as ExternalCallFailed (claim released, retried next cycle).
- CredentialExchange.refresh raises TerminalRefreshError for revoked grants;
  any other exception is transient.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from sweepq.storage.models import DigestContent


@dataclass(frozen=True)
class InboundMessage:
    """A message pulled from the provider, ready for classification.

    received_at is the message's own timestamp; cleanup age is computed from it.
    """

    id: str
    received_at: datetime
    sender: str = ""
    subject: str = ""
    body: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class ClassificationResult:
    """Output of one classifier call. token_cost is charged whether or not it is confident."""

    category: str
    confidence: float
    token_cost: int
    used_heuristics: bool = False


@dataclass(frozen=True)
class RefreshedCredentials:
    access_token: str
    expires_at: datetime


class Classifier(Protocol):
    def classify(self, message: InboundMessage) -> ClassificationResult: ...


class MessageSource(Protocol):
    """Lists the user's messages that still need processing."""

    def fetch_messages(self, user_email: str, access_token: str) -> list[InboundMessage]: ...


class MailboxClient(Protocol):
    def apply_labels(self, message_id: str, add: list[str], remove: list[str]) -> None: ...

    def archive(self, message_id: str) -> None: ...

    def delete(self, message_id: str) -> None: ...


class CredentialExchange(Protocol):
    def refresh(self, refresh_token: str) -> RefreshedCredentials: ...


class DigestSender(Protocol):
    def send(self, user_id: int, content: DigestContent) -> None: ...
