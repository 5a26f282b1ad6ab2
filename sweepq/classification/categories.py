"""
Built-in categories and the category namespace rules.

Built-in names are reserved: a user-defined category may not reuse one,
compared case-insensitively after trimming. Everything else is compared
exactly as stored.
"""

from __future__ import annotations

from typing import Final

PROMOTIONS: Final = "PROMOTIONS"
SOCIAL: Final = "SOCIAL"
UPDATES: Final = "UPDATES"
NEWSLETTERS: Final = "NEWSLETTERS"
RECEIPTS: Final = "RECEIPTS"
SECURITY_ALERTS: Final = "SECURITY_ALERTS"
VERIFICATION_CODES: Final = "VERIFICATION_CODES"
PERSONAL: Final = "PERSONAL"
# Assigned when the classifier is not confident enough
UNKNOWN: Final = "UNKNOWN"

BUILTIN_CATEGORIES: Final[frozenset[str]] = frozenset(
    {
        PROMOTIONS,
        SOCIAL,
        UPDATES,
        NEWSLETTERS,
        RECEIPTS,
        SECURITY_ALERTS,
        VERIFICATION_CODES,
        PERSONAL,
        UNKNOWN,
    }
)

_RESERVED: Final[frozenset[str]] = frozenset(name.casefold() for name in BUILTIN_CATEGORIES)

LABEL_PREFIX: Final = "sweepq/"
INBOX_LABEL: Final = "INBOX"
TRASH_LABEL: Final = "TRASH"


def normalize_category(category: str) -> str:
    return category.strip().casefold()


def is_reserved(category: str) -> bool:
    """True if the name collides with a built-in category."""
    return normalize_category(category) in _RESERVED


def label_for(category: str) -> str:
    """Mailbox label applied to messages of this category."""
    return f"{LABEL_PREFIX}{category}"
