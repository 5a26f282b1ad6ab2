"""Sweepq - rule resolution and quota-gated cleanup engine for email triage"""

from __future__ import annotations

__version__ = "0.1.0"
