"""
Alerts Package.

Durable alert ledger: debounce, creation, lifecycle and history.
"""

from .ledger import (
    AlertLedger,
    build_title,
    build_description,
)


__all__ = [
    "AlertLedger",
    "build_title",
    "build_description",
]
