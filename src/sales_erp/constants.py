"""Identifiers shared across the sales backend.

Entity kinds double as cache key prefixes, so the enum values must stay
lower-case and stable: renaming one orphans every cached entry of that kind.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Uniform expiry applied to every cache entry written by the services.
CACHE_TTL_SECONDS = 3600

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

# Requests accepted per client address in each rate limit window.
RATE_LIMIT_REQUESTS = 1000
RATE_LIMIT_WINDOW_SECONDS = 60

# Smallest monetary step stored in NUMERIC(10, 2) columns.
MONEY_QUANTUM = Decimal("0.01")

RECEIPT_CONTENT_TYPE = "text/html"
RECEIPT_EMAIL_SUBJECT = "Your purchase receipt"


class EntityKind(str, Enum):
    """Enumerate the persisted record types and their cache prefixes."""

    PRODUCT = "product"
    CUSTOMER = "customer"
    BILL = "bill"
    SALE_LINE = "saleline"

    @property
    def label(self) -> str:
        """Human readable name used in error messages."""
        return {
            EntityKind.PRODUCT: "Product",
            EntityKind.CUSTOMER: "Customer",
            EntityKind.BILL: "Bill",
            EntityKind.SALE_LINE: "Sale line",
        }[self]


class ResponseStatus(str, Enum):
    """Enumerate the ``status`` values written into response envelopes."""

    OK = "OK"
    CREATED = "CREATED"
    ERROR = "ERROR"


__all__ = [
    "CACHE_TTL_SECONDS",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "MONEY_QUANTUM",
    "RATE_LIMIT_REQUESTS",
    "RATE_LIMIT_WINDOW_SECONDS",
    "RECEIPT_CONTENT_TYPE",
    "RECEIPT_EMAIL_SUBJECT",
    "EntityKind",
    "ResponseStatus",
]
