"""Shared utilities for CrowdSafe services."""
from .pii import hash_pii, configure_pii_salt
from .timestamps import utcnow, format_timestamp, parse_timestamp

__all__ = [
    "hash_pii",
    "configure_pii_salt",
    "utcnow",
    "format_timestamp",
    "parse_timestamp",
]
