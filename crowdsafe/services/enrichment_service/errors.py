"""Enrichment failure taxonomy.

The code is what lands in ``aiError`` on a FAILED observation; the
exception message lands in ``aiErrorDetail``.
"""
from enum import Enum


class EnrichmentErrorCode(Enum):
    """Why an enrichment run ended FAILED."""
    NO_WAYPOINT = "NO_WAYPOINT"                # Observation lacks a resolvable waypoint
    NO_PATHS = "NO_PATHS"                      # Waypoint has no outgoing corridors
    SERVICE_ERROR = "SERVICE_ERROR"            # Reasoning service failed every attempt
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"  # Response was not a usable insight
    MISSING_API_KEY = "MISSING_API_KEY"        # No reasoning client configured
    INTERNAL_ERROR = "INTERNAL_ERROR"


class EnrichmentError(Exception):
    """Base error carrying the code recorded on the observation."""

    code = EnrichmentErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: EnrichmentErrorCode = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class InsightParseError(EnrichmentError):
    """Reasoning output could not be parsed into an AIInsight."""
    code = EnrichmentErrorCode.MALFORMED_RESPONSE


class EmptyResponseError(EnrichmentError):
    """Reasoning service returned no text."""
    code = EnrichmentErrorCode.SERVICE_ERROR
