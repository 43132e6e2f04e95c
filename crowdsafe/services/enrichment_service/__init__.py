"""Enrichment Service: automated risk assessment of observations.

Provides:
- EnrichmentPipeline: claim, corridor context, reasoning call, commit
- EnrichmentDispatcher: snapshot-driven triggering with a local ledger
- Error taxonomy recorded in ``aiError`` on failure
"""

from .errors import (
    EmptyResponseError,
    EnrichmentError,
    EnrichmentErrorCode,
    InsightParseError,
)
from .pipeline import (
    EnrichmentOutcome,
    EnrichmentPipeline,
    OutcomeStatus,
    RetryPolicy,
    create_enrichment_pipeline,
)
from .dispatcher import EnrichmentDispatcher

__all__ = [
    "EmptyResponseError",
    "EnrichmentError",
    "EnrichmentErrorCode",
    "InsightParseError",
    "EnrichmentOutcome",
    "EnrichmentPipeline",
    "OutcomeStatus",
    "RetryPolicy",
    "create_enrichment_pipeline",
    "EnrichmentDispatcher",
]
