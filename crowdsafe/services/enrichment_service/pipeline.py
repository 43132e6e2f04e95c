"""AI enrichment pipeline.

Turns one raw observation into an AI risk assessment:

    claim -> resolve waypoint -> corridor context -> prompt
          -> reasoning service (retried) -> parse -> commit

The claim is a compare-and-swap on ``aiStatus`` so that any number of
clients may trigger the same observation and exactly one performs the
reasoning call. The final DONE/FAILED write is guarded by the claim token,
so a run that lost its claim to a stale-claim reclaim cannot overwrite the
newer holder.

``process`` never raises. Every failure ends as ``aiStatus=FAILED`` with a
code in ``aiError``; admins then author instructions manually.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from crowdsafe.services.audit_service import AuditAction, AuditLogger, AuditWriteError
from crowdsafe.services.incident_service.lifecycle import SYSTEM_ACTOR
from crowdsafe.services.llm_service import (
    BaseLLM,
    LLMConfig,
    MissingCredentialError,
    create_llm,
)
from crowdsafe.services.waypoint_service import WaypointGraph
from crowdsafe.shared.config import EngineConfig
from crowdsafe.shared.database import (
    DELETE_FIELD,
    OBSERVATIONS,
    WAYPOINTS,
    DocumentStore,
    StoreError,
)
from crowdsafe.shared.models import AIInsight, AIStatus, Observation
from crowdsafe.shared.utils import format_timestamp, parse_timestamp, utcnow

from .errors import EmptyResponseError, EnrichmentError, EnrichmentErrorCode
from .prompts import SYSTEM_PROMPT, build_incident_prompt, mentions_danger
from .response_parser import parse_insight

logger = logging.getLogger(__name__)

# aiStatus values a fresh claim may start from; None is an absent field
CLAIMABLE_AI_STATUSES = (None, AIStatus.PENDING.value)


class OutcomeStatus(Enum):
    """Result of one process() call."""
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"  # Lost the claim, or nothing to do


@dataclass(frozen=True)
class EnrichmentOutcome:
    observation_id: str
    status: OutcomeStatus
    insight: Optional[AIInsight] = None
    error_code: Optional[EnrichmentErrorCode] = None
    attempts: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Reasoning-service retry: the wait after attempt n is base * n."""
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_base_seconds * attempt


class EnrichmentPipeline:
    """Claims and enriches observations one at a time."""

    def __init__(
        self,
        store: DocumentStore,
        llm: Optional[BaseLLM],
        audit_logger: AuditLogger,
        retry_policy: Optional[RetryPolicy] = None,
        max_depth: int = 2,
        processing_timeout_seconds: int = 600,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize pipeline with dependencies.

        Args:
            store: Shared document store
            llm: Reasoning-service client; None when no credential is configured
            audit_logger: Audit trail writer
            retry_policy: Attempts and backoff for the reasoning call
            max_depth: Hop bound for corridor enumeration
            processing_timeout_seconds: Age after which a PROCESSING claim
                is considered abandoned and may be reclaimed
            sleep: Awaitable used for backoff (replaced in tests)
            clock: Source of the current time
        """
        self.store = store
        self.llm = llm
        self.audit_logger = audit_logger
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_depth = max_depth
        self.processing_timeout = timedelta(seconds=processing_timeout_seconds)
        self.sleep = sleep
        self.clock = clock

        logger.info(
            "ENRICHMENT_PIPELINE_INITIALIZED",
            extra={
                "llm_configured": llm is not None,
                "max_attempts": self.retry_policy.max_attempts,
                "max_depth": max_depth,
            }
        )

    async def process(self, observation_id: str) -> EnrichmentOutcome:
        """Enrich one observation if this caller wins the claim.

        Args:
            observation_id: Observation to enrich

        Returns:
            EnrichmentOutcome; SKIPPED when another caller owns the work

        Logs:
            - ENRICHMENT_CLAIMED / ENRICHMENT_SKIPPED
            - ENRICHMENT_ATTEMPT_FAILED: Per failed reasoning attempt
            - ENRICHMENT_SUCCEEDED / ENRICHMENT_FAILED
        """
        if self.llm is None:
            return await self._fail_unconfigured(observation_id)

        try:
            claim_id = await self._claim(observation_id)
        except StoreError as e:
            logger.error(
                "ENRICHMENT_CLAIM_FAILED",
                extra={"observation_id": observation_id, "error": str(e)}
            )
            return EnrichmentOutcome(observation_id, OutcomeStatus.SKIPPED)

        if claim_id is None:
            logger.debug("ENRICHMENT_SKIPPED", extra={"observation_id": observation_id})
            return EnrichmentOutcome(observation_id, OutcomeStatus.SKIPPED)

        attempts = 0
        try:
            observation = await self._load_observation(observation_id)
            corridors = await self._corridors(observation)

            prompt = build_incident_prompt(
                observation.crowd_level.value,
                observation.message,
                corridors,
            )
            text, attempts = await self._invoke_with_retry(observation_id, prompt)
            insight = parse_insight(text)
        except EnrichmentError as e:
            await self._record_failure(observation_id, claim_id, e.code, str(e))
            return EnrichmentOutcome(observation_id, OutcomeStatus.FAILED, error_code=e.code, attempts=attempts)
        except Exception as e:
            logger.exception(
                "ENRICHMENT_UNEXPECTED_ERROR",
                extra={"observation_id": observation_id, "error": str(e)}
            )
            await self._record_failure(
                observation_id, claim_id, EnrichmentErrorCode.INTERNAL_ERROR, str(e)
            )
            return EnrichmentOutcome(
                observation_id,
                OutcomeStatus.FAILED,
                error_code=EnrichmentErrorCode.INTERNAL_ERROR,
                attempts=attempts,
            )

        return await self._record_success(observation, claim_id, insight, attempts)

    async def _claim(self, observation_id: str) -> Optional[str]:
        """Compare-and-swap aiStatus to PROCESSING.

        Returns:
            The new claim token, or None if another caller holds the work
        """
        claim_id = uuid.uuid4().hex
        now = self.clock()
        changes = {
            "aiStatus": AIStatus.PROCESSING.value,
            "aiClaimId": claim_id,
            "aiClaimedAt": format_timestamp(now),
        }

        if await self.store.update(
            OBSERVATIONS,
            observation_id,
            changes,
            precondition={"aiStatus": CLAIMABLE_AI_STATUSES},
        ):
            logger.info(
                "ENRICHMENT_CLAIMED",
                extra={"observation_id": observation_id, "claim_id": claim_id}
            )
            return claim_id

        snapshot = await self.store.get(OBSERVATIONS, observation_id)
        if snapshot is None or snapshot.get("aiStatus") != AIStatus.PROCESSING.value:
            return None
        if not self._is_stale(snapshot.get("aiClaimedAt"), now):
            return None

        # Abandoned claim: take it over only if nobody else did first
        previous_claim = snapshot.get("aiClaimId")
        if await self.store.update(
            OBSERVATIONS,
            observation_id,
            changes,
            precondition={
                "aiStatus": (AIStatus.PROCESSING.value,),
                "aiClaimId": (previous_claim,),
            },
        ):
            logger.warning(
                "ENRICHMENT_RECLAIMED",
                extra={
                    "observation_id": observation_id,
                    "claim_id": claim_id,
                    "previous_claim_id": previous_claim,
                    "claimed_at": snapshot.get("aiClaimedAt"),
                }
            )
            return claim_id
        return None

    def _is_stale(self, claimed_at: Optional[str], now: datetime) -> bool:
        if not claimed_at:
            return True
        try:
            return now - parse_timestamp(claimed_at) >= self.processing_timeout
        except ValueError:
            return True

    async def _load_observation(self, observation_id: str) -> Observation:
        snapshot = await self.store.get(OBSERVATIONS, observation_id)
        if snapshot is None:
            raise EnrichmentError(f"Observation {observation_id} disappeared")
        return Observation.from_document(snapshot.id, snapshot.data)

    async def _corridors(self, observation: Observation) -> Tuple[str, ...]:
        """Evacuation corridors from the observation's waypoint, by name."""
        if not observation.waypoint_id:
            raise EnrichmentError(
                "Observation has no waypoint", EnrichmentErrorCode.NO_WAYPOINT
            )

        graph = WaypointGraph.from_snapshots(await self.store.query(WAYPOINTS))
        if observation.waypoint_id not in graph:
            raise EnrichmentError(
                f"Waypoint {observation.waypoint_id} not found",
                EnrichmentErrorCode.NO_WAYPOINT,
            )

        paths = graph.find_paths(observation.waypoint_id, self.max_depth)
        if not paths:
            raise EnrichmentError(
                f"No paths found from waypoint {observation.waypoint_id}",
                EnrichmentErrorCode.NO_PATHS,
            )

        logger.debug(
            "ENRICHMENT_CONTEXT_BUILT",
            extra={
                "observation_id": observation.observation_id,
                "waypoint_id": observation.waypoint_id,
                "path_count": len(paths),
                "danger_keywords": mentions_danger(observation.message),
            }
        )
        return tuple(graph.describe_path(p) for p in paths)

    async def _invoke_with_retry(self, observation_id: str, prompt: str) -> Tuple[str, int]:
        """Call the reasoning service until a non-empty response arrives.

        Returns:
            (response text, attempts used)

        Raises:
            EnrichmentError: SERVICE_ERROR once every attempt has failed
        """
        max_attempts = self.retry_policy.max_attempts
        last_error: Exception = EmptyResponseError("Reasoning service was not called")

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self.llm.generate(prompt, system_prompt=SYSTEM_PROMPT)
                if response.text and response.text.strip():
                    return response.text, attempt
                last_error = EmptyResponseError("Reasoning service returned an empty response")
            except Exception as e:
                last_error = e

            logger.warning(
                "ENRICHMENT_ATTEMPT_FAILED",
                extra={
                    "observation_id": observation_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(last_error),
                }
            )
            if attempt < max_attempts:
                await self.sleep(self.retry_policy.delay_for(attempt))

        raise EnrichmentError(
            f"Reasoning service failed after {max_attempts} attempts: {last_error}",
            EnrichmentErrorCode.SERVICE_ERROR,
        ) from last_error

    async def _record_success(
        self,
        observation: Observation,
        claim_id: str,
        insight: AIInsight,
        attempts: int,
    ) -> EnrichmentOutcome:
        observation_id = observation.observation_id
        try:
            applied = await self.store.update(
                OBSERVATIONS,
                observation_id,
                {
                    "aiInsight": insight.to_document(),
                    "aiStatus": AIStatus.DONE.value,
                    "aiError": DELETE_FIELD,
                    "aiErrorDetail": DELETE_FIELD,
                },
                precondition={"aiClaimId": (claim_id,)},
            )
        except StoreError as e:
            logger.error(
                "ENRICHMENT_COMMIT_FAILED",
                extra={"observation_id": observation_id, "error": str(e)}
            )
            return EnrichmentOutcome(
                observation_id,
                OutcomeStatus.FAILED,
                error_code=EnrichmentErrorCode.INTERNAL_ERROR,
                attempts=attempts,
            )

        if not applied:
            logger.warning(
                "ENRICHMENT_CLAIM_LOST",
                extra={"observation_id": observation_id, "claim_id": claim_id}
            )
            return EnrichmentOutcome(observation_id, OutcomeStatus.SKIPPED, attempts=attempts)

        logger.info(
            "ENRICHMENT_SUCCEEDED",
            extra={
                "observation_id": observation_id,
                "risk": insight.risk.value,
                "attempts": attempts,
            }
        )

        try:
            await self.audit_logger.append(
                observation_id, AuditAction.AI_SUGGESTED, SYSTEM_ACTOR, insight.summary
            )
        except AuditWriteError:
            pass

        return EnrichmentOutcome(observation_id, OutcomeStatus.DONE, insight=insight, attempts=attempts)

    async def _record_failure(
        self,
        observation_id: str,
        claim_id: str,
        code: EnrichmentErrorCode,
        detail: str,
    ) -> None:
        logger.error(
            "ENRICHMENT_FAILED",
            extra={
                "observation_id": observation_id,
                "error_code": code.value,
                "error": detail,
            }
        )
        try:
            applied = await self.store.update(
                OBSERVATIONS,
                observation_id,
                {
                    "aiStatus": AIStatus.FAILED.value,
                    "aiError": code.value,
                    "aiErrorDetail": detail,
                },
                precondition={"aiClaimId": (claim_id,)},
            )
        except StoreError as e:
            logger.error(
                "ENRICHMENT_FAILURE_WRITE_FAILED",
                extra={"observation_id": observation_id, "error": str(e)}
            )
            return

        if not applied:
            logger.warning(
                "ENRICHMENT_CLAIM_LOST",
                extra={"observation_id": observation_id, "claim_id": claim_id}
            )

    async def _fail_unconfigured(self, observation_id: str) -> EnrichmentOutcome:
        """Mark an eligible observation FAILED when no client is configured."""
        code = EnrichmentErrorCode.MISSING_API_KEY
        try:
            applied = await self.store.update(
                OBSERVATIONS,
                observation_id,
                {
                    "aiStatus": AIStatus.FAILED.value,
                    "aiError": code.value,
                    "aiErrorDetail": "No reasoning-service credential configured",
                },
                precondition={"aiStatus": CLAIMABLE_AI_STATUSES},
            )
        except StoreError as e:
            logger.error(
                "ENRICHMENT_FAILURE_WRITE_FAILED",
                extra={"observation_id": observation_id, "error": str(e)}
            )
            return EnrichmentOutcome(observation_id, OutcomeStatus.SKIPPED)

        if not applied:
            return EnrichmentOutcome(observation_id, OutcomeStatus.SKIPPED)

        logger.critical(
            "ENRICHMENT_FAILED",
            extra={"observation_id": observation_id, "error_code": code.value}
        )
        return EnrichmentOutcome(observation_id, OutcomeStatus.FAILED, error_code=code)


def create_enrichment_pipeline(
    store: DocumentStore,
    audit_logger: AuditLogger,
    engine_config: Optional[EngineConfig] = None,
    llm_config: Optional[LLMConfig] = None,
) -> EnrichmentPipeline:
    """Build a pipeline from configuration.

    A missing reasoning-service credential does not stop the process:
    the pipeline is built without a client and fails observations with
    MISSING_API_KEY so admins see the degraded mode.
    """
    engine_config = engine_config or EngineConfig.from_env()
    llm_config = llm_config or LLMConfig.from_env()

    try:
        llm: Optional[BaseLLM] = create_llm(llm_config)
    except MissingCredentialError as e:
        logger.critical(
            "REASONING_CLIENT_UNAVAILABLE",
            extra={"provider": llm_config.provider.value, "error": str(e)}
        )
        llm = None

    return EnrichmentPipeline(
        store=store,
        llm=llm,
        audit_logger=audit_logger,
        retry_policy=RetryPolicy(
            max_attempts=engine_config.ai_max_attempts,
            backoff_base_seconds=engine_config.ai_backoff_base_seconds,
        ),
        max_depth=engine_config.path_max_depth,
        processing_timeout_seconds=engine_config.ai_processing_timeout_seconds,
    )
