"""Tests for the AI enrichment pipeline."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from crowdsafe.shared.database import OBSERVATIONS, WAYPOINTS, InMemoryDocumentStore
from crowdsafe.shared.models import RiskLevel
from crowdsafe.shared.utils import configure_pii_salt, format_timestamp
from crowdsafe.services.audit_service import AuditAction, AuditLogger
from crowdsafe.services.enrichment_service.errors import EnrichmentErrorCode
from crowdsafe.services.enrichment_service.pipeline import (
    EnrichmentPipeline,
    OutcomeStatus,
    RetryPolicy,
    create_enrichment_pipeline,
)
from crowdsafe.services.llm_service import LLMConfig, LLMProvider, LLMResponse
from crowdsafe.shared.config import EngineConfig

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
INSIGHT = {"risk": "HIGH", "summary": "Crowd surge at Gate A", "actions": ["Halt entry", "Divert via Food Court"]}
FENCED = '```json\n{"risk":"HIGH","summary":"Crowd surge at Gate A","actions":["Halt entry","Divert via Food Court"]}\n```'


def reply(text):
    return LLMResponse(text=text, model="test-model", provider="gemini")


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def store():
    store = InMemoryDocumentStore(clock=lambda: NOW)
    # A -> B -> C, A -> D; E has no exits
    store._collections[WAYPOINTS] = {
        "A": {"name": "Gate A", "type": "ENTRY", "connectedTo": ["B", "D"]},
        "B": {"name": "Food Court", "type": "POI", "connectedTo": ["C"]},
        "C": {"name": "Exit C", "type": "EXIT", "connectedTo": []},
        "D": {"name": "Medical Tent", "type": "MEDICAL", "connectedTo": []},
        "E": {"name": "Backstage", "type": "POI", "connectedTo": []},
    }
    return store


@pytest.fixture
def llm():
    llm = AsyncMock()
    llm.generate.return_value = reply(FENCED)
    return llm


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def audit_logger(store):
    return AuditLogger(store)


@pytest.fixture
def pipeline(store, llm, audit_logger, sleep):
    return EnrichmentPipeline(
        store=store,
        llm=llm,
        audit_logger=audit_logger,
        retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=2.0),
        sleep=sleep,
        clock=lambda: NOW,
    )


async def observe(store, **fields):
    data = {
        "waypointId": "A",
        "volunteerEmail": "vol@example.org",
        "crowdLevel": "HIGH",
        "message": "panic near the barrier",
        "status": "NEW",
        "aiStatus": "PENDING",
    }
    data.update(fields)
    return await store.add(OBSERVATIONS, {k: v for k, v in data.items() if v is not None})


class TestSuccessfulEnrichment:
    @pytest.mark.asyncio
    async def test_fenced_response_stored_unwrapped(self, pipeline, store):
        observation_id = await observe(store)

        outcome = await pipeline.process(observation_id)

        assert outcome.status is OutcomeStatus.DONE
        assert outcome.insight.risk is RiskLevel.HIGH
        doc = (await store.get(OBSERVATIONS, observation_id)).data
        assert doc["aiStatus"] == "DONE"
        assert doc["aiInsight"] == INSIGHT
        assert "aiError" not in doc

    @pytest.mark.asyncio
    async def test_prompt_carries_named_corridors(self, pipeline, store, llm):
        observation_id = await observe(store)

        await pipeline.process(observation_id)

        prompt = llm.generate.call_args.args[0]
        assert "Gate A → Food Court" in prompt
        assert "Gate A → Medical Tent" in prompt
        assert "Gate A → Food Court → Exit C" in prompt
        assert "Reported Density: HIGH" in prompt

    @pytest.mark.asyncio
    async def test_appends_ai_suggested_entry(self, pipeline, store, audit_logger):
        observation_id = await observe(store)

        await pipeline.process(observation_id)

        entries = await audit_logger.entries_for(observation_id)
        assert [e.action for e in entries] == [AuditAction.AI_SUGGESTED]
        assert entries[0].actor_email == "system"
        assert entries[0].message == "Crowd surge at Gate A"

    @pytest.mark.asyncio
    async def test_absent_ai_status_is_eligible(self, pipeline, store):
        observation_id = await observe(store, aiStatus=None)
        assert (await pipeline.process(observation_id)).status is OutcomeStatus.DONE


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_trigger_skips(self, pipeline, store, llm):
        observation_id = await observe(store)

        first = await pipeline.process(observation_id)
        second = await pipeline.process(observation_id)

        assert first.status is OutcomeStatus.DONE
        assert second.status is OutcomeStatus.SKIPPED
        assert llm.generate.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_once(self, pipeline, store, llm, audit_logger):
        observation_id = await observe(store)

        outcomes = await asyncio.gather(
            pipeline.process(observation_id), pipeline.process(observation_id)
        )

        assert sorted(o.status.value for o in outcomes) == ["DONE", "SKIPPED"]
        assert llm.generate.await_count == 1
        assert len(await audit_logger.entries_for(observation_id)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ai_status", ["PROCESSING", "DONE", "FAILED"])
    async def test_non_claimable_status_skips(self, pipeline, store, llm, ai_status):
        observation_id = await observe(
            store, aiStatus=ai_status, aiClaimedAt=format_timestamp(NOW), aiClaimId="other"
        )

        assert (await pipeline.process(observation_id)).status is OutcomeStatus.SKIPPED
        llm.generate.assert_not_awaited()
        assert (await store.get(OBSERVATIONS, observation_id)).get("aiStatus") == ai_status

    @pytest.mark.asyncio
    async def test_unknown_observation_skips(self, pipeline):
        assert (await pipeline.process("missing")).status is OutcomeStatus.SKIPPED


class TestFailures:
    @pytest.mark.asyncio
    async def test_waypoint_without_exits_fails_no_paths(self, pipeline, store, llm):
        observation_id = await observe(store, waypointId="E", aiStatus=None)

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.NO_PATHS
        doc = (await store.get(OBSERVATIONS, observation_id)).data
        assert doc["aiStatus"] == "FAILED"
        assert doc["aiError"] == "NO_PATHS"
        assert "aiInsight" not in doc
        llm.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_waypoint_id(self, pipeline, store):
        observation_id = await observe(store, waypointId=None)

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.NO_WAYPOINT

    @pytest.mark.asyncio
    async def test_unknown_waypoint(self, pipeline, store):
        observation_id = await observe(store, waypointId="deleted")

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.NO_WAYPOINT
        assert (await store.get(OBSERVATIONS, observation_id)).get("aiError") == "NO_WAYPOINT"

    @pytest.mark.asyncio
    async def test_service_errors_retried_with_backoff(self, pipeline, store, llm, sleep):
        llm.generate.side_effect = [RuntimeError("503"), RuntimeError("503"), reply(FENCED)]
        observation_id = await observe(store)

        outcome = await pipeline.process(observation_id)

        assert outcome.status is OutcomeStatus.DONE
        assert outcome.attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_service_error(self, pipeline, store, llm, sleep):
        llm.generate.side_effect = RuntimeError("503 unavailable")
        observation_id = await observe(store)

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.SERVICE_ERROR
        assert llm.generate.await_count == 3
        assert sleep.await_count == 2
        doc = (await store.get(OBSERVATIONS, observation_id)).data
        assert doc["aiError"] == "SERVICE_ERROR"
        assert "503 unavailable" in doc["aiErrorDetail"]

    @pytest.mark.asyncio
    async def test_empty_responses_fail_service_error(self, pipeline, store, llm):
        llm.generate.return_value = reply("  ")
        observation_id = await observe(store)

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.SERVICE_ERROR
        assert llm.generate.await_count == 3

    @pytest.mark.asyncio
    async def test_malformed_response_not_retried(self, pipeline, store, llm, audit_logger):
        llm.generate.return_value = reply("Close Gate A immediately.")
        observation_id = await observe(store)

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.MALFORMED_RESPONSE
        assert llm.generate.await_count == 1
        assert await audit_logger.entries_for(observation_id) == []

    @pytest.mark.asyncio
    async def test_missing_client_fails_missing_api_key(self, store, audit_logger):
        pipeline = EnrichmentPipeline(store=store, llm=None, audit_logger=audit_logger)
        observation_id = await observe(store)

        outcome = await pipeline.process(observation_id)

        assert outcome.error_code is EnrichmentErrorCode.MISSING_API_KEY
        doc = (await store.get(OBSERVATIONS, observation_id)).data
        assert doc["aiStatus"] == "FAILED"
        assert doc["aiError"] == "MISSING_API_KEY"

    @pytest.mark.asyncio
    async def test_missing_client_leaves_done_alone(self, store, audit_logger):
        pipeline = EnrichmentPipeline(store=store, llm=None, audit_logger=audit_logger)
        observation_id = await observe(store, aiStatus="DONE")

        assert (await pipeline.process(observation_id)).status is OutcomeStatus.SKIPPED


class TestStaleClaims:
    @pytest.mark.asyncio
    async def test_abandoned_claim_is_reclaimed(self, pipeline, store):
        observation_id = await observe(
            store,
            aiStatus="PROCESSING",
            aiClaimId="crashed-worker",
            aiClaimedAt=format_timestamp(NOW - timedelta(minutes=11)),
        )

        outcome = await pipeline.process(observation_id)

        assert outcome.status is OutcomeStatus.DONE
        assert (await store.get(OBSERVATIONS, observation_id)).get("aiClaimId") != "crashed-worker"

    @pytest.mark.asyncio
    async def test_fresh_claim_is_respected(self, pipeline, store, llm):
        observation_id = await observe(
            store,
            aiStatus="PROCESSING",
            aiClaimId="busy-worker",
            aiClaimedAt=format_timestamp(NOW - timedelta(minutes=1)),
        )

        assert (await pipeline.process(observation_id)).status is OutcomeStatus.SKIPPED
        llm.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_claim_does_not_overwrite(self, pipeline, store, llm, audit_logger):
        observation_id = await observe(store)

        async def reclaimed_mid_call(prompt, system_prompt=None):
            await store.update(OBSERVATIONS, observation_id, {"aiClaimId": "newer-worker"})
            return reply(FENCED)

        llm.generate.side_effect = reclaimed_mid_call

        outcome = await pipeline.process(observation_id)

        assert outcome.status is OutcomeStatus.SKIPPED
        doc = (await store.get(OBSERVATIONS, observation_id)).data
        assert doc["aiStatus"] == "PROCESSING"
        assert "aiInsight" not in doc
        assert await audit_logger.entries_for(observation_id) == []


class TestCreateEnrichmentPipeline:
    def test_missing_credential_builds_without_client(self, store, audit_logger):
        pipeline = create_enrichment_pipeline(
            store,
            audit_logger,
            EngineConfig(ai_max_attempts=5, path_max_depth=3),
            LLMConfig(LLMProvider.GEMINI, "gemini-1.5-flash"),
        )

        assert pipeline.llm is None
        assert pipeline.retry_policy.max_attempts == 5
        assert pipeline.max_depth == 3
