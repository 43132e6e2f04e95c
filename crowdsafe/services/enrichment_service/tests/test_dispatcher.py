"""Tests for snapshot-driven enrichment dispatch."""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from crowdsafe.shared.database import OBSERVATIONS, WAYPOINTS, DocumentSnapshot, InMemoryDocumentStore
from crowdsafe.shared.utils import configure_pii_salt
from crowdsafe.services.audit_service import AuditLogger
from crowdsafe.services.enrichment_service.dispatcher import EnrichmentDispatcher
from crowdsafe.services.enrichment_service.pipeline import (
    EnrichmentOutcome,
    EnrichmentPipeline,
    OutcomeStatus,
)
from crowdsafe.services.llm_service import LLMResponse

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.process = AsyncMock(
        side_effect=lambda observation_id: EnrichmentOutcome(observation_id, OutcomeStatus.DONE)
    )
    return pipeline


@pytest.fixture
def dispatcher(pipeline):
    return EnrichmentDispatcher(pipeline)


def snapshot(observation_id, **fields):
    data = {"waypointId": "A", "crowdLevel": "LOW", "status": "NEW"}
    data.update(fields)
    return DocumentSnapshot(observation_id, data)


class TestOnSnapshot:
    @pytest.mark.asyncio
    async def test_dispatches_only_eligible(self, dispatcher, pipeline):
        dispatched = dispatcher.on_snapshot([
            snapshot("pending", aiStatus="PENDING"),
            snapshot("absent"),
            snapshot("resolved", status="RESOLVED", aiStatus="PENDING"),
            snapshot("processing", aiStatus="PROCESSING"),
            snapshot("done", aiStatus="DONE"),
            snapshot("failed", aiStatus="FAILED"),
        ])
        await dispatcher.drain()

        assert dispatched == ["pending", "absent"]
        assert sorted(c.args[0] for c in pipeline.process.await_args_list) == ["absent", "pending"]

    @pytest.mark.asyncio
    async def test_repeated_snapshot_dispatches_nothing_new(self, dispatcher, pipeline):
        snapshots = [snapshot("obs_1", aiStatus="PENDING")]

        assert dispatcher.on_snapshot(snapshots) == ["obs_1"]
        assert dispatcher.on_snapshot(snapshots) == []
        await dispatcher.drain()

        assert pipeline.process.await_count == 1
        assert "obs_1" in dispatcher

    @pytest.mark.asyncio
    async def test_unparseable_documents_skipped(self, dispatcher):
        assert dispatcher.on_snapshot([snapshot("bad", status="ARCHIVED")]) == []

    @pytest.mark.asyncio
    async def test_partial_insight_does_not_block_later_observations(self, dispatcher, pipeline):
        dispatched = dispatcher.on_snapshot([
            snapshot("legacy", aiStatus="DONE", aiInsight={"summary": "x", "actions": []}),
            snapshot("scalar", aiStatus="DONE", aiInsight="HIGH"),
            snapshot("fresh", aiStatus="PENDING"),
        ])
        await dispatcher.drain()

        assert dispatched == ["fresh"]
        pipeline.process.assert_awaited_once_with("fresh")


class TestTrigger:
    @pytest.mark.asyncio
    async def test_trigger_is_idempotent(self, dispatcher, pipeline):
        assert dispatcher.trigger("obs_1") is True
        assert dispatcher.trigger("obs_1") is False

        outcomes = await dispatcher.drain()

        assert [o.observation_id for o in outcomes] == ["obs_1"]
        pipeline.process.assert_awaited_once_with("obs_1")


class TestWatch:
    @pytest.mark.asyncio
    async def test_watch_dispatches_first_snapshot(self, dispatcher, pipeline):
        store = InMemoryDocumentStore(clock=lambda: NOW)
        observation_id = await store.add(OBSERVATIONS, {"crowdLevel": "LOW", "status": "NEW", "aiStatus": "PENDING"})
        stop = asyncio.Event()
        stop.set()

        await dispatcher.watch(store, stop_event=stop)
        await dispatcher.drain()

        pipeline.process.assert_awaited_once_with(observation_id)


class TestManyClients:
    @pytest.mark.asyncio
    async def test_two_clients_one_reasoning_call(self):
        store = InMemoryDocumentStore(clock=lambda: NOW)
        await store.set(WAYPOINTS, "A", {"name": "Gate A", "connectedTo": ["B"]})
        await store.set(WAYPOINTS, "B", {"name": "Exit B", "connectedTo": []})
        observation_id = await store.add(OBSERVATIONS, {
            "waypointId": "A", "crowdLevel": "HIGH", "status": "NEW", "aiStatus": "PENDING",
        })

        llm = AsyncMock()
        llm.generate.return_value = LLMResponse(
            text='{"risk":"MEDIUM","summary":"Busy","actions":["Monitor Gate A → Exit B"]}',
            model="test-model",
            provider="gemini",
        )
        pipeline = EnrichmentPipeline(store, llm, AuditLogger(store), clock=lambda: NOW)
        clients = [EnrichmentDispatcher(pipeline), EnrichmentDispatcher(pipeline)]

        current = await store.query(OBSERVATIONS)
        for client in clients:
            client.on_snapshot(current)
        outcomes = [o for client in clients for o in await client.drain()]

        assert sorted(o.status.value for o in outcomes) == ["DONE", "SKIPPED"]
        assert llm.generate.await_count == 1
        assert (await store.get(OBSERVATIONS, observation_id)).get("aiStatus") == "DONE"
