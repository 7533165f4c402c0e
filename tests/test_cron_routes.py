from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

from funding_ingest.api.routes.cron import get_job_processor
from funding_ingest.core.config import get_settings
from funding_ingest.main import app
from funding_ingest.schemas.records import Record
from funding_ingest.services.collaborators import (
    EnrichedRecord,
    EnrichmentResult,
    ExtractionResult,
    get_enricher,
    get_extractor,
)
from funding_ingest.services.job_queue import JobQueueCoordinator
from funding_ingest.services.repository import get_repository
from funding_ingest.services.store import InMemoryRepository

AUTH = {"Authorization": "Bearer cron-secret"}


class FakeEnricher:
    async def enrich(self, records: list[Record], source: dict[str, Any]) -> EnrichmentResult:
        enriched = [EnrichedRecord(record=record, scoring={"final_score": 3.5}) for record in records]
        return EnrichmentResult(records=enriched)


class FakeExtractor:
    async def extract(self, source: dict[str, Any]) -> ExtractionResult:
        payloads = [{"externalId": f"X-{index}", "title": f"Extracted Opportunity {index:03d}"} for index in range(4)]
        return ExtractionResult(records=[Record.from_payload(item, source_id=source["id"]) for item in payloads])


class ExplodingProcessor:
    async def process_next_job(self) -> None:
        raise RuntimeError("queue unavailable")


@pytest.fixture
def fake_repo() -> InMemoryRepository:
    repo = InMemoryRepository()
    repo.add_source("grants.gov", source_id="11111111-1111-1111-1111-111111111111")
    return repo


@pytest.fixture
def cron_client(fake_repo: InMemoryRepository) -> TestClient:
    os.environ["FI_CRON_SECRET"] = "cron-secret"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: fake_repo
    app.dependency_overrides[get_enricher] = lambda: FakeEnricher()
    app.dependency_overrides[get_extractor] = lambda: FakeExtractor()

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("FI_CRON_SECRET", None)
    get_settings.cache_clear()


def test_cron_requires_bearer_secret(cron_client: TestClient) -> None:
    assert cron_client.get("/cron/process-jobs").status_code == 401
    wrong = cron_client.get("/cron/process-jobs", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


def test_cron_is_unavailable_without_configured_secret(cron_client: TestClient) -> None:
    os.environ.pop("FI_CRON_SECRET", None)
    get_settings.cache_clear()

    response = cron_client.get("/cron/process-jobs", headers=AUTH)

    assert response.status_code == 503


def test_empty_queue_returns_accepted(cron_client: TestClient) -> None:
    response = cron_client.get("/cron/process-jobs", headers=AUTH)

    assert response.status_code == 202
    body = response.json()
    assert body["success"] is True
    assert body["processed"] is False
    assert body["queueStatus"]["total"] == 0


def test_tick_processes_one_job_and_aggregates(cron_client: TestClient, fake_repo: InMemoryRepository) -> None:
    source_id = next(iter(fake_repo.sources))
    created = asyncio.run(
        JobQueueCoordinator(fake_repo).create_master_run(
            source_id,
            [{"external_id": "E-1", "title": "Regional Innovation Grant"}],
        )
    )

    response = cron_client.post("/cron/process-jobs", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] is True
    assert body["jobStatus"] == "completed"
    assert body["masterRunId"] == created["master_run"]["id"]
    assert body["aggregation"] == "aggregated"
    assert fake_repo.runs[created["master_run"]["id"]]["status"] == "completed"


def test_status_action_reports_queue_without_processing(cron_client: TestClient, fake_repo: InMemoryRepository) -> None:
    source_id = next(iter(fake_repo.sources))
    asyncio.run(
        JobQueueCoordinator(fake_repo).create_master_run(
            source_id,
            [{"external_id": f"E-{index}", "title": f"Regional Innovation Grant {index}"} for index in range(6)],
            chunk_size=2,
        )
    )

    response = cron_client.post("/cron/process-jobs", headers=AUTH, json={"action": "status"})

    assert response.status_code == 200
    assert response.json()["queueStatus"]["pending"] == 3
    assert {job["status"] for job in fake_repo.jobs.values()} == {"pending"}


def test_tick_failure_is_reported_in_body(cron_client: TestClient) -> None:
    app.dependency_overrides[get_job_processor] = lambda: ExplodingProcessor()

    response = cron_client.get("/cron/process-jobs", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["error"] == "queue unavailable"


def test_create_run_from_extractor_and_read_progress(cron_client: TestClient, fake_repo: InMemoryRepository) -> None:
    source_id = next(iter(fake_repo.sources))

    created = cron_client.post("/runs", headers=AUTH, json={"sourceId": source_id, "chunkSize": 3})

    assert created.status_code == 202
    body = created.json()
    assert (body["totalJobs"], body["totalRecords"], body["chunkSize"]) == (2, 4, 3)

    progress = cron_client.get(f"/runs/{body['masterRunId']}/progress", headers=AUTH)
    assert progress.status_code == 200
    assert progress.json()["pending"] == 2
    assert progress.json()["isFinished"] is False


def test_create_run_for_unknown_source_is_not_found(cron_client: TestClient) -> None:
    response = cron_client.post(
        "/runs",
        headers=AUTH,
        json={"sourceId": "22222222-2222-2222-2222-222222222222", "records": [{"title": "Anything At All"}]},
    )

    assert response.status_code == 404
