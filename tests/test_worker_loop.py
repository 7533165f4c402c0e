from __future__ import annotations

import asyncio
from typing import Any

import pytest

from funding_ingest.core.config import Settings
from funding_ingest.jobs.processor import build_job_processor
from funding_ingest.schemas.records import Record
from funding_ingest.services.collaborators import EnrichedRecord, EnrichmentResult
from funding_ingest.services.store import InMemoryRepository
from funding_ingest.worker import run_worker


class FakeEnricher:
    async def enrich(self, records: list[Record], source: dict[str, Any]) -> EnrichmentResult:
        return EnrichmentResult(records=[EnrichedRecord(record=record, scoring={"final_score": 5}) for record in records])


def _settings() -> Settings:
    return Settings(
        otel_enabled=False,
        worker_poll_interval_seconds=0,
        worker_max_backoff_seconds=0,
        worker_cleanup_interval_seconds=0,
    )


def test_worker_drains_queue_within_tick_budget() -> None:
    repo = InMemoryRepository()
    source_id = repo.add_source("grants.gov")["id"]
    settings = _settings()
    processor = build_job_processor(repo, settings, enricher=FakeEnricher())
    asyncio.run(
        processor.coordinator.create_master_run(
            source_id,
            [{"external_id": f"E-{index}", "title": f"Workforce Training Grant {index}"} for index in range(4)],
            chunk_size=2,
        )
    )

    processed = asyncio.run(run_worker(settings, processor=processor, max_ticks=3))

    assert processed == 2
    assert {job["status"] for job in repo.jobs.values()} == {"completed"}
    assert len(repo.records) == 4


def test_worker_keeps_polling_after_a_failed_tick(monkeypatch: pytest.MonkeyPatch) -> None:
    repo = InMemoryRepository()
    settings = _settings()
    processor = build_job_processor(repo, settings, enricher=FakeEnricher())
    calls = {"count": 0}

    async def broken_tick() -> None:
        calls["count"] += 1
        raise RuntimeError("database went away")

    monkeypatch.setattr(processor, "process_next_job", broken_tick)

    processed = asyncio.run(run_worker(settings, processor=processor, max_ticks=2))

    assert processed == 0
    assert calls["count"] == 2
