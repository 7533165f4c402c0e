from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from funding_ingest.core.config import Settings
from funding_ingest.schemas.records import Record
from funding_ingest.services.collaborators import (
    CollaboratorError,
    EnrichedRecord,
    EnrichmentResult,
    ExtractionResult,
)
from funding_ingest.services.metrics import MetricsRecorder
from funding_ingest.services.pipeline import IngestionService, build_router
from funding_ingest.services.store import InMemoryRepository

T = TypeVar("T")

STAMP = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


class StaticExtractor:
    def __init__(self, payloads: list[dict[str, Any]], *, error: Exception | None = None) -> None:
        self.payloads = payloads
        self.error = error

    async def extract(self, source: dict[str, Any]) -> ExtractionResult:
        if self.error is not None:
            raise self.error
        return ExtractionResult(
            records=[Record.from_payload(item, source_id=source["id"]) for item in self.payloads],
            api_calls_made=1,
            metrics={"raw_count": len(self.payloads)},
        )


class ScoringEnricher:
    def __init__(self, *, score: float = 3.0, error: Exception | None = None) -> None:
        self.score = score
        self.error = error
        self.calls: list[list[Record]] = []

    async def enrich(self, records: list[Record], source: dict[str, Any]) -> EnrichmentResult:
        self.calls.append(list(records))
        if self.error is not None:
            raise self.error
        return EnrichmentResult(
            records=[EnrichedRecord(record=record, scoring={"final_score": self.score}) for record in records],
            tokens_used=1500 * len(records),
            api_calls_made=len(records),
        )


def test_mixed_batch_bypasses_enrichment_for_known_records() -> None:
    repo, source_id = _repo_with_source()
    for index in range(35):
        _seed(repo, source_id, _known(index, "U"))
    for index in range(25):
        _seed(repo, source_id, _known(index, "S"))

    payloads = (
        [{**_known(index, "U"), "maximum_award": 150_000, "api_updated_at": STAMP + timedelta(days=1)} for index in range(35)]
        + [_known(index, "S") for index in range(25)]
        + [_fresh(index) for index in range(40)]
    )
    enricher = ScoringEnricher()

    result = _run(_service(repo, enricher, StaticExtractor(payloads)).process_source(source_id))

    metrics = result["metrics"]
    assert result["status"] == "success"
    assert (metrics["new"], metrics["to_update"], metrics["skipped"]) == (40, 35, 25)
    assert metrics["stored"] == 40
    assert metrics["updated"] == 35
    assert metrics["bypassed_enrichment"] == 60
    assert metrics["resource_savings_percentage"] == 60.0
    assert metrics["tokens_used"] == 60_000
    assert len(enricher.calls) == 1 and len(enricher.calls[0]) == 40
    assert set(metrics["stages"].values()) == {"completed"}
    assert len(repo.records) == 100
    assert repo.runs[result["run_id"]]["status"] == "completed"
    updated = [row for row in repo.records.values() if row["external_id"].startswith("U-")]
    assert {row["maximum_award"] for row in updated} == {150_000.0}


def test_batch_of_only_known_records_skips_both_branches() -> None:
    repo, source_id = _repo_with_source()
    for index in range(3):
        _seed(repo, source_id, _known(index, "S"))
    enricher = ScoringEnricher()

    result = _run(
        _service(repo, enricher, StaticExtractor([_known(index, "S") for index in range(3)])).process_source(source_id)
    )

    stages = _stages(repo, result["run_id"])
    assert result["status"] == "success"
    assert enricher.calls == []
    for name in ("enrichment", "filter", "storage"):
        assert stages[name]["status"] == "skipped"
        assert stages[name]["stage_results"] == {"reason": "no_new_records"}
    assert stages["direct_update"]["stage_results"] == {"reason": "no_update_records"}


def test_enrichment_failure_does_not_block_direct_updates() -> None:
    repo, source_id = _repo_with_source()
    _seed(repo, source_id, _known(0, "U"))
    payloads = [
        {**_known(0, "U"), "close_date": "2026-12-31", "api_updated_at": STAMP + timedelta(days=2)},
        _fresh(0),
    ]
    enricher = ScoringEnricher(error=CollaboratorError("enrichment request failed: timeout"))

    result = _run(_service(repo, enricher, StaticExtractor(payloads)).process_source(source_id))

    stages = _stages(repo, result["run_id"])
    assert result["status"] == "error"
    assert result["error"] == {"message": "enrichment request failed: timeout", "stage": "enrichment"}
    assert stages["enrichment"]["status"] == "failed"
    assert stages["filter"]["stage_results"] == {"reason": "upstream_failed"}
    assert stages["storage"]["status"] == "skipped"
    assert stages["direct_update"]["status"] == "completed"
    assert result["metrics"]["updated"] == 1
    run = repo.runs[result["run_id"]]
    assert run["status"] == "failed"
    assert run["failed_stage"] == "enrichment"


def test_extraction_failure_skips_every_later_stage() -> None:
    repo, source_id = _repo_with_source()
    extractor = StaticExtractor([], error=CollaboratorError("extraction request failed: 502"))

    result = _run(_service(repo, ScoringEnricher(), extractor).process_source(source_id))

    stages = _stages(repo, result["run_id"])
    assert result["status"] == "error"
    assert stages["source_analysis"]["status"] == "completed"
    assert stages["extraction"]["status"] == "failed"
    for name in ("duplicate_detection", "enrichment", "filter", "storage", "direct_update"):
        assert stages[name]["status"] == "skipped"
        assert stages[name]["stage_results"] == {"reason": "upstream_failed"}


def test_storage_is_skipped_when_nothing_passes_the_filter() -> None:
    repo, source_id = _repo_with_source()

    result = _run(
        _service(repo, ScoringEnricher(score=1.0), StaticExtractor([_fresh(0), _fresh(1)])).process_source(source_id)
    )

    stages = _stages(repo, result["run_id"])
    assert result["status"] == "success"
    assert stages["filter"]["stage_results"]["exclusion_reasons"]["low_final_score"] == 2
    assert stages["storage"]["stage_results"] == {"reason": "no_records_passed_filter"}
    assert repo.records == {}


def test_completed_stages_record_metrics_rows() -> None:
    repo, source_id = _repo_with_source()

    result = _run(_service(repo, ScoringEnricher(), StaticExtractor([_fresh(0)])).process_source(source_id))

    recorded = {row["stage_name"] for row in repo.stage_metrics if row["run_id"] == result["run_id"]}
    assert recorded == {"source_analysis", "extraction", "duplicate_detection", "enrichment", "filter", "storage"}


def _service(repo: InMemoryRepository, enricher: ScoringEnricher, extractor: StaticExtractor) -> IngestionService:
    return IngestionService(
        repo,
        build_router(repo, Settings(), enricher=enricher),
        extractor,
        metrics_recorder=MetricsRecorder(repo),
    )


def _known(index: int, prefix: str) -> dict[str, Any]:
    return {
        "external_id": f"{prefix}-{index}",
        "title": f"Existing Research Program {prefix}{index:03d}",
        "maximum_award": 100_000,
        "api_updated_at": STAMP,
    }


def _fresh(index: int) -> dict[str, Any]:
    return {"external_id": f"N-{index}", "title": f"Fresh Innovation Award {index:03d}", "maximum_award": 50_000}


def _seed(repo: InMemoryRepository, source_id: str, payload: dict[str, Any]) -> None:
    _run(repo.insert_record(source_id, dict(payload)))


def _stages(repo: InMemoryRepository, run_id: str) -> dict[str, dict[str, Any]]:
    return {row["stage_name"]: row for row in _run(repo.list_stages(run_id))}


def _repo_with_source() -> tuple[InMemoryRepository, str]:
    repo = InMemoryRepository()
    return repo, repo.add_source("grants.gov")["id"]


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
