from __future__ import annotations

import asyncio

import pytest

from funding_ingest.schemas.pipeline import StageName, StageStatus
from funding_ingest.services.metrics import MetricsRecorder
from funding_ingest.services.stages import PipelineError, StageMetrics, StageTracker, StageTransitionError
from funding_ingest.services.store import InMemoryRepository


def _tracker(*, job_id: str | None = None) -> tuple[InMemoryRepository, StageTracker]:
    repo = InMemoryRepository()
    source_id = repo.add_source("grants.gov")["id"]
    run = asyncio.run(repo.create_run(source_id=source_id, kind="single"))
    return repo, StageTracker(repo, run["id"], job_id=job_id, metrics_recorder=MetricsRecorder(repo))


def test_stage_lifecycle_records_timing_and_metrics() -> None:
    repo, tracker = _tracker()

    asyncio.run(tracker.update_stage(StageName.EXTRACTION, StageStatus.PROCESSING))
    row = asyncio.run(
        tracker.update_stage(
            StageName.EXTRACTION,
            StageStatus.COMPLETED,
            result={"extracted": 12},
            metrics=StageMetrics(input_count=12, output_count=12, api_calls_made=1, execution_time_ms=40),
        )
    )

    assert row["status"] == "completed"
    assert row["stage_order"] == 2
    assert row["started_at"] is not None and row["completed_at"] is not None
    assert row["execution_time_ms"] == 40
    assert row["stage_results"] == {"extracted": 12}
    assert row["output_count"] == 12
    [recorded] = repo.stage_metrics
    assert recorded["stage_name"] == "extraction"
    assert recorded["metrics"]["api_calls_made"] == 1


def test_repeating_the_current_status_is_a_no_op() -> None:
    repo, tracker = _tracker()
    first = asyncio.run(tracker.update_stage(StageName.FILTER, StageStatus.PROCESSING))
    second = asyncio.run(tracker.update_stage(StageName.FILTER, StageStatus.PROCESSING))
    assert first["started_at"] == second["started_at"]


def test_terminal_stage_cannot_be_reopened() -> None:
    _, tracker = _tracker()
    asyncio.run(tracker.update_stage(StageName.STORAGE, StageStatus.SKIPPED, result={"reason": "no_new_records"}))

    with pytest.raises(StageTransitionError):
        asyncio.run(tracker.update_stage(StageName.STORAGE, StageStatus.PROCESSING))


def test_reset_stages_allows_a_retried_job_to_run_again() -> None:
    repo, tracker = _tracker(job_id="job-1")
    asyncio.run(tracker.update_stage(StageName.ENRICHMENT, StageStatus.PROCESSING))
    asyncio.run(tracker.update_stage(StageName.ENRICHMENT, StageStatus.FAILED))

    asyncio.run(tracker.reset_stages())
    row = asyncio.run(tracker.update_stage(StageName.ENRICHMENT, StageStatus.PROCESSING))

    assert row["status"] == "processing"
    assert len([key for key in repo.stages if key[1] == "job-1"]) == len(StageName)


def test_complete_run_is_idempotent() -> None:
    repo, tracker = _tracker()
    first = asyncio.run(tracker.complete_run(1200, {"stored": 3}))
    second = asyncio.run(tracker.complete_run(1500, {"stored": 9}))

    assert first["status"] == "completed"
    assert second["final_results"] == {"stored": 3}
    assert repo.runs[tracker.run_id]["total_execution_time_ms"] == 1200


def test_complete_run_rejects_failed_run() -> None:
    _, tracker = _tracker()
    asyncio.run(tracker.record_error(RuntimeError("boom"), StageName.ENRICHMENT))

    with pytest.raises(StageTransitionError):
        asyncio.run(tracker.complete_run(10, {}))


def test_job_scoped_tracker_never_touches_master_run_status() -> None:
    repo, tracker = _tracker(job_id="job-1")

    details = asyncio.run(tracker.record_error(RuntimeError("enrichment timed out"), StageName.ENRICHMENT))

    assert details == {"message": "enrichment timed out", "type": "RuntimeError", "failed_stage": "enrichment"}
    assert repo.runs[tracker.run_id]["status"] == "processing"
    with pytest.raises(PipelineError):
        asyncio.run(tracker.complete_run(10, {}))


def test_record_error_marks_single_run_failed() -> None:
    repo, tracker = _tracker()

    asyncio.run(tracker.record_error(RuntimeError("boom"), "storage"))

    run = repo.runs[tracker.run_id]
    assert run["status"] == "failed"
    assert run["failed_stage"] == "storage"
    assert run["error_details"]["message"] == "boom"
    assert run["completed_at"] is not None
