from __future__ import annotations

import asyncio
from typing import Any

from funding_ingest.services.aggregation import RunAggregator
from funding_ingest.services.job_queue import JobQueueCoordinator
from funding_ingest.services.store import InMemoryRepository


class YieldingRepository(InMemoryRepository):
    """Yields to the event loop on reads so concurrent ticks interleave."""

    async def get_run(self, run_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        return await super().get_run(run_id)

    async def list_jobs_for_master_run(self, master_run_id: str) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return await super().list_jobs_for_master_run(master_run_id)


class BrokenStagesRepository(InMemoryRepository):
    def __init__(self) -> None:
        super().__init__()
        self.fail_stage_reads = True

    async def list_stages(self, run_id: str) -> list[dict[str, Any]]:
        if self.fail_stage_reads:
            raise RuntimeError("stage read failed")
        return await super().list_stages(run_id)


def _master_run(repo: InMemoryRepository, *, jobs: int = 2) -> tuple[RunAggregator, str, list[str]]:
    source_id = repo.add_source("grants.gov")["id"]
    coordinator = JobQueueCoordinator(repo)
    created = asyncio.run(
        coordinator.create_master_run(
            source_id,
            [{"external_id": f"E-{index}", "title": f"Program Number {index:03d}"} for index in range(jobs * 5)],
            chunk_size=5,
        )
    )
    return RunAggregator(repo, coordinator), created["master_run"]["id"], [job["id"] for job in created["jobs"]]


def _finish_job(repo: InMemoryRepository, run_id: str, job_id: str, *, status: str = "completed") -> None:
    repo.jobs[job_id].update({"status": status, "processing_time_ms": 800, "tokens_used": 6000})
    stage_rows = {
        "extraction": {"input_count": 5, "output_count": 5, "api_calls_made": 1},
        "enrichment": {"input_count": 2, "output_count": 2, "tokens_used": 3000, "estimated_cost_usd": 0.03},
        "storage": {"input_count": 2, "output_count": 2},
        "direct_update": {"input_count": 1, "output_count": 1},
    }
    for stage_name, fields in stage_rows.items():
        asyncio.run(repo.upsert_stage(run_id, stage_name, {"status": "completed", **fields}, job_id=job_id))


def test_unfinished_master_run_stays_in_progress() -> None:
    repo = InMemoryRepository()
    aggregator, run_id, job_ids = _master_run(repo)
    _finish_job(repo, run_id, job_ids[0])

    outcome = asyncio.run(aggregator.check_and_complete(run_id))

    assert outcome.result == "in_progress"
    assert repo.runs[run_id]["status"] == "processing"


def test_unfinished_master_run_left_aggregating_returns_to_processing() -> None:
    repo = InMemoryRepository()
    aggregator, run_id, job_ids = _master_run(repo)
    _finish_job(repo, run_id, job_ids[0])
    repo.runs[run_id]["status"] = "aggregating"

    outcome = asyncio.run(aggregator.check_and_complete(run_id))

    assert outcome.result == "in_progress"
    assert repo.runs[run_id]["status"] == "processing"


def test_finished_master_run_is_folded_into_final_results() -> None:
    repo = InMemoryRepository()
    aggregator, run_id, job_ids = _master_run(repo)
    _finish_job(repo, run_id, job_ids[0])
    _finish_job(repo, run_id, job_ids[1], status="failed")

    outcome = asyncio.run(aggregator.check_and_complete(run_id))

    results = repo.runs[run_id]["final_results"]
    assert outcome.result == "aggregated"
    assert repo.runs[run_id]["status"] == "completed"
    assert results["jobs_processed"] == 2
    assert results["jobs_successful"] == 1
    assert results["jobs_failed"] == 1
    assert results["success_rate_percentage"] == 50.0
    assert results["total_extracted"] == 10
    assert results["bypassed_enrichment"] == 6
    assert results["resource_savings_percentage"] == 60.0
    assert results["total_new_stored"] == 4
    assert results["total_updates_applied"] == 2
    assert results["total_tokens_used"] == 6000
    assert results["estimated_cost_usd"] == 0.06
    assert results["total_processing_time_ms"] == 1600
    assert results["stages"]["extraction"]["count"] == 2


def test_second_check_reports_already_completed() -> None:
    repo = InMemoryRepository()
    aggregator, run_id, job_ids = _master_run(repo, jobs=1)
    _finish_job(repo, run_id, job_ids[0])

    assert asyncio.run(aggregator.check_and_complete(run_id)).result == "aggregated"
    first_results = repo.runs[run_id]["final_results"]
    assert asyncio.run(aggregator.check_and_complete(run_id)).result == "already_completed"
    assert repo.runs[run_id]["final_results"] == first_results


def test_concurrent_checks_aggregate_exactly_once() -> None:
    repo = YieldingRepository()
    aggregator, run_id, job_ids = _master_run(repo)
    for job_id in job_ids:
        _finish_job(repo, run_id, job_id)

    async def race() -> list[str]:
        outcomes = await asyncio.gather(*(aggregator.check_and_complete(run_id) for _ in range(4)))
        return [outcome.result for outcome in outcomes]

    results = asyncio.run(race())

    assert results.count("aggregated") == 1
    assert set(results) <= {"aggregated", "lock_not_acquired", "already_completed"}
    assert repo.runs[run_id]["status"] == "completed"


def test_failed_fold_reverts_to_processing_for_a_later_tick() -> None:
    repo = BrokenStagesRepository()
    aggregator, run_id, job_ids = _master_run(repo, jobs=1)
    _finish_job(repo, run_id, job_ids[0])

    outcome = asyncio.run(aggregator.check_and_complete(run_id))

    assert outcome.result == "reverted"
    assert outcome.error == "stage read failed"
    assert repo.runs[run_id]["status"] == "processing"

    repo.fail_stage_reads = False
    assert asyncio.run(aggregator.check_and_complete(run_id)).result == "aggregated"
