from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from opentelemetry import trace

from funding_ingest.schemas.jobs import JobStatus
from funding_ingest.schemas.pipeline import RunStatus, StageName
from funding_ingest.schemas.records import parse_timestamp
from funding_ingest.services.job_queue import JobQueueCoordinator

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

AggregationResult = Literal["in_progress", "already_completed", "lock_not_acquired", "aggregated", "reverted"]


@dataclass(slots=True)
class AggregationOutcome:
    result: AggregationResult
    master_run_id: str
    final_results: dict[str, Any] | None = None
    error: str | None = None


class RunAggregator:
    """Fold finished chunk jobs into their master run exactly once.

    The ``processing -> aggregating`` conditional write is the lock: only the
    tick whose write applies performs the fold. A failed fold puts the run
    back to ``processing`` for a later tick.
    """

    def __init__(self, repository: Any, coordinator: JobQueueCoordinator, *, cost_per_1k_tokens: float = 0.01) -> None:
        self.repository = repository
        self.coordinator = coordinator
        self.cost_per_1k_tokens = cost_per_1k_tokens

    async def check_and_complete(self, master_run_id: str) -> AggregationOutcome:
        with tracer.start_as_current_span("aggregation.check_and_complete") as span:
            span.set_attribute("run.id", master_run_id)
            progress = await self.coordinator.get_master_run_progress(master_run_id)

            if progress.status == RunStatus.COMPLETED.value:
                return AggregationOutcome(result="already_completed", master_run_id=master_run_id)

            if not progress.is_finished:
                # A chunk went back to pending after the lock was taken; the
                # holder's completing write then misses and a later tick folds.
                if progress.status != RunStatus.PROCESSING.value:
                    await self.repository.update_run(
                        master_run_id,
                        {"status": RunStatus.PROCESSING.value},
                        expected_status=progress.status,
                    )
                return AggregationOutcome(result="in_progress", master_run_id=master_run_id)

            locked = await self.repository.update_run(
                master_run_id,
                {"status": RunStatus.AGGREGATING.value},
                expected_status=RunStatus.PROCESSING.value,
            )
            if locked is None:
                logger.info("aggregation lock not acquired for master_run_id=%s", master_run_id)
                return AggregationOutcome(result="lock_not_acquired", master_run_id=master_run_id)

            try:
                jobs = await self.repository.list_jobs_for_master_run(master_run_id)
                stages = await self.repository.list_stages(master_run_id)
                final_results = self.fold(locked, jobs, stages)
            except Exception as exc:
                logger.exception("aggregation failed for master_run_id=%s; reverting to processing", master_run_id)
                await self.repository.update_run(
                    master_run_id,
                    {"status": RunStatus.PROCESSING.value},
                    expected_status=RunStatus.AGGREGATING.value,
                )
                return AggregationOutcome(result="reverted", master_run_id=master_run_id, error=str(exc))

            completed = await self.repository.update_run(
                master_run_id,
                {
                    "status": RunStatus.COMPLETED.value,
                    "completed_at": datetime.now(timezone.utc),
                    "total_execution_time_ms": final_results["total_execution_time_ms"],
                    "final_results": final_results,
                },
                expected_status=RunStatus.AGGREGATING.value,
            )
            if completed is None:
                logger.warning("master run left aggregating state during fold master_run_id=%s", master_run_id)
                return AggregationOutcome(result="lock_not_acquired", master_run_id=master_run_id)

            logger.info(
                "master run aggregated master_run_id=%s jobs=%s savings=%s%%",
                master_run_id,
                final_results["jobs_processed"],
                final_results["resource_savings_percentage"],
            )
            return AggregationOutcome(result="aggregated", master_run_id=master_run_id, final_results=final_results)

    def fold(self, run: dict[str, Any], jobs: list[dict[str, Any]], stages: list[dict[str, Any]]) -> dict[str, Any]:
        by_stage: dict[str, dict[str, Any]] = {}
        for stage in stages:
            bucket = by_stage.setdefault(
                stage["stage_name"],
                {
                    "count": 0,
                    "statuses": {},
                    "tokens_used": 0,
                    "api_calls_made": 0,
                    "execution_time_ms": 0,
                    "estimated_cost_usd": 0.0,
                    "input_count": 0,
                    "output_count": 0,
                    "earliest_started": None,
                    "latest_completed": None,
                },
            )
            bucket["count"] += 1
            bucket["statuses"][stage["status"]] = bucket["statuses"].get(stage["status"], 0) + 1
            bucket["tokens_used"] += int(stage.get("tokens_used") or 0)
            bucket["api_calls_made"] += int(stage.get("api_calls_made") or 0)
            bucket["execution_time_ms"] += int(stage.get("execution_time_ms") or 0)
            bucket["estimated_cost_usd"] += float(stage.get("estimated_cost_usd") or 0.0)
            bucket["input_count"] += int(stage.get("input_count") or 0)
            bucket["output_count"] += int(stage.get("output_count") or 0)
            started = parse_timestamp(stage.get("started_at"))
            if started is not None and (bucket["earliest_started"] is None or started < bucket["earliest_started"]):
                bucket["earliest_started"] = started
            finished = parse_timestamp(stage.get("completed_at"))
            if finished is not None and (bucket["latest_completed"] is None or finished > bucket["latest_completed"]):
                bucket["latest_completed"] = finished

        for bucket in by_stage.values():
            bucket["estimated_cost_usd"] = round(bucket["estimated_cost_usd"], 6)
            for key in ("earliest_started", "latest_completed"):
                if bucket[key] is not None:
                    bucket[key] = bucket[key].isoformat()

        def stage_total(name: StageName, key: str) -> int:
            return int(by_stage.get(name.value, {}).get(key, 0))

        total_tokens = sum(bucket["tokens_used"] for bucket in by_stage.values())
        if total_tokens == 0:
            total_tokens = sum(int(job.get("tokens_used") or 0) for job in jobs)
        total_cost = sum(bucket["estimated_cost_usd"] for bucket in by_stage.values())
        if total_cost == 0:
            total_cost = sum(float(job.get("estimated_cost_usd") or 0.0) for job in jobs)
        if total_cost == 0 and total_tokens:
            total_cost = total_tokens / 1000.0 * self.cost_per_1k_tokens

        extracted = stage_total(StageName.EXTRACTION, "output_count")
        if extracted == 0:
            extracted = sum(int(job.get("opportunities_processed") or 0) for job in jobs)
        entered_enrichment = stage_total(StageName.ENRICHMENT, "input_count")
        bypassed = max(0, extracted - entered_enrichment)

        total_new_stored = stage_total(StageName.STORAGE, "output_count")
        total_updates_applied = stage_total(StageName.DIRECT_UPDATE, "output_count")
        if not by_stage:
            total_new_stored = sum(int(job.get("new_count") or 0) for job in jobs)
            total_updates_applied = sum(int(job.get("updated_count") or 0) for job in jobs)

        jobs_successful = sum(1 for job in jobs if job["status"] == JobStatus.COMPLETED.value)
        jobs_failed = sum(1 for job in jobs if job["status"] == JobStatus.FAILED.value)
        started_at = parse_timestamp(run.get("started_at"))
        total_execution_time_ms = (
            int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            if started_at is not None
            else sum(int(job.get("processing_time_ms") or 0) for job in jobs)
        )

        return {
            "stages": by_stage,
            "jobs_processed": len(jobs),
            "jobs_successful": jobs_successful,
            "jobs_failed": jobs_failed,
            "success_rate_percentage": round(jobs_successful / len(jobs) * 100.0, 1) if jobs else 0.0,
            "total_extracted": extracted,
            "bypassed_enrichment": bypassed,
            "resource_savings_percentage": round(bypassed / extracted * 100.0, 1) if extracted else 0.0,
            "total_new_stored": total_new_stored,
            "total_updates_applied": total_updates_applied,
            "total_tokens_used": total_tokens,
            "total_api_calls": sum(bucket["api_calls_made"] for bucket in by_stage.values()),
            "estimated_cost_usd": round(total_cost, 6),
            "total_processing_time_ms": sum(int(job.get("processing_time_ms") or 0) for job in jobs),
            "total_execution_time_ms": total_execution_time_ms,
        }
