from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from opentelemetry import trace

from funding_ingest.core.config import Settings
from funding_ingest.schemas.jobs import JobStatus
from funding_ingest.schemas.records import Record
from funding_ingest.services.aggregation import RunAggregator
from funding_ingest.services.collaborators import Enricher, ExtractionResult
from funding_ingest.services.job_queue import JobQueueCoordinator, QueueConfig, RecoveryResult
from funding_ingest.services.metrics import MetricsRecorder
from funding_ingest.services.pipeline import PipelineRouter, StageExecutionError, build_router
from funding_ingest.services.repository import RepositoryError
from funding_ingest.services.stages import StageTracker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class TickResult:
    processed: bool
    job_id: str | None = None
    master_run_id: str | None = None
    job_status: str | None = None
    aggregation: str | None = None
    recovered_jobs: int = 0
    retried_jobs: int = 0
    queue_status: dict[str, Any] = field(default_factory=dict)


class JobProcessor:
    """One scheduler tick: sweep, claim at most one chunk, process it, aggregate."""

    def __init__(
        self,
        repository: Any,
        coordinator: JobQueueCoordinator,
        aggregator: RunAggregator,
        router: PipelineRouter,
        metrics_recorder: MetricsRecorder | None = None,
    ) -> None:
        self.repository = repository
        self.coordinator = coordinator
        self.aggregator = aggregator
        self.router = router
        self.metrics_recorder = metrics_recorder

    async def process_next_job(self) -> TickResult:
        with tracer.start_as_current_span("cron.process_next_job") as span:
            recovery = await self._sweep("stuck job recovery", self.coordinator.recover_stuck_jobs, RecoveryResult())
            retried = await self._sweep("failed job retry", self.coordinator.retry_failed_jobs, 0)

            job = await self.coordinator.get_next_pending_job()
            if job is None:
                return TickResult(
                    processed=False,
                    recovered_jobs=recovery.requeued,
                    retried_jobs=retried,
                    queue_status=await self.coordinator.get_queue_status(),
                )

            span.set_attribute("job.id", job["id"])
            job_status = await self._process_job(job)
            aggregation = await self.aggregator.check_and_complete(job["master_run_id"])
            return TickResult(
                processed=True,
                job_id=job["id"],
                master_run_id=job["master_run_id"],
                job_status=job_status,
                aggregation=aggregation.result,
                recovered_jobs=recovery.requeued,
                retried_jobs=retried,
                queue_status=await self.coordinator.get_queue_status(),
            )

    async def _process_job(self, job: dict[str, Any]) -> str:
        started = time.perf_counter()
        tracker = StageTracker(
            self.repository,
            job["master_run_id"],
            job_id=job["id"],
            metrics_recorder=self.metrics_recorder,
        )
        raw_data = job.get("raw_data") or []

        try:
            if job.get("retry_count"):
                await tracker.reset_stages()
            source = await self.repository.get_source(job["source_id"])
            records = [Record.from_payload(item, source_id=job["source_id"]) for item in raw_data if isinstance(item, dict)]

            async def extract() -> ExtractionResult:
                return ExtractionResult(
                    records=records,
                    metrics={"raw_count": len(raw_data), "chunk_index": job["chunk_index"]},
                )

            outcome = await self.router.route(tracker, source, extract)
        except Exception as exc:
            logger.exception("job execution failed for id=%s", job["id"])
            await self.coordinator.update_job_status(
                job["id"],
                JobStatus.FAILED,
                claimed_at=job["started_at"],
                processing_time_ms=self._elapsed_ms(started),
                error_details=str(exc) or type(exc).__name__,
            )
            return JobStatus.FAILED.value

        counts = {
            "processing_time_ms": self._elapsed_ms(started),
            "tokens_used": outcome.tokens_used,
            "estimated_cost_usd": round(outcome.estimated_cost_usd, 6),
            "opportunities_processed": outcome.extracted,
            "new_count": outcome.stored,
            "updated_count": outcome.updated,
            "skipped_count": outcome.skipped,
        }
        if outcome.status == "error":
            message = outcome.error.message if outcome.error else "pipeline failed"
            await tracker.record_error(StageExecutionError(outcome.failed_stage, message), outcome.failed_stage)
            await self.coordinator.update_job_status(
                job["id"],
                JobStatus.FAILED,
                claimed_at=job["started_at"],
                error_details=f"{outcome.failed_stage}: {message}",
                **counts,
            )
            return JobStatus.FAILED.value

        await self.coordinator.update_job_status(
            job["id"], JobStatus.COMPLETED, claimed_at=job["started_at"], **counts
        )
        return JobStatus.COMPLETED.value

    @staticmethod
    async def _sweep(label: str, operation: Callable[[], Awaitable[T]], fallback: T) -> T:
        try:
            return await operation()
        except RepositoryError as exc:
            logger.warning("%s skipped: %s", label, exc)
            return fallback

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)


def build_job_processor(repository: Any, settings: Settings, *, enricher: Enricher) -> JobProcessor:
    coordinator = JobQueueCoordinator(repository, QueueConfig.from_settings(settings))
    metrics_recorder = MetricsRecorder(repository)
    return JobProcessor(
        repository,
        coordinator,
        RunAggregator(repository, coordinator, cost_per_1k_tokens=settings.cost_per_1k_tokens),
        build_router(repository, settings, enricher=enricher),
        metrics_recorder=metrics_recorder,
    )
