from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from funding_ingest.core.config import Settings
from funding_ingest.schemas.jobs import JobStatus
from funding_ingest.schemas.pipeline import RunKind
from funding_ingest.services.repository import RepositoryValidationError

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
JOB_RESULT_FIELDS = (
    "processing_time_ms",
    "tokens_used",
    "estimated_cost_usd",
    "opportunities_processed",
    "new_count",
    "updated_count",
    "skipped_count",
    "error_details",
)


@dataclass(slots=True)
class QueueConfig:
    max_retries: int = 3
    stuck_timeout_minutes: int = 5
    default_chunk_size: int = 5
    retention_days: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> QueueConfig:
        return cls(
            max_retries=settings.job_max_retries,
            stuck_timeout_minutes=settings.stuck_job_timeout_minutes,
            default_chunk_size=settings.default_chunk_size,
            retention_days=settings.job_retention_days,
        )


@dataclass(slots=True)
class RecoveryResult:
    timed_out: int = 0
    requeued: int = 0
    exhausted: int = 0


@dataclass(slots=True)
class MasterRunProgress:
    master_run_id: str
    status: str
    total_jobs: int
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    final_results: dict[str, Any] | None = None

    @property
    def finished_jobs(self) -> int:
        return self.completed + self.failed

    @property
    def is_finished(self) -> bool:
        return self.total_jobs > 0 and self.finished_jobs >= self.total_jobs

    @property
    def completion_percentage(self) -> float:
        if self.total_jobs <= 0:
            return 0.0
        return round(min(self.finished_jobs, self.total_jobs) / self.total_jobs * 100.0, 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "master_run_id": self.master_run_id,
            "status": self.status,
            "total_jobs": self.total_jobs,
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "completion_percentage": self.completion_percentage,
            "is_finished": self.is_finished,
            "final_results": self.final_results,
        }


class JobQueueCoordinator:
    """Lifecycle of chunk jobs: enqueue, claim, finish, recover and retry.

    Every state change is a single conditional write on the job row, so
    competing cron ticks never claim or finish the same job twice.
    """

    def __init__(self, repository: Any, config: QueueConfig | None = None) -> None:
        self.repository = repository
        self.config = config or QueueConfig()

    async def create_master_run(
        self,
        source_id: str,
        records: list[dict[str, Any]],
        *,
        chunk_size: int | None = None,
        processing_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        size = chunk_size or self.config.default_chunk_size
        if size < 1:
            raise RepositoryValidationError("chunk_size must be at least 1")
        chunks = [records[index : index + size] for index in range(0, len(records), size)]
        if not chunks:
            raise RepositoryValidationError("cannot enqueue an empty batch")

        master_run = await self.repository.create_run(
            source_id=source_id,
            kind=RunKind.MASTER.value,
            total_chunks=len(chunks),
            configuration={
                "chunk_size": size,
                "total_records": len(records),
                **(processing_config or {}),
            },
        )
        jobs = []
        for chunk_index, chunk in enumerate(chunks):
            jobs.append(
                await self.repository.create_job(
                    {
                        "source_id": source_id,
                        "master_run_id": master_run["id"],
                        "chunk_index": chunk_index,
                        "total_chunks": len(chunks),
                        "raw_data": chunk,
                        "processing_config": processing_config or {},
                        "status": JobStatus.PENDING.value,
                    }
                )
            )
        logger.info(
            "master run enqueued master_run_id=%s source_id=%s records=%s chunks=%s",
            master_run["id"],
            source_id,
            len(records),
            len(chunks),
        )
        return {"master_run": master_run, "jobs": jobs}

    async def get_next_pending_job(self) -> dict[str, Any] | None:
        job = await self.repository.claim_next_pending_job()
        if job is not None:
            logger.info(
                "claimed job id=%s master_run_id=%s chunk=%s/%s retry_count=%s",
                job["id"],
                job["master_run_id"],
                job["chunk_index"] + 1,
                job["total_chunks"],
                job["retry_count"],
            )
        return job

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus | str,
        *,
        claimed_at: datetime | None = None,
        **result_fields: Any,
    ) -> dict[str, Any] | None:
        """Persist a job status change plus its chunk-level results.

        Terminal writes only apply while the job is still ``processing``. When
        ``claimed_at`` is given it must also match the job's ``started_at``, so
        a worker whose job was recovered and reclaimed after a timeout cannot
        overwrite the newer attempt.
        """
        target = JobStatus(status)
        unknown = sorted(set(result_fields) - set(JOB_RESULT_FIELDS))
        if unknown:
            raise RepositoryValidationError(f"unsupported job result fields: {', '.join(unknown)}")

        now = datetime.now(timezone.utc)
        fields: dict[str, Any] = {"status": target.value}
        expected_status: str | None = None
        if target is JobStatus.PROCESSING:
            fields["started_at"] = now
            expected_status = JobStatus.PENDING.value
        elif target in TERMINAL_JOB_STATUSES:
            fields["completed_at"] = now
            expected_status = JobStatus.PROCESSING.value
        fields.update({key: value for key, value in result_fields.items() if value is not None})

        updated = await self.repository.update_job(
            job_id,
            fields,
            expected_status=expected_status,
            expected_started_at=claimed_at if expected_status == JobStatus.PROCESSING.value else None,
        )
        if updated is None:
            logger.warning("job status change to %s not applied for id=%s; job moved on", target.value, job_id)
        return updated

    async def recover_stuck_jobs(
        self,
        timeout_minutes: int | None = None,
        *,
        now: datetime | None = None,
    ) -> RecoveryResult:
        timeout = timeout_minutes if timeout_minutes is not None else self.config.stuck_timeout_minutes
        current = now or datetime.now(timezone.utc)
        result = RecoveryResult()

        for job in await self.repository.list_stuck_jobs(current - timedelta(minutes=timeout)):
            timed_out = await self.repository.update_job(
                job["id"],
                {
                    "status": JobStatus.FAILED.value,
                    "completed_at": current,
                    "error_details": f"job timed out after {timeout} minutes in processing status",
                },
                expected_status=JobStatus.PROCESSING.value,
                expected_started_at=job["started_at"],
            )
            if timed_out is None:
                continue
            result.timed_out += 1

            retry_count = int(job.get("retry_count") or 0)
            if retry_count >= self.config.max_retries:
                result.exhausted += 1
                logger.warning("job id=%s timed out with retries exhausted (%s)", job["id"], retry_count)
                continue

            attempt = retry_count + 1
            requeued = await self.repository.update_job(
                job["id"],
                {
                    "status": JobStatus.PENDING.value,
                    "retry_count": attempt,
                    "started_at": None,
                    "completed_at": None,
                    "error_details": f"timeout recovery - attempt {attempt}/{self.config.max_retries}",
                },
                expected_status=JobStatus.FAILED.value,
            )
            if requeued is not None:
                result.requeued += 1
                logger.info("requeued stuck job id=%s attempt=%s/%s", job["id"], attempt, self.config.max_retries)

        return result

    async def retry_failed_jobs(self, max_retries: int | None = None) -> int:
        budget = max_retries if max_retries is not None else self.config.max_retries
        retried = 0
        for job in await self.repository.list_retryable_failed_jobs(budget):
            attempt = int(job.get("retry_count") or 0) + 1
            previous_error = job.get("error_details") or "unknown error"
            requeued = await self.repository.update_job(
                job["id"],
                {
                    "status": JobStatus.PENDING.value,
                    "retry_count": attempt,
                    "started_at": None,
                    "completed_at": None,
                    "error_details": f"retry attempt {attempt}/{budget} after: {previous_error}",
                },
                expected_status=JobStatus.FAILED.value,
            )
            if requeued is not None:
                retried += 1
        if retried:
            logger.info("requeued failed jobs: %s", retried)
        return retried

    async def get_master_run_progress(self, master_run_id: str) -> MasterRunProgress:
        run = await self.repository.get_run(master_run_id)
        jobs = await self.repository.list_jobs_for_master_run(master_run_id)
        progress = MasterRunProgress(
            master_run_id=master_run_id,
            status=run["status"],
            total_jobs=int(run.get("total_chunks") or len(jobs)),
            final_results=run.get("final_results"),
        )
        for job in jobs:
            status = JobStatus(job["status"])
            setattr(progress, status.value, getattr(progress, status.value) + 1)
        return progress

    async def get_queue_status(self) -> dict[str, Any]:
        return await self.repository.queue_status()

    async def cleanup_old_jobs(self, days: int | None = None, *, now: datetime | None = None) -> int:
        retention = days if days is not None else self.config.retention_days
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention)
        deleted = await self.repository.delete_finished_jobs_before(cutoff)
        if deleted:
            logger.info("deleted finished jobs older than %s days: %s", retention, deleted)
        return deleted
