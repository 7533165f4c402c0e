from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from funding_ingest.services.repository import (
    JOB_COLUMNS,
    JOB_INSERT_COLUMNS,
    JOB_STATUSES,
    RECORD_COLUMNS,
    RUN_COLUMNS,
    STAGE_COLUMNS,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


class InMemoryRepository:
    """Process-local store with the same contract as ``PostgresRepository``.

    Methods never await internally, so every conditional write runs to
    completion before another coroutine can observe the row.
    """

    def __init__(self) -> None:
        self.sources: dict[str, dict[str, Any]] = {}
        self.records: dict[str, dict[str, Any]] = {}
        self.runs: dict[str, dict[str, Any]] = {}
        self.stages: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.stage_metrics: list[dict[str, Any]] = []

    async def close(self) -> None:
        return None

    def add_source(self, name: str, *, source_id: str | None = None, **extra: Any) -> dict[str, Any]:
        now = _now()
        source = {"id": source_id or str(uuid4()), "name": name, "created_at": now, "updated_at": now, **extra}
        self.sources[source["id"]] = source
        return deepcopy(source)

    async def get_source(self, source_id: str) -> dict[str, Any]:
        source = self.sources.get(source_id)
        if source is None:
            raise RepositoryNotFoundError("source not found")
        return deepcopy(source)

    async def fetch_records_by_external_ids(self, source_id: str, external_ids: list[str]) -> list[dict[str, Any]]:
        wanted = set(external_ids)
        return [
            deepcopy(row)
            for row in self.records.values()
            if row["source_id"] == source_id and row.get("external_id") in wanted
        ]

    async def fetch_records_by_titles(self, source_id: str, titles: list[str]) -> list[dict[str, Any]]:
        wanted = set(titles)
        rows = [
            row
            for row in self.records.values()
            if row["source_id"] == source_id and (row.get("title") or "").strip() in wanted
        ]
        rows.sort(key=lambda row: row["updated_at"], reverse=True)
        return [deepcopy(row) for row in rows]

    async def insert_record(self, source_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        _check_columns(fields, RECORD_COLUMNS)
        now = _now()
        row: dict[str, Any] = {
            "id": str(uuid4()),
            "source_id": source_id,
            "payload": {},
            "enrichment": {},
            "created_at": now,
            "updated_at": now,
        }
        row.update(deepcopy(fields))
        self.records[row["id"]] = row
        return deepcopy(row)

    async def update_record_fields(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        _check_columns(fields, RECORD_COLUMNS)
        row = self.records.get(record_id)
        if row is None:
            raise RepositoryNotFoundError("record not found")
        row.update(deepcopy(fields))
        if "updated_at" not in fields:
            row["updated_at"] = _now()
        return deepcopy(row)

    async def create_run(
        self,
        *,
        source_id: str,
        kind: str,
        total_chunks: int | None = None,
        configuration: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if source_id not in self.sources:
            raise RepositoryNotFoundError("source not found")
        now = _now()
        run = {
            "id": str(uuid4()),
            "source_id": source_id,
            "kind": kind,
            "status": "processing",
            "total_chunks": total_chunks,
            "configuration": deepcopy(configuration or {}),
            "final_results": None,
            "error_details": None,
            "failed_stage": None,
            "total_execution_time_ms": None,
            "started_at": now,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.runs[run["id"]] = run
        return deepcopy(run)

    async def get_run(self, run_id: str) -> dict[str, Any]:
        run = self.runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        return deepcopy(run)

    async def update_run(
        self,
        run_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        _check_columns(fields, RUN_COLUMNS)
        run = self.runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        if expected_status is not None and run["status"] != expected_status:
            return None
        run.update(deepcopy(fields))
        run["updated_at"] = _now()
        return deepcopy(run)

    async def get_stage(self, run_id: str, stage_name: str, job_id: str | None = None) -> dict[str, Any] | None:
        stage = self.stages.get((run_id, job_id, stage_name))
        return deepcopy(stage) if stage is not None else None

    async def upsert_stage(
        self,
        run_id: str,
        stage_name: str,
        fields: dict[str, Any],
        job_id: str | None = None,
    ) -> dict[str, Any]:
        _check_columns(fields, STAGE_COLUMNS)
        if run_id not in self.runs:
            raise RepositoryNotFoundError("run not found")
        key = (run_id, job_id, stage_name)
        now = _now()
        stage = self.stages.get(key)
        if stage is None:
            stage = {
                "id": str(uuid4()),
                "run_id": run_id,
                "job_id": job_id,
                "stage_name": stage_name,
                "status": "pending",
                "started_at": None,
                "completed_at": None,
                "execution_time_ms": None,
                "input_count": None,
                "output_count": None,
                "tokens_used": 0,
                "api_calls_made": 0,
                "estimated_cost_usd": 0.0,
                "stage_results": None,
                "performance_metrics": None,
                "created_at": now,
            }
            self.stages[key] = stage
        stage.update(deepcopy(fields))
        stage["updated_at"] = now
        return deepcopy(stage)

    async def list_stages(self, run_id: str) -> list[dict[str, Any]]:
        rows = [stage for (stage_run_id, _, _), stage in self.stages.items() if stage_run_id == run_id]
        rows.sort(key=lambda stage: (stage.get("stage_order") or 0, stage["created_at"]))
        return [deepcopy(stage) for stage in rows]

    async def append_stage_metrics(
        self,
        *,
        stage_name: str,
        metrics: dict[str, Any],
        run_id: str | None = None,
        job_id: str | None = None,
    ) -> None:
        self.stage_metrics.append(
            {
                "id": len(self.stage_metrics) + 1,
                "run_id": run_id,
                "job_id": job_id,
                "stage_name": stage_name,
                "metrics": deepcopy(metrics),
                "recorded_at": _now(),
            }
        )

    async def create_job(self, fields: dict[str, Any]) -> dict[str, Any]:
        _check_columns(fields, JOB_INSERT_COLUMNS)
        if fields.get("master_run_id") not in self.runs:
            raise RepositoryNotFoundError("master run not found")
        now = _now()
        job: dict[str, Any] = {
            "id": str(uuid4()),
            "raw_data": [],
            "processing_config": {},
            "status": "pending",
            "retry_count": 0,
            "error_details": None,
            "started_at": None,
            "completed_at": None,
            "processing_time_ms": None,
            "tokens_used": 0,
            "estimated_cost_usd": 0.0,
            "opportunities_processed": 0,
            "new_count": 0,
            "updated_count": 0,
            "skipped_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        job.update(deepcopy(fields))
        self.jobs[job["id"]] = job
        return deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return deepcopy(job)

    async def claim_next_pending_job(self) -> dict[str, Any] | None:
        pending = [job for job in self.jobs.values() if job["status"] == "pending"]
        if not pending:
            return None
        job = min(pending, key=lambda row: (row["created_at"], row.get("chunk_index") or 0))
        now = _now()
        job.update({"status": "processing", "started_at": now, "completed_at": None, "updated_at": now})
        return deepcopy(job)

    async def list_stuck_jobs(self, started_before: datetime) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self.jobs.values()
            if job["status"] == "processing" and job["started_at"] is not None and job["started_at"] < started_before
        ]
        rows.sort(key=lambda job: job["started_at"])
        return [deepcopy(job) for job in rows]

    async def list_retryable_failed_jobs(self, max_retries: int) -> list[dict[str, Any]]:
        rows = [job for job in self.jobs.values() if job["status"] == "failed" and job["retry_count"] < max_retries]
        rows.sort(key=lambda job: job["updated_at"])
        return [deepcopy(job) for job in rows]

    async def list_jobs_for_master_run(self, master_run_id: str) -> list[dict[str, Any]]:
        rows = [job for job in self.jobs.values() if job["master_run_id"] == master_run_id]
        rows.sort(key=lambda job: job["chunk_index"])
        return [deepcopy(job) for job in rows]

    async def update_job(
        self,
        job_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_started_at: datetime | None = None,
    ) -> dict[str, Any] | None:
        _check_columns(fields, JOB_COLUMNS)
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if expected_status is not None and job["status"] != expected_status:
            return None
        if expected_started_at is not None and job["started_at"] != expected_started_at:
            return None
        job.update(deepcopy(fields))
        job["updated_at"] = _now()
        return deepcopy(job)

    async def queue_status(self) -> dict[str, Any]:
        counts = {status: 0 for status in JOB_STATUSES}
        for job in self.jobs.values():
            counts[job["status"]] += 1
        pending_created = [job["created_at"] for job in self.jobs.values() if job["status"] == "pending"]
        return {
            **counts,
            "total": sum(counts.values()),
            "oldest_pending_at": min(pending_created) if pending_created else None,
        }

    async def delete_finished_jobs_before(self, cutoff: datetime) -> int:
        doomed = [
            job_id
            for job_id, job in self.jobs.items()
            if job["status"] in {"completed", "failed"} and job["completed_at"] is not None and job["completed_at"] < cutoff
        ]
        for job_id in doomed:
            del self.jobs[job_id]
        return len(doomed)


def _check_columns(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise RepositoryValidationError(f"unsupported fields: {', '.join(unknown)}")


def _now() -> datetime:
    return datetime.now(timezone.utc)
