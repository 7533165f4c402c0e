from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from funding_ingest.core.config import get_settings

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


RECORD_COLUMNS = frozenset(
    {
        "external_id",
        "title",
        "minimum_award",
        "maximum_award",
        "total_funding_available",
        "open_date",
        "close_date",
        "status",
        "api_updated_at",
        "payload",
        "enrichment",
        "updated_at",
    }
)
RUN_COLUMNS = frozenset(
    {
        "status",
        "total_chunks",
        "configuration",
        "final_results",
        "error_details",
        "failed_stage",
        "total_execution_time_ms",
        "completed_at",
    }
)
STAGE_COLUMNS = frozenset(
    {
        "stage_order",
        "status",
        "started_at",
        "completed_at",
        "execution_time_ms",
        "input_count",
        "output_count",
        "tokens_used",
        "api_calls_made",
        "estimated_cost_usd",
        "stage_results",
        "performance_metrics",
    }
)
JOB_COLUMNS = frozenset(
    {
        "status",
        "retry_count",
        "error_details",
        "started_at",
        "completed_at",
        "processing_time_ms",
        "tokens_used",
        "estimated_cost_usd",
        "opportunities_processed",
        "new_count",
        "updated_count",
        "skipped_count",
    }
)
JOB_INSERT_COLUMNS = frozenset(
    {"source_id", "master_run_id", "chunk_index", "total_chunks", "raw_data", "processing_config", "status"}
)
JSON_COLUMNS = frozenset(
    {
        "payload",
        "enrichment",
        "configuration",
        "final_results",
        "stage_results",
        "performance_metrics",
        "raw_data",
        "processing_config",
        "metrics",
    }
)
# error_details is jsonb on runs and plain text on jobs.
RUN_JSON_COLUMNS = JSON_COLUMNS | {"error_details"}
UUID_COLUMNS = frozenset({"source_id", "master_run_id"})
JOB_STATUSES = ("pending", "processing", "completed", "failed")


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_source(self, source_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow("select * from funding_sources where id = $1::uuid", source_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        if not row:
            raise RepositoryNotFoundError("source not found")
        return self._row_to_dict(row, json_columns=JSON_COLUMNS)

    async def fetch_records_by_external_ids(self, source_id: str, external_ids: list[str]) -> list[dict[str, Any]]:
        if not external_ids:
            return []
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            """
            select *
            from funding_records
            where source_id = $1::uuid and external_id = any($2::text[])
            """,
            source_id,
            external_ids,
        )
        return [self._row_to_dict(row, json_columns=JSON_COLUMNS) for row in rows]

    async def fetch_records_by_titles(self, source_id: str, titles: list[str]) -> list[dict[str, Any]]:
        if not titles:
            return []
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            """
            select *
            from funding_records
            where source_id = $1::uuid and btrim(title) = any($2::text[])
            order by updated_at desc
            """,
            source_id,
            titles,
        )
        return [self._row_to_dict(row, json_columns=JSON_COLUMNS) for row in rows]

    async def insert_record(self, source_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        columns, placeholders, values = self._build_insert(fields, allowed=RECORD_COLUMNS, start_index=2)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into funding_records (source_id, {", ".join(columns)})
                values ($1::uuid, {", ".join(placeholders)})
                returning *
                """,
                source_id,
                *values,
            )
        except asyncpg.UniqueViolationError as exc:
            raise RepositoryConflictError("record already exists for source") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(f"invalid record payload: {exc}") from exc
        except asyncpg.PostgresConnectionError as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc
        return self._row_to_dict(row, json_columns=JSON_COLUMNS)

    async def update_record_fields(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        row = await self._update_row(
            "funding_records",
            record_id,
            fields,
            allowed=RECORD_COLUMNS,
            json_columns=JSON_COLUMNS,
        )
        if row is None:
            raise RepositoryNotFoundError("record not found")
        return row

    async def create_run(
        self,
        *,
        source_id: str,
        kind: str,
        total_chunks: int | None = None,
        configuration: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into pipeline_runs (source_id, kind, status, total_chunks, configuration)
                values ($1::uuid, $2, 'processing', $3, $4::jsonb)
                returning *
                """,
                source_id,
                kind,
                total_chunks,
                json.dumps(configuration or {}),
            )
        except asyncpg.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("source not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        return self._row_to_dict(row, json_columns=RUN_JSON_COLUMNS)

    async def get_run(self, run_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow("select * from pipeline_runs where id = $1::uuid", run_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("run not found") from exc
        if not row:
            raise RepositoryNotFoundError("run not found")
        return self._row_to_dict(row, json_columns=RUN_JSON_COLUMNS)

    async def update_run(
        self,
        run_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``fields`` to a run, optionally only while it is in ``expected_status``.

        Returns ``None`` when the conditional write does not apply.
        """
        row = await self._update_row(
            "pipeline_runs",
            run_id,
            fields,
            allowed=RUN_COLUMNS,
            json_columns=RUN_JSON_COLUMNS,
            expected_status=expected_status,
        )
        if row is None and expected_status is None:
            raise RepositoryNotFoundError("run not found")
        return row

    async def get_stage(self, run_id: str, stage_name: str, job_id: str | None = None) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select *
            from pipeline_stages
            where run_id = $1::uuid
              and stage_name = $2
              and job_id is not distinct from $3::uuid
            """,
            run_id,
            stage_name,
            job_id,
        )
        return self._row_to_dict(row, json_columns=JSON_COLUMNS) if row else None

    async def upsert_stage(
        self,
        run_id: str,
        stage_name: str,
        fields: dict[str, Any],
        job_id: str | None = None,
    ) -> dict[str, Any]:
        columns, placeholders, values = self._build_insert(fields, allowed=STAGE_COLUMNS, start_index=4)
        updates = ", ".join(f"{column} = excluded.{column}" for column in columns)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into pipeline_stages (run_id, job_id, stage_name, {", ".join(columns)})
                values ($1::uuid, $2::uuid, $3, {", ".join(placeholders)})
                on conflict (run_id, coalesce(job_id, '00000000-0000-0000-0000-000000000000'::uuid), stage_name)
                do update set {updates}, updated_at = now()
                returning *
                """,
                run_id,
                job_id,
                stage_name,
                *values,
            )
        except asyncpg.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("run not found") from exc
        return self._row_to_dict(row, json_columns=JSON_COLUMNS)

    async def list_stages(self, run_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            "select * from pipeline_stages where run_id = $1::uuid order by stage_order, created_at",
            run_id,
        )
        return [self._row_to_dict(row, json_columns=JSON_COLUMNS) for row in rows]

    async def append_stage_metrics(
        self,
        *,
        stage_name: str,
        metrics: dict[str, Any],
        run_id: str | None = None,
        job_id: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into stage_metrics (run_id, job_id, stage_name, metrics)
            values ($1::uuid, $2::uuid, $3, $4::jsonb)
            """,
            run_id,
            job_id,
            stage_name,
            json.dumps(metrics, default=str),
        )

    async def create_job(self, fields: dict[str, Any]) -> dict[str, Any]:
        columns, placeholders, values = self._build_insert(fields, allowed=JOB_INSERT_COLUMNS, start_index=1)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into processing_jobs ({", ".join(columns)})
                values ({", ".join(placeholders)})
                returning *
                """,
                *values,
            )
        except asyncpg.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("master run not found") from exc
        return self._row_to_dict(row, json_columns=JSON_COLUMNS)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow("select * from processing_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._row_to_dict(row, json_columns=JSON_COLUMNS)

    async def claim_next_pending_job(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update processing_jobs
            set
              status = 'processing',
              started_at = now(),
              completed_at = null,
              updated_at = now()
            where id = (
              select id
              from processing_jobs
              where status = 'pending'
              order by created_at asc, chunk_index asc
              limit 1
              for update skip locked
            )
              and status = 'pending'
            returning *
            """
        )
        return self._row_to_dict(row, json_columns=JSON_COLUMNS) if row else None

    async def list_stuck_jobs(self, started_before: datetime) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            """
            select *
            from processing_jobs
            where status = 'processing' and started_at < $1
            order by started_at asc
            """,
            started_before,
        )
        return [self._row_to_dict(row, json_columns=JSON_COLUMNS) for row in rows]

    async def list_retryable_failed_jobs(self, max_retries: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            """
            select *
            from processing_jobs
            where status = 'failed' and retry_count < $1
            order by updated_at asc
            """,
            max_retries,
        )
        return [self._row_to_dict(row, json_columns=JSON_COLUMNS) for row in rows]

    async def list_jobs_for_master_run(self, master_run_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            "select * from processing_jobs where master_run_id = $1::uuid order by chunk_index asc",
            master_run_id,
        )
        return [self._row_to_dict(row, json_columns=JSON_COLUMNS) for row in rows]

    async def update_job(
        self,
        job_id: str,
        fields: dict[str, Any],
        *,
        expected_status: str | None = None,
        expected_started_at: datetime | None = None,
    ) -> dict[str, Any] | None:
        row = await self._update_row(
            "processing_jobs",
            job_id,
            fields,
            allowed=JOB_COLUMNS,
            json_columns=JSON_COLUMNS,
            expected_status=expected_status,
            expected_started_at=expected_started_at,
        )
        if row is None and expected_status is None:
            raise RepositoryNotFoundError("job not found")
        return row

    async def queue_status(self) -> dict[str, Any]:
        pool = await self._get_pool()
        rows = await self._fetch_wrapped(
            pool,
            "select status, count(*)::int as total from processing_jobs group by status",
        )
        oldest_pending_at = await pool.fetchval(
            "select min(created_at) from processing_jobs where status = 'pending'"
        )
        counts = {status: 0 for status in JOB_STATUSES}
        for row in rows:
            counts[row["status"]] = row["total"]
        return {**counts, "total": sum(counts.values()), "oldest_pending_at": oldest_pending_at}

    async def delete_finished_jobs_before(self, cutoff: datetime) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            delete from processing_jobs
            where status in ('completed', 'failed') and completed_at < $1
            """,
            cutoff,
        )
        return self._coerce_int(result.rsplit(" ", maxsplit=1)[-1]) or 0

    async def _update_row(
        self,
        table: str,
        row_id: str,
        fields: dict[str, Any],
        *,
        allowed: frozenset[str],
        json_columns: frozenset[str],
        expected_status: str | None = None,
        expected_started_at: datetime | None = None,
    ) -> dict[str, Any] | None:
        assignments, values = self._build_assignments(fields, allowed=allowed, json_columns=json_columns, start_index=2)
        if "updated_at" not in fields:
            assignments.append("updated_at = now()")
        params: list[Any] = [row_id, *values]
        condition = ""
        if expected_status is not None:
            params.append(expected_status)
            condition = f" and status = ${len(params)}"
        if expected_started_at is not None:
            params.append(expected_started_at)
            condition += f" and started_at = ${len(params)}"

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update {table}
                    set {", ".join(assignments)}
                    where id = $1::uuid{condition}
                    returning *
                    """,
                    *params,
                )
                if row:
                    return self._row_to_dict(row, json_columns=json_columns)
                if expected_status is None:
                    return None
                exists = await conn.fetchval(f"select 1 from {table} where id = $1::uuid", row_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError(f"{table} row not found") from exc

        if not exists:
            raise RepositoryNotFoundError(f"{table} row not found")
        return None

    @staticmethod
    def _build_assignments(
        fields: dict[str, Any],
        *,
        allowed: frozenset[str],
        json_columns: frozenset[str],
        start_index: int,
    ) -> tuple[list[str], list[Any]]:
        unknown = sorted(set(fields) - allowed)
        if unknown:
            raise RepositoryValidationError(f"unsupported fields: {', '.join(unknown)}")
        if not fields:
            raise RepositoryValidationError("no fields to update")

        assignments: list[str] = []
        values: list[Any] = []
        for index, (column, value) in enumerate(fields.items(), start=start_index):
            if column in json_columns:
                assignments.append(f"{column} = ${index}::jsonb")
                values.append(None if value is None else json.dumps(value, default=str))
            else:
                assignments.append(f"{column} = ${index}")
                values.append(value)
        return assignments, values

    @staticmethod
    def _build_insert(
        fields: dict[str, Any],
        *,
        allowed: frozenset[str],
        start_index: int,
    ) -> tuple[list[str], list[str], list[Any]]:
        unknown = sorted(set(fields) - allowed)
        if unknown:
            raise RepositoryValidationError(f"unsupported fields: {', '.join(unknown)}")

        columns: list[str] = []
        placeholders: list[str] = []
        values: list[Any] = []
        for index, (column, value) in enumerate(fields.items(), start=start_index):
            columns.append(column)
            if column in JSON_COLUMNS:
                placeholders.append(f"${index}::jsonb")
                values.append(json.dumps(value, default=str))
            elif column in UUID_COLUMNS:
                placeholders.append(f"${index}::uuid")
                values.append(value)
            else:
                placeholders.append(f"${index}")
                values.append(value)
        return columns, placeholders, values

    @staticmethod
    async def _fetch_wrapped(pool: asyncpg.Pool, query: str, *args: Any) -> list[asyncpg.Record]:
        try:
            return await pool.fetch(query, *args)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        except (asyncpg.PostgresConnectionError, OSError) as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _row_to_dict(cls, row: asyncpg.Record, *, json_columns: frozenset[str]) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key, value in row.items():
            if isinstance(value, UUID):
                value = str(value)
            elif isinstance(value, Decimal):
                value = float(value)
            elif key in json_columns and value is not None:
                value = cls._coerce_json(value)
            data[key] = value
        return data

    @staticmethod
    def _coerce_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


@lru_cache
def get_repository():
    settings = get_settings()
    if not settings.database_url:
        # Imported lazily: the in-memory store depends on the error types above.
        from funding_ingest.services.store import InMemoryRepository

        logger.warning("FI_DATABASE_URL not set; using in-memory repository")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
