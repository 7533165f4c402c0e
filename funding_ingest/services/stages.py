from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from funding_ingest.schemas.pipeline import (
    STAGE_ORDER,
    TERMINAL_STAGE_STATUSES,
    RunStatus,
    StageName,
    StageStatus,
)
from funding_ingest.schemas.records import parse_timestamp
from funding_ingest.services.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base pipeline error."""


class StageTransitionError(PipelineError):
    """Raised when a stage or run is moved to a state it cannot reach."""


@dataclass(slots=True)
class StageMetrics:
    input_count: int | None = None
    output_count: int | None = None
    tokens_used: int = 0
    api_calls_made: int = 0
    estimated_cost_usd: float = 0.0
    execution_time_ms: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def columns(self) -> dict[str, Any]:
        columns: dict[str, Any] = {
            "tokens_used": self.tokens_used,
            "api_calls_made": self.api_calls_made,
            "estimated_cost_usd": self.estimated_cost_usd,
        }
        if self.input_count is not None:
            columns["input_count"] = self.input_count
        if self.output_count is not None:
            columns["output_count"] = self.output_count
        if self.extra:
            columns["performance_metrics"] = self.extra
        return columns

    def as_dict(self) -> dict[str, Any]:
        return {
            "input_count": self.input_count,
            "output_count": self.output_count,
            "tokens_used": self.tokens_used,
            "api_calls_made": self.api_calls_made,
            "estimated_cost_usd": self.estimated_cost_usd,
            "execution_time_ms": self.execution_time_ms,
            **self.extra,
        }


class StageTracker:
    """Stage and run bookkeeping for one run, or one chunk job of a master run.

    Job-scoped trackers write their stage rows under the master run id keyed
    by job id, and never change the master run status themselves.
    """

    def __init__(
        self,
        repository: Any,
        run_id: str,
        *,
        job_id: str | None = None,
        metrics_recorder: MetricsRecorder | None = None,
    ) -> None:
        self.repository = repository
        self.run_id = run_id
        self.job_id = job_id
        self.metrics_recorder = metrics_recorder

    @property
    def is_job_scoped(self) -> bool:
        return self.job_id is not None

    async def update_stage(
        self,
        name: StageName | str,
        status: StageStatus | str,
        result: dict[str, Any] | None = None,
        metrics: StageMetrics | None = None,
    ) -> dict[str, Any]:
        stage = StageName(name)
        target = StageStatus(status)
        current = await self.repository.get_stage(self.run_id, stage.value, self.job_id)
        current_status = StageStatus(current["status"]) if current else StageStatus.PENDING

        if current is not None and current_status is target:
            return current
        self._validate_stage_transition(from_status=current_status, to_status=target)

        now = datetime.now(timezone.utc)
        fields: dict[str, Any] = {"stage_order": stage.order, "status": target.value}
        if target is StageStatus.PROCESSING:
            fields["started_at"] = now
        if target in TERMINAL_STAGE_STATUSES:
            fields["completed_at"] = now
            execution_time_ms = metrics.execution_time_ms if metrics else None
            started_at = parse_timestamp(current.get("started_at")) if current else None
            if execution_time_ms is None and started_at is not None:
                execution_time_ms = int((now - started_at).total_seconds() * 1000)
            if execution_time_ms is not None:
                fields["execution_time_ms"] = execution_time_ms
        if result is not None:
            fields["stage_results"] = result
        if metrics is not None:
            fields.update(metrics.columns())

        row = await self.repository.upsert_stage(self.run_id, stage.value, fields, job_id=self.job_id)
        logger.info(
            "stage %s -> %s run_id=%s job_id=%s",
            stage.value,
            target.value,
            self.run_id,
            self.job_id,
        )

        if target is StageStatus.COMPLETED and metrics is not None and self.metrics_recorder is not None:
            await self.metrics_recorder.record_stage_metrics(
                stage.value,
                {**metrics.as_dict(), "execution_time_ms": fields.get("execution_time_ms")},
                run_id=self.run_id,
                job_id=self.job_id,
            )
        return row

    async def reset_stages(self) -> None:
        """Return every stage of this tracker to ``pending`` for a retried job."""
        for stage in STAGE_ORDER:
            await self.repository.upsert_stage(
                self.run_id,
                stage.value,
                {
                    "stage_order": stage.order,
                    "status": StageStatus.PENDING.value,
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
                },
                job_id=self.job_id,
            )

    async def complete_run(self, execution_time_ms: int, aggregated_results: dict[str, Any]) -> dict[str, Any]:
        if self.is_job_scoped:
            raise PipelineError("chunk jobs do not complete the master run; the aggregator does")

        updated = await self.repository.update_run(
            self.run_id,
            {
                "status": RunStatus.COMPLETED.value,
                "completed_at": datetime.now(timezone.utc),
                "total_execution_time_ms": execution_time_ms,
                "final_results": aggregated_results,
            },
            expected_status=RunStatus.PROCESSING.value,
        )
        if updated is not None:
            return updated

        run = await self.repository.get_run(self.run_id)
        if run["status"] == RunStatus.COMPLETED.value:
            return run
        raise StageTransitionError(f"invalid run status transition: {run['status']} -> completed")

    async def record_error(self, error: BaseException | str, failed_stage: StageName | str | None) -> dict[str, Any]:
        stage_value = StageName(failed_stage).value if failed_stage else None
        details = {
            "message": str(error),
            "type": type(error).__name__ if isinstance(error, BaseException) else "PipelineError",
            "failed_stage": stage_value,
        }
        if self.is_job_scoped:
            logger.warning(
                "chunk failed job_id=%s master_run_id=%s stage=%s: %s",
                self.job_id,
                self.run_id,
                stage_value,
                details["message"],
            )
            return details

        updated = await self.repository.update_run(
            self.run_id,
            {
                "status": RunStatus.FAILED.value,
                "error_details": details,
                "failed_stage": stage_value,
                "completed_at": datetime.now(timezone.utc),
            },
            expected_status=RunStatus.PROCESSING.value,
        )
        if updated is None:
            run = await self.repository.get_run(self.run_id)
            if run["status"] != RunStatus.FAILED.value:
                logger.warning(
                    "run error not recorded run_id=%s status=%s stage=%s",
                    self.run_id,
                    run["status"],
                    stage_value,
                )
        else:
            logger.warning("run failed run_id=%s stage=%s: %s", self.run_id, stage_value, details["message"])
        return details

    @staticmethod
    def _validate_stage_transition(*, from_status: StageStatus, to_status: StageStatus) -> None:
        allowed_transitions = {
            StageStatus.PENDING: {StageStatus.PROCESSING, StageStatus.SKIPPED, StageStatus.FAILED},
            StageStatus.PROCESSING: {StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED},
        }
        if to_status is from_status and from_status not in TERMINAL_STAGE_STATUSES:
            return
        allowed = allowed_transitions.get(from_status)
        if not allowed or to_status not in allowed:
            raise StageTransitionError(f"invalid stage transition: {from_status.value} -> {to_status.value}")
