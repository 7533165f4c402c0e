from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from opentelemetry import trace

from funding_ingest.core.config import Settings
from funding_ingest.schemas.pipeline import NEW_BRANCH_STAGES, RunKind, RunStatus, StageName, StageStatus
from funding_ingest.schemas.records import Record
from funding_ingest.services.collaborators import (
    EnrichedRecord,
    Enricher,
    ErrorInfo,
    ExtractionResult,
    Extractor,
    FilterConfig,
    RecordFilter,
    RecordStorage,
    RepositoryRecordStorage,
    StageFailure,
    StageResult,
    StageSuccess,
    filter_by_score,
)
from funding_ingest.services.dedupe import ClassificationResult, ClassifierConfig, DuplicateClassifier
from funding_ingest.services.direct_update import DirectUpdateHandler
from funding_ingest.services.metrics import MetricsRecorder
from funding_ingest.services.repository import RepositoryConflictError
from funding_ingest.services.stages import PipelineError, StageMetrics, StageTracker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class StageExecutionError(PipelineError):
    """Raised to carry a failed stage out of a run."""

    def __init__(self, stage: str | None, message: str) -> None:
        super().__init__(message)
        self.stage = stage


@dataclass(slots=True)
class StageOutput:
    data: Any
    metrics: StageMetrics
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RouteOutcome:
    status: Literal["success", "error"] = "success"
    extracted: int = 0
    new: int = 0
    to_update: int = 0
    skipped: int = 0
    enriched: int = 0
    passed_filter: int = 0
    stored: int = 0
    updated: int = 0
    update_failures: int = 0
    tokens_used: int = 0
    api_calls_made: int = 0
    estimated_cost_usd: float = 0.0
    execution_time_ms: int = 0
    stage_statuses: dict[str, str] = field(default_factory=dict)
    classification: dict[str, Any] = field(default_factory=dict)
    failed_stage: str | None = None
    error: ErrorInfo | None = None

    def metrics(self) -> dict[str, Any]:
        bypassed = self.to_update + self.skipped
        return {
            "total_extracted": self.extracted,
            "new": self.new,
            "to_update": self.to_update,
            "skipped": self.skipped,
            "enriched": self.enriched,
            "passed_filter": self.passed_filter,
            "stored": self.stored,
            "updated": self.updated,
            "update_failures": self.update_failures,
            "bypassed_enrichment": bypassed,
            "resource_savings_percentage": round(bypassed / self.extracted * 100.0, 1) if self.extracted else 0.0,
            "tokens_used": self.tokens_used,
            "api_calls_made": self.api_calls_made,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
            "execution_time_ms": self.execution_time_ms,
            "stages": dict(self.stage_statuses),
            "classification": self.classification,
        }

    def fail(self, stage: StageName, error: ErrorInfo) -> None:
        if self.failed_stage is None:
            self.status = "error"
            self.failed_stage = stage.value
            self.error = error


StageOperation = Callable[[], Awaitable[StageOutput]]


class PipelineRouter:
    """Drive one batch through the fixed stage sequence.

    NEW records go through enrichment, filter and storage. UPDATE records go
    straight to the direct field update. SKIP records stop after
    classification. A failure in the NEW branch does not prevent the UPDATE
    branch from running, and nothing already written is rolled back.
    """

    def __init__(
        self,
        *,
        classifier: DuplicateClassifier,
        enricher: Enricher,
        storage: RecordStorage,
        direct_updater: DirectUpdateHandler,
        record_filter: RecordFilter = filter_by_score,
        filter_config: FilterConfig | None = None,
        cost_per_1k_tokens: float = 0.01,
    ) -> None:
        self.classifier = classifier
        self.enricher = enricher
        self.storage = storage
        self.direct_updater = direct_updater
        self.record_filter = record_filter
        self.filter_config = filter_config or FilterConfig()
        self.cost_per_1k_tokens = cost_per_1k_tokens

    async def route(
        self,
        tracker: StageTracker,
        source: dict[str, Any],
        extract: Callable[[], Awaitable[ExtractionResult]],
    ) -> RouteOutcome:
        started = time.perf_counter()
        outcome = RouteOutcome()
        with tracer.start_as_current_span("pipeline.route") as span:
            span.set_attribute("run.id", tracker.run_id)
            if tracker.job_id:
                span.set_attribute("job.id", tracker.job_id)

            analysis = await self.run_stage(tracker, StageName.SOURCE_ANALYSIS, lambda: self._analyze_source(source))
            if not await self._continue_after(tracker, outcome, StageName.SOURCE_ANALYSIS, analysis):
                return self._finish(outcome, started)

            extraction = await self.run_stage(tracker, StageName.EXTRACTION, lambda: self._extract(extract))
            if not await self._continue_after(tracker, outcome, StageName.EXTRACTION, extraction):
                return self._finish(outcome, started)
            records: list[Record] = extraction.data.data
            outcome.extracted = len(records)
            self._add_usage(outcome, extraction.data.metrics)

            detection = await self.run_stage(
                tracker,
                StageName.DUPLICATE_DETECTION,
                lambda: self._detect_duplicates(records, source["id"]),
            )
            if not await self._continue_after(tracker, outcome, StageName.DUPLICATE_DETECTION, detection):
                return self._finish(outcome, started)
            classified: ClassificationResult = detection.data.data
            new_records = classified.new
            to_update = classified.to_update
            outcome.new = len(new_records)
            outcome.to_update = len(to_update)
            outcome.skipped = len(classified.to_skip)
            outcome.classification = classified.metrics.as_dict()

            await self._route_new(tracker, outcome, source, [item.record for item in new_records])
            await self._route_updates(tracker, outcome, to_update)

            span.set_attribute("pipeline.status", outcome.status)
        return self._finish(outcome, started)

    async def run_stage(self, tracker: StageTracker, stage: StageName, operation: StageOperation) -> StageResult:
        await tracker.update_stage(stage, StageStatus.PROCESSING)
        started = time.perf_counter()
        try:
            output = await operation()
        except Exception as exc:
            error = ErrorInfo.from_exception(exc, stage=stage.value)
            logger.exception("stage %s failed run_id=%s job_id=%s", stage.value, tracker.run_id, tracker.job_id)
            await tracker.update_stage(
                stage,
                StageStatus.FAILED,
                result={"error": {"message": error.message, "type": error.type}},
            )
            return StageFailure(error=error)

        if output.metrics.execution_time_ms is None:
            output.metrics.execution_time_ms = int((time.perf_counter() - started) * 1000)
        await tracker.update_stage(stage, StageStatus.COMPLETED, result=output.summary, metrics=output.metrics)
        return StageSuccess(data=output)

    async def _route_new(
        self,
        tracker: StageTracker,
        outcome: RouteOutcome,
        source: dict[str, Any],
        new_records: list[Record],
    ) -> None:
        if not new_records:
            await self._skip_stages(tracker, outcome, NEW_BRANCH_STAGES, "no_new_records")
            return

        enrichment = await self.run_stage(tracker, StageName.ENRICHMENT, lambda: self._enrich(new_records, source))
        if isinstance(enrichment, StageFailure):
            outcome.fail(StageName.ENRICHMENT, enrichment.error)
            outcome.stage_statuses[StageName.ENRICHMENT.value] = StageStatus.FAILED.value
            await self._skip_stages(tracker, outcome, (StageName.FILTER, StageName.STORAGE), "upstream_failed")
            return
        outcome.stage_statuses[StageName.ENRICHMENT.value] = StageStatus.COMPLETED.value
        enriched: list[EnrichedRecord] = enrichment.data.data
        outcome.enriched = len(enriched)
        self._add_usage(outcome, enrichment.data.metrics)

        filtered = await self.run_stage(tracker, StageName.FILTER, lambda: self._filter(enriched))
        if isinstance(filtered, StageFailure):
            outcome.fail(StageName.FILTER, filtered.error)
            outcome.stage_statuses[StageName.FILTER.value] = StageStatus.FAILED.value
            await self._skip_stages(tracker, outcome, (StageName.STORAGE,), "upstream_failed")
            return
        outcome.stage_statuses[StageName.FILTER.value] = StageStatus.COMPLETED.value
        included: list[EnrichedRecord] = filtered.data.data
        outcome.passed_filter = len(included)

        if not included:
            await self._skip_stages(tracker, outcome, (StageName.STORAGE,), "no_records_passed_filter")
            return

        storage = await self.run_stage(tracker, StageName.STORAGE, lambda: self._store(included, source["id"]))
        if isinstance(storage, StageFailure):
            outcome.fail(StageName.STORAGE, storage.error)
            outcome.stage_statuses[StageName.STORAGE.value] = StageStatus.FAILED.value
            return
        outcome.stage_statuses[StageName.STORAGE.value] = StageStatus.COMPLETED.value
        outcome.stored = len(storage.data.data)

    async def _route_updates(self, tracker: StageTracker, outcome: RouteOutcome, to_update: list[Any]) -> None:
        if not to_update:
            await self._skip_stages(tracker, outcome, (StageName.DIRECT_UPDATE,), "no_update_records")
            return

        result = await self.run_stage(tracker, StageName.DIRECT_UPDATE, lambda: self._direct_update(to_update))
        if isinstance(result, StageFailure):
            outcome.fail(StageName.DIRECT_UPDATE, result.error)
            outcome.stage_statuses[StageName.DIRECT_UPDATE.value] = StageStatus.FAILED.value
            return
        outcome.stage_statuses[StageName.DIRECT_UPDATE.value] = StageStatus.COMPLETED.value
        outcome.updated = result.data.data.successful
        outcome.update_failures = result.data.data.failed

    async def _continue_after(
        self,
        tracker: StageTracker,
        outcome: RouteOutcome,
        stage: StageName,
        result: StageResult,
    ) -> bool:
        if isinstance(result, StageSuccess):
            outcome.stage_statuses[stage.value] = StageStatus.COMPLETED.value
            return True
        outcome.fail(stage, result.error)
        outcome.stage_statuses[stage.value] = StageStatus.FAILED.value
        remaining = tuple(name for name in StageName if name.order > stage.order)
        await self._skip_stages(tracker, outcome, remaining, "upstream_failed")
        return False

    async def _skip_stages(
        self,
        tracker: StageTracker,
        outcome: RouteOutcome,
        stages: tuple[StageName, ...],
        reason: str,
    ) -> None:
        for stage in stages:
            await tracker.update_stage(stage, StageStatus.SKIPPED, result={"reason": reason})
            outcome.stage_statuses[stage.value] = StageStatus.SKIPPED.value

    async def _analyze_source(self, source: dict[str, Any]) -> StageOutput:
        configuration = source.get("configuration") or {}
        summary = {
            "source_id": source.get("id"),
            "name": source.get("name"),
            "api_endpoint": source.get("api_endpoint"),
            "configuration_keys": sorted(configuration) if isinstance(configuration, dict) else [],
        }
        return StageOutput(data=source, metrics=StageMetrics(input_count=1, output_count=1), summary=summary)

    async def _extract(self, extract: Callable[[], Awaitable[ExtractionResult]]) -> StageOutput:
        extracted = await extract()
        return StageOutput(
            data=extracted.records,
            metrics=StageMetrics(
                input_count=int(extracted.metrics.get("raw_count", len(extracted.records)) or 0),
                output_count=len(extracted.records),
                tokens_used=extracted.tokens_used,
                api_calls_made=extracted.api_calls_made,
                estimated_cost_usd=self._cost_for(extracted.tokens_used),
            ),
            summary={"extracted": len(extracted.records), **extracted.metrics},
        )

    async def _detect_duplicates(self, records: list[Record], source_id: str) -> StageOutput:
        classified = await self.classifier.classify(records, source_id)
        metrics = classified.metrics
        return StageOutput(
            data=classified,
            metrics=StageMetrics(
                input_count=len(records),
                output_count=metrics.new_count + metrics.update_count,
                execution_time_ms=metrics.execution_time_ms,
                extra={
                    "database_queries": metrics.database_queries,
                    "lookup_failures": list(metrics.lookup_failures),
                },
            ),
            summary=metrics.as_dict(),
        )

    async def _enrich(self, records: list[Record], source: dict[str, Any]) -> StageOutput:
        enriched = await self.enricher.enrich(records, source)
        cost = enriched.estimated_cost_usd or self._cost_for(enriched.tokens_used)
        return StageOutput(
            data=enriched.records,
            metrics=StageMetrics(
                input_count=len(records),
                output_count=len(enriched.records),
                tokens_used=enriched.tokens_used,
                api_calls_made=enriched.api_calls_made,
                estimated_cost_usd=cost,
            ),
            summary={"enriched": len(enriched.records), "failures": enriched.failures},
        )

    async def _filter(self, records: list[EnrichedRecord]) -> StageOutput:
        filtered = self.record_filter(records, self.filter_config)
        return StageOutput(
            data=filtered.included,
            metrics=StageMetrics(input_count=len(records), output_count=len(filtered.included)),
            summary=filtered.metrics(),
        )

    async def _store(self, records: list[EnrichedRecord], source_id: str) -> StageOutput:
        stored = await self.storage.store(records, source_id)
        return StageOutput(
            data=stored.stored,
            metrics=StageMetrics(input_count=len(records), output_count=len(stored.stored)),
            summary={"stored": len(stored.stored), "failures": stored.failures},
        )

    async def _direct_update(self, to_update: list[Any]) -> StageOutput:
        applied = await self.direct_updater.apply(to_update)
        return StageOutput(
            data=applied,
            metrics=StageMetrics(
                input_count=len(to_update),
                output_count=applied.successful,
                execution_time_ms=applied.execution_time_ms,
            ),
            summary=applied.metrics(),
        )

    def _add_usage(self, outcome: RouteOutcome, metrics: StageMetrics) -> None:
        outcome.tokens_used += metrics.tokens_used
        outcome.api_calls_made += metrics.api_calls_made
        outcome.estimated_cost_usd += metrics.estimated_cost_usd

    def _cost_for(self, tokens: int) -> float:
        return round(tokens / 1000.0 * self.cost_per_1k_tokens, 6)

    @staticmethod
    def _finish(outcome: RouteOutcome, started: float) -> RouteOutcome:
        outcome.execution_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "pipeline routed status=%s extracted=%s new=%s update=%s skip=%s stored=%s updated=%s failed_stage=%s",
            outcome.status,
            outcome.extracted,
            outcome.new,
            outcome.to_update,
            outcome.skipped,
            outcome.stored,
            outcome.updated,
            outcome.failed_stage,
        )
        return outcome


class IngestionService:
    """Single-shot ingestion of one source, behind ``POST /process``."""

    def __init__(
        self,
        repository: Any,
        router: PipelineRouter,
        extractor: Extractor,
        metrics_recorder: MetricsRecorder | None = None,
    ) -> None:
        self.repository = repository
        self.router = router
        self.extractor = extractor
        self.metrics_recorder = metrics_recorder

    async def process_source(self, source_id: str, run_id: str | None = None) -> dict[str, Any]:
        source = await self.repository.get_source(source_id)
        if run_id:
            run = await self.repository.get_run(run_id)
            if run.get("kind") != RunKind.SINGLE.value:
                raise RepositoryConflictError("only single runs can be processed directly")
            if str(run.get("source_id")) != str(source_id):
                raise RepositoryConflictError("run belongs to a different source")
            if run.get("status") != RunStatus.PROCESSING.value:
                raise RepositoryConflictError(f"run is {run.get('status')}, expected processing")
        else:
            run = await self.repository.create_run(source_id=source_id, kind="single")
        tracker = StageTracker(self.repository, run["id"], metrics_recorder=self.metrics_recorder)

        with tracer.start_as_current_span("pipeline.process_source") as span:
            span.set_attribute("source.id", source_id)
            outcome = await self.router.route(tracker, source, lambda: self.extractor.extract(source))

        metrics = outcome.metrics()
        if outcome.status == "error":
            message = outcome.error.message if outcome.error else "pipeline failed"
            await tracker.record_error(StageExecutionError(outcome.failed_stage, message), outcome.failed_stage)
            return {
                "status": "error",
                "run_id": run["id"],
                "metrics": metrics,
                "error": {"message": message, "stage": outcome.failed_stage},
            }

        await tracker.complete_run(outcome.execution_time_ms, metrics)
        return {"status": "success", "run_id": run["id"], "metrics": metrics}


def build_router(
    repository: Any,
    settings: Settings,
    *,
    enricher: Enricher,
    storage: RecordStorage | None = None,
) -> PipelineRouter:
    return PipelineRouter(
        classifier=DuplicateClassifier(repository, ClassifierConfig.from_settings(settings)),
        enricher=enricher,
        storage=storage or RepositoryRecordStorage(repository),
        direct_updater=DirectUpdateHandler(repository),
        filter_config=FilterConfig.from_settings(settings),
        cost_per_1k_tokens=settings.cost_per_1k_tokens,
    )
