from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from funding_ingest.core.config import Settings
from funding_ingest.schemas.records import (
    Classification,
    ClassificationAction,
    DetectionMethod,
    ExistingRecord,
    Record,
)
from funding_ingest.services.changes import changed_critical_fields, titles_are_similar
from funding_ingest.services.repository import RepositoryError

logger = logging.getLogger(__name__)

FreshnessAction = Literal["process", "skip"]


@dataclass(slots=True)
class ClassifierConfig:
    min_title_length: int = 10
    title_similarity_threshold: float = 0.7
    stale_review_days: int = 90
    amount_change_tolerance: float = 0.05
    tokens_per_enrichment: int = 1500
    cost_per_1k_tokens: float = 0.01

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassifierConfig:
        return cls(
            min_title_length=settings.min_title_length,
            title_similarity_threshold=settings.title_similarity_threshold,
            stale_review_days=settings.stale_review_days,
            amount_change_tolerance=settings.amount_change_tolerance,
            tokens_per_enrichment=settings.tokens_per_enrichment,
            cost_per_1k_tokens=settings.cost_per_1k_tokens,
        )


@dataclass(slots=True, frozen=True)
class FreshnessDecision:
    action: FreshnessAction
    reason: str


@dataclass(slots=True)
class ClassificationMetrics:
    total_processed: int = 0
    new_count: int = 0
    update_count: int = 0
    skip_count: int = 0
    unmatchable: int = 0
    database_queries: int = 0
    id_matches: int = 0
    title_matches: int = 0
    validation_failures: int = 0
    freshness_skips: int = 0
    execution_time_ms: int = 0
    lookup_failures: list[str] = field(default_factory=list)
    detection_methods: dict[str, int] = field(
        default_factory=lambda: {"id_validation": 0, "title_only": 0, "no_match": 0}
    )
    estimated_tokens_saved: int = 0
    estimated_cost_saved_usd: float = 0.0
    bypass_percentage: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ClassificationResult:
    classifications: list[Classification]
    metrics: ClassificationMetrics

    @property
    def new(self) -> list[Classification]:
        return [item for item in self.classifications if item.action is ClassificationAction.NEW]

    @property
    def to_update(self) -> list[Classification]:
        return [item for item in self.classifications if item.action is ClassificationAction.UPDATE]

    @property
    def to_skip(self) -> list[Classification]:
        return [item for item in self.classifications if item.action is ClassificationAction.SKIP]


def perform_freshness_check(
    record: Record,
    existing: ExistingRecord,
    *,
    now: datetime | None = None,
    stale_review_days: int = 90,
) -> FreshnessDecision:
    """Decide whether a matched record deserves another look.

    With a provider timestamp the decision is purely "is it strictly newer".
    Without one, records are re-reviewed once the stored copy is older than
    ``stale_review_days``.
    """
    if record.api_updated_at is not None:
        if existing.api_updated_at is not None and record.api_updated_at <= existing.api_updated_at:
            return FreshnessDecision(action="skip", reason="api_timestamp_not_newer")
        return FreshnessDecision(action="process", reason="api_timestamp_newer")

    if existing.updated_at is None:
        return FreshnessDecision(action="process", reason="stale_review_no_timestamp")

    current = now or datetime.now(timezone.utc)
    age_days = (current - existing.updated_at).total_seconds() / 86400.0
    if age_days > stale_review_days:
        return FreshnessDecision(action="process", reason=f"stale_review_{stale_review_days}_days")
    return FreshnessDecision(action="skip", reason="recently_reviewed")


class DuplicateClassifier:
    """Partition an extracted batch into NEW, UPDATE and SKIP.

    Existing records are resolved with exactly two batched lookups per call
    (one by external id, one by title), both scoped to the source.
    """

    def __init__(self, repository: Any, config: ClassifierConfig | None = None) -> None:
        self.repository = repository
        self.config = config or ClassifierConfig()

    async def classify(
        self,
        records: list[Record],
        source_id: str,
        *,
        now: datetime | None = None,
    ) -> ClassificationResult:
        started = time.perf_counter()
        current = now or datetime.now(timezone.utc)
        metrics = ClassificationMetrics(total_processed=len(records))

        id_map, title_map = await self._batch_lookup(records, source_id, metrics)

        classifications: list[Classification] = []
        for record in records:
            classification = self._categorize(record, id_map, title_map, metrics, current)
            classifications.append(classification)
            metrics.detection_methods[classification.method] += 1

        metrics.new_count = sum(1 for item in classifications if item.action is ClassificationAction.NEW)
        metrics.update_count = sum(1 for item in classifications if item.action is ClassificationAction.UPDATE)
        metrics.skip_count = sum(1 for item in classifications if item.action is ClassificationAction.SKIP)
        bypassed = metrics.update_count + metrics.skip_count
        metrics.estimated_tokens_saved = bypassed * self.config.tokens_per_enrichment
        metrics.estimated_cost_saved_usd = round(
            metrics.estimated_tokens_saved / 1000.0 * self.config.cost_per_1k_tokens, 6
        )
        metrics.bypass_percentage = round(bypassed / len(records) * 100.0, 1) if records else 0.0
        metrics.execution_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "duplicate detection source_id=%s total=%s new=%s update=%s skip=%s queries=%s lookup_failures=%s",
            source_id,
            metrics.total_processed,
            metrics.new_count,
            metrics.update_count,
            metrics.skip_count,
            metrics.database_queries,
            ",".join(metrics.lookup_failures) or "none",
        )
        return ClassificationResult(classifications=classifications, metrics=metrics)

    def lookup_keys(self, records: list[Record]) -> tuple[list[str], list[str]]:
        external_ids: dict[str, None] = {}
        titles: dict[str, None] = {}
        for record in records:
            external_id = self._id_key(record)
            if external_id:
                external_ids[external_id] = None
            title = self._title_key(record)
            if title:
                titles[title] = None
        return list(external_ids), list(titles)

    def find_existing_with_validation(
        self,
        record: Record,
        id_map: dict[str, ExistingRecord],
        title_map: dict[str, ExistingRecord],
        metrics: ClassificationMetrics | None = None,
    ) -> tuple[ExistingRecord | None, DetectionMethod]:
        external_id = self._id_key(record)
        if external_id and external_id in id_map:
            candidate = id_map[external_id]
            if titles_are_similar(
                candidate.title,
                record.title,
                threshold=self.config.title_similarity_threshold,
            ):
                if metrics is not None:
                    metrics.id_matches += 1
                return candidate, "id_validation"
            # The identifier was reused for a different entity.
            if metrics is not None:
                metrics.validation_failures += 1
            logger.info(
                "id match rejected by title validation external_id=%s existing_id=%s",
                external_id,
                candidate.id,
            )

        title = self._title_key(record)
        if title and title in title_map:
            if metrics is not None:
                metrics.title_matches += 1
            return title_map[title], "title_only"

        return None, "no_match"

    def perform_freshness_check(
        self,
        record: Record,
        existing: ExistingRecord,
        *,
        now: datetime | None = None,
    ) -> FreshnessDecision:
        return perform_freshness_check(record, existing, now=now, stale_review_days=self.config.stale_review_days)

    def check_critical_field_changes(self, existing: ExistingRecord, record: Record) -> bool:
        return bool(changed_critical_fields(existing, record, tolerance=self.config.amount_change_tolerance))

    async def _batch_lookup(
        self,
        records: list[Record],
        source_id: str,
        metrics: ClassificationMetrics,
    ) -> tuple[dict[str, ExistingRecord], dict[str, ExistingRecord]]:
        external_ids, titles = self.lookup_keys(records)
        id_map: dict[str, ExistingRecord] = {}
        title_map: dict[str, ExistingRecord] = {}

        if external_ids:
            metrics.database_queries += 1
            try:
                rows = await self.repository.fetch_records_by_external_ids(source_id, external_ids)
            except RepositoryError as exc:
                metrics.lookup_failures.append("external_id")
                logger.warning("external id lookup failed for source_id=%s: %s", source_id, exc)
            else:
                for row in rows:
                    existing = ExistingRecord.from_row(row)
                    if existing.external_id:
                        id_map.setdefault(existing.external_id, existing)

        if titles:
            metrics.database_queries += 1
            try:
                rows = await self.repository.fetch_records_by_titles(source_id, titles)
            except RepositoryError as exc:
                metrics.lookup_failures.append("title")
                logger.warning("title lookup failed for source_id=%s: %s", source_id, exc)
            else:
                for row in rows:
                    existing = ExistingRecord.from_row(row)
                    if existing.title:
                        title_map.setdefault(existing.title.strip(), existing)

        return id_map, title_map

    def _categorize(
        self,
        record: Record,
        id_map: dict[str, ExistingRecord],
        title_map: dict[str, ExistingRecord],
        metrics: ClassificationMetrics,
        now: datetime,
    ) -> Classification:
        if not self._id_key(record) and not self._title_key(record):
            metrics.unmatchable += 1
            return Classification(action=ClassificationAction.NEW, reason="unmatchable", record=record)

        existing, method = self.find_existing_with_validation(record, id_map, title_map, metrics)
        if existing is None:
            return Classification(action=ClassificationAction.NEW, reason="no_duplicate_found", record=record)

        freshness = self.perform_freshness_check(record, existing, now=now)
        if freshness.action == "skip":
            metrics.freshness_skips += 1
            return Classification(
                action=ClassificationAction.SKIP,
                reason=freshness.reason,
                record=record,
                existing=existing,
                method=method,
            )

        changed = changed_critical_fields(existing, record, tolerance=self.config.amount_change_tolerance)
        if not changed:
            return Classification(
                action=ClassificationAction.SKIP,
                reason="no_critical_changes",
                record=record,
                existing=existing,
                method=method,
            )
        return Classification(
            action=ClassificationAction.UPDATE,
            reason=freshness.reason,
            record=record,
            existing=existing,
            method=method,
            changed_fields=tuple(changed),
        )

    @staticmethod
    def _id_key(record: Record) -> str | None:
        if not record.external_id:
            return None
        return record.external_id.strip() or None

    def _title_key(self, record: Record) -> str | None:
        if not record.title:
            return None
        title = record.title.strip()
        if len(title) < self.config.min_title_length:
            return None
        return title
