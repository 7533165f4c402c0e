from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Literal, Protocol

import httpx

from funding_ingest.core.config import Settings, get_settings
from funding_ingest.schemas.records import Record, parse_amount
from funding_ingest.services.repository import RepositoryError

logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    """Raised when an external collaborator cannot produce a result."""


@dataclass(slots=True)
class ErrorInfo:
    message: str
    stage: str | None = None
    type: str = "Error"
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, *, stage: str | None = None) -> ErrorInfo:
        return cls(message=str(exc) or type(exc).__name__, stage=stage, type=type(exc).__name__)


@dataclass(slots=True, frozen=True)
class StageSuccess:
    data: Any
    kind: Literal["success"] = "success"


@dataclass(slots=True, frozen=True)
class StageFailure:
    error: ErrorInfo
    kind: Literal["error"] = "error"


StageResult = StageSuccess | StageFailure


@dataclass(slots=True)
class ExtractionResult:
    records: list[Record]
    api_calls_made: int = 0
    tokens_used: int = 0
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EnrichedRecord:
    record: Record
    enhanced: dict[str, Any] = field(default_factory=dict)
    scoring: dict[str, Any] = field(default_factory=dict)

    @property
    def final_score(self) -> float | None:
        return parse_amount(self.scoring.get("final_score", self.scoring.get("finalScore")))


@dataclass(slots=True)
class EnrichmentResult:
    records: list[EnrichedRecord]
    tokens_used: int = 0
    api_calls_made: int = 0
    estimated_cost_usd: float = 0.0
    failures: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class FilterConfig:
    min_final_score: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> FilterConfig:
        return cls(min_final_score=settings.filter_min_final_score)


@dataclass(slots=True)
class FilterResult:
    included: list[EnrichedRecord]
    excluded: list[EnrichedRecord]
    exclusion_reasons: dict[str, int] = field(default_factory=dict)

    def metrics(self) -> dict[str, Any]:
        return {
            "included": len(self.included),
            "excluded": len(self.excluded),
            "exclusion_reasons": dict(self.exclusion_reasons),
        }


@dataclass(slots=True)
class StorageResult:
    stored: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)


class Extractor(Protocol):
    async def extract(self, source: dict[str, Any]) -> ExtractionResult: ...


class Enricher(Protocol):
    async def enrich(self, records: list[Record], source: dict[str, Any]) -> EnrichmentResult: ...


class RecordFilter(Protocol):
    def __call__(self, records: list[EnrichedRecord], config: FilterConfig) -> FilterResult: ...


class RecordStorage(Protocol):
    async def store(self, records: list[EnrichedRecord], source_id: str) -> StorageResult: ...


def filter_by_score(records: list[EnrichedRecord], config: FilterConfig) -> FilterResult:
    included: list[EnrichedRecord] = []
    excluded: list[EnrichedRecord] = []
    reasons = {"missing_scoring": 0, "low_final_score": 0}
    for item in records:
        score = item.final_score
        if score is None:
            reasons["missing_scoring"] += 1
            excluded.append(item)
        elif score < config.min_final_score:
            reasons["low_final_score"] += 1
            excluded.append(item)
        else:
            included.append(item)
    return FilterResult(included=included, excluded=excluded, exclusion_reasons=reasons)


class HttpExtractionClient:
    def __init__(self, base_url: str | None, *, api_key: str | None = None, timeout_seconds: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.timeout_seconds = timeout_seconds

    async def extract(self, source: dict[str, Any]) -> ExtractionResult:
        payload = await _post_json(
            self.base_url,
            "/extract",
            {"source": _source_summary(source)},
            headers=self.headers,
            timeout_seconds=self.timeout_seconds,
            collaborator="extraction",
        )
        raw_records = payload.get("records")
        if not isinstance(raw_records, list):
            raise CollaboratorError("extraction response is missing a records list")
        metrics = payload.get("metrics") if isinstance(payload.get("metrics"), dict) else {}
        return ExtractionResult(
            records=[Record.from_payload(item, source_id=source["id"]) for item in raw_records if isinstance(item, dict)],
            api_calls_made=int(metrics.get("api_calls", 1) or 0),
            tokens_used=int(metrics.get("tokens_used", 0) or 0),
            metrics=metrics,
        )


class HttpEnrichmentClient:
    def __init__(self, base_url: str | None, *, api_key: str | None = None, timeout_seconds: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.timeout_seconds = timeout_seconds

    async def enrich(self, records: list[Record], source: dict[str, Any]) -> EnrichmentResult:
        payload = await _post_json(
            self.base_url,
            "/enrich",
            {"source": _source_summary(source), "records": [record.to_payload() for record in records]},
            headers=self.headers,
            timeout_seconds=self.timeout_seconds,
            collaborator="enrichment",
        )
        items = payload.get("records")
        if not isinstance(items, list) or len(items) != len(records):
            raise CollaboratorError("enrichment response does not match the submitted batch")

        enriched: list[EnrichedRecord] = []
        failures: list[dict[str, Any]] = []
        for record, item in zip(records, items):
            if not isinstance(item, dict) or item.get("error"):
                error = item.get("error") if isinstance(item, dict) else "malformed item"
                failures.append({"external_id": record.external_id, "error": str(error)})
                logger.warning("enrichment skipped record external_id=%s: %s", record.external_id, error)
                continue
            enriched.append(
                EnrichedRecord(
                    record=record,
                    enhanced=item.get("enhanced") if isinstance(item.get("enhanced"), dict) else {},
                    scoring=item.get("scoring") if isinstance(item.get("scoring"), dict) else {},
                )
            )

        usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
        return EnrichmentResult(
            records=enriched,
            tokens_used=int(usage.get("tokens", 0) or 0),
            api_calls_made=int(usage.get("api_calls", 1) or 0),
            estimated_cost_usd=float(usage.get("cost_usd", 0.0) or 0.0),
            failures=failures,
        )


class RepositoryRecordStorage:
    """Insert filtered NEW records one at a time."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def store(self, records: list[EnrichedRecord], source_id: str) -> StorageResult:
        result = StorageResult()
        for item in records:
            record = item.record
            fields = {
                "external_id": record.external_id,
                "title": (item.enhanced.get("title") or record.title or "").strip(),
                "minimum_award": record.minimum_award,
                "maximum_award": record.maximum_award,
                "total_funding_available": record.total_funding_available,
                "open_date": record.open_date,
                "close_date": record.close_date,
                "status": record.status,
                "api_updated_at": record.api_updated_at,
                "payload": record.payload,
                "enrichment": {"enhanced": item.enhanced, "scoring": item.scoring},
            }
            try:
                stored = await self.repository.insert_record(source_id, fields)
            except RepositoryError as exc:
                logger.warning("storage failed for external_id=%s source_id=%s: %s", record.external_id, source_id, exc)
                result.failures.append({"external_id": record.external_id, "error": str(exc)})
                continue
            result.stored.append(stored)
        return result


async def _post_json(
    base_url: str | None,
    path: str,
    body: dict[str, Any],
    *,
    headers: dict[str, str],
    timeout_seconds: float,
    collaborator: str,
) -> dict[str, Any]:
    if not base_url:
        raise CollaboratorError(f"{collaborator} collaborator is not configured")
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.post(f"{base_url}{path}", json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPError as exc:
        raise CollaboratorError(f"{collaborator} request failed: {exc}") from exc
    except ValueError as exc:
        raise CollaboratorError(f"{collaborator} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise CollaboratorError(f"{collaborator} returned an unexpected payload")
    return payload


def _source_summary(source: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": source.get("id"),
        "name": source.get("name"),
        "api_endpoint": source.get("api_endpoint"),
        "configuration": source.get("configuration") or {},
    }


@lru_cache
def get_extractor() -> HttpExtractionClient:
    settings = get_settings()
    return HttpExtractionClient(
        settings.extraction_base_url,
        api_key=settings.collaborator_api_key,
        timeout_seconds=settings.collaborator_timeout_seconds,
    )


@lru_cache
def get_enricher() -> HttpEnrichmentClient:
    settings = get_settings()
    return HttpEnrichmentClient(
        settings.enrichment_base_url,
        api_key=settings.collaborator_api_key,
        timeout_seconds=settings.collaborator_timeout_seconds,
    )
