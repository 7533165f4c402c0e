from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from funding_ingest.schemas.records import Classification
from funding_ingest.services.changes import prepare_critical_field_update
from funding_ingest.services.repository import RepositoryError

logger = logging.getLogger(__name__)

UpdateOutcome = Literal["success", "failed", "skipped"]


@dataclass(slots=True)
class RecordUpdateResult:
    record_id: str | None
    external_id: str | None
    status: UpdateOutcome
    fields: list[str] = field(default_factory=list)
    reason: str | None = None
    error: str | None = None


@dataclass(slots=True)
class DirectUpdateResult:
    results: list[RecordUpdateResult] = field(default_factory=list)
    execution_time_ms: int = 0

    @property
    def successful(self) -> int:
        return sum(1 for item in self.results if item.status == "success")

    @property
    def failed(self) -> int:
        return sum(1 for item in self.results if item.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.results if item.status == "skipped")

    def metrics(self) -> dict[str, Any]:
        return {
            "total_processed": len(self.results),
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "execution_time_ms": self.execution_time_ms,
        }


class DirectUpdateHandler:
    """Write only the changed critical fields of UPDATE records."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def apply(self, to_update: list[Classification], *, now: datetime | None = None) -> DirectUpdateResult:
        started = time.perf_counter()
        result = DirectUpdateResult()
        for item in to_update:
            result.results.append(await self._apply_one(item, now=now or datetime.now(timezone.utc)))
        result.execution_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "direct update finished total=%s successful=%s failed=%s skipped=%s",
            len(result.results),
            result.successful,
            result.failed,
            result.skipped,
        )
        return result

    async def _apply_one(self, item: Classification, *, now: datetime) -> RecordUpdateResult:
        existing = item.existing
        record = item.record
        if existing is None:
            return RecordUpdateResult(
                record_id=None,
                external_id=record.external_id,
                status="failed",
                error="update without a matched record",
            )

        updates = prepare_critical_field_update(existing, record)
        if not updates:
            return RecordUpdateResult(
                record_id=existing.id,
                external_id=record.external_id,
                status="skipped",
                reason="no_valid_updates",
            )

        changed = sorted(updates)
        updates["updated_at"] = now
        if record.api_updated_at is not None:
            updates["api_updated_at"] = record.api_updated_at

        try:
            await self.repository.update_record_fields(existing.id, updates)
        except RepositoryError as exc:
            logger.warning("direct update failed for record_id=%s: %s", existing.id, exc)
            return RecordUpdateResult(
                record_id=existing.id,
                external_id=record.external_id,
                status="failed",
                fields=changed,
                error=str(exc),
            )

        return RecordUpdateResult(
            record_id=existing.id,
            external_id=record.external_id,
            status="success",
            fields=changed,
        )
