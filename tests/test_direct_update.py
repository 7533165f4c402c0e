from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from typing import Any

from funding_ingest.schemas.records import Classification, ClassificationAction, ExistingRecord, Record
from funding_ingest.services.direct_update import DirectUpdateHandler
from funding_ingest.services.repository import RepositoryUnavailableError
from funding_ingest.services.store import InMemoryRepository

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FlakyRepository(InMemoryRepository):
    def __init__(self, failing_ids: set[str]) -> None:
        super().__init__()
        self.failing_ids = failing_ids

    async def update_record_fields(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if record_id in self.failing_ids:
            raise RepositoryUnavailableError("database unavailable")
        return await super().update_record_fields(record_id, fields)


def test_only_non_empty_changed_fields_are_written() -> None:
    repo = InMemoryRepository()
    source_id = repo.add_source("grants.gov")["id"]
    stored = asyncio.run(
        repo.insert_record(
            source_id,
            {"external_id": "A-1", "title": "Rural Broadband Grant", "maximum_award": 100_000.0},
        )
    )
    record = Record.from_payload(
        {
            "externalId": "A-1",
            "title": "Rural Broadband Grant",
            "maximumAward": None,
            "closeDate": "2026-09-30",
            "apiUpdatedAt": "2026-05-30T08:00:00Z",
        },
        source_id=source_id,
    )

    result = asyncio.run(DirectUpdateHandler(repo).apply([_update(stored, record)], now=NOW))

    assert result.successful == 1
    assert result.results[0].fields == ["close_date"]
    row = repo.records[stored["id"]]
    assert row["maximum_award"] == 100_000.0
    assert row["close_date"] == date(2026, 9, 30)
    assert row["updated_at"] == NOW
    assert row["api_updated_at"] == datetime(2026, 5, 30, 8, 0, tzinfo=timezone.utc)


def test_update_without_usable_values_is_skipped() -> None:
    repo = InMemoryRepository()
    source_id = repo.add_source("grants.gov")["id"]
    stored = asyncio.run(repo.insert_record(source_id, {"external_id": "A-1", "title": "Rural Broadband Grant"}))
    record = Record.from_payload({"external_id": "A-1", "title": "Rural Broadband Grant"}, source_id=source_id)

    result = asyncio.run(DirectUpdateHandler(repo).apply([_update(stored, record)], now=NOW))

    assert result.skipped == 1
    assert result.results[0].reason == "no_valid_updates"
    assert repo.records[stored["id"]]["updated_at"] != NOW


def test_one_failed_write_does_not_stop_the_batch() -> None:
    seed = InMemoryRepository()
    source_id = seed.add_source("grants.gov")["id"]
    first = asyncio.run(seed.insert_record(source_id, {"external_id": "A-1", "title": "First Program Title"}))
    second = asyncio.run(seed.insert_record(source_id, {"external_id": "A-2", "title": "Second Program Title"}))

    repo = FlakyRepository({first["id"]})
    repo.sources = seed.sources
    repo.records = seed.records
    items = [
        _update(first, Record.from_payload({**_fields(first), "minimum_award": 10}, source_id=source_id)),
        _update(second, Record.from_payload({**_fields(second), "minimum_award": 20}, source_id=source_id)),
    ]

    result = asyncio.run(DirectUpdateHandler(repo).apply(items, now=NOW))

    assert [item.status for item in result.results] == ["failed", "success"]
    assert result.metrics()["failed"] == 1
    assert result.results[0].error == "database unavailable"
    assert repo.records[second["id"]]["minimum_award"] == 20.0


def _fields(row: dict[str, Any]) -> dict[str, Any]:
    return {"external_id": row["external_id"], "title": row["title"]}


def _update(row: dict[str, Any], record: Record) -> Classification:
    return Classification(
        action=ClassificationAction.UPDATE,
        reason="api_timestamp_newer",
        record=record,
        existing=ExistingRecord.from_row(row),
        method="id_validation",
    )
