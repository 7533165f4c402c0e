from __future__ import annotations

import asyncio
from typing import Any

from funding_ingest.services.metrics import MetricsRecorder
from funding_ingest.services.repository import RepositoryUnavailableError
from funding_ingest.services.store import InMemoryRepository


class UnwritableRepository(InMemoryRepository):
    async def append_stage_metrics(self, **kwargs: Any) -> None:
        raise RepositoryUnavailableError("metrics table unavailable")


def test_metrics_are_appended_per_stage() -> None:
    repo = InMemoryRepository()
    recorder = MetricsRecorder(repo)

    assert asyncio.run(recorder.record_stage_metrics("enrichment", {"tokens_used": 3000}, run_id="r1", job_id="j1"))
    assert asyncio.run(recorder.record_stage_metrics("enrichment", {"tokens_used": 1500}, run_id="r1", job_id="j2"))

    assert [row["job_id"] for row in repo.stage_metrics] == ["j1", "j2"]
    assert repo.stage_metrics[0]["metrics"] == {"tokens_used": 3000}


def test_metrics_failures_never_propagate() -> None:
    recorder = MetricsRecorder(UnwritableRepository())

    assert asyncio.run(recorder.record_stage_metrics("storage", {"output_count": 2}, run_id="r1")) is False
