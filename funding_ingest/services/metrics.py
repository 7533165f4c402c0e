from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """Append-only stage metrics; persistence failures are logged and dropped."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def record_stage_metrics(
        self,
        stage_name: str,
        metrics: dict[str, Any],
        *,
        run_id: str | None = None,
        job_id: str | None = None,
    ) -> bool:
        try:
            await self.repository.append_stage_metrics(
                stage_name=stage_name,
                metrics=metrics,
                run_id=run_id,
                job_id=job_id,
            )
        except Exception:
            logger.exception("stage metrics not recorded for stage=%s run_id=%s job_id=%s", stage_name, run_id, job_id)
            return False
        return True
