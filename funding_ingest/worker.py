from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from funding_ingest.core.config import Settings, get_settings
from funding_ingest.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from funding_ingest.jobs.processor import JobProcessor, build_job_processor
from funding_ingest.services.collaborators import get_enricher
from funding_ingest.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker(
    settings: Settings | None = None,
    *,
    processor: JobProcessor | None = None,
    max_ticks: int | None = None,
) -> int:
    """Drive the job queue locally, the way the cron endpoint does in production.

    Returns the number of ticks that processed a job. ``max_ticks`` bounds the
    loop for one-shot runs.
    """
    settings = settings or get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, component="worker")
    repository = get_repository() if processor is None else processor.repository
    if processor is None:
        processor = build_job_processor(repository, settings, enricher=get_enricher())

    backoff = settings.worker_poll_interval_seconds
    last_cleanup_at = 0.0
    ticks = 0
    processed = 0

    try:
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            try:
                with tracer.start_as_current_span("worker.poll_cycle") as span:
                    now = time.monotonic()
                    if now - last_cleanup_at >= settings.worker_cleanup_interval_seconds:
                        await processor.coordinator.cleanup_old_jobs()
                        last_cleanup_at = now

                    tick = await processor.process_next_job()
                    span.set_attribute("worker.processed", tick.processed)
                    backoff = settings.worker_poll_interval_seconds
                    if not tick.processed:
                        await asyncio.sleep(settings.worker_poll_interval_seconds)
                        continue

                    processed += 1
                    logger.info(
                        "job finished id=%s status=%s aggregation=%s",
                        tick.job_id,
                        tick.job_status,
                        tick.aggregation,
                    )
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.worker_max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_telemetry(telemetry_runtime)
        await repository.close()

    return processed


if __name__ == "__main__":
    asyncio.run(run_worker())
