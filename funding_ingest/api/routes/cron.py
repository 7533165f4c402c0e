import logging

from fastapi import APIRouter, Body, Depends, Response, status

from funding_ingest.core.config import Settings, get_settings
from funding_ingest.core.security import require_cron_secret
from funding_ingest.jobs.processor import JobProcessor, TickResult, build_job_processor
from funding_ingest.schemas.jobs import CronRequest, CronResponse, QueueStatusOut
from funding_ingest.services.collaborators import get_enricher
from funding_ingest.services.repository import get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


def get_job_processor(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    enricher=Depends(get_enricher),
) -> JobProcessor:
    return build_job_processor(repository, settings, enricher=enricher)


@router.get("/process-jobs", response_model=CronResponse)
async def process_jobs(
    response: Response,
    _: None = Depends(require_cron_secret),
    processor: JobProcessor = Depends(get_job_processor),
) -> CronResponse:
    return await _run_tick(processor, response)


@router.post("/process-jobs", response_model=CronResponse)
async def process_jobs_action(
    response: Response,
    payload: CronRequest | None = Body(default=None),
    _: None = Depends(require_cron_secret),
    processor: JobProcessor = Depends(get_job_processor),
) -> CronResponse:
    if payload is not None and payload.action == "status":
        try:
            queue_status = await processor.coordinator.get_queue_status()
        except Exception as exc:
            logger.exception("queue status lookup failed")
            return CronResponse(success=False, error=str(exc))
        return CronResponse(success=True, processed=False, queue_status=QueueStatusOut(**queue_status))
    return await _run_tick(processor, response)


async def _run_tick(processor: JobProcessor, response: Response) -> CronResponse:
    # The scheduler reads the body, so every failure is reported in it.
    try:
        tick: TickResult = await processor.process_next_job()
    except Exception as exc:
        logger.exception("cron tick failed")
        return CronResponse(success=False, processed=False, error=str(exc) or type(exc).__name__)

    if not tick.processed:
        response.status_code = status.HTTP_202_ACCEPTED
    return CronResponse(
        success=True,
        processed=tick.processed,
        job_id=tick.job_id,
        master_run_id=tick.master_run_id,
        job_status=tick.job_status,
        aggregation=tick.aggregation,
        recovered_jobs=tick.recovered_jobs,
        retried_jobs=tick.retried_jobs,
        queue_status=QueueStatusOut(**tick.queue_status),
    )
