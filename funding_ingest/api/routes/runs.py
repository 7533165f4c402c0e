from fastapi import APIRouter, Depends, HTTPException, status

from funding_ingest.core.config import Settings, get_settings
from funding_ingest.core.security import require_cron_secret
from funding_ingest.schemas.jobs import MasterRunProgressOut, RunCreateRequest, RunCreateResponse
from funding_ingest.services.collaborators import CollaboratorError, get_extractor
from funding_ingest.services.job_queue import JobQueueCoordinator, QueueConfig
from funding_ingest.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def get_coordinator(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> JobQueueCoordinator:
    return JobQueueCoordinator(repository, QueueConfig.from_settings(settings))


@router.post("", response_model=RunCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_master_run(
    payload: RunCreateRequest,
    _: None = Depends(require_cron_secret),
    coordinator: JobQueueCoordinator = Depends(get_coordinator),
    extractor=Depends(get_extractor),
) -> RunCreateResponse:
    try:
        source = await coordinator.repository.get_source(payload.source_id)
        if payload.records is not None:
            records = payload.records
        else:
            extracted = await extractor.extract(source)
            records = [record.to_payload() for record in extracted.records]
        created = await coordinator.create_master_run(payload.source_id, records, chunk_size=payload.chunk_size)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except CollaboratorError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    master_run = created["master_run"]
    return RunCreateResponse(
        master_run_id=master_run["id"],
        total_jobs=len(created["jobs"]),
        total_records=len(records),
        chunk_size=master_run["configuration"]["chunk_size"],
    )


@router.get("/{run_id}/progress", response_model=MasterRunProgressOut)
async def get_master_run_progress(
    run_id: str,
    _: None = Depends(require_cron_secret),
    coordinator: JobQueueCoordinator = Depends(get_coordinator),
) -> MasterRunProgressOut:
    try:
        progress = await coordinator.get_master_run_progress(run_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MasterRunProgressOut(**progress.as_dict())
