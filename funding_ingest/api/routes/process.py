from fastapi import APIRouter, Depends, HTTPException, status

from funding_ingest.core.config import Settings, get_settings
from funding_ingest.core.security import require_cron_secret
from funding_ingest.schemas.pipeline import ErrorOut, ProcessRequest, ProcessResponse
from funding_ingest.services.collaborators import get_enricher, get_extractor
from funding_ingest.services.metrics import MetricsRecorder
from funding_ingest.services.pipeline import IngestionService, build_router
from funding_ingest.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from funding_ingest.services.stages import StageTransitionError

router = APIRouter()


def get_ingestion_service(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    enricher=Depends(get_enricher),
    extractor=Depends(get_extractor),
) -> IngestionService:
    return IngestionService(
        repository,
        build_router(repository, settings, enricher=enricher),
        extractor,
        metrics_recorder=MetricsRecorder(repository),
    )


@router.post("", response_model=ProcessResponse)
async def process_source(
    payload: ProcessRequest,
    _: None = Depends(require_cron_secret),
    service: IngestionService = Depends(get_ingestion_service),
) -> ProcessResponse:
    try:
        result = await service.process_source(payload.source_id, payload.run_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (RepositoryConflictError, StageTransitionError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    error = result.get("error")
    return ProcessResponse(
        status=result["status"],
        run_id=result["run_id"],
        metrics=result["metrics"],
        error=ErrorOut(**error) if error else None,
    )
