from fastapi import APIRouter

from funding_ingest.api.routes import cron, health, process, runs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(process.router, prefix="/process", tags=["pipeline"])
api_router.include_router(cron.router, prefix="/cron", tags=["scheduler"])
api_router.include_router(runs.router, prefix="/runs", tags=["scheduler"])
