from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StageName(str, Enum):
    SOURCE_ANALYSIS = "source_analysis"
    EXTRACTION = "extraction"
    DUPLICATE_DETECTION = "duplicate_detection"
    ENRICHMENT = "enrichment"
    FILTER = "filter"
    STORAGE = "storage"
    DIRECT_UPDATE = "direct_update"

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self) + 1


STAGE_ORDER = tuple(StageName)
NEW_BRANCH_STAGES = (StageName.ENRICHMENT, StageName.FILTER, StageName.STORAGE)


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STAGE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED})


class RunStatus(str, Enum):
    PROCESSING = "processing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


class RunKind(str, Enum):
    SINGLE = "single"
    MASTER = "master"


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId", min_length=1)
    run_id: str | None = Field(default=None, alias="runId")


class ErrorOut(BaseModel):
    message: str
    stage: str | None = None


class ProcessResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["success", "error"]
    run_id: str = Field(alias="runId")
    metrics: dict[str, Any] = Field(default_factory=dict)
    error: ErrorOut | None = None
