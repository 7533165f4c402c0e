from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatusOut(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    oldest_pending_at: datetime | None = None


class CronRequest(BaseModel):
    action: Literal["process", "status"] = "process"


class CronResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    processed: bool = False
    job_id: str | None = Field(default=None, alias="jobId")
    master_run_id: str | None = Field(default=None, alias="masterRunId")
    job_status: str | None = Field(default=None, alias="jobStatus")
    aggregation: str | None = None
    recovered_jobs: int = Field(default=0, alias="recoveredJobs")
    retried_jobs: int = Field(default=0, alias="retriedJobs")
    queue_status: QueueStatusOut | None = Field(default=None, alias="queueStatus")
    error: str | None = None


class RunCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId", min_length=1)
    chunk_size: int | None = Field(default=None, alias="chunkSize", ge=1, le=100)
    records: list[dict[str, Any]] | None = None


class RunCreateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    master_run_id: str = Field(alias="masterRunId")
    total_jobs: int = Field(alias="totalJobs")
    total_records: int = Field(alias="totalRecords")
    chunk_size: int = Field(alias="chunkSize")


class MasterRunProgressOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    master_run_id: str = Field(alias="masterRunId")
    status: str
    total_jobs: int = Field(alias="totalJobs")
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    completion_percentage: float = Field(alias="completionPercentage")
    is_finished: bool = Field(alias="isFinished")
    final_results: dict[str, Any] | None = Field(default=None, alias="finalResults")
