import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ToolType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    VOICE = "voice"
    SCRIPT = "script"
    IMAGE_TO_VIDEO = "image-to-video"
    VIDEO_TO_VIDEO = "video-to-video"
    AVATAR = "avatar"
    EDIT = "edit"


# results for these are not normally available inline
VIDEO_CLASS = {
    ToolType.VIDEO,
    ToolType.IMAGE_TO_VIDEO,
    ToolType.VIDEO_TO_VIDEO,
    ToolType.AVATAR,
    ToolType.EDIT,
}


class Quality(str, Enum):
    PREVIEW = "preview"
    FINAL = "final"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING_PREVIEW = "running_preview"
    PREVIEW_READY = "preview_ready"
    QUEUED_FINAL = "queued_final"
    RUNNING_FINAL = "running_final"
    FINAL_READY = "final_ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    ALL_PREVIEWS_READY = "all_previews_ready"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"


OPEN_BATCH_STATUSES = (BatchStatus.IN_PROGRESS, BatchStatus.ALL_PREVIEWS_READY)

RUNNING_FOR = {
    JobStatus.QUEUED: JobStatus.RUNNING_PREVIEW,
    JobStatus.QUEUED_FINAL: JobStatus.RUNNING_FINAL,
}
QUEUED_FOR = {
    JobStatus.RUNNING_PREVIEW: JobStatus.QUEUED,
    JobStatus.RUNNING_FINAL: JobStatus.QUEUED_FINAL,
}
QUALITY_FOR = {
    JobStatus.QUEUED: Quality.PREVIEW,
    JobStatus.RUNNING_PREVIEW: Quality.PREVIEW,
    JobStatus.QUEUED_FINAL: Quality.FINAL,
    JobStatus.RUNNING_FINAL: Quality.FINAL,
}
READY_FOR = {
    Quality.PREVIEW: JobStatus.PREVIEW_READY,
    Quality.FINAL: JobStatus.FINAL_READY,
}
REQUEUE_FOR = {
    Quality.PREVIEW: JobStatus.QUEUED,
    Quality.FINAL: JobStatus.QUEUED_FINAL,
}

JSON_COLUMNS = ("metadata", "preview_metadata", "final_metadata")


class Job(BaseModel):
    id: str
    workspace_id: str
    batch_id: Optional[str] = None
    type: ToolType
    provider: str
    quality: Quality = Quality.PREVIEW  # tier of the current (or last) pass
    status: JobStatus = JobStatus.QUEUED

    prompt: str = ""
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    style: Optional[str] = None
    voice_id: Optional[str] = None
    language: Optional[str] = None
    reference_image_url: Optional[str] = None
    reference_video_url: Optional[str] = None
    reference_audio_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    retry_count: int = 0
    max_retries: int = 3
    external_job_id: Optional[str] = None
    worker_id: Optional[str] = None
    lease_heartbeat_at: Optional[datetime] = None

    preview_cost_credits: int = 0
    final_cost_credits: int = 0
    cost_cents: int = 0

    preview_url: Optional[str] = None
    final_url: Optional[str] = None
    preview_metadata: Optional[Dict[str, Any]] = None
    final_metadata: Optional[Dict[str, Any]] = None

    progress: int = 0
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    preview_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        data = dict(row)
        for col in JSON_COLUMNS:
            if data.get(col) is not None:
                data[col] = json.loads(data[col])
        if data.get("metadata") is None:
            data["metadata"] = {}
        return cls(**data)

    @property
    def is_video_class(self) -> bool:
        return self.type in VIDEO_CLASS

    def refund_amount(self, quality: Quality) -> int:
        return self.preview_cost_credits if quality == Quality.PREVIEW else self.final_cost_credits


class Batch(BaseModel):
    id: str
    workspace_id: str
    total_generations: int = 0
    status: BatchStatus = BatchStatus.IN_PROGRESS
    created_at: datetime
    updated_at: datetime


DEFAULTS = {
    "max_retries": 3,
}
