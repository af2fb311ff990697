"""Pydantic models for configuration, storage entries, jobs and events."""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Storage namespace settings."""

    directory: str = Field(
        default="my_files", description="Directory holding Original and Derived files"
    )


class EncodingConfig(BaseModel):
    """FFmpeg invocation settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="FFmpeg executable (None = binary shipped with imageio-ffmpeg)"
    )
    ffmpeg_loglevel: str = Field(
        default="error", description="FFmpeg log level: error, warning, info, verbose"
    )
    global_timeout_s: Optional[int] = Field(
        default=None, gt=0, description="Kill FFmpeg after N seconds (None = wait indefinitely)"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between terminate and kill"
    )
    save_artifacts_on_failure: bool = Field(
        default=False, description="Write an FFmpeg error log to temp_dir on failure"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = $TMPDIR or /tmp)"
    )


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, gt=0, lt=65536, description="Bind port")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed origins")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Root logger level"
    )


class EventsConfig(BaseModel):
    """Event bus and job table settings."""

    send_queue_size: int = Field(
        default=1000, gt=0, description="Per-client buffered messages before dropping"
    )
    job_retention_s: float = Field(
        default=300.0, ge=0.0, description="Seconds a finished job stays queryable"
    )


class SpeedShiftConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    encoding: EncodingConfig = Field(default_factory=EncodingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "SpeedShiftConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)


class FileKind(str, Enum):
    ORIGINAL = "original"
    DERIVED = "derived"


class FileEntry(BaseModel):
    """A stored file as seen by the server."""

    storedName: str  # noqa: N815
    kind: FileKind
    sourceName: Optional[str] = None  # noqa: N815
    speedFactor: Optional[float] = None  # noqa: N815
    mtime: float
    size: int


class JobState(str, Enum):
    """Transform job states.

    State transitions:
        queued → running      (executor invoked)
        running → succeeded   (output written)
        running → failed      (engine error)
        queued → succeeded    (identity speed, no engine pass)
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TransformJob(BaseModel):
    """One speed-change request and its outcome."""

    job_id: str = Field(..., description="Correlation id carried by every job event")
    input_name: str = Field(..., description="Original file name")
    output_name: str = Field(..., description="Deterministic output name")
    requested_speed: float = Field(..., ge=0.25, le=4.0)
    steps: List[float] = Field(default_factory=list, description="Per-step atempo factors")
    state: JobState = Field(default=JobState.QUEUED)
    applied_speed: Optional[float] = Field(default=None, description="Set on success")
    error: Optional[str] = Field(default=None, description="Engine diagnostic on failure")
    created_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.FAILED)

    def to_response(self) -> dict:
        return {
            "jobId": self.job_id,
            "inputName": self.input_name,
            "outputName": self.output_name,
            "requestedSpeed": self.requested_speed,
            "steps": list(self.steps),
            "state": self.state.value,
            "appliedSpeed": self.applied_speed,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class EventType(str, Enum):
    CONNECTION = "connection"
    UPLOAD_RECEIVED = "upload-received"
    JOB_STARTED = "job-started"
    JOB_SUCCEEDED = "job-succeeded"
    JOB_FAILED = "job-failed"
    FILE_DELETED = "file-deleted"


class UploadReceived(BaseModel):
    fileName: str  # noqa: N815
    size: Optional[int] = None


class JobStarted(BaseModel):
    jobId: str  # noqa: N815
    inputName: str  # noqa: N815
    requestedSpeed: float  # noqa: N815


class JobSucceeded(BaseModel):
    jobId: str  # noqa: N815
    inputName: str  # noqa: N815
    outputName: str  # noqa: N815
    appliedSpeed: float  # noqa: N815


class JobFailed(BaseModel):
    jobId: Optional[str] = None  # noqa: N815
    inputName: Optional[str] = None  # noqa: N815
    requestedSpeed: Optional[float] = None  # noqa: N815
    diagnostic: str


class FileDeleted(BaseModel):
    fileName: str  # noqa: N815
    deletedFiles: List[str] = Field(default_factory=list)  # noqa: N815
