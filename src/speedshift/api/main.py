from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel

from speedshift.config import resolve_config
from speedshift.events import EventBus
from speedshift.exceptions import (
    InvalidName,
    InvalidSpeed,
    NotFound,
    PartialDeleteFailure,
    SpeedShiftError,
)
from speedshift.executor import JobExecutor
from speedshift.ffmpeg_runner import FfmpegRunner
from speedshift.models import JobState, SpeedShiftConfig
from speedshift.naming import format_speed, is_derived
from speedshift.orchestrator import IDENTITY_SPEED, JobOrchestrator
from speedshift.planner import validate_speed
from speedshift.storage import FileStore

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Pydantic Models for Requests ---
class SpeedChangeRequest(BaseModel):
    fileName: Optional[str] = None  # noqa: N815
    speed: Optional[float] = None


class DeleteRequest(BaseModel):
    fileName: Optional[str] = None  # noqa: N815


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> FileStore:
    return request.app.state.orchestrator.store


def _error(status_code: int, exc: SpeedShiftError, **extra) -> HTTPException:
    """HTTPException with a structured ``{"code", "message"}`` detail."""
    detail = {"code": exc.code, "message": str(exc)}
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail)


def _missing(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "MISSING_FIELD", "message": message},
    )


# --- API ENDPOINTS ---


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.post("/my_files", response_class=PlainTextResponse)
async def upload_file(
    myFile: Optional[UploadFile] = File(None),  # noqa: N803
    speed: Optional[str] = Form(None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Store an upload and start its speed job. The outcome arrives as events."""
    if myFile is None or not myFile.filename:
        raise _missing("No file uploaded.")

    # Validate before anything is written or broadcast
    try:
        speed_value = IDENTITY_SPEED if speed in (None, "") else validate_speed(speed)
    except InvalidSpeed as e:
        logger.warning("Invalid speed for upload %s: %s", myFile.filename, speed)
        raise _error(status.HTTP_400_BAD_REQUEST, e)

    if is_derived(myFile.filename):
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            InvalidName(
                myFile.filename,
                "Filenames starting with 'speed_<N>x_' or 'faster_' are reserved for "
                "processed files; rename the upload",
            ),
        )

    store = orchestrator.store
    try:
        entry = store.save(myFile.filename, myFile.file)
    except InvalidName as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)

    orchestrator.notify_upload(entry)
    job = orchestrator.start(entry.storedName, speed_value)

    if job.output_name == job.input_name:
        return "File uploaded successfully! No processing needed at 1.0x speed."
    return f"File uploaded successfully! Processing at {format_speed(speed_value)}x speed."


@router.post("/my_files/change-speed")
async def change_speed(
    data: SpeedChangeRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Re-process a stored Original and wait for the result."""
    if not data.fileName or data.speed is None:
        raise _missing("Missing fileName or speed")

    try:
        job = await orchestrator.run(data.fileName, data.speed)
    except (InvalidSpeed, InvalidName) as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)

    if job.state == JobState.FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "PROCESSING_FAILED", "message": job.error, "jobId": job.job_id},
        )

    return {
        "success": True,
        "outputFilename": job.output_name,
        "speed": job.applied_speed,
        "jobId": job.job_id,
    }


@router.delete("/my_files/delete")
async def delete_file(
    data: DeleteRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Delete a file and every processed version of it."""
    if not data.fileName:
        raise _missing("Missing fileName")

    try:
        result = orchestrator.delete(data.fileName)
    except InvalidName as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except PartialDeleteFailure as e:
        body = e.result.to_response()
        if e.result.deleted:
            return JSONResponse(status_code=status.HTTP_207_MULTI_STATUS, content=body)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": e.code, "message": "Failed to delete files", "errors": body["errors"]},
        )

    return result.to_response()


@router.get("/list-files")
async def list_files(store: FileStore = Depends(get_store)):
    return store.names()


@router.get("/files")
async def list_file_entries(store: FileStore = Depends(get_store)):
    """Stored files with kind, lineage and mtime for client-side resolution."""
    return [entry.model_dump(mode="json") for entry in store.entries()]


@router.get("/my_files/download")
async def download_file(name: Optional[str] = None, store: FileStore = Depends(get_store)):
    if not name:
        raise _missing("Missing ?name=")
    try:
        path = store.resolve(name)
    except InvalidName as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)
    if not store.exists(name):
        raise _error(status.HTTP_404_NOT_FOUND, NotFound(name))

    logger.info("Client downloaded file: %s", name)
    return FileResponse(path, filename=name)


@router.get("/latest-faster-file")
async def latest_processed_file(store: FileStore = Depends(get_store)):
    return {"filename": store.latest_derived()}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    job = orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Job not found"})
    return job.to_response()


@router.websocket("/ws")
async def events_websocket(websocket: WebSocket):
    """Event stream for all connected clients."""
    await websocket.app.state.bus.serve_websocket(websocket)


def create_app(
    config: Optional[SpeedShiftConfig] = None,
    executor: Optional[JobExecutor] = None,
) -> FastAPI:
    """Build the application. ``executor`` defaults to an FFmpeg-backed one."""
    config = config or resolve_config()
    store = FileStore(config.storage.directory)
    bus = EventBus(send_queue_size=config.events.send_queue_size)
    executor = executor or JobExecutor(FfmpegRunner.from_config(config.encoding))
    orchestrator = JobOrchestrator(
        store, executor, bus, job_retention_s=config.events.job_retention_s
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Serving files from %s", store.root)
        yield
        if orchestrator.active_jobs():
            logger.warning("Shutting down with %d job(s) in flight", orchestrator.active_jobs())
        bus.close()

    app = FastAPI(title="SpeedShift", lifespan=lifespan)
    app.state.config = config
    app.state.bus = bus
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = resolve_config()
    uvicorn.run(create_app(settings), host=settings.server.host, port=settings.server.port)
