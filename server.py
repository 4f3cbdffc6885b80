import logging
import threading
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from voice_intake.config import load_settings
from voice_intake.db import create_session_factory, get_db_engine
from voice_intake.entity_resolver import EntityResolver, resolution_to_dict
from voice_intake.errors import ExtractionError, ExtractionErrorKind, PersistenceError, TaskStateError
from voice_intake.extraction_pipeline import ExtractionPipeline
from voice_intake.repository import EntityKind, SqlInventoryRepository
from voice_intake.tasks import TaskKind

logger = logging.getLogger("voice_intake")

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.settings = None
app.state.repository = None
app.state.pipeline_factory = None
app.state.pipelines = {}
_registry_lock = threading.Lock()


class TaskRequest(BaseModel):
    kind: TaskKind
    seed: Optional[Dict[str, Any]] = None


class TranscriptRequest(BaseModel):
    text: str
    field_snapshot: Optional[Dict[str, Any]] = None


class CandidateRequest(BaseModel):
    field: str
    record: Dict[str, Any]


class InlineRequest(BaseModel):
    field: str


class RetryRequest(BaseModel):
    field_snapshot: Optional[Dict[str, Any]] = None


# -----------------------
# Wiring
# -----------------------

def _settings():
    if app.state.settings is None:
        app.state.settings = load_settings()
    return app.state.settings


def _repository():
    if app.state.repository is None:
        engine = get_db_engine(_settings().database_url)
        app.state.repository = SqlInventoryRepository(create_session_factory(engine))
    return app.state.repository


def _new_pipeline() -> ExtractionPipeline:
    factory = app.state.pipeline_factory
    if factory is not None:
        return factory()
    return ExtractionPipeline(_repository(), _settings())


def _pipeline(task_id: str) -> ExtractionPipeline:
    with _registry_lock:
        pipeline = app.state.pipelines.get(task_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")
    return pipeline


def _drop(task_id: str) -> None:
    with _registry_lock:
        app.state.pipelines.pop(task_id, None)


def _task_view(task_id: str, pipeline: ExtractionPipeline) -> Dict[str, Any]:
    machine = pipeline.task
    return {
        "task_id": task_id,
        "kind": machine.kind.value if machine else None,
        "status": machine.status.value if machine else None,
        "fields": pipeline.current_fields(),
        "missing_fields": machine.missing_required_fields() if machine else [],
        "speaker_hint": machine.speaker_hint.value if machine else None,
        "failed_transcript": pipeline.failed_transcript,
    }


# -----------------------
# Error mapping
# -----------------------

@app.exception_handler(ExtractionError)
async def _extraction_error(request: Request, exc: ExtractionError):
    status = 429 if exc.kind == ExtractionErrorKind.RATE_LIMITED else 502
    return JSONResponse(
        status_code=status,
        content={"error": exc.kind.value, "detail": str(exc), "retryable": exc.retryable, "transcript": exc.transcript},
    )


@app.exception_handler(TaskStateError)
async def _task_state_error(request: Request, exc: TaskStateError):
    return JSONResponse(status_code=409, content={"error": "task_state", "detail": str(exc)})


@app.exception_handler(PersistenceError)
async def _persistence_error(request: Request, exc: PersistenceError):
    logger.error(f"[SERVER] persistence failed: {exc}")
    return JSONResponse(status_code=500, content={"error": "persistence", "detail": str(exc)})


# -----------------------
# Endpoints
# -----------------------

@app.post("/tasks")
async def start_task(req: TaskRequest):
    pipeline = _new_pipeline()
    pipeline.start_task(req.kind, req.seed)
    task_id = str(uuid.uuid4())
    with _registry_lock:
        app.state.pipelines[task_id] = pipeline
    return _task_view(task_id, pipeline)


@app.get("/tasks/{task_id}")
async def get_task(task_id: str):
    return _task_view(task_id, _pipeline(task_id))


@app.post("/tasks/{task_id}/transcripts")
async def submit_transcript(task_id: str, req: TranscriptRequest):
    pipeline = _pipeline(task_id)
    data = await pipeline.submit_transcript(req.text, req.field_snapshot)
    if pipeline.task is None:
        # cancelled by voice
        _drop(task_id)
    return data.as_dict()


@app.post("/tasks/{task_id}/retry")
async def retry_last(task_id: str, req: Optional[RetryRequest] = None):
    data = await _pipeline(task_id).retry_last(req.field_snapshot if req else None)
    return data.as_dict()


@app.post("/tasks/{task_id}/candidates")
async def choose_candidate(task_id: str, req: CandidateRequest):
    return _pipeline(task_id).choose_candidate(req.field, req.record).as_dict()


@app.post("/tasks/{task_id}/inline")
async def create_inline(task_id: str, req: InlineRequest):
    return {"record": _pipeline(task_id).create_inline(req.field)}


@app.post("/tasks/{task_id}/confirm")
async def confirm(task_id: str):
    record_id = _pipeline(task_id).confirm()
    _drop(task_id)
    return {"status": "confirmed", "id": record_id}


@app.delete("/tasks/{task_id}")
async def cancel(task_id: str):
    _pipeline(task_id).cancel()
    _drop(task_id)
    return {"status": "abandoned", "task_id": task_id}


@app.get("/resolve/{kind}")
async def resolve(kind: EntityKind, q: str = ""):
    resolver = EntityResolver(_repository(), _settings().resolver)
    if kind == EntityKind.EQUIPMENT:
        return resolution_to_dict(resolver.resolve_equipment(q))
    return resolution_to_dict(resolver.resolve(kind, q))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
