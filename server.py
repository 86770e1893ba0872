from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from extraction.db_connection import DbConnection
from extraction.extraction_service import ExtractionService
from extraction.producers import ExtractionProducers

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_session_factory = None


def get_session_factory():
    global _session_factory
    if _session_factory is None:
        _session_factory = DbConnection().build_db_session_factory()
    return _session_factory


def get_service(SessionFactory=Depends(get_session_factory)) -> ExtractionService:
    return ExtractionService(SessionFactory)


def get_producers(SessionFactory=Depends(get_session_factory)) -> ExtractionProducers:
    return ExtractionProducers(SessionFactory)


class ProcessRequest(BaseModel):
    job_id: Optional[str] = None


class ResetStuckRequest(BaseModel):
    older_than_minutes: Optional[float] = None


class CoachingMessage(BaseModel):
    role: str
    content: str


class QueueRequest(BaseModel):
    user_id: str
    source_type: str
    source_id: str
    content: Optional[str] = None
    messages: Optional[List[CoachingMessage]] = None


@app.post("/extraction/process")
def process_extraction(req: Optional[ProcessRequest] = None, service: ExtractionService = Depends(get_service)):
    result = service.process_now(req.job_id if req else None)
    if result.get("status") == "error":
        raise HTTPException(status_code=500, detail=result.get("message"))
    return result


@app.post("/extraction/reset-stuck")
def reset_stuck(req: Optional[ResetStuckRequest] = None, service: ExtractionService = Depends(get_service)):
    result = service.reset_stuck_jobs(req.older_than_minutes if req else None)
    if result.get("status") == "error":
        raise HTTPException(status_code=500, detail=result.get("message"))
    return result


@app.get("/extraction/status")
def extraction_status(
    user_id: Optional[str] = None,
    limit: int = 10,
    service: ExtractionService = Depends(get_service),
):
    result = service.queue_status(user_id, limit)
    if result.get("status") == "error":
        raise HTTPException(status_code=500, detail=result.get("message"))
    return result


@app.post("/extraction/queue")
def queue_extraction(req: QueueRequest, producers: ExtractionProducers = Depends(get_producers)) -> Dict[str, Any]:
    try:
        if req.source_type == "document":
            return producers.queue_document(req.user_id, req.source_id, req.content or "")
        if req.source_type == "coaching_session":
            messages = [m.model_dump() for m in (req.messages or [])]
            return producers.queue_coaching_session(req.user_id, req.source_id, messages)
        if req.source_type == "manual_note":
            return producers.queue_manual_note(req.user_id, req.source_id, req.content or "")
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    raise HTTPException(status_code=400, detail=f"Unknown source_type '{req.source_type}'")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
