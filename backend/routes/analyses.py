"""
Analyses Routes
Upload a diagram, follow its progress and read the resulting threat model

Features:
- Upload / list / view / delete analyses
- Progress polling and Server-Sent Events stream
- Re-queue processing, queue status
"""
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime
import json
import logging

from sse_starlette.sse import EventSourceResponse

from models.analysis_job import AnalysisJob
from services.analysis_service import SUPPORTED_LANGUAGES, load_result
from services.container import ServiceContainer
from services.errors import JobNotFound, QueueError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["analyses"])


ALLOWED_MIME_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")


# ============================================
# REQUEST/RESPONSE MODELS
# ============================================

class UploadResponse(BaseModel):
    id: str
    imageName: str
    status: str


class AnalysisListItem(BaseModel):
    id: str
    imageName: str
    status: str
    detectedProvider: Optional[str]
    summary: Optional[Dict[str, int]]
    progress: Dict[str, Any]
    createdAt: datetime


class AnalysisDetailResponse(AnalysisListItem):
    language: str
    error: Optional[str]
    existingMitigations: List[str]
    components: List[Dict[str, Any]]
    connections: List[Dict[str, Any]]
    strideAnalysis: List[Dict[str, Any]]
    detectionMeta: Optional[Dict[str, Any]]


# ============================================
# HELPER FUNCTIONS
# ============================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _list_item(job: AnalysisJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "imageName": job.image_name,
        "status": job.status,
        "detectedProvider": job.detected_provider,
        "summary": job.summary,
        "progress": job.snapshot().to_dict()["progress"],
        "createdAt": job.created_at,
    }


def _detail(job: AnalysisJob) -> Dict[str, Any]:
    data = _list_item(job)
    result = load_result(job)
    data.update({
        "language": job.language,
        "error": job.error,
        "existingMitigations": list(job.existing_mitigations or []),
        "components": list(job.components or []),
        "connections": list(job.connections or []),
        "strideAnalysis": list(job.threat_sets or []),
        "detectionMeta": job.detection_meta,
    })
    if result:
        data["summary"] = result.summary.to_dict()
    return data


# ============================================
# ROUTES
# ============================================

@router.post("/upload", response_model=UploadResponse)
async def upload_diagram(
    file: UploadFile = File(...),
    language: str = Form("pt-BR"),
    container: ServiceContainer = Depends(get_container)
):
    """Upload an architecture diagram; the analysis is queued immediately"""
    if file.content_type not in ALLOWED_MIME_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported image type: {file.content_type}")
    if language not in SUPPORTED_LANGUAGES:
        raise HTTPException(status_code=400, detail=f"Unsupported language: {language}")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > container.settings.max_upload_size:
        raise HTTPException(status_code=413, detail="File too large")

    job = container.analysis_service.create_analysis(
        image_name=file.filename or "diagram",
        image_data=data,
        mime_type=file.content_type,
        language=language
    )
    return {"id": job.id, "imageName": job.image_name, "status": job.status}


@router.get("/analysis", response_model=List[AnalysisListItem])
async def list_analyses(container: ServiceContainer = Depends(get_container)):
    """All analyses, newest first"""
    return [_list_item(job) for job in container.analysis_service.list_analyses()]


@router.get("/analysis/queue-status")
async def get_queue_status(container: ServiceContainer = Depends(get_container)):
    return container.analysis_service.get_queue_status()


@router.get("/analysis/{analysis_id}", response_model=AnalysisDetailResponse)
async def get_analysis(analysis_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        return _detail(container.analysis_service.get_analysis(analysis_id))
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/analysis/{analysis_id}/progress")
async def get_progress(analysis_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        return container.analysis_service.get_progress(analysis_id).to_dict()
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/analysis/{analysis_id}/progress/stream")
async def stream_progress(analysis_id: str, container: ServiceContainer = Depends(get_container)):
    """Server-Sent Events: one snapshot per poll, ends after completed/failed"""

    async def event_generator():
        async for snapshot in container.progress_stream.subscribe(analysis_id):
            yield {"event": "progress", "data": json.dumps(snapshot.to_dict())}

    return EventSourceResponse(event_generator())


@router.post("/analysis/{analysis_id}/process")
async def process_analysis(analysis_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        return container.analysis_service.process_analysis(analysis_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/analysis/{analysis_id}")
async def delete_analysis(analysis_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        container.analysis_service.delete_analysis(analysis_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except QueueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"message": "Analysis deleted"}
