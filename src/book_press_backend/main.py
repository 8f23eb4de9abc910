from __future__ import annotations

import logging
from typing import Any, Dict, NoReturn, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from .configuration import load_press_config
from .errors import PressError
from .job_manager import JobManager
from .models import (
    ConfigMetadata,
    ConversionRequest,
    ConversionResponse,
    CoverRequest,
    CoverVariables,
    JobDetail,
    JobKind,
    JobRequest,
    JobSummary,
    TemplateListing,
    UploadResponse,
)

press_config = load_press_config()

logging.basicConfig(
    level=press_config.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Book Press API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

job_manager = JobManager(press_config)


def get_job_manager() -> JobManager:
    return job_manager


def _raise_http(exc: PressError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_payload()) from exc


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config/defaults", response_model=ConfigMetadata)
def get_config_defaults(manager: JobManager = Depends(get_job_manager)) -> ConfigMetadata:
    return manager.get_config_metadata()


@app.post("/convert", response_model=ConversionResponse, response_model_exclude_none=True)
def convert_document(
    request: ConversionRequest,
    x_session_id: Optional[str] = Header(None),
    manager: JobManager = Depends(get_job_manager),
) -> ConversionResponse:
    try:
        return manager.run_job(JobKind.CONVERT, request, x_session_id)
    except PressError as exc:
        _raise_http(exc)


@app.post("/compile-cover", response_model=ConversionResponse, response_model_exclude_none=True)
def compile_cover(
    request: CoverRequest,
    x_session_id: Optional[str] = Header(None),
    manager: JobManager = Depends(get_job_manager),
) -> ConversionResponse:
    try:
        return manager.run_job(JobKind.COVER, request, x_session_id)
    except PressError as exc:
        _raise_http(exc)


@app.post("/impose", response_model=ConversionResponse, response_model_exclude_none=True)
def impose_document(
    request: ConversionRequest,
    x_session_id: Optional[str] = Header(None),
    manager: JobManager = Depends(get_job_manager),
) -> ConversionResponse:
    try:
        return manager.run_job(JobKind.IMPOSE, request, x_session_id)
    except PressError as exc:
        _raise_http(exc)


@app.post("/jobs", response_model=JobSummary, status_code=202)
def create_job(
    request: JobRequest,
    x_session_id: Optional[str] = Header(None),
    manager: JobManager = Depends(get_job_manager),
) -> JobSummary:
    return manager.submit_job(request.kind, request, x_session_id)


@app.get("/jobs", response_model=list[JobSummary])
def list_jobs(manager: JobManager = Depends(get_job_manager)) -> list[JobSummary]:
    return manager.list_jobs()


@app.get("/jobs/{job_id}", response_model=JobDetail)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobDetail:
    job = manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.get("/jobs/{job_id}/status")
def job_status(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    job = manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return {
        "status": job.status,
        "build_state": job.build_state,
        "error": job.error,
        "pdf_url": job.pdf_url,
    }


@app.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    if not manager.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"cancelled": manager.cancel_job(job_id)}


@app.get("/api/pdf/{document_id}")
@app.get("/pdf/{document_id}")
def get_pdf(document_id: str, manager: JobManager = Depends(get_job_manager)) -> FileResponse:
    try:
        path = manager.published_pdf(document_id)
    except PressError as exc:
        _raise_http(exc)
    if path is None:
        raise HTTPException(status_code=404, detail="PDF not found")
    return FileResponse(path, media_type="application/pdf", filename=path.name)


@app.get("/templates", response_model=TemplateListing)
def list_templates(user_id: Optional[str] = None, manager: JobManager = Depends(get_job_manager)) -> TemplateListing:
    try:
        return manager.list_templates(user_id)
    except PressError as exc:
        _raise_http(exc)


@app.get("/cover-variables/{cover}", response_model=CoverVariables)
def cover_variables(
    cover: str,
    user_id: Optional[str] = None,
    manager: JobManager = Depends(get_job_manager),
) -> CoverVariables:
    try:
        return manager.cover_variables(cover, user_id)
    except PressError as exc:
        _raise_http(exc)


@app.post("/uploads/images", response_model=UploadResponse, status_code=201)
async def upload_image(
    image: UploadFile = File(...),
    x_session_id: Optional[str] = Header(None),
    manager: JobManager = Depends(get_job_manager),
) -> UploadResponse:
    data = await image.read()
    await image.close()
    try:
        return manager.store_upload(x_session_id, image.filename or "", image.content_type, data)
    except PressError as exc:
        _raise_http(exc)
