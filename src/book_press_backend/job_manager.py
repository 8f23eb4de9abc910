"""
Job orchestration and lifecycle management for document builds.

This module manages the lifecycle of conversion, cover and imposition jobs:
- Job creation, registration and persistence in SQLite
- Synchronous execution on the request thread or asynchronous execution on a pool
- Build-state tracking and event logging
- Optional export of published PDFs to S3

The JobManager wires the injected :class:`PressConfig` into the command queue,
template resolver, image materializer, document builder and imposition engine, and
is the only object the HTTP layer talks to.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from . import s3_service
from .builder import BuildContext, BuildOutcome, BuildState, DocumentBuilder
from .catalog import TemplateCatalog
from .configuration import PressConfig, build_config_metadata
from .database import JobDatabase
from .dispatcher import CancellationToken, CommandQueue, build_command_queue
from .errors import InputValidationError, PressError
from .imposition import ImpositionEngine
from .markdown import ImageMaterializer, UploadSessionStore
from .models import (
    ConfigMetadata,
    ConversionRequest,
    ConversionResponse,
    CoverRequest,
    CoverVariables,
    JobDetail,
    JobEvent,
    JobKind,
    JobStatus,
    JobSummary,
    TemplateListing,
    UploadResponse,
)
from .templates import TemplateResolver
from .utils import ensure_directory, is_safe_identifier, safe_basename, sanitize_label

logger = logging.getLogger(__name__)

JobPayload = Union[ConversionRequest, CoverRequest]


@dataclass
class JobRecord:
    """
    Internal representation of a build job with full state.

    Attributes:
        id: Unique job identifier (hex UUID)
        kind: convert, cover or impose
        label: Filesystem-safe label derived from the document title
        status: Current execution status
        build_state: Last build state reached by the document build
        request: The submitted request, as sent by the client
        document_id: Identifier of the job's working directory and published PDF
        work_dir: Working directory kept for diagnosis
        pdf_path: Published PDF once the job completed
        result: Response payload of a completed job
        s3_key: Object key when the PDF was exported to S3
        download_url: Presigned S3 URL for the exported PDF
        error: Structured error payload if the job failed
        events: Chronological list of job lifecycle events
    """

    id: str
    kind: JobKind
    label: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    request: Dict[str, Any]
    build_state: str = BuildState.CREATED.value
    document_id: Optional[str] = None
    work_dir: Optional[Path] = None
    pdf_path: Optional[Path] = None
    result: Optional[Dict[str, Any]] = None
    s3_key: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    events: List[JobEvent] = field(default_factory=list)

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            kind=self.kind,
            label=self.label,
            status=self.status,
            build_state=self.build_state,
            created_at=self.created_at,
            updated_at=self.updated_at,
            document_id=self.document_id,
            pdf_url=(self.result or {}).get("pdf_url"),
        )

    def to_detail(self) -> JobDetail:
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            request=self.request,
            result=self.result,
            work_dir=str(self.work_dir) if self.work_dir else None,
            download_url=self.download_url,
            events=self.events,
            error=self.error,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "label": self.label,
            "status": self.status.value,
            "build_state": self.build_state,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "document_id": self.document_id,
            "request": self.request,
            "work_dir": self.work_dir,
            "pdf_path": self.pdf_path,
            "result": self.result,
            "s3_key": self.s3_key,
            "download_url": self.download_url,
            "error": self.error,
            "events": [event.model_dump() for event in self.events],
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        return cls(
            id=row["id"],
            kind=JobKind(row["kind"]),
            label=row["label"],
            status=JobStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            request=row["request"],
            build_state=row["build_state"],
            document_id=row["document_id"],
            work_dir=row["work_dir"],
            pdf_path=row["pdf_path"],
            result=row["result"],
            s3_key=row["s3_key"],
            download_url=row["download_url"],
            error=row["error"],
            events=[JobEvent(**event) for event in row["events"]],
        )


class JobManager:
    """
    Central coordinator for document build jobs.

    Thread Safety:
        All job state modifications are protected by a lock; every change is
        written through to the database so job history survives restarts.
    """

    def __init__(
        self,
        config: PressConfig,
        queue: Optional[CommandQueue] = None,
        sessions: Optional[UploadSessionStore] = None,
        database: Optional[JobDatabase] = None,
    ) -> None:
        self.config = config
        self.queue = queue or build_command_queue(config)
        self.sessions = sessions or UploadSessionStore()
        self.database = database or JobDatabase(config.database_path)

        self.resolver = TemplateResolver(config.library_root, config.user_templates_root)
        self.materializer = ImageMaterializer(config.uploads_root)
        self.builder = DocumentBuilder(config, self.queue, self.resolver, self.materializer)
        self.imposer = ImpositionEngine(config, self.builder)
        self.catalog = TemplateCatalog(self.resolver)

        for directory in (config.workspace_root, config.public_root, config.uploads_root):
            ensure_directory(directory)

        self._jobs: Dict[str, JobRecord] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers)
        self._config_metadata: ConfigMetadata | None = None
        self._load_jobs()

    def _load_jobs(self) -> None:
        """Load persisted jobs; jobs that were running when the process stopped are marked failed."""
        for row in self.database.list_jobs():
            record = JobRecord.from_row(row)
            if record.status in (JobStatus.PENDING, JobStatus.RUNNING):
                record.status = JobStatus.FAILED
                record.error = {"status": "error", "code": "interrupted", "message": "Interrupted by a server restart"}
                record.events.append(JobEvent(timestamp=datetime.utcnow(), message="Job interrupted by a server restart."))
                self.database.save_job(record.to_row())
            self._jobs[record.id] = record
        if self._jobs:
            logger.info(f"Loaded {len(self._jobs)} job(s) from {self.database.db_path}")

    # -- queries -------------------------------------------------------------

    def list_jobs(self) -> list[JobSummary]:
        with self._lock:
            records = sorted(self._jobs.values(), key=lambda r: r.created_at, reverse=True)
            return [record.to_summary() for record in records]

    def get_job(self, job_id: str) -> Optional[JobDetail]:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.to_detail() if record else None

    def get_config_metadata(self) -> ConfigMetadata:
        if self._config_metadata is None:
            self._config_metadata = build_config_metadata()
        return self._config_metadata

    def list_templates(self, user_id: Optional[str] = None) -> TemplateListing:
        if user_id and not is_safe_identifier(user_id):
            raise InputValidationError(f"Invalid user identifier: {user_id!r}")
        return self.catalog.list_templates(user_id)

    def cover_variables(self, cover: str, user_id: Optional[str] = None) -> CoverVariables:
        return self.catalog.cover_variables(cover, user_id)

    def published_pdf(self, document_id: str) -> Optional[Path]:
        if not is_safe_identifier(document_id):
            raise InputValidationError(f"Invalid document identifier: {document_id!r}")
        path = self.config.public_root / f"{document_id}.pdf"
        return path if path.is_file() else None

    # -- uploads -------------------------------------------------------------

    def store_upload(
        self,
        session_id: Optional[str],
        filename: str,
        content_type: Optional[str],
        data: bytes,
    ) -> UploadResponse:
        """Validate and store an image upload, recording it in the session."""
        settings = self.config.uploads
        original_name = safe_basename(filename or "")
        if not original_name:
            raise InputValidationError("The uploaded file has no name")
        if (content_type or "") not in settings.allowed_mime_types:
            raise InputValidationError(f"Unsupported image type: {content_type}")
        if len(data) > settings.max_size:
            raise InputValidationError(f"Image exceeds the {settings.max_size} byte limit")

        session_id = session_id or self.sessions.new_session_id()
        stored_name = self.sessions.stored_name_for(session_id, original_name)
        destination = ensure_directory(self.config.uploads_root) / stored_name
        destination.write_bytes(data)
        self.sessions.record_upload(session_id, original_name, stored_name)
        logger.info(f"Stored upload {original_name} as {stored_name}")
        return UploadResponse(filename=original_name, stored_name=stored_name, session_id=session_id)

    # -- state updates -------------------------------------------------------

    def _register_job(self, record: JobRecord) -> None:
        with self._lock:
            self._jobs[record.id] = record
            self.database.save_job(record.to_row())

    def _update_job(self, job_id: str, **kwargs: Any) -> None:
        with self._lock:
            record = self._jobs[job_id]
            for key, value in kwargs.items():
                setattr(record, key, value)
            record.updated_at = datetime.utcnow()
            self.database.save_job(record.to_row())

    def _append_event(self, job_id: str, message: str) -> None:
        event = JobEvent(timestamp=datetime.utcnow(), message=message)
        with self._lock:
            record = self._jobs[job_id]
            record.events.append(event)
            record.updated_at = event.timestamp
            self.database.save_job(record.to_row())

    def _on_build_state(self, job_id: str, context: BuildContext, state: BuildState) -> None:
        self._update_job(
            job_id,
            build_state=state.value,
            document_id=context.document_id,
            work_dir=context.work_dir,
        )
        self._append_event(job_id, f"Build {context.document_id}: {state.value}")

    # -- execution -----------------------------------------------------------

    def _create_record(self, kind: JobKind, request: JobPayload) -> JobRecord:
        job_id = uuid4().hex
        title = str(request.template.metadata.get("titre") or request.template.metadata.get("title") or kind.value)
        label = f"{sanitize_label(title, fallback=kind.value)}-{job_id[:8]}"
        now = datetime.utcnow()
        record = JobRecord(
            id=job_id,
            kind=kind,
            label=label,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            request=request.model_dump(mode="json", by_alias=True),
        )
        record.events.append(JobEvent(timestamp=now, message="Job registered and awaiting execution."))
        self._register_job(record)
        return record

    def _build(
        self,
        kind: JobKind,
        request: JobPayload,
        session_id: Optional[str],
        token: CancellationToken,
        job_id: str,
    ) -> BuildOutcome:
        session = self.sessions.get(session_id)

        def listener(context: BuildContext, state: BuildState) -> None:
            self._on_build_state(job_id, context, state)

        if kind is JobKind.COVER:
            cover_request = request if isinstance(request, CoverRequest) else CoverRequest(
                template=request.template, conversion_method=request.conversion_method
            )
            return self.builder.compile_cover(cover_request, session, token, listener)
        if not isinstance(request, ConversionRequest):
            raise InputValidationError(f"A {kind.value} job needs document content")
        if kind is JobKind.IMPOSE:
            return self.imposer.impose(request, session, token, listener)
        return self.builder.convert_document(request, session, token, listener)

    def _execute(self, job_id: str, kind: JobKind, request: JobPayload, session_id: Optional[str]) -> BuildOutcome:
        token = CancellationToken()
        with self._lock:
            self._tokens[job_id] = token

        self._update_job(job_id, status=JobStatus.RUNNING)
        self._append_event(job_id, f"{kind.value.capitalize()} build started.")
        try:
            outcome = self._build(kind, request, session_id, token, job_id)
        except PressError as exc:
            self._update_job(job_id, status=JobStatus.FAILED, error=exc.to_payload())
            self._append_event(job_id, f"Build failed: {exc.message}")
            raise
        except Exception as exc:
            self._update_job(
                job_id,
                status=JobStatus.FAILED,
                error={"status": "error", "code": "internal_error", "message": str(exc)},
            )
            self._append_event(job_id, f"Build failed unexpectedly: {exc}")
            raise
        finally:
            with self._lock:
                self._tokens.pop(job_id, None)

        self._export(job_id, outcome)
        self._update_job(
            job_id,
            status=JobStatus.COMPLETED,
            pdf_path=outcome.pdf_path,
            result=outcome.response.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        self._append_event(job_id, f"Published {outcome.pdf_path.name}.")
        return outcome

    def _export(self, job_id: str, outcome: BuildOutcome) -> None:
        if not s3_service.is_s3_configured():
            return
        s3_key = s3_service.document_key(outcome.pdf_path.stem)
        if not s3_service.upload_pdf(outcome.pdf_path, s3_key):
            self._append_event(job_id, "S3 export failed; the PDF is only available locally.")
            return
        self._update_job(job_id, s3_key=s3_key, download_url=s3_service.generate_presigned_url(s3_key))
        self._append_event(job_id, f"Exported to S3 as {s3_key}.")

    def run_job(self, kind: JobKind, request: JobPayload, session_id: Optional[str] = None) -> ConversionResponse:
        """Run a job on the calling thread and return its response; failures propagate."""
        record = self._create_record(kind, request)
        return self._execute(record.id, kind, request, session_id).response

    def submit_job(self, kind: JobKind, request: JobPayload, session_id: Optional[str] = None) -> JobSummary:
        """Queue a job on the worker pool and return immediately."""
        record = self._create_record(kind, request)
        with self._lock:
            # Snapshot before the worker can move the record past PENDING
            summary = record.to_summary()
        self._executor.submit(self._run_in_background, record.id, kind, request, session_id)
        return summary

    def _run_in_background(self, job_id: str, kind: JobKind, request: JobPayload, session_id: Optional[str]) -> None:
        try:
            self._execute(job_id, kind, request, session_id)
        except Exception as exc:
            # Already recorded on the job by _execute
            logger.error(f"Job {job_id} failed: {exc}")

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a running job; its pending dispatch returns the failure code immediately."""
        with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        self._append_event(job_id, "Cancellation requested.")
        return True

    def shutdown(self) -> None:
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.queue.close()
