from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    CONVERT = "convert"
    COVER = "cover"
    IMPOSE = "impose"


class ConversionMethod(str, Enum):
    PANDOC_DIRECT = "pandoc_direct"
    OBSIDIAN_EXPORT = "obsidian_export"


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class TemplateSelection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    layout: str = ""
    cover: str = ""
    impose: str = ""
    is_user_template: bool = Field(False, alias="isUserTemplate")
    cover_is_user_template: bool = Field(False, alias="coverIsUserTemplate")
    impose_is_user_template: bool = Field(False, alias="imposeIsUserTemplate")
    user_id: Optional[str] = Field(None, alias="userId")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    boolean_options: Dict[str, bool] = Field(default_factory=dict, alias="booleanOptions")
    paper_thickness: Optional[float] = Field(None, alias="paperThickness")


class ConversionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = ""
    template: TemplateSelection = Field(default_factory=TemplateSelection)
    conversion_method: ConversionMethod = Field(ConversionMethod.PANDOC_DIRECT, alias="conversionMethod")
    inline_footnotes: bool = Field(False, alias="inlineFootnotes")


class CoverRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template: TemplateSelection = Field(default_factory=TemplateSelection)
    conversion_method: ConversionMethod = Field(ConversionMethod.PANDOC_DIRECT, alias="conversionMethod")


class JobRequest(ConversionRequest):
    kind: JobKind = JobKind.CONVERT


class TemplateInfo(BaseModel):
    layout: str = ""
    cover: str = ""
    impose: str = ""


class ConversionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "success"
    message: str
    pdf_url: str
    document_id: str
    metadata: Dict[str, Any]
    filename: str
    creation_time: str
    template: Optional[TemplateInfo] = None
    total_pages: Optional[int] = Field(None, alias="totalPages")
    target_pages: Optional[int] = Field(None, alias="targetPages")
    pages_per_unit: Optional[int] = Field(None, alias="pagesPerUnit")
    paper_thickness: Optional[float] = Field(None, alias="paperThickness")


class JobSummary(BaseModel):
    id: str
    kind: JobKind
    label: str
    status: JobStatus
    build_state: str
    created_at: datetime
    updated_at: datetime
    document_id: Optional[str] = None
    pdf_url: Optional[str] = None


class JobDetail(JobSummary):
    request: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    work_dir: Optional[str] = None
    download_url: Optional[str] = None
    events: List[JobEvent]
    error: Optional[Dict[str, Any]] = None


class ConfigMetadata(BaseModel):
    defaults: Dict[str, Any]
    conversion_methods: List[str]
    template_kinds: List[str]
    metadata_fields: List[str]
    metadata_defaults: Dict[str, str]
    notes: Dict[str, str]


class TemplateOption(BaseModel):
    name: str
    type: str
    default: Any = None
    description: Optional[str] = None


class TemplateOptions(BaseModel):
    booleans: List[TemplateOption] = Field(default_factory=list)
    variables: List[TemplateOption] = Field(default_factory=list)


class TemplateDescriptor(BaseModel):
    name: str
    kind: str
    scope: str
    user_id: Optional[str] = None
    title: str = ""
    description: str = ""
    version: str = ""
    author: str = ""
    style: Optional[str] = None
    format: Optional[str] = None
    paper: Optional[str] = None
    annotations: Dict[str, str] = Field(default_factory=dict)
    options: TemplateOptions = Field(default_factory=TemplateOptions)


class InvalidTemplate(BaseModel):
    file: str
    error: str


class TemplateListing(BaseModel):
    layouts: List[TemplateDescriptor] = Field(default_factory=list)
    covers: List[TemplateDescriptor] = Field(default_factory=list)
    imposes: List[TemplateDescriptor] = Field(default_factory=list)
    invalid_files: Dict[str, List[InvalidTemplate]] = Field(default_factory=dict)


class CoverVariables(BaseModel):
    cover: str
    variables: List[TemplateOption]


class UploadResponse(BaseModel):
    filename: str
    stored_name: str
    session_id: str
