"""
Document build orchestration.

A build owns one freshly created working directory under the workspace and moves
through a fixed sequence of states:

    CREATED -> CONTENT_WRITTEN -> TEMPLATES_STAGED -> SOURCE_CONVERTED
            -> COMPILED_PASS_1 -> COMPILED_PASS_2 -> VALIDATED -> PUBLISHED

Any :class:`~book_press_backend.errors.PressError` moves the build to FAILED and is
re-raised unchanged, and filesystem errors are re-raised as ``WorkspaceError``; the
working directory is left in place for diagnosis.

Every external tool (pandoc, the note exporter, xelatex) is reached through the
injected :class:`~book_press_backend.dispatcher.CommandQueue`.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from .artifacts import CompileResult, evaluate_compile
from .catalog import declared_variable_names, read_template
from .configuration import PressConfig
from .dispatcher import CancellationToken, CommandQueue
from .errors import DispatchError, InputValidationError, PressError, WorkspaceError
from .markdown import (
    ImageMaterializer,
    UploadSession,
    convert_inline_footnotes,
    fix_escaped_footnotes,
    normalize_markdown,
)
from .models import ConversionMethod, ConversionRequest, ConversionResponse, CoverRequest, TemplateInfo, TemplateSelection
from .postprocess import postprocess_latex
from .staging import stage_template_text, validate_and_clean_metadata, validate_image_fields
from .templates import TemplateKind, TemplateReference, TemplateResolver, TemplateScope
from .utils import copy_matching_files, ensure_directory, is_safe_identifier

logger = logging.getLogger(__name__)

CONTENT_FILE = "content.md"
LATEX_CONTENT_FILE = "content.tex"
EXPORT_COPY_FILE = "content-obsidianexport.md"
METADATA_FILE = "metadata.json"
IMAGES_DIR = "images"
FONTS_DIR = "fonts"
PRISTINE_IMPOSE_FILE = "impose-template.tex"
FONT_SUFFIXES = (".ttf", ".otf")

COVER_PLACEHOLDER = "# Couverture\n\nCe fichier est utilisé uniquement pour la compilation de la couverture.\n"
UNTITLED_FILENAME = "sans_titre"
UNTITLED_TITLE = "sans titre"
FORBIDDEN_FILENAME_CHARACTERS = re.compile(r'[<>:"/\\|?*]')
FILENAME_TITLE_LENGTH = 30


class BuildState(str, Enum):
    CREATED = "created"
    CONTENT_WRITTEN = "content_written"
    TEMPLATES_STAGED = "templates_staged"
    SOURCE_CONVERTED = "source_converted"
    COMPILED_PASS_1 = "compiled_pass_1"
    COMPILED_PASS_2 = "compiled_pass_2"
    VALIDATED = "validated"
    PUBLISHED = "published"
    FAILED = "failed"


COMPILE_PASS_STATES = (BuildState.COMPILED_PASS_1, BuildState.COMPILED_PASS_2)

BuildListener = Callable[["BuildContext", BuildState], None]


@dataclass
class BuildContext:
    """Mutable state of one build; owned by a single thread for its whole life."""

    document_id: str
    work_dir: Path
    relative_dir: str
    token: CancellationToken = field(default_factory=CancellationToken)
    listener: Optional[BuildListener] = None
    state: BuildState = BuildState.CREATED
    history: List[BuildState] = field(default_factory=lambda: [BuildState.CREATED])
    templates: Dict[TemplateKind, Path] = field(default_factory=dict)
    metadata: Dict[str, str] = field(default_factory=dict)
    error: Optional[PressError] = None

    def path(self, name: str) -> Path:
        return self.work_dir / name


@dataclass(frozen=True)
class BuildOutcome:
    context: BuildContext
    response: ConversionResponse
    pdf_path: Path


def generate_document_filename(
    metadata: Mapping[str, Any],
    kind: str = "document",
    timezone: str = "Europe/Paris",
    now: Optional[datetime] = None,
) -> str:
    """
    Human-friendly download name: ``[cover_|impose_]<title>-<ddmmYYYY>-<HHMMSS>``.

    Example:
        >>> generate_document_filename({"titre": "Mon livre"}, "impose", now=datetime(2024, 3, 5, 14, 7, 9))
        "impose_Mon_livre-05032024-140709"
    """
    now = now or datetime.now(ZoneInfo(timezone))
    title = str(metadata.get("title") or metadata.get("titre") or "").strip()
    if title:
        cleaned = FORBIDDEN_FILENAME_CHARACTERS.sub("", title)
        cleaned = re.sub(r"\s+", "_", cleaned)[:FILENAME_TITLE_LENGTH]
    else:
        cleaned = ""
    filename = cleaned or UNTITLED_FILENAME

    prefix = {"cover": "cover_", "impose": "impose_"}.get(kind, "")
    return f"{prefix}{filename}-{now.strftime('%d%m%Y')}-{now.strftime('%H%M%S')}"


class DocumentBuilder:
    def __init__(
        self,
        config: PressConfig,
        queue: CommandQueue,
        resolver: TemplateResolver,
        materializer: ImageMaterializer,
    ) -> None:
        self.config = config
        self.queue = queue
        self.resolver = resolver
        self.materializer = materializer

    # -- lifecycle -----------------------------------------------------------

    def create_context(
        self,
        prefix: str = "doc",
        token: Optional[CancellationToken] = None,
        listener: Optional[BuildListener] = None,
    ) -> BuildContext:
        document_id = f"{prefix}_{uuid4().hex[:16]}"
        if not is_safe_identifier(document_id):
            raise InputValidationError(f"Invalid document prefix: {prefix!r}")

        work_dir = ensure_directory(self.config.workspace_root) / document_id
        # exist_ok=False: a working directory is never shared between builds
        work_dir.mkdir(exist_ok=False)
        context = BuildContext(
            document_id=document_id,
            work_dir=work_dir,
            relative_dir=document_id,
            token=token or CancellationToken(),
            listener=listener,
        )
        logger.info(f"Created working directory {work_dir}")
        self._notify(context, BuildState.CREATED)
        return context

    def advance(self, context: BuildContext, state: BuildState) -> None:
        context.state = state
        context.history.append(state)
        logger.debug(f"{context.document_id}: {state.value}")
        self._notify(context, state)

    def fail(self, context: BuildContext, error: PressError) -> None:
        logger.error(f"{context.document_id} failed during {context.state.value}: {error.message}")
        context.error = error
        self.advance(context, BuildState.FAILED)

    @contextmanager
    def failure_boundary(self, context: BuildContext) -> Iterator[None]:
        """
        Move the build to FAILED on any pipeline error and re-raise it.

        Filesystem and decoding errors are raised as :class:`WorkspaceError` so the
        caller always receives a structured failure.
        """
        try:
            yield
        except PressError as exc:
            self.fail(context, exc)
            raise
        except (OSError, UnicodeDecodeError) as exc:
            path = getattr(exc, "filename", None) or context.work_dir
            error = WorkspaceError(f"File operation failed during {context.state.value}: {exc}", path=path)
            self.fail(context, error)
            raise error from exc

    def _notify(self, context: BuildContext, state: BuildState) -> None:
        if context.listener is not None:
            context.listener(context, state)

    def check_cancelled(self, context: BuildContext) -> None:
        if context.token.cancelled:
            raise DispatchError(f"Build {context.document_id} was cancelled", path=context.work_dir)

    # -- dispatch helpers ----------------------------------------------------

    def dispatch(self, context: BuildContext, command: str) -> int:
        self.check_cancelled(context)
        return self.queue.dispatch(context.relative_dir, command, token=context.token)

    def run_for_artifact(
        self,
        context: BuildContext,
        command: str,
        artifact: str,
        min_size: Optional[int] = None,
    ) -> CompileResult:
        """
        Dispatch ``command`` and judge it by the artifact it should have produced.

        Args:
            context: The build whose working directory the command runs in
            command: Shell command handed to the toolchain
            artifact: File name, relative to the working directory, the command writes
            min_size: Smallest acceptable artifact size; the configured PDF minimum by default

        Returns:
            CompileResult: Exit code and artifact verdict, not yet raised on
        """
        exit_code = self.dispatch(context, command)
        size = self.config.build.min_pdf_size if min_size is None else min_size
        return evaluate_compile(exit_code, context.path(artifact), command, size)

    # -- steps ---------------------------------------------------------------

    def write_content(
        self,
        context: BuildContext,
        content: str,
        session: Optional[UploadSession] = None,
        inline_footnotes: bool = False,
    ) -> Path:
        """
        Normalize the manuscript, write it to the working directory and fetch its images.

        Args:
            context: The build receiving the content
            content: Raw Markdown from the editor
            session: Upload session whose images the manuscript may reference
            inline_footnotes: Rewrite ``^[...]`` inline notes as numbered footnotes

        Returns:
            Path: The written content file
        """
        normalized = normalize_markdown(content)
        if inline_footnotes:
            normalized = convert_inline_footnotes(normalized)

        content_path = context.path(CONTENT_FILE)
        content_path.write_text(normalized, encoding="utf-8")
        self.materializer.materialize(normalized, context.path(IMAGES_DIR), session)
        self.advance(context, BuildState.CONTENT_WRITTEN)
        return content_path

    def resolve_templates(self, selection: TemplateSelection) -> Dict[TemplateKind, Path]:
        """Check image fields and resolve every selected template; raises before any file is written."""
        validate_image_fields(selection.metadata)
        choices = (
            (TemplateKind.LAYOUT, selection.layout, selection.is_user_template),
            (TemplateKind.COVER, selection.cover, selection.cover_is_user_template),
            (TemplateKind.IMPOSE, selection.impose, selection.impose_is_user_template),
        )
        resolved: Dict[TemplateKind, Path] = {}
        for kind, name, is_user in choices:
            if not name or not name.strip():
                continue
            scope = TemplateScope.for_selection(is_user, selection.user_id)
            resolved[kind] = self.resolver.resolve(TemplateReference(kind, name, scope))
        return resolved

    def _font_sources(self, templates: Mapping[TemplateKind, Path]) -> List[Path]:
        sources = [self.resolver.library_font_dir(kind) for kind in templates]
        users_root = self.resolver.users_root.resolve()
        for path in templates.values():
            resolved = path.resolve()
            if users_root in resolved.parents:
                sources.append(self.resolver.user_font_dir(resolved.relative_to(users_root).parts[0]))
        return list(dict.fromkeys(sources))

    def stage_templates(
        self,
        context: BuildContext,
        selection: TemplateSelection,
        templates: Mapping[TemplateKind, Path],
        session: Optional[UploadSession] = None,
    ) -> Dict[TemplateKind, Path]:
        context.templates = dict(templates)
        context.metadata = validate_and_clean_metadata(
            selection.metadata,
            self.config.metadata,
            extra_fields=declared_variable_names(templates.values()),
        )

        fonts_dir = ensure_directory(context.path(FONTS_DIR))
        for source in self._font_sources(templates):
            copy_matching_files(source, fonts_dir, FONT_SUFFIXES)

        staged: Dict[TemplateKind, Path] = {}
        for kind, source in templates.items():
            text = stage_template_text(
                read_template(source),
                context.metadata,
                selection.boolean_options,
            )
            target = context.path(f"{kind.value}.tex")
            target.write_text(text, encoding="utf-8")
            if kind is TemplateKind.IMPOSE:
                context.path(PRISTINE_IMPOSE_FILE).write_text(text, encoding="utf-8")
            staged[kind] = target
            logger.info(f"Staged {kind.value} template {source.name} as {target.name}")

        self.materializer.copy_metadata_images(selection.metadata, context.path(IMAGES_DIR), session)

        document = {
            "metadata": context.metadata,
            "booleanOptions": dict(selection.boolean_options),
            "templates": {kind.value: path.stem for kind, path in templates.items()},
        }
        context.path(METADATA_FILE).write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
        self.advance(context, BuildState.TEMPLATES_STAGED)
        return staged

    def convert_source(self, context: BuildContext, method: ConversionMethod) -> Path:
        if method is ConversionMethod.OBSIDIAN_EXPORT:
            self._convert_via_export(context)
        else:
            command = f"pandoc {CONTENT_FILE} -o {LATEX_CONTENT_FILE}"
            self.run_for_artifact(context, command, LATEX_CONTENT_FILE, min_size=0).raise_for_failure(
                "Markdown conversion failed"
            )
        self.advance(context, BuildState.SOURCE_CONVERTED)
        return context.path(LATEX_CONTENT_FILE)

    def _convert_via_export(self, context: BuildContext) -> None:
        scratch = f"temp_obsidian_{uuid4().hex[:8]}"
        input_dir, output_dir = f"{scratch}/input", f"{scratch}/output"
        try:
            prepare = f"mkdir -p {input_dir} {output_dir} && cp {CONTENT_FILE} {input_dir}/"
            if self.dispatch(context, prepare) != 0:
                raise DispatchError("Could not prepare the export directories", path=context.path(scratch), command=prepare)

            export = f"obsidian-export {input_dir} {output_dir}"
            exit_code = self.dispatch(context, export)
            if exit_code != 0:
                raise DispatchError("Note export failed", exit_code=exit_code, path=context.path(output_dir), command=export)

            exported = sorted(context.path(output_dir).rglob("*.md"))
            if not exported:
                raise DispatchError("Note export produced no Markdown file", path=context.path(output_dir), command=export)

            markdown_path = exported[0]
            corrected = fix_escaped_footnotes(markdown_path.read_text(encoding="utf-8"))
            markdown_path.write_text(corrected, encoding="utf-8")
            context.path(EXPORT_COPY_FILE).write_text(corrected, encoding="utf-8")

            relative = markdown_path.relative_to(context.work_dir).as_posix()
            command = f"pandoc {shlex.quote(relative)} -o {LATEX_CONTENT_FILE}"
            self.run_for_artifact(context, command, LATEX_CONTENT_FILE, min_size=0).raise_for_failure(
                "Conversion of the exported Markdown failed"
            )
        finally:
            shutil.rmtree(context.path(scratch), ignore_errors=True)

        latex_path = context.path(LATEX_CONTENT_FILE)
        original = context.path(CONTENT_FILE).read_text(encoding="utf-8")
        latex_path.write_text(postprocess_latex(latex_path.read_text(encoding="utf-8"), original), encoding="utf-8")

    def compile(self, context: BuildContext, tex_name: str) -> CompileResult:
        """
        Compile ``tex_name`` the configured number of times.

        Only the final pass is validated: the first pass exists to write the
        auxiliary files (table of contents, references) the second one reads.
        """
        command = self.config.build.compile_command_for(tex_name)
        pdf_name = f"{Path(tex_name).stem}.pdf"
        passes = max(1, self.config.build.compile_passes)

        results: List[CompileResult] = []
        for index in range(passes):
            results.append(self.run_for_artifact(context, command, pdf_name))
            logger.info(f"{context.document_id}: pass {index + 1}/{passes} of {tex_name} exited with {results[-1].exit_code}")
            self.advance(context, COMPILE_PASS_STATES[min(index, len(COMPILE_PASS_STATES) - 1)])

        result = results[-1]
        result.raise_for_failure(f"Compilation of {tex_name} failed")
        self.advance(context, BuildState.VALIDATED)
        return result

    def publish(self, context: BuildContext, artifact: Path, public_id: str) -> Path:
        """
        Copy a validated artifact to the public directory.

        Args:
            context: The build being published
            artifact: The validated PDF in the working directory
            public_id: Name the PDF is served under

        Returns:
            Path: The published file
        """
        destination = ensure_directory(self.config.public_root) / f"{public_id}.pdf"
        shutil.copyfile(artifact, destination)
        logger.info(f"Published {artifact.name} as {destination}")
        self.advance(context, BuildState.PUBLISHED)
        return destination

    # -- responses -----------------------------------------------------------

    def pdf_url(self, public_id: str) -> str:
        return f"{self.config.api_url}/api/pdf/{public_id}"

    def response_metadata(self, context: BuildContext, supplied: Mapping[str, Any]) -> Dict[str, Any]:
        """The metadata actually used, unescaped, with defaults for missing fields."""
        defaults = self.config.metadata.defaults
        metadata: Dict[str, Any] = {}
        for name in context.metadata:
            value = supplied.get(name)
            metadata[name] = value if value not in (None, "") else defaults.get(name, "")
        if not metadata.get("titre"):
            metadata["titre"] = UNTITLED_TITLE
        return metadata

    def build_response(
        self,
        context: BuildContext,
        selection: TemplateSelection,
        public_id: str,
        kind: str,
        message: str,
        **extra: Any,
    ) -> ConversionResponse:
        timezone = ZoneInfo(self.config.build.timezone)
        now = datetime.now(timezone)
        return ConversionResponse(
            message=message,
            pdf_url=self.pdf_url(public_id),
            document_id=context.document_id,
            metadata=self.response_metadata(context, selection.metadata),
            filename=generate_document_filename(selection.metadata, kind, self.config.build.timezone, now),
            creation_time=now.strftime("%Y-%m-%d %H:%M:%S"),
            template=TemplateInfo(layout=selection.layout, cover=selection.cover, impose=selection.impose),
            **extra,
        )

    # -- whole builds --------------------------------------------------------

    def build_source(
        self,
        context: BuildContext,
        request: ConversionRequest,
        templates: Mapping[TemplateKind, Path],
        session: Optional[UploadSession] = None,
    ) -> CompileResult:
        """Run a build up to a validated ``main.pdf`` without publishing it."""
        self.write_content(context, request.content, session, request.inline_footnotes)
        self.stage_templates(context, request.template, templates, session)
        self.convert_source(context, request.conversion_method)

        entry_point = f"{self.config.build.entry_point}.tex"
        shutil.copyfile(context.path(f"{TemplateKind.LAYOUT.value}.tex"), context.path(entry_point))
        return self.compile(context, entry_point)

    def convert_document(
        self,
        request: ConversionRequest,
        session: Optional[UploadSession] = None,
        token: Optional[CancellationToken] = None,
        listener: Optional[BuildListener] = None,
    ) -> BuildOutcome:
        if not request.content.strip():
            raise InputValidationError("No content to convert")
        if not request.template.layout.strip():
            raise InputValidationError("A layout template is required")
        templates = self.resolve_templates(request.template)

        context = self.create_context("doc", token, listener)
        with self.failure_boundary(context):
            result = self.build_source(context, request, templates, session)
            pdf_path = self.publish(context, result.artifact, context.document_id)

        response = self.build_response(
            context, request.template, context.document_id, "document", "Document converted successfully"
        )
        return BuildOutcome(context=context, response=response, pdf_path=pdf_path)

    def compile_cover(
        self,
        request: CoverRequest,
        session: Optional[UploadSession] = None,
        token: Optional[CancellationToken] = None,
        listener: Optional[BuildListener] = None,
    ) -> BuildOutcome:
        if not request.template.cover.strip():
            raise InputValidationError("A cover template is required")
        templates = self.resolve_templates(request.template)

        context = self.create_context("cover", token, listener)
        with self.failure_boundary(context):
            self.write_content(context, COVER_PLACEHOLDER, session)
            self.stage_templates(context, request.template, templates, session)
            self.convert_source(context, request.conversion_method)
            result = self.compile(context, f"{TemplateKind.COVER.value}.tex")
            public_id = f"{context.document_id}-cover"
            pdf_path = self.publish(context, result.artifact, public_id)

        response = self.build_response(context, request.template, public_id, "cover", "Cover compiled successfully")
        return BuildOutcome(context=context, response=response, pdf_path=pdf_path)
