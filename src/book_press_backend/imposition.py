"""
Page imposition: turning a compiled book into printer signatures or spreads.

The imposition template name carries the unit size (``4signature``, ``16spread``).
The compiled ``main.pdf`` is padded with blank pages to a multiple of that size,
reordered for spread binding, split into packages and each package is compiled
against the imposition template, which includes the package as ``export.pdf``.
The imposed packages are merged back in order into ``final_imposed.pdf``.

For spreads the template exposes ``\\newcommand{\\compensation}{...}``: outer
sheets of a saddle-stitched book creep outwards by two paper thicknesses per
sheet, so each package gets its own offset.
"""

from __future__ import annotations

import logging
import math
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .artifacts import CompileResult
from .builder import PRISTINE_IMPOSE_FILE, BuildContext, BuildListener, BuildOutcome, DocumentBuilder
from .configuration import PressConfig
from .dispatcher import CancellationToken
from .errors import InputValidationError, PageCountError
from .markdown import UploadSession
from .models import ConversionRequest
from .templates import TemplateKind

logger = logging.getLogger(__name__)

POINTS_TO_MM = 0.3528
A4_DIMENSIONS = (210.0, 297.0)

SOURCE_PDF = "source.pdf"
PADDED_PDF = "padded.pdf"
REORDERED_PDF = "reordered_source.pdf"
BLANK_TEX = "blank.tex"
BLANK_PDF = "blank.pdf"
DUMP_FILE = "pdftk_output.txt"
EXPORT_PDF = "export.pdf"
IMPOSE_TEX = "impose.tex"
IMPOSE_PDF = "impose.pdf"
FINAL_PDF = "final_imposed.pdf"
PACKAGES_DIR = "packages"
IMPOSED_DIR = "imposed"

UNIT_PATTERN = re.compile(r"(\d+)\s*-?\s*(signature|spread)", re.IGNORECASE)
LEADING_NUMBER_PATTERN = re.compile(r"^(\d+)")
PAGE_COUNT_PATTERN = re.compile(r"NumberOfPages:\s*(\d+)")
PAGE_DIMENSIONS_PATTERN = re.compile(r"PageMediaDimensions:\s+([\d.]+)\s+([\d.]+)")
COMPENSATION_PATTERN = re.compile(r"\\newcommand\{\\compensation\}\{([^}]+)\}")


class ImpositionKind(str, Enum):
    SIGNATURE = "signature"
    SPREAD = "spread"


def parse_imposition_name(name: str, default_pages: int = 4) -> Tuple[int, ImpositionKind]:
    """
    Read the unit size and kind from an imposition template name.

    Example:
        >>> parse_imposition_name("A5-16spread")
        (16, ImpositionKind.SPREAD)
    """
    match = UNIT_PATTERN.search(name) or LEADING_NUMBER_PATTERN.search(name)
    pages = int(match.group(1)) if match else default_pages
    if pages < 1:
        pages = default_pages
    kind = ImpositionKind.SPREAD if "spread" in name.lower() else ImpositionKind.SIGNATURE
    return pages, kind


@dataclass(frozen=True)
class ImpositionPlan:
    total_pages: int
    pages_per_unit: int
    target_pages: int
    total_packages: int
    paper_thickness: float
    kind: ImpositionKind

    @classmethod
    def compute(
        cls,
        total_pages: int,
        pages_per_unit: int,
        paper_thickness: float = 0.0,
        kind: ImpositionKind = ImpositionKind.SIGNATURE,
    ) -> "ImpositionPlan":
        if total_pages < 1:
            raise PageCountError(f"Cannot impose a document with {total_pages} page(s)")
        if pages_per_unit < 1:
            raise InputValidationError(f"Invalid number of pages per unit: {pages_per_unit}")
        target_pages = math.ceil(total_pages / pages_per_unit) * pages_per_unit
        return cls(
            total_pages=total_pages,
            pages_per_unit=pages_per_unit,
            target_pages=target_pages,
            total_packages=target_pages // pages_per_unit,
            paper_thickness=paper_thickness,
            kind=kind,
        )

    @property
    def blank_pages(self) -> int:
        return self.target_pages - self.total_pages

    def package_range(self, index: int) -> Tuple[int, int]:
        """First and last page (1-based, inclusive) of package ``index``."""
        start = index * self.pages_per_unit + 1
        return start, start + self.pages_per_unit - 1

    def compensation_for(self, index: int, base: float = -1.10) -> Optional[float]:
        if self.kind is not ImpositionKind.SPREAD or self.paper_thickness <= 0:
            return None
        return compensation(self.total_packages, index, self.paper_thickness, base)


def spread_sequence(target_pages: int) -> List[int]:
    """
    Interleave pages for centre binding: ``1, n, 2, n-1, ...``.

    An odd count ends with the middle page so the result stays a permutation.
    """
    sequence: List[int] = []
    low, high = 1, target_pages
    while low < high:
        sequence.extend((low, high))
        low += 1
        high -= 1
    if low == high:
        sequence.append(low)
    return sequence


def compensation(total_packages: int, index: int, paper_thickness: float, base: float = -1.10) -> float:
    unit_index = total_packages - 1 - index
    return round(base + unit_index * 2 * paper_thickness, 6)


def format_mm(value: float) -> str:
    return f"{round(value, 4):g}mm"


def apply_compensation(source: str, value: float) -> str:
    replacement = f"\\newcommand{{\\compensation}}{{{format_mm(value)}}}"
    updated, count = COMPENSATION_PATTERN.subn(lambda _match: replacement, source)
    if not count:
        logger.warning("Imposition template declares no \\compensation macro; offset not applied")
    return updated


def parse_page_count(dump: str) -> int:
    match = PAGE_COUNT_PATTERN.search(dump)
    if not match:
        raise PageCountError("Page count missing from the PDF dump")
    count = int(match.group(1))
    if count < 1:
        raise PageCountError("The compiled document has no pages")
    return count


def parse_page_dimensions(dump: str) -> Tuple[float, float]:
    """Page size in millimetres from the first ``PageMediaDimensions`` entry, A4 when absent."""
    match = PAGE_DIMENSIONS_PATTERN.search(dump)
    if not match:
        return A4_DIMENSIONS
    width, height = (round(float(value) * POINTS_TO_MM, 2) for value in match.groups())
    return width, height


def blank_page_source(width_mm: float, height_mm: float) -> str:
    return (
        "\\documentclass{article}\n"
        "\\usepackage[utf8]{inputenc}\n"
        "\\usepackage[T1]{fontenc}\n"
        "\\usepackage{geometry}\n"
        f"\\geometry{{paperwidth={width_mm}mm,paperheight={height_mm}mm,margin=0mm}}\n"
        "\\pagestyle{empty}\n"
        "\\begin{document}\n"
        "~\n"
        "\\end{document}\n"
    )


class ImpositionEngine:
    def __init__(self, config: PressConfig, builder: DocumentBuilder) -> None:
        self.config = config
        self.builder = builder
        self.settings = config.imposition

    def _require(self, context: BuildContext, command: str, artifact: str, message: str, min_size: Optional[int] = None) -> Path:
        return self.builder.run_for_artifact(context, command, artifact, min_size).raise_for_failure(message).artifact

    def inspect_source(self, context: BuildContext) -> Tuple[int, Tuple[float, float]]:
        """
        Read the compiled document's page count and first page size.

        Returns:
            Tuple of the page count and the page dimensions in millimetres

        Raises:
            PageCountError: If pdftk fails or reports no page count
        """
        command = f"pdftk {SOURCE_PDF} dump_data > {DUMP_FILE} 2>&1"
        exit_code = self.builder.dispatch(context, command)
        dump_path = context.path(DUMP_FILE)
        if exit_code != 0 or not dump_path.is_file():
            raise PageCountError(
                f"Could not read the page count of {SOURCE_PDF} (exit code {exit_code})",
                path=dump_path,
                command=command,
            )
        dump = dump_path.read_text(encoding="utf-8", errors="replace")
        return parse_page_count(dump), parse_page_dimensions(dump)

    def pad(self, context: BuildContext, plan: ImpositionPlan, dimensions: Tuple[float, float]) -> None:
        context.path(BLANK_TEX).write_text(blank_page_source(*dimensions), encoding="utf-8")
        self._require(context, self.settings.blank_command, BLANK_PDF, "Blank page generation failed", min_size=1)

        blanks = " ".join([BLANK_PDF] * plan.blank_pages)
        command = f"pdftk {SOURCE_PDF} {blanks} cat output {PADDED_PDF}"
        padded = self._require(context, command, PADDED_PDF, "Padding with blank pages failed")
        shutil.copyfile(padded, context.path(SOURCE_PDF))
        logger.info(f"{context.document_id}: added {plan.blank_pages} blank page(s) to reach {plan.target_pages}")

    def reorder(self, context: BuildContext, plan: ImpositionPlan) -> None:
        pages = " ".join(str(page) for page in spread_sequence(plan.target_pages))
        command = f"pdftk {SOURCE_PDF} cat {pages} output {REORDERED_PDF}"
        reordered = self._require(context, command, REORDERED_PDF, "Spread reordering failed")
        shutil.copyfile(reordered, context.path(SOURCE_PDF))

    def split(self, context: BuildContext, plan: ImpositionPlan) -> List[Path]:
        """Split the (padded, reordered) source into one PDF per package, in package order."""
        packages_dir = context.path(PACKAGES_DIR)
        packages_dir.mkdir(exist_ok=True)
        context.path(IMPOSED_DIR).mkdir(exist_ok=True)

        if plan.total_packages == 1:
            package = packages_dir / "package_001.pdf"
            shutil.copyfile(context.path(SOURCE_PDF), package)
            return [package]

        packages: List[Path] = []
        for index in range(plan.total_packages):
            start, end = plan.package_range(index)
            artifact = f"{PACKAGES_DIR}/package_{index + 1:03d}.pdf"
            command = f"pdftk {SOURCE_PDF} cat {start}-{end} output {artifact}"
            packages.append(self._require(context, command, artifact, f"Extraction of package {index + 1} failed"))
        return packages

    def _compile_package(self, context: BuildContext) -> CompileResult:
        # A previous package's output must never pass for this one
        context.path(IMPOSE_PDF).unlink(missing_ok=True)
        return self.builder.run_for_artifact(context, self.settings.impose_command, IMPOSE_PDF)

    def impose_package(self, context: BuildContext, plan: ImpositionPlan, index: int, package: Path) -> Path:
        """
        Impose one package, retrying once when configured to.

        Args:
            context: The imposition build
            plan: Pagination plan giving the package's compensation
            index: Zero-based package number, outermost first
            package: The package's pages as a PDF

        Returns:
            Path: The imposed package in the working directory
        """
        shutil.copyfile(package, context.path(EXPORT_PDF))

        source = context.path(PRISTINE_IMPOSE_FILE).read_text(encoding="utf-8")
        offset = plan.compensation_for(index, self.settings.base_compensation)
        if offset is not None:
            source = apply_compensation(source, offset)
            logger.info(f"{context.document_id}: package {index + 1} compensation {format_mm(offset)}")
        context.path(IMPOSE_TEX).write_text(source, encoding="utf-8")

        attempts = 2 if self.settings.retry_failed_package else 1
        result = self._compile_package(context)
        for attempt in range(2, attempts + 1):
            if result.artifact_valid:
                break
            logger.warning(f"{context.document_id}: package {index + 1} produced no valid PDF, attempt {attempt}")
            result = self._compile_package(context)

        result.raise_for_failure(f"Imposition of package {index + 1} failed")
        target = context.path(IMPOSED_DIR) / f"imposed_package_{index + 1:03d}.pdf"
        shutil.move(str(result.artifact), target)
        return target

    def merge(self, context: BuildContext, imposed: List[Path]) -> Path:
        final = context.path(FINAL_PDF)
        if len(imposed) == 1:
            shutil.copyfile(imposed[0], final)
            return final

        inputs = " ".join(f'"{IMPOSED_DIR}/{path.name}"' for path in imposed)
        command = f'pdftk {inputs} cat output "{FINAL_PDF}"'
        return self._require(context, command, FINAL_PDF, "Merging imposed packages failed")

    def impose(
        self,
        request: ConversionRequest,
        session: Optional[UploadSession] = None,
        token: Optional[CancellationToken] = None,
        listener: Optional[BuildListener] = None,
    ) -> BuildOutcome:
        """
        Build the document, then pad, reorder, split, impose and merge it for print.

        Args:
            request: Manuscript and template selection; an imposition template is required
            session: Upload session whose images the manuscript may reference
            token: Cancels the build between toolchain commands
            listener: Called on every build state transition

        Returns:
            BuildOutcome: The published imposed PDF and its pagination figures

        Raises:
            InputValidationError: If content or a required template is missing
            PageCountError: If the compiled document's page count cannot be read
            DispatchError: If a toolchain command fails
            WorkspaceError: If a working file cannot be read or written
        """
        selection = request.template
        if not request.content.strip():
            raise InputValidationError("No content to impose")
        if not selection.layout.strip():
            raise InputValidationError("A layout template is required for imposition")
        if not selection.impose.strip():
            raise InputValidationError("An imposition template is required")

        thickness = self.settings.default_paper_thickness if selection.paper_thickness is None else selection.paper_thickness
        if thickness < 0:
            raise InputValidationError(f"Paper thickness cannot be negative: {thickness}")

        templates = self.builder.resolve_templates(selection)
        pages_per_unit, kind = parse_imposition_name(
            selection.impose or templates[TemplateKind.IMPOSE].stem,
            self.settings.default_pages_per_unit,
        )

        context = self.builder.create_context("impose", token, listener)
        with self.builder.failure_boundary(context):
            compiled = self.builder.build_source(context, request, templates, session)
            shutil.copyfile(compiled.artifact, context.path(SOURCE_PDF))

            total_pages, dimensions = self.inspect_source(context)
            plan = ImpositionPlan.compute(total_pages, pages_per_unit, thickness, kind)
            logger.info(
                f"{context.document_id}: {plan.total_pages} page(s) -> {plan.target_pages} in "
                f"{plan.total_packages} {plan.kind.value} package(s) of {plan.pages_per_unit}"
            )

            if plan.blank_pages:
                self.pad(context, plan, dimensions)
            if plan.kind is ImpositionKind.SPREAD:
                self.reorder(context, plan)

            packages = self.split(context, plan)
            imposed = [self.impose_package(context, plan, index, package) for index, package in enumerate(packages)]
            final = self.merge(context, imposed)
            pdf_path = self.builder.publish(context, final, context.document_id)

        response = self.builder.build_response(
            context,
            selection,
            context.document_id,
            "impose",
            "Document imposed successfully",
            total_pages=plan.total_pages,
            target_pages=plan.target_pages,
            pages_per_unit=plan.pages_per_unit,
            paper_thickness=plan.paper_thickness,
        )
        return BuildOutcome(context=context, response=response, pdf_path=pdf_path)
