"""
Pytest configuration and fixtures for Book Press Backend tests.

The typesetting toolchain is replaced by :class:`FakeToolchain`, a command queue
that writes the files pandoc, xelatex, pdflatex and pdftk would have produced.
"""

import os
import re
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="press_test_"))
os.environ["PRESS_WORKSPACE"] = str(_TEST_ROOT / "workspace")
os.environ["PRESS_LIBRARY"] = str(_TEST_ROOT / "typeset")
os.environ["PRESS_USER_TEMPLATES"] = str(_TEST_ROOT / "user_templates")
os.environ["PRESS_PUBLIC_DIR"] = str(_TEST_ROOT / "files")
os.environ["PRESS_UPLOADS"] = str(_TEST_ROOT / "uploads")
os.environ["PRESS_DATABASE"] = str(_TEST_ROOT / "jobs.db")
os.environ["PRESS_DISPATCH_MODE"] = "local"
os.environ.pop("S3_BUCKET_NAME", None)

from book_press_backend.configuration import load_press_config
from book_press_backend.dispatcher import CancellationToken, CommandQueue, run_shell
from book_press_backend.job_manager import JobManager
from book_press_backend.main import app, get_job_manager

FAKE_PDF = b"%PDF-1.4\n" + b"%" + b"0" * 2048 + b"\n%%EOF\n"
TINY_PDF = b"%PDF-1.4\n%%EOF\n"

LAYOUT_TEMPLATE = r"""% title: Garamond A5
% description: Classic novel layout
% version: 1.2
% author: Atelier
%% META: booleans=showtoc:true,dropcaps:false, variables=edition
\documentclass{book}
\usepackage{fontspec}
\setmainfont{EBGaramond}
% Print the table of contents
\newif\ifshowtoc \showtoctrue
\title{{{titre}}}
\author{%AUTEUR%}
\begin{document}
\ifshowtoc\tableofcontents\fi
\input{content.tex}
\end{document}
"""

COVER_TEMPLATE = r"""% title: Garamond cover
\documentclass{article}
\setmainfont[Path=/usr/share/fonts/, Extension=.otf]{Cinzel}
\begin{document}
{{titre}} {{auteur}} {{spineThickness}}
\includegraphics{images/{{imagecouv}}}
\end{document}
"""

IMPOSE_TEMPLATE = r"""\documentclass{article}
\usepackage{pdfpages}
\newcommand{\compensation}{-1.10mm}
\begin{document}
\includepdf[pages=-,nup=1x2,offset=\compensation{} 0mm]{export.pdf}
\end{document}
"""


class FakeToolchain(CommandQueue):
    """
    Command queue that simulates the typesetting tools inside the job directory.

    Attributes:
        page_count: Pages reported by ``pdftk dump_data``
        media: Page size in points reported by ``pdftk dump_data`` (None omits it)
        exit_codes: Exit code returned for commands containing a given substring
        failures: Remaining number of runs for which a command containing the
            substring produces no artifact and exits with 1
        commands: Every (work_dir, command) received, in order
        impose_sources: Content of ``impose.tex`` at each imposition compile
    """

    def __init__(self, workspace_root: Path, page_count: Optional[int] = 10) -> None:
        super().__init__(default_timeout=5.0, poll_interval=0.01)
        self.workspace_root = workspace_root
        self.page_count = page_count
        self.media: Optional[Tuple[float, float]] = (419.53, 595.28)
        self.exit_codes: Dict[str, int] = {}
        self.failures: Dict[str, int] = {}
        self.commands: List[Tuple[str, str]] = []
        self.impose_sources: List[str] = []

    def dispatch(self, work_dir, command, timeout=None, token=None) -> int:
        if token is not None and token.cancelled:
            return 1
        self.commands.append((work_dir, command))
        cwd = self.workspace_root / work_dir

        for needle, remaining in self.failures.items():
            if needle in command and remaining > 0:
                self.failures[needle] = remaining - 1
                return 1

        exit_code = self._simulate(cwd, command)
        for needle, code in self.exit_codes.items():
            if needle in command:
                exit_code = code
        return exit_code

    def commands_containing(self, needle: str) -> List[str]:
        return [command for _, command in self.commands if needle in command]

    def _simulate(self, cwd: Path, command: str) -> int:
        if command.startswith("pandoc"):
            tokens = shlex.split(command)
            source = (cwd / tokens[1]).read_text(encoding="utf-8")
            output = cwd / tokens[tokens.index("-o") + 1]
            output.write_text(self._latex_for(source), encoding="utf-8")
            return 0
        if command.startswith("obsidian-export"):
            _, source_dir, target_dir = shlex.split(command)
            for markdown in (cwd / source_dir).glob("*.md"):
                text = re.sub(r"\^\[([^\]]+)\]", r"^\\[\1\\]", markdown.read_text(encoding="utf-8"))
                (cwd / target_dir / markdown.name).write_text(text, encoding="utf-8")
            return 0
        if "xelatex" in command:
            tex = re.findall(r"(\S+)\.tex\b", command)[-1]
            if tex == "impose":
                self.impose_sources.append((cwd / "impose.tex").read_text(encoding="utf-8"))
            (cwd / f"{tex}.pdf").write_bytes(FAKE_PDF)
            return 0
        if command.startswith("pdflatex"):
            (cwd / "blank.pdf").write_bytes(TINY_PDF)
            return 0
        if "dump_data" in command:
            lines = [f"NumberOfPages: {self.page_count}"] if self.page_count is not None else ["InfoKey: Creator"]
            if self.media is not None:
                lines.append(f"PageMediaDimensions: {self.media[0]} {self.media[1]}")
            (cwd / "pdftk_output.txt").write_text("\n".join(lines) + "\n", encoding="utf-8")
            return 0
        if command.startswith("pdftk"):
            tokens = shlex.split(command)
            output = cwd / tokens[tokens.index("output") + 1]
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(FAKE_PDF)
            return 0
        # Plain shell housekeeping (mkdir, cp, rm) runs for real
        return run_shell(command, cwd)

    @staticmethod
    def _latex_for(markdown: str) -> str:
        if "|" in markdown:
            return (
                "\\section{Tableau}Intro\n"
                "\\begin{longtable}[]{@{}ll@{}}\n"
                "\\toprule\n"
                "\\begin{minipage}[b]{\\linewidth}\\raggedright Nom\\end{minipage} & "
                "\\begin{minipage}[b]{\\linewidth}\\raggedright Age\\end{minipage} \\\\\n"
                "\\midrule\n"
                "\\endhead\n"
                "Alice & 30 \\\\\n"
                "Bob & 25 \\\\\n"
                "\\bottomrule\n"
                "\\end{longtable}\n"
            )
        return "\\section{Chapitre}\nTexte du livre.\n"


def write_library(config) -> None:
    layout_dir = config.library_root / "layout"
    (layout_dir / "fonts").mkdir(parents=True, exist_ok=True)
    (layout_dir / "Garamond-a5-layout.tex").write_text(LAYOUT_TEMPLATE, encoding="utf-8")
    (layout_dir / "fonts" / "EBGaramond.ttf").write_bytes(b"font")
    (layout_dir / "fonts" / "README.txt").write_text("not a font", encoding="utf-8")

    cover_dir = config.library_root / "cover"
    cover_dir.mkdir(parents=True, exist_ok=True)
    (cover_dir / "Garamond-a5-cover-A4.tex").write_text(COVER_TEMPLATE, encoding="utf-8")

    impose_dir = config.library_root / "impose"
    impose_dir.mkdir(parents=True, exist_ok=True)
    (impose_dir / "A5-4signature.tex").write_text(IMPOSE_TEMPLATE, encoding="utf-8")
    (impose_dir / "A5-4spread.tex").write_text(IMPOSE_TEMPLATE, encoding="utf-8")


@pytest.fixture
def press_config(tmp_path):
    """Configuration rooted in a fresh temporary directory."""
    return load_press_config({
        "paths": {
            "workspace": str(tmp_path / "workspace"),
            "library": str(tmp_path / "typeset"),
            "user_templates": str(tmp_path / "user_templates"),
            "public": str(tmp_path / "files"),
            "uploads": str(tmp_path / "uploads"),
            "database": str(tmp_path / "jobs.db"),
        },
        "api": {"url": "http://press.test"},
        "dispatcher": {"mode": "local", "timeout": 5.0, "poll_interval": 0.01},
    })


@pytest.fixture
def library(press_config):
    write_library(press_config)
    return press_config.library_root


@pytest.fixture
def toolchain(press_config):
    return FakeToolchain(press_config.workspace_root)


@pytest.fixture
def manager(press_config, library, toolchain):
    job_manager = JobManager(press_config, queue=toolchain)
    yield job_manager
    job_manager.shutdown()


@pytest.fixture
def builder(manager):
    return manager.builder


@pytest.fixture
def engine(manager):
    return manager.imposer


@pytest.fixture
def client(manager):
    """Create a test client whose routes use the fixture job manager."""
    app.dependency_overrides[get_job_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def token():
    return CancellationToken()


@pytest.fixture
def manuscript():
    return (
        "---\n"
        "title: Le Voyage\n"
        "author: Jeanne\n"
        "---\n"
        "# Le Voyage\n\n"
        "Il était une fois^[une note].\n\n"
        "![[carte.png|La carte]]\n"
    )


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)
