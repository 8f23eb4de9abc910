"""
Book Press Backend - REST API for building press-ready PDFs from Markdown

This package provides a FastAPI-based web service that turns a manuscript
written in Markdown into a typeset, optionally imposed PDF. It enables:

- Markdown normalization (wiki-style image embeds, upload links, footnotes)
- Template resolution across the system library and per-user namespaces
- Two-pass LaTeX compilation through a file-based command dispatcher
- Page imposition into signatures or spreads with paper-thickness compensation
- Job status tracking, event logging and persistence

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Job lifecycle and build execution coordinator
    - builder: Per-document build state machine
    - imposition: Padding, reordering, splitting and merging of packages
    - dispatcher: Command queues and the ``press-worker`` processor side
    - templates / catalog: Template lookup and self-described template options
    - markdown / postprocess / staging: Text transforms applied during a build
    - configuration: Config loading and the injected settings object

Usage:
    Run the API server with:
        uvicorn book_press_backend.main:app --reload --host 0.0.0.0 --port 8000

    Run the command processor next to the TeX toolchain with:
        press-worker --workspace ./data/workspace
"""
