"""
Failure taxonomy for the build and imposition pipeline.

Every component raises one of these message-carrying exceptions and lets it
propagate unchanged to the job boundary, where it is recorded against the job
and turned into a structured API response.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional


class PressError(Exception):
    """Base class for every pipeline failure."""

    code = "press_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        path: Path | str | None = None,
        command: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = str(path) if path is not None else None
        self.command = command

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": "error", "code": self.code, "message": self.message}
        if self.path:
            payload["path"] = self.path
        if self.command:
            payload["command"] = self.command
        return payload


class InputValidationError(PressError):
    """Missing content, missing template selection or an invalid value. Raised before any side effect."""

    code = "validation_error"
    status_code = 400


class TemplateResolutionError(PressError):
    """A template or font could not be found in any searched scope."""

    code = "resolution_error"
    status_code = 404

    def __init__(self, kind: str, base_name: str, searched: Iterable[Path] = ()) -> None:
        self.kind = kind
        self.base_name = base_name
        self.searched: List[str] = [str(directory) for directory in searched]
        super().__init__(f"No {kind} template found for '{base_name}'")

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update({"kind": self.kind, "base_name": self.base_name, "searched": self.searched})
        return payload


class DispatchError(PressError):
    """A dispatched command timed out, or failed without producing a usable artifact."""

    code = "dispatch_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        path: Path | str | None = None,
        command: Optional[str] = None,
    ) -> None:
        super().__init__(message, path=path, command=command)
        self.exit_code = exit_code

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        return payload


class PageCountError(PressError):
    """The page count of a compiled document could not be determined."""

    code = "page_count_error"
    status_code = 422


class WorkspaceError(PressError):
    """A template or working-directory file could not be read, decoded or written."""

    code = "workspace_error"
    status_code = 500
