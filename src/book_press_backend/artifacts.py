"""
Output-artifact validation for dispatched compilations.

The typesetting compiler reports many recoverable warnings through a non-zero exit
code, so the presence of a plausibly sized PDF decides success, not the exit code.
:class:`CompileResult` carries that decision as a value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import DispatchError

logger = logging.getLogger(__name__)

DEFAULT_MIN_SIZE = 1024


def validate_file_output(path: Path, min_size: int = DEFAULT_MIN_SIZE) -> bool:
    """Return True when ``path`` exists, is a file and holds at least ``min_size`` bytes."""
    try:
        return path.is_file() and path.stat().st_size >= min_size
    except OSError:
        return False


class CompileOutcome(str, Enum):
    OK = "ok"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class CompileResult:
    exit_code: int
    artifact: Path
    artifact_valid: bool
    command: str

    @property
    def outcome(self) -> CompileOutcome:
        if not self.artifact_valid:
            return CompileOutcome.FAILED
        if self.exit_code != 0:
            return CompileOutcome.WARNING
        return CompileOutcome.OK

    def raise_for_failure(self, message: str) -> "CompileResult":
        """Raise :class:`DispatchError` when failed, log when only a warning, otherwise pass through."""
        outcome = self.outcome
        if outcome is CompileOutcome.FAILED:
            raise DispatchError(
                f"{message}: {self.artifact.name} missing or too small (exit code {self.exit_code})",
                exit_code=self.exit_code,
                path=self.artifact,
                command=self.command,
            )
        if outcome is CompileOutcome.WARNING:
            logger.warning(
                f"Command exited with {self.exit_code} but {self.artifact.name} looks valid; continuing"
            )
        return self


def evaluate_compile(exit_code: int, artifact: Path, command: str, min_size: int = DEFAULT_MIN_SIZE) -> CompileResult:
    return CompileResult(
        exit_code=exit_code,
        artifact=artifact,
        artifact_valid=validate_file_output(artifact, min_size),
        command=command,
    )
