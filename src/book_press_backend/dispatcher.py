"""
Command dispatch to the typesetting processor.

The typesetting toolchain (pandoc, xelatex, pdflatex, pdftk) runs in a separate
execution environment. Commands reach it through a shared ``commands`` directory:

- the dispatching side writes ``<uuid>.cmd`` holding ``<relativeWorkDir>|<shellCommand>``
- a worker claims the file, runs the command inside ``<workspace>/<relativeWorkDir>``
  and writes the decimal exit code to ``<uuid>.cmd.result``
- the dispatching side reads the exit code, deletes the result file and returns it

Delivery is at-most-once and not guaranteed: when no result appears within the
timeout the leftover descriptor is removed and the call reports failure. Callers
treat that exactly like a failed command.

:class:`LocalCommandQueue` offers the same contract backed by an in-process thread
pool, for single-host deployments and tests.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from .configuration import PressConfig
from .utils import ensure_directory

logger = logging.getLogger(__name__)

DISPATCH_FAILURE = 1
COMMAND_SUFFIX = ".cmd"
RESULT_SUFFIX = ".result"
CLAIMED_SUFFIX = ".claimed"


class CancellationToken:
    """Cooperative cancellation shared between a caller and a waiting dispatch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True as soon as the token is cancelled."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class DispatchCommand:
    work_dir: str
    command: str

    def to_line(self) -> str:
        return f"{self.work_dir}|{self.command}"

    @classmethod
    def parse(cls, line: str) -> "DispatchCommand":
        work_dir, separator, command = line.strip("\r\n").partition("|")
        if not separator or not command.strip():
            raise ValueError(f"Malformed command descriptor: {line!r}")
        return cls(work_dir=work_dir.strip(), command=command.strip())


def result_path_for(command_path: Path) -> Path:
    return command_path.with_name(command_path.name + RESULT_SUFFIX)


def run_shell(command: str, cwd: Path, timeout: Optional[float] = None) -> int:
    """Run ``command`` through the shell in ``cwd`` and return its exit code."""
    try:
        completed = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            timeout=timeout,
            capture_output=True,
            text=True,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {command}")
        return DISPATCH_FAILURE
    except OSError as exc:
        logger.error(f"Failed to start command '{command}' in {cwd}: {exc}")
        return DISPATCH_FAILURE

    if completed.returncode != 0:
        tail = (completed.stderr or completed.stdout or "").strip().splitlines()[-5:]
        logger.info(f"Command exited with {completed.returncode}: {command} | {' / '.join(tail)}")
    return completed.returncode


class ShellRunner:
    """Executes dispatch commands inside job working directories under one workspace root."""

    def __init__(self, workspace_root: Path, command_timeout: Optional[float] = None) -> None:
        self.workspace_root = workspace_root
        self.command_timeout = command_timeout

    def resolve_work_dir(self, work_dir: str) -> Optional[Path]:
        root = self.workspace_root.resolve()
        candidate = (root / work_dir).resolve()
        if candidate != root and root not in candidate.parents:
            logger.error(f"Refusing work dir outside the workspace: {work_dir}")
            return None
        if not candidate.is_dir():
            logger.error(f"Work dir does not exist: {candidate}")
            return None
        return candidate

    def execute(self, descriptor: DispatchCommand) -> int:
        cwd = self.resolve_work_dir(descriptor.work_dir)
        if cwd is None:
            return DISPATCH_FAILURE
        logger.info(f"Running in {descriptor.work_dir}: {descriptor.command}")
        return run_shell(descriptor.command, cwd, timeout=self.command_timeout)


class CommandQueue(ABC):
    """The only way the pipeline reaches the typesetting toolchain."""

    def __init__(self, default_timeout: float = 60.0, poll_interval: float = 0.1) -> None:
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    @abstractmethod
    def dispatch(
        self,
        work_dir: str,
        command: str,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Run ``command`` in ``work_dir`` and return its exit code, or 1 on timeout or cancellation."""

    def close(self) -> None:
        """Release queue resources. Nothing to do for most queues."""


class FileCommandQueue(CommandQueue):
    """Dispatcher side of the file-based inbox/outbox protocol."""

    def __init__(self, commands_dir: Path, default_timeout: float = 60.0, poll_interval: float = 0.1) -> None:
        super().__init__(default_timeout=default_timeout, poll_interval=poll_interval)
        self.commands_dir = commands_dir

    def submit(self, work_dir: str, command: str) -> Path:
        """Write a descriptor under a fresh name; a rename makes it visible to workers in one step."""
        ensure_directory(self.commands_dir)
        command_id = uuid4().hex
        command_path = self.commands_dir / f"{command_id}{COMMAND_SUFFIX}"
        staging_path = self.commands_dir / f".{command_id}.tmp"
        staging_path.write_text(DispatchCommand(work_dir, command).to_line(), encoding="utf-8")
        os.replace(staging_path, command_path)
        return command_path

    def dispatch(
        self,
        work_dir: str,
        command: str,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> int:
        timeout = self.default_timeout if timeout is None else timeout
        token = token or CancellationToken()

        try:
            command_path = self.submit(work_dir, command)
        except OSError as exc:
            logger.error(f"Could not write command descriptor in {self.commands_dir}: {exc}")
            return DISPATCH_FAILURE

        result_path = result_path_for(command_path)
        logger.info(f"Dispatched {command_path.name} ({work_dir}): {command}")

        deadline = time.monotonic() + timeout
        while True:
            if result_path.exists():
                return self._consume_result(result_path)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"No result for {command_path.name} after {timeout}s")
                break
            if token.wait(min(self.poll_interval, remaining)):
                logger.warning(f"Dispatch of {command_path.name} cancelled")
                break

        command_path.unlink(missing_ok=True)
        return DISPATCH_FAILURE

    def _consume_result(self, result_path: Path) -> int:
        raw = result_path.read_text(encoding="utf-8").strip()
        result_path.unlink(missing_ok=True)
        try:
            exit_code = int(raw)
        except ValueError:
            logger.error(f"Unreadable result in {result_path.name}: {raw!r}")
            return DISPATCH_FAILURE
        logger.info(f"{result_path.name} finished with exit code {exit_code}")
        return exit_code


class CommandWorker:
    """
    Processor side of the file protocol.

    Descriptors are claimed by renaming them, so two workers sharing a commands
    directory never run the same command and a dispatcher that gives up can still
    delete an unclaimed descriptor.

    A dispatcher that gave up after the worker claimed its descriptor never reads
    the result; such results are deleted once they are older than ``result_ttl``.
    """

    def __init__(self, commands_dir: Path, runner: ShellRunner, result_ttl: float = 600.0) -> None:
        self.commands_dir = commands_dir
        self.runner = runner
        self.result_ttl = result_ttl

    def pending(self) -> List[Path]:
        """Unclaimed descriptors, oldest first."""
        if not self.commands_dir.is_dir():
            return []
        entries = []
        for path in self.commands_dir.glob(f"*{COMMAND_SUFFIX}"):
            try:
                entries.append((path.stat().st_mtime, path))
            except FileNotFoundError:
                # Claimed by another worker or withdrawn by its dispatcher
                continue
        return [path for _, path in sorted(entries)]

    def claim(self, command_path: Path) -> Optional[Path]:
        claimed_path = command_path.with_name(command_path.name + CLAIMED_SUFFIX)
        try:
            os.rename(command_path, claimed_path)
        except FileNotFoundError:
            return None
        return claimed_path

    def process(self, command_path: Path) -> Optional[int]:
        claimed_path = self.claim(command_path)
        if claimed_path is None:
            return None

        try:
            descriptor = DispatchCommand.parse(claimed_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            logger.error(f"Skipping {command_path.name}: {exc}")
            exit_code = DISPATCH_FAILURE
        else:
            exit_code = self.runner.execute(descriptor)

        result_path = result_path_for(command_path)
        staging_path = result_path.with_name(f".{result_path.name}.tmp")
        staging_path.write_text(str(exit_code), encoding="utf-8")
        os.replace(staging_path, result_path)
        claimed_path.unlink(missing_ok=True)
        return exit_code

    def process_pending(self) -> int:
        processed = 0
        for command_path in self.pending():
            if self.process(command_path) is not None:
                processed += 1
        return processed

    def sweep_results(self, now: Optional[float] = None) -> int:
        """
        Delete results that no dispatcher collected within ``result_ttl`` seconds.

        Args:
            now: Reference time as a ``time.time()`` value, the current time by default

        Returns:
            int: Number of result files deleted
        """
        if not self.commands_dir.is_dir():
            return 0
        cutoff = (time.time() if now is None else now) - self.result_ttl
        removed = 0
        for path in self.commands_dir.glob(f"*{COMMAND_SUFFIX}{RESULT_SUFFIX}"):
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            logger.warning(f"Removed uncollected result {path.name}")
            removed += 1
        return removed

    def serve(self, token: CancellationToken, idle_interval: float = 0.1) -> None:
        """
        Process commands until ``token`` is cancelled.

        A filesystem error while handling the inbox is logged and the loop carries
        on after ``idle_interval``; the worker only stops on cancellation.
        """
        ensure_directory(self.commands_dir)
        logger.info(f"Watching {self.commands_dir} for commands")
        while not token.cancelled:
            try:
                if self.process_pending():
                    continue
                self.sweep_results()
            except OSError as exc:
                logger.error(f"Error while processing {self.commands_dir}: {exc}")
            token.wait(idle_interval)


class LocalCommandQueue(CommandQueue):
    """In-process work queue with the same timeout-bounded, at-most-once contract."""

    def __init__(
        self,
        runner: ShellRunner,
        max_workers: int = 2,
        default_timeout: float = 60.0,
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(default_timeout=default_timeout, poll_interval=poll_interval)
        self.runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="press-cmd")

    def dispatch(
        self,
        work_dir: str,
        command: str,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> int:
        timeout = self.default_timeout if timeout is None else timeout
        token = token or CancellationToken()
        future = self._executor.submit(self.runner.execute, DispatchCommand(work_dir, command))

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Local command timed out after {timeout}s: {command}")
                break
            done, _ = wait([future], timeout=min(self.poll_interval, remaining))
            if done:
                return future.result()
            if token.cancelled:
                logger.warning(f"Local command cancelled: {command}")
                break

        # A command that has not started yet is dropped; one already running is left to finish.
        future.cancel()
        return DISPATCH_FAILURE

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def build_command_queue(config: PressConfig) -> CommandQueue:
    settings = config.dispatcher
    if settings.mode == "local":
        runner = ShellRunner(config.workspace_root, command_timeout=settings.timeout)
        return LocalCommandQueue(
            runner,
            max_workers=settings.local_workers,
            default_timeout=settings.timeout,
            poll_interval=settings.poll_interval,
        )
    if settings.mode != "file":
        raise ValueError(f"Unknown dispatcher mode: {settings.mode}")
    return FileCommandQueue(
        config.commands_dir,
        default_timeout=settings.timeout,
        poll_interval=settings.poll_interval,
    )
