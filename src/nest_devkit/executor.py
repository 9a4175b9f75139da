"""Host subprocess runner and the in-container ``nester`` executor."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .config import NestConfig
from .errors import (
    CommandNotFound,
    CommandTimeout,
    PermissionDenied,
    PipelineCancelled,
    RemoteCommandFailed,
)
from .progress import ProgressSink
from .topology import ServiceDescriptor

logger = logging.getLogger(__name__)

PERMISSION_DENIED = "Permission denied"
STREAM_LIMIT = 1024 * 1024

LineHandler = Callable[[str], None]


@dataclass
class CommandResult:
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


@dataclass
class CommandRunner:
    """Thin wrapper around asyncio subprocesses to allow mocking in tests.

    stdout and stderr are merged and handed to ``on_line`` one line at a
    time as they arrive. If the handler raises, the process is killed and
    the exception propagates. ``timeout`` and ``cancel`` both kill the
    process too.
    """

    async def run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        on_line: Optional[LineHandler] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        args = [str(a) for a in args]
        logger.debug("$ %s (cwd=%s)", " ".join(args), cwd or os.getcwd())
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise CommandNotFound(f"'{args[0]}' not found in PATH") from exc

        lines: List[str] = []

        async def _pump() -> int:
            assert proc.stdout is not None
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                lines.append(line)
                if on_line is not None:
                    on_line(line)
            return await proc.wait()

        pump = asyncio.ensure_future(_pump())
        waiters = {pump}
        cancelled = None
        if cancel is not None:
            cancelled = asyncio.ensure_future(cancel.wait())
            waiters.add(cancelled)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if pump in done:
                returncode = pump.result()
            elif cancelled is not None and cancelled in done:
                raise PipelineCancelled(f"'{' '.join(args)}' was cancelled")
            else:
                raise CommandTimeout(args, timeout or 0)
        except BaseException:
            pump.cancel()
            await _terminate(proc)
            raise
        finally:
            if cancelled is not None:
                cancelled.cancel()

        logger.debug("exit %s: %s", returncode, args[0])
        return CommandResult(returncode, "\n".join(lines))


class RemoteExecutor:
    """Runs ``nester`` commands inside a service container."""

    def __init__(
        self, runner: Optional[CommandRunner] = None, config: Optional[NestConfig] = None
    ) -> None:
        self.runner = runner or CommandRunner()
        self.config = config or NestConfig()

    async def run(
        self,
        service: ServiceDescriptor,
        tokens: Sequence[str],
        progress: ProgressSink,
        cancel: Optional[asyncio.Event] = None,
    ) -> ServiceDescriptor:
        container = service.container_name
        progress.step(f"Working with {container} ...")
        args = [
            self.config.docker,
            "exec",
            container,
            "nester",
            "-l",
            self.config.nester_log,
            *tokens,
        ]

        def _on_line(line: str) -> None:
            if PERMISSION_DENIED in line:
                raise PermissionDenied()
            if line.strip():
                progress.step(line)

        result = await self.runner.run(
            args,
            on_line=_on_line,
            timeout=self.config.command_timeout,
            cancel=cancel,
        )
        if not result.ok:
            raise RemoteCommandFailed(result.returncode, result.output)

        progress.step(f"{container} {' '.join(tokens)} ended.")
        return service

    async def query(
        self,
        service: ServiceDescriptor,
        tokens: Sequence[str],
        cancel: Optional[asyncio.Event] = None,
    ) -> str:
        """Run a nester command and return its trimmed output."""
        args = [self.config.docker, "exec", "-t", service.container_name, "nester", *tokens]
        result = await self.runner.run(
            args, timeout=self.config.command_timeout, cancel=cancel
        )
        if PERMISSION_DENIED in result.output:
            raise PermissionDenied()
        if not result.ok:
            raise RemoteCommandFailed(result.returncode, result.output)
        return result.output.strip()

    async def curl(
        self,
        service: ServiceDescriptor,
        url: str,
        progress: ProgressSink,
        cancel: Optional[asyncio.Event] = None,
    ) -> str:
        """Issue an HTTP GET from inside the service container."""
        args = [self.config.docker, "exec", service.container_name, "curl", "-s", url]
        result = await self.runner.run(
            args, timeout=self.config.command_timeout, cancel=cancel
        )
        if not result.ok:
            raise RemoteCommandFailed(result.returncode, result.output)
        if result.output.strip():
            progress.step(result.output)
        return result.output
