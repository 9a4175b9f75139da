"""Progress reporting sinks.

Every operation receives a sink explicitly. The console sink prints the
``[operation] message`` lines the CLI shows and mirrors them to the log.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Protocol, TextIO

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def start(self, subject: str) -> None: ...

    def step(self, message: str) -> None: ...

    def fail(self, message: str) -> None: ...

    def end(self) -> None: ...


class ConsoleProgress:
    """Prints progress lines to a stream, failures to stderr."""

    def __init__(
        self,
        subject: str = "nest",
        stream: Optional[TextIO] = None,
        err_stream: Optional[TextIO] = None,
    ) -> None:
        self.subject = subject
        self._stream = stream
        self._err_stream = err_stream

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    @property
    def err_stream(self) -> TextIO:
        return self._err_stream or sys.stderr

    def start(self, subject: str) -> None:
        self.subject = subject
        print(f"--> {subject} started", file=self.stream)
        logger.info("%s started", subject)

    def step(self, message: str) -> None:
        for line in str(message).rstrip().splitlines() or [""]:
            print(f"[{self.subject}] {line}", file=self.stream)
        logger.debug("[%s] %s", self.subject, message)

    def fail(self, message: str) -> None:
        print(f"[{self.subject}] ✗ {message}", file=self.err_stream)
        logger.error("[%s] %s", self.subject, message)

    def end(self) -> None:
        print(f"<-- {self.subject} ended", file=self.stream)
        logger.info("%s ended", self.subject)


class NullProgress:
    def start(self, subject: str) -> None:
        pass

    def step(self, message: str) -> None:
        pass

    def fail(self, message: str) -> None:
        pass

    def end(self) -> None:
        pass
