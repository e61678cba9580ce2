"""Consumers for the stdout and stderr streams of a container."""

import codecs
import logging
from abc import ABC, abstractmethod

from ephemera.utils.log import get_logger

__all__ = ["BufferedOutputConsumer", "LoggingOutputConsumer", "OutputConsumer"]


class OutputConsumer(ABC):
    """Receives container output line by line, without trailing newlines."""

    @abstractmethod
    def on_stdout(self, line: str) -> None: ...

    @abstractmethod
    def on_stderr(self, line: str) -> None: ...


class LoggingOutputConsumer(OutputConsumer):
    def __init__(self, logger: logging.Logger | None = None, *, prefix: str = ""):
        self.logger = logger or get_logger("ephemera-output")
        self.prefix = prefix

    def on_stdout(self, line: str) -> None:
        self.logger.info(f"{self.prefix}{line}")

    def on_stderr(self, line: str) -> None:
        self.logger.warning(f"{self.prefix}{line}")


class BufferedOutputConsumer(OutputConsumer):
    """Keeps every line in memory."""

    def __init__(self) -> None:
        self.stdout: list[str] = []
        self.stderr: list[str] = []

    def on_stdout(self, line: str) -> None:
        self.stdout.append(line)

    def on_stderr(self, line: str) -> None:
        self.stderr.append(line)


class LineSplitter:
    """Turns a chunked byte stream into complete lines."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer + self._decoder.decode(b"", final=True), ""
        return [rest.rstrip("\r")] if rest else []
