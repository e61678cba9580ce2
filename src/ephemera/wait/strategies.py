import asyncio
import dataclasses
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Literal

import httpx

from ephemera.enums import Protocol
from ephemera.wait.abstract import WaitStrategy

if TYPE_CHECKING:
    from ephemera.deployment.container import RunningContainer

__all__ = [
    "UntilCommandIsCompleted",
    "UntilContainerIsRunning",
    "UntilHttpRequestIsSucceeded",
    "UntilMessageIsLogged",
    "UntilPortIsAvailable",
]


@dataclasses.dataclass(frozen=True)
class UntilContainerIsRunning(WaitStrategy):
    async def is_ready(self, container: "RunningContainer") -> bool:
        return await container.is_running()


@dataclasses.dataclass(frozen=True)
class UntilPortIsAvailable(WaitStrategy):
    """Wait until a TCP connection to the host port mapped to ``port`` succeeds."""

    port: int
    protocol: Protocol = Protocol.TCP

    async def is_ready(self, container: "RunningContainer") -> bool:
        host_port = container.get_mapped_port(self.port, self.protocol)
        _, writer = await asyncio.open_connection(container.host, host_port)
        writer.close()
        await writer.wait_closed()
        return True


@dataclasses.dataclass(frozen=True)
class UntilMessageIsLogged(WaitStrategy):
    """Wait until the container output contains a match for ``pattern``."""

    pattern: str
    stream: Literal["stdout", "stderr", "both"] = "both"

    def __post_init__(self):
        re.compile(self.pattern)

    async def is_ready(self, container: "RunningContainer") -> bool:
        stdout, stderr = await container.get_logs()
        if self.stream == "stdout":
            text = stdout
        elif self.stream == "stderr":
            text = stderr
        else:
            text = f"{stdout}\n{stderr}"
        return re.search(self.pattern, text, re.MULTILINE) is not None


@dataclasses.dataclass(frozen=True)
class UntilHttpRequestIsSucceeded(WaitStrategy):
    """Wait until an HTTP request to the mapped ``port`` returns an expected status."""

    port: int
    path: str = "/"
    status_codes: frozenset[int] = frozenset({200})
    method: str = "GET"
    scheme: Literal["http", "https"] = "http"
    verify: bool = True
    request_timeout: float = 5.0

    async def is_ready(self, container: "RunningContainer") -> bool:
        host_port = container.get_mapped_port(self.port)
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        url = f"{self.scheme}://{container.host}:{host_port}{path}"
        async with httpx.AsyncClient(verify=self.verify, timeout=self.request_timeout, trust_env=False) as client:
            response = await client.request(self.method, url)
        if response.status_code not in self.status_codes:
            msg = f"{self.method} {url} returned {response.status_code}"
            raise RuntimeError(msg)
        return True


@dataclasses.dataclass(frozen=True)
class UntilCommandIsCompleted(WaitStrategy):
    """Wait until ``command`` exits with code 0 inside the container.

    A string is run through ``/bin/sh -c``.
    """

    command: Sequence[str] | str

    def __post_init__(self):
        if isinstance(self.command, str):
            command: tuple[str, ...] = ("/bin/sh", "-c", self.command)
        else:
            command = tuple(self.command)
        if not command:
            msg = "command must not be empty"
            raise ValueError(msg)
        object.__setattr__(self, "command", command)

    async def is_ready(self, container: "RunningContainer") -> bool:
        result = await container.exec(*self.command)
        if result.exit_code != 0:
            msg = f"{' '.join(self.command)!r} exited with {result.exit_code}"
            raise RuntimeError(msg)
        return True
