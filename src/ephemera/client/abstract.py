from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import Any, Literal, NamedTuple

from ephemera.models import ContainerSpec, PortBinding

__all__ = ["AbstractRuntimeClient", "ExecResult", "LogStream"]

LogStream = Literal["stdout", "stderr"]


class ExecResult(NamedTuple):
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class AbstractRuntimeClient(ABC):
    """Talks to the container engine.

    The deployment only ever goes through this interface; it never
    interprets the native creation payload itself.
    """

    @property
    @abstractmethod
    def host(self) -> str:
        """Host name or address on which published ports are reachable."""

    @abstractmethod
    async def find_local_image(self, image: str) -> dict[str, Any] | None:
        """Return metadata of the cached image, or ``None`` if it is not cached."""

    @abstractmethod
    async def pull_image(self, image: str) -> None:
        """Raises:
        ImageResolutionError: If the image cannot be pulled.
        """

    @abstractmethod
    def build_create_payload(
        self, spec: ContainerSpec, *, name: str, port_bindings: Sequence[PortBinding]
    ) -> dict[str, Any]:
        """Translate ``spec`` into the engine's native creation payload.

        ``port_bindings`` already carry resolved host ports. Only the first
        network of the spec is part of the payload; further networks are
        connected with :meth:`connect_network` after creation.
        """

    @abstractmethod
    async def create_container(self, payload: dict[str, Any], *, name: str) -> str:
        """Create a container and return its id.

        Raises:
            ImageResolutionError: If the image is not available.
            MountAttachmentError: If a mount cannot be attached.
            NetworkAttachmentError: If the initial network cannot be attached.
        """

    @abstractmethod
    async def start_container(self, container_id: str) -> None:
        """Raises:
        PortConflictError: If a published host port is already allocated.
        """

    @abstractmethod
    async def stop_container(self, container_id: str, *, timeout: int = 10) -> None: ...

    @abstractmethod
    async def remove_container(self, container_id: str) -> None:
        """Remove the container. Containers that no longer exist are ignored."""

    @abstractmethod
    async def connect_network(self, container_id: str, network: str, aliases: Sequence[str] = ()) -> None:
        """Raises:
        NetworkAttachmentError: If the network cannot be attached.
        """

    @abstractmethod
    async def disconnect_network(self, container_id: str, network: str) -> None: ...

    @abstractmethod
    async def inspect_port_bindings(self, container_id: str) -> dict[str, list[int]]:
        """Return published host ports keyed by container port, e.g. ``{"80/tcp": [49153]}``."""

    @abstractmethod
    async def is_running(self, container_id: str) -> bool: ...

    @abstractmethod
    async def get_logs(self, container_id: str) -> tuple[str, str]:
        """Return everything the container wrote so far as ``(stdout, stderr)``."""

    @abstractmethod
    def stream_logs(self, container_id: str) -> AsyncIterator[tuple[LogStream, bytes]]:
        """Follow the container output until it exits."""

    @abstractmethod
    async def execute_command(self, container_id: str, command: Sequence[str]) -> ExecResult: ...

    async def close(self) -> None:
        """Release client resources."""
