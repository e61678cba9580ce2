import asyncio
import contextlib
import logging
import os
import threading
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from ephemera.client.abstract import AbstractRuntimeClient, ExecResult, LogStream
from ephemera.config import EphemeraSettings, get_settings
from ephemera.exceptions import (
    ContainerRuntimeError,
    ImageResolutionError,
    MountAttachmentError,
    NetworkAttachmentError,
    PortConflictError,
)
from ephemera.models import ContainerSpec, Mount, MountKind, PortBinding
from ephemera.utils.log import get_logger

__all__ = ["DockerRuntimeClient"]

_DEFAULT_SOCKET = "unix:///var/run/docker.sock"

_PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use", "bind for")
_MOUNT_MARKERS = ("mount", "bind source path", "volume")
_NETWORK_MARKERS = ("network",)


def _explanation(e: APIError) -> str:
    return str(e.explanation or e)


def _has_marker(e: APIError, markers: Sequence[str]) -> bool:
    explanation = _explanation(e).lower()
    return any(marker in explanation for marker in markers)


def _mount_payload(mount: Mount) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "Type": str(mount.kind),
        "Target": mount.destination,
        "ReadOnly": mount.read_only,
    }
    if mount.kind is not MountKind.TMPFS:
        payload["Source"] = mount.source
    return payload


def _follow_stream(stream: Any, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    """Pump a blocking SDK stream into ``queue``; ``None`` marks the end."""

    def put(item: Any) -> None:
        # the loop may be gone when the container outlives its consumer
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(queue.put_nowait, item)

    try:
        for item in stream:
            put(item)
    except Exception as e:
        put(e)
    finally:
        put(None)


class DockerRuntimeClient(AbstractRuntimeClient):
    def __init__(
        self,
        *,
        docker_endpoint: str | None = None,
        tls: bool = False,
        cert_path: str | None = None,
        logger: logging.Logger | None = None,
    ):
        """Runtime client for a Docker Engine, local or remote.

        Blocking SDK calls are run in worker threads.

        Args:
            docker_endpoint: Daemon URL. Falls back to ``DOCKER_HOST`` and then
                the local unix socket.
            tls: Verify the daemon with the certificates in ``cert_path`` (or
                ``DOCKER_CERT_PATH``).
        """
        self._docker_endpoint = docker_endpoint
        self._tls = tls
        self._cert_path = cert_path
        self._sdk_client: docker.DockerClient | None = None
        self._connect_lock = asyncio.Lock()
        self.logger = logger or get_logger("ephemera-docker")

    @classmethod
    def from_settings(cls, settings: EphemeraSettings | None = None) -> "DockerRuntimeClient":
        settings = settings or get_settings()
        return cls(docker_endpoint=settings.docker_endpoint)

    def _base_url(self) -> str:
        return self._docker_endpoint or os.environ.get("DOCKER_HOST") or _DEFAULT_SOCKET

    async def _ensure_client(self) -> docker.DockerClient:
        if self._sdk_client is not None:
            return self._sdk_client
        async with self._connect_lock:
            if self._sdk_client is None:
                self._sdk_client = await self._call(self._connect)
        return self._sdk_client

    def _connect(self) -> docker.DockerClient:
        base_url = self._base_url()
        params: dict[str, Any] = {"base_url": base_url}
        if self._tls:
            cert_path = self._cert_path or os.environ.get("DOCKER_CERT_PATH")
            params["tls"] = docker.tls.TLSConfig(
                client_cert=(str(Path(cert_path) / "cert.pem"), str(Path(cert_path) / "key.pem"))
                if cert_path
                else None,
                ca_cert=str(Path(cert_path) / "ca.pem") if cert_path else None,
                verify=True,
            )
        if base_url.startswith("ssh://"):
            params["use_ssh_client"] = True

        try:
            client = docker.DockerClient(**params)
            client.ping()
        except DockerException as e:
            msg = f"Failed to connect to Docker daemon at {base_url!r}: {e}."
            msg += (
                "\nEnsure one of the following:\n"
                "- The Docker daemon is running and /var/run/docker.sock is accessible\n"
                "- DOCKER_HOST or EPHEMERA_DOCKER_ENDPOINT points to a reachable daemon"
            )
            raise ContainerRuntimeError(msg) from e
        return client

    async def _call(self, function, *args, **kwargs):
        return await asyncio.to_thread(function, *args, **kwargs)

    @property
    def host(self) -> str:
        base_url = self._base_url()
        if base_url.startswith("tcp://"):
            host = base_url[len("tcp://") :].split("/", 1)[0]
            return host.split(":", 1)[0]
        if base_url.startswith("ssh://"):
            host = base_url[len("ssh://") :].split("@")[-1]
            host = host.split("/", 1)[0]
            return host.split(":", 1)[0]
        # unix socket or npipe
        return "127.0.0.1"

    async def find_local_image(self, image: str) -> dict[str, Any] | None:
        client = await self._ensure_client()
        try:
            return await self._call(client.api.inspect_image, image)
        except NotFound:
            return None
        except APIError as e:
            msg = f"Failed to look up image {image!r}: {_explanation(e)}"
            raise ImageResolutionError(msg) from e

    async def pull_image(self, image: str) -> None:
        client = await self._ensure_client()
        repository, tag = parse_repository_tag(image)
        self.logger.info(f"Pulling image {image!r}")
        try:
            await self._call(client.images.pull, repository, tag=tag or "latest")
        except DockerException as e:
            msg = f"Failed to pull image {image}: {e}"
            raise ImageResolutionError(msg) from e

    def build_create_payload(
        self, spec: ContainerSpec, *, name: str, port_bindings: Sequence[PortBinding]
    ) -> dict[str, Any]:
        exposed_ports: dict[str, dict] = {str(port): {} for port in sorted(spec.exposed_ports, key=str)}
        published: dict[str, list[dict[str, str]]] = {}
        for binding in port_bindings:
            exposed_ports.setdefault(binding.key, {})
            published.setdefault(binding.key, []).append(
                {
                    "HostIp": binding.host_ip or "",
                    "HostPort": "" if binding.host_port is None else str(binding.host_port),
                }
            )

        host_config: dict[str, Any] = {
            "PortBindings": published,
            "Mounts": [_mount_payload(mount) for mount in spec.mounts],
            "Privileged": spec.privileged,
            "AutoRemove": spec.auto_remove,
        }
        payload: dict[str, Any] = {
            "Image": spec.image,
            "Env": [f"{key}={value}" for key, value in spec.environment.items()],
            "Labels": dict(spec.labels),
            "ExposedPorts": exposed_ports,
            "HostConfig": host_config,
        }
        if spec.hostname:
            payload["Hostname"] = spec.hostname
        if spec.working_directory:
            payload["WorkingDir"] = spec.working_directory
        if spec.entrypoint:
            payload["Entrypoint"] = list(spec.entrypoint)
        if spec.command:
            payload["Cmd"] = list(spec.command)
        if spec.networks:
            # The engine attaches a single network at creation, the rest are connected afterwards
            primary = spec.networks[0]
            host_config["NetworkMode"] = primary.network
            payload["NetworkingConfig"] = {"EndpointsConfig": {primary.network: {"Aliases": list(primary.aliases)}}}
        return payload

    async def create_container(self, payload: dict[str, Any], *, name: str) -> str:
        client = await self._ensure_client()
        try:
            response = await self._call(client.api.create_container_from_config, payload, name)
        except ImageNotFound as e:
            msg = f"Image {payload.get('Image')!r} is not available: {_explanation(e)}"
            raise ImageResolutionError(msg) from e
        except APIError as e:
            msg = f"Failed to create container {name}: {_explanation(e)}"
            if _has_marker(e, _MOUNT_MARKERS):
                raise MountAttachmentError(msg) from e
            if _has_marker(e, _NETWORK_MARKERS):
                network = payload.get("HostConfig", {}).get("NetworkMode")
                raise NetworkAttachmentError(msg, network=network) from e
            raise ContainerRuntimeError(msg) from e
        for warning in response.get("Warnings") or []:
            self.logger.warning(f"Docker: {warning}")
        return response["Id"]

    async def start_container(self, container_id: str) -> None:
        client = await self._ensure_client()
        try:
            await self._call(client.api.start, container_id)
        except APIError as e:
            msg = f"Failed to start container {container_id[:12]}: {_explanation(e)}"
            if _has_marker(e, _PORT_CONFLICT_MARKERS):
                raise PortConflictError(msg) from e
            if _has_marker(e, _MOUNT_MARKERS):
                raise MountAttachmentError(msg) from e
            raise ContainerRuntimeError(msg) from e

    async def stop_container(self, container_id: str, *, timeout: int = 10) -> None:
        client = await self._ensure_client()
        try:
            await self._call(client.api.stop, container_id, timeout=timeout)
        except NotFound:
            return
        except APIError as e:
            self.logger.warning(f"Failed to stop container {container_id[:12]}: {e}. Will try harder.")
            try:
                await self._call(client.api.kill, container_id)
            except NotFound:
                return
            except APIError as kill_error:
                msg = f"Failed to kill container {container_id[:12]}: {_explanation(kill_error)}"
                raise ContainerRuntimeError(msg) from kill_error

    async def remove_container(self, container_id: str) -> None:
        client = await self._ensure_client()
        try:
            await self._call(client.api.remove_container, container_id, force=True)
        except NotFound:
            return
        except APIError as e:
            # auto-removal already running
            if e.status_code == 409 and "in progress" in _explanation(e):
                return
            msg = f"Failed to remove container {container_id[:12]}: {_explanation(e)}"
            raise ContainerRuntimeError(msg) from e

    async def connect_network(self, container_id: str, network: str, aliases: Sequence[str] = ()) -> None:
        client = await self._ensure_client()
        try:
            await self._call(
                client.api.connect_container_to_network, container_id, network, aliases=list(aliases) or None
            )
        except APIError as e:
            msg = f"Failed to connect container {container_id[:12]} to network {network}: {_explanation(e)}"
            raise NetworkAttachmentError(msg, network=network) from e

    async def disconnect_network(self, container_id: str, network: str) -> None:
        client = await self._ensure_client()
        try:
            await self._call(client.api.disconnect_container_from_network, container_id, network)
        except NotFound:
            return
        except APIError as e:
            msg = f"Failed to disconnect container {container_id[:12]} from network {network}: {_explanation(e)}"
            raise NetworkAttachmentError(msg, network=network) from e

    async def _inspect(self, container_id: str) -> dict[str, Any]:
        client = await self._ensure_client()
        try:
            return await self._call(client.api.inspect_container, container_id)
        except APIError as e:
            msg = f"Failed to inspect container {container_id[:12]}: {_explanation(e)}"
            raise ContainerRuntimeError(msg) from e

    async def inspect_port_bindings(self, container_id: str) -> dict[str, list[int]]:
        attrs = await self._inspect(container_id)
        ports = attrs.get("NetworkSettings", {}).get("Ports", {}) or {}
        return {
            key: [int(entry["HostPort"]) for entry in entries if entry.get("HostPort")]
            for key, entries in ports.items()
            if entries
        }

    async def is_running(self, container_id: str) -> bool:
        try:
            attrs = await self._inspect(container_id)
        except ContainerRuntimeError as e:
            if isinstance(e.__cause__, NotFound):
                return False
            raise
        return bool(attrs.get("State", {}).get("Running"))

    async def get_logs(self, container_id: str) -> tuple[str, str]:
        client = await self._ensure_client()
        try:
            stdout = await self._call(client.api.logs, container_id, stdout=True, stderr=False)
            stderr = await self._call(client.api.logs, container_id, stdout=False, stderr=True)
        except APIError as e:
            msg = f"Failed to read logs of container {container_id[:12]}: {_explanation(e)}"
            raise ContainerRuntimeError(msg) from e
        return stdout.decode("utf-8", errors="replace"), stderr.decode("utf-8", errors="replace")

    async def stream_logs(self, container_id: str) -> AsyncIterator[tuple[LogStream, bytes]]:
        """Follow the container output until the container exits.

        The attach stream blocks for the whole life of the container, so it is
        read on its own thread rather than in the shared executor.
        """
        client = await self._ensure_client()
        stream = await self._call(
            client.api.attach, container_id, stdout=True, stderr=True, stream=True, logs=True, demux=True
        )
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        thread = threading.Thread(
            target=_follow_stream, args=(stream, loop, queue), name=f"ephemera-logs-{container_id[:12]}", daemon=True
        )
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                stdout, stderr = item
                if stdout:
                    yield "stdout", stdout
                if stderr:
                    yield "stderr", stderr
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    async def execute_command(self, container_id: str, command: Sequence[str]) -> ExecResult:
        client = await self._ensure_client()
        try:
            exec_id = (await self._call(client.api.exec_create, container_id, list(command)))["Id"]
            stdout, stderr = await self._call(client.api.exec_start, exec_id, demux=True)
            exit_code = (await self._call(client.api.exec_inspect, exec_id))["ExitCode"]
        except APIError as e:
            msg = f"Failed to execute {list(command)} in container {container_id[:12]}: {_explanation(e)}"
            raise ContainerRuntimeError(msg) from e
        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )

    async def close(self) -> None:
        if self._sdk_client is not None:
            self._sdk_client.close()
            self._sdk_client = None
