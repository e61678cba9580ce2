import uuid
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from ephemera.client.abstract import AbstractRuntimeClient, ExecResult, LogStream
from ephemera.config import EphemeraSettings
from ephemera.deployment.hooks.abstract import DeploymentHook
from ephemera.exceptions import ImageResolutionError
from ephemera.models import ContainerSpec, PortBinding
from ephemera.ports import PortArena


def ephemeral_port_range() -> tuple[int, int] | None:
    """The range the kernel picks random ports from, where the host exposes it."""
    path = Path("/proc/sys/net/ipv4/ip_local_port_range")
    if not path.exists():
        return None
    low, high = path.read_text().split()
    return int(low), int(high)


class FakeRuntimeClient(AbstractRuntimeClient):
    """In-memory runtime client recording every call."""

    def __init__(self, *, cached_images: Sequence[str] = (), pullable: bool = True, host: str = "127.0.0.1"):
        self._host = host
        self.images: dict[str, dict[str, Any]] = {image: {"Id": f"sha256:{image}"} for image in cached_images}
        self.pullable = pullable
        self.calls: list[tuple[Any, ...]] = []
        self.containers: dict[str, dict[str, Any]] = {}
        self.running: set[str] = set()
        self.failures: dict[str, BaseException] = {}
        self.logs = ("", "")
        self.log_chunks: list[tuple[LogStream, bytes]] = []
        self.exec_results: dict[tuple[str, ...], ExecResult] = {}
        self.closed = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    @property
    def host(self) -> str:
        return self._host

    async def find_local_image(self, image: str) -> dict[str, Any] | None:
        self._record("find_local_image", image)
        return self.images.get(image)

    async def pull_image(self, image: str) -> None:
        self._record("pull_image", image)
        if not self.pullable:
            msg = f"pull access denied for {image}"
            raise ImageResolutionError(msg)
        self.images[image] = {"Id": f"sha256:{image}"}

    def build_create_payload(
        self, spec: ContainerSpec, *, name: str, port_bindings: Sequence[PortBinding]
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "Image": spec.image,
            "Env": dict(spec.environment),
            "ExposedPorts": sorted(str(port) for port in spec.exposed_ports),
            "PortBindings": {binding.key: [binding.host_port] for binding in port_bindings},
            "AutoRemove": spec.auto_remove,
            "Mounts": [(str(m.kind), m.source, m.destination, str(m.access_mode)) for m in spec.mounts],
        }
        if spec.networks:
            payload["NetworkMode"] = spec.networks[0].network
        return payload

    async def create_container(self, payload: dict[str, Any], *, name: str) -> str:
        return self._create(payload, name)

    def _create(self, payload: dict[str, Any], name: str) -> str:
        self._record("create_container", payload, name)
        if payload["Image"] not in self.images:
            msg = f"No such image: {payload['Image']}"
            raise ImageResolutionError(msg)
        container_id = uuid.uuid4().hex
        networks = [payload["NetworkMode"]] if "NetworkMode" in payload else []
        # unset host ports are assigned by the runtime
        ports = {
            key: [port if port is not None else 32768 + len(self.containers) for port in host_ports]
            for key, host_ports in payload["PortBindings"].items()
        }
        self.containers[container_id] = {"payload": payload, "name": name, "networks": networks, "ports": ports}
        return container_id

    async def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        self.running.add(container_id)

    async def stop_container(self, container_id: str, *, timeout: int = 10) -> None:
        self._record("stop_container", container_id)
        self.running.discard(container_id)
        container = self.containers.get(container_id)
        if container is not None and container["payload"]["AutoRemove"]:
            del self.containers[container_id]

    async def remove_container(self, container_id: str) -> None:
        self._record("remove_container", container_id)
        self.containers.pop(container_id, None)

    async def connect_network(self, container_id: str, network: str, aliases: Sequence[str] = ()) -> None:
        self._record("connect_network", container_id, network, tuple(aliases))
        self.containers[container_id]["networks"].append(network)

    async def disconnect_network(self, container_id: str, network: str) -> None:
        self._record("disconnect_network", container_id, network)
        container = self.containers.get(container_id)
        if container is not None:
            container["networks"].remove(network)

    async def inspect_port_bindings(self, container_id: str) -> dict[str, list[int]]:
        self._record("inspect_port_bindings", container_id)
        return {key: list(ports) for key, ports in self.containers[container_id]["ports"].items()}

    async def is_running(self, container_id: str) -> bool:
        self._record("is_running", container_id)
        return container_id in self.running

    async def get_logs(self, container_id: str) -> tuple[str, str]:
        self._record("get_logs", container_id)
        return self.logs

    async def stream_logs(self, container_id: str) -> AsyncIterator[tuple[LogStream, bytes]]:
        for stream, chunk in self.log_chunks:
            yield stream, chunk

    async def execute_command(self, container_id: str, command: Sequence[str]) -> ExecResult:
        self._record("execute_command", container_id, tuple(command))
        return self.exec_results.get(tuple(command), ExecResult(exit_code=0))

    async def close(self) -> None:
        self.closed = True


class RecordingHook(DeploymentHook):
    def __init__(self) -> None:
        self.states: list[str] = []
        self.steps: list[str] = []

    def on_state_change(self, old, new) -> None:
        if not self.states:
            self.states.append(old.value)
        self.states.append(new.value)

    def on_custom_step(self, message: str) -> None:
        self.steps.append(message)


@pytest.fixture
def client() -> FakeRuntimeClient:
    return FakeRuntimeClient(cached_images=["alpine:3.20"])


@pytest.fixture
def settings() -> EphemeraSettings:
    return EphemeraSettings(wait_timeout=2.0, wait_interval=0.01, wait_max_interval=0.05, stop_timeout=1)


@pytest.fixture
def port_arena() -> PortArena:
    return PortArena()


@pytest.fixture
def hook() -> RecordingHook:
    return RecordingHook()
