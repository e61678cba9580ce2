import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable
from enum import Enum
from types import MappingProxyType
from typing import Any, TypeVar

from ephemera.client.abstract import AbstractRuntimeClient, ExecResult
from ephemera.config import EphemeraSettings, get_settings
from ephemera.deployment.hooks.abstract import CombinedDeploymentHook, DeploymentHook
from ephemera.exceptions import (
    ContainerNotStartedError,
    ContainerRuntimeError,
    ContainerStateError,
    EphemeraError,
    TeardownError,
    WaitTimeoutError,
)
from ephemera.models import ContainerSpec, Protocol
from ephemera.output import LineSplitter, OutputConsumer
from ephemera.ports import PortArena, PortReservation, get_port_arena, is_local_host
from ephemera.utils.log import get_logger
from ephemera.wait.engine import wait_until_ready

__all__ = ["ContainerDeployment", "ContainerState", "RunningContainer"]

T = TypeVar("T")


async def _run_to_completion(aw: Awaitable[T]) -> T:
    """Await ``aw`` until it is done, even if the calling task is cancelled meanwhile.

    A cancellation received while waiting is re-raised once ``aw`` has finished.
    """
    task = asyncio.ensure_future(aw)
    cancelled = False
    while not task.done():
        try:
            await asyncio.wait((task,))
        except asyncio.CancelledError:
            cancelled = True
    if cancelled:
        error = None if task.cancelled() else task.exception()
        raise asyncio.CancelledError() from error
    return task.result()


class ContainerState(str, Enum):
    CONFIGURED = "configured"
    CREATING = "creating"
    CREATED = "created"
    STARTING = "starting"
    AWAITING_READINESS = "awaiting_readiness"
    READY = "ready"
    STOPPING = "stopping"
    REMOVED = "removed"
    FAILED = "failed"


class RunningContainer:
    """Handle to a started container."""

    def __init__(
        self,
        *,
        id: str,
        name: str,
        client: AbstractRuntimeClient,
        port_bindings: dict[str, list[int]],
        networks: tuple[str, ...] = (),
    ):
        self.id = id
        self.name = name
        self.port_bindings = MappingProxyType({key: tuple(ports) for key, ports in port_bindings.items()})
        self.networks = networks
        self._client = client

    def __repr__(self) -> str:
        return f"RunningContainer(id={self.id[:12]!r}, name={self.name!r})"

    @property
    def host(self) -> str:
        return self._client.host

    def get_mapped_port(self, port: int, protocol: Protocol | str = Protocol.TCP) -> int:
        """Return the host port published for ``port``.

        Raises:
            ContainerRuntimeError: If the port is not published on the host.
        """
        key = f"{port}/{Protocol(protocol)}"
        host_ports = self.port_bindings.get(key)
        if not host_ports:
            msg = f"Container port {key} of {self.name} is not published on the host"
            raise ContainerRuntimeError(msg)
        return host_ports[0]

    async def get_logs(self) -> tuple[str, str]:
        return await self._client.get_logs(self.id)

    async def exec(self, *command: str) -> ExecResult:
        return await self._client.execute_command(self.id, command)

    async def is_running(self) -> bool:
        return await self._client.is_running(self.id)


class ContainerDeployment:
    def __init__(
        self,
        spec: ContainerSpec,
        *,
        client: AbstractRuntimeClient | None = None,
        settings: EphemeraSettings | None = None,
        port_arena: PortArena | None = None,
        logger: logging.Logger | None = None,
    ):
        """Drives a :class:`ContainerSpec` to a running, ready container and tears it down again.

        A deployment is single use: it can be started once and stopped once.
        If starting fails at any stage, everything created so far is removed
        before the original error is re-raised.

        Args:
            spec: The container to run.
            client: Runtime client. Defaults to a Docker client configured from ``settings``.
            settings: Wait and stop defaults. Defaults to the environment settings.
            port_arena: Arena for host port reservations. Defaults to the process-wide arena.
        """
        self._spec = spec
        self._settings = settings or get_settings()
        if client is None:
            from ephemera.client.docker import DockerRuntimeClient

            client = DockerRuntimeClient.from_settings(self._settings)
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client
        self._port_arena = port_arena or get_port_arena()
        self.logger = logger or get_logger("ephemera-deploy")
        self._hooks = CombinedDeploymentHook()

        self._state = ContainerState.CONFIGURED
        self._container_name: str | None = None
        self._container_id: str | None = None
        self._started = False
        self._reservation: PortReservation | None = None
        self._attached_networks: list[str] = []
        self._container: RunningContainer | None = None
        self._output_task: asyncio.Task | None = None
        self.teardown_error: TeardownError | None = None

    def add_hook(self, hook: DeploymentHook):
        self._hooks.add_hook(hook)

    @property
    def spec(self) -> ContainerSpec:
        return self._spec

    @property
    def state(self) -> ContainerState:
        return self._state

    @property
    def container_id(self) -> str | None:
        return self._container_id

    @property
    def container(self) -> RunningContainer:
        """The running container.

        Raises:
            ContainerNotStartedError: If the container is not ready.
        """
        if self._container is None or self._state is not ContainerState.READY:
            raise ContainerNotStartedError()
        return self._container

    async def __aenter__(self) -> RunningContainer:
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def _transition(self, new: ContainerState) -> None:
        old, self._state = self._state, new
        self.logger.debug(f"{self._display_name}: {old.value} -> {new.value}")
        self._hooks.on_state_change(old, new)

    @property
    def _display_name(self) -> str:
        return self._container_name or self._spec.image

    def _get_container_name(self) -> str:
        """Returns a unique or configured container name."""
        if self._spec.name:
            return self._spec.name
        image_name_sanitized = "".join(c for c in self._spec.image if c.isalnum() or c in "-_.")
        return f"{image_name_sanitized}-{uuid.uuid4()}"

    async def start(self) -> RunningContainer:
        """Create and start the container, then wait until it is ready.

        Raises:
            ContainerStateError: If the deployment was already started.
            ImageResolutionError: If the image cannot be resolved.
            PortConflictError: If a fixed host port is taken.
            MountAttachmentError: If a mount cannot be attached.
            NetworkAttachmentError: If a network cannot be attached.
            WaitTimeoutError: If a wait strategy times out.
        """
        if self._state is not ContainerState.CONFIGURED:
            msg = f"Cannot start {self._display_name} in state {self._state.value}"
            raise ContainerStateError(msg)
        t0 = time.time()
        try:
            await self._create()
            container = await self._start()
            await self._run_startup_callback(container)
            await self._await_readiness(container)
        except BaseException as e:
            await _run_to_completion(self._fail(e))
            raise
        self._transition(ContainerState.READY)
        self.logger.info(f"Container {self._display_name} ready in {time.time() - t0:.2f}s")
        return container

    async def stop(self) -> None:
        """Stop and remove the container.

        Does nothing if the container was never started or is already gone.

        Raises:
            ContainerRuntimeError: If cleanup fails; the cause lists leaked resources.
        """
        if self._state in (ContainerState.CONFIGURED, ContainerState.REMOVED, ContainerState.FAILED):
            return
        if self._state is not ContainerState.READY:
            msg = f"Cannot stop {self._display_name} while it is {self._state.value}"
            raise ContainerStateError(msg)
        self._transition(ContainerState.STOPPING)
        self.logger.info(f"Stopping container {self._display_name}")
        await _run_to_completion(self._finish_stop())

    async def _finish_stop(self) -> None:
        teardown_error = await self._teardown()
        if teardown_error is not None:
            self.teardown_error = teardown_error
            self._transition(ContainerState.FAILED)
            msg = f"Failed to tear down container {self._display_name}"
            raise ContainerRuntimeError(msg) from teardown_error
        self._transition(ContainerState.REMOVED)

    async def _resolve_image(self) -> None:
        image = self._spec.image
        cached = await self._client.find_local_image(image)
        if self._spec.pull_policy(cached):
            self._hooks.on_custom_step("Pulling container image")
            await self._client.pull_image(image)
        elif cached is None:
            self.logger.debug(f"Image {image!r} is not cached and the pull policy skips pulling")

    async def _create(self) -> None:
        self._transition(ContainerState.CREATING)
        spec = self._spec
        await self._resolve_image()

        self._reservation = self._port_arena.reserve(spec.port_bindings, local=is_local_host(self._client.host))
        self._container_name = self._get_container_name()
        payload = self._client.build_create_payload(
            spec, name=self._container_name, port_bindings=self._reservation.bindings
        )
        for modifier in spec.create_parameters_modifiers:
            result = modifier(payload)
            if result is not None:
                payload = result

        self._hooks.on_custom_step("Creating container")
        self.logger.info(f"Creating container {self._container_name} with image {spec.image}")
        # the runtime may finish creating the container after a cancellation, teardown needs its id
        await _run_to_completion(self._create_container(payload))
        assert self._container_id is not None
        if spec.networks:
            self._attached_networks.append(spec.networks[0].network)
        for attachment in spec.networks[1:]:
            await self._client.connect_network(self._container_id, attachment.network, attachment.aliases)
            self._attached_networks.append(attachment.network)
        self._transition(ContainerState.CREATED)

    async def _create_container(self, payload: dict[str, Any]) -> None:
        assert self._container_name is not None
        self._container_id = await self._client.create_container(payload, name=self._container_name)

    async def _start(self) -> RunningContainer:
        assert self._container_id is not None
        assert self._container_name is not None
        self._transition(ContainerState.STARTING)
        await self._client.start_container(self._container_id)
        self._started = True

        port_bindings: dict[str, list[int]] = {}
        if self._spec.port_bindings:
            port_bindings = await self._client.inspect_port_bindings(self._container_id)
        container = RunningContainer(
            id=self._container_id,
            name=self._container_name,
            client=self._client,
            port_bindings=port_bindings,
            networks=tuple(self._attached_networks),
        )
        self._container = container
        if self._spec.output_consumer is not None:
            self._output_task = asyncio.create_task(self._forward_output(self._spec.output_consumer))
        return container

    async def _run_startup_callback(self, container: RunningContainer) -> None:
        callback = self._spec.startup_callback
        if callback is not None:
            self._hooks.on_custom_step("Running startup callback")
            result = callback(container)
            if inspect.isawaitable(result):
                await result
        self._transition(ContainerState.AWAITING_READINESS)

    async def _await_readiness(self, container: RunningContainer) -> None:
        if not self._spec.wait_strategies:
            return
        self._hooks.on_custom_step("Waiting for container")
        await wait_until_ready(self._spec.wait_strategies, container, self._settings)

    async def _forward_output(self, consumer: OutputConsumer) -> None:
        assert self._container_id is not None
        splitters = {"stdout": LineSplitter(), "stderr": LineSplitter()}
        try:
            async for stream, chunk in self._client.stream_logs(self._container_id):
                for line in splitters[stream].feed(chunk):
                    self._emit(consumer, stream, line)
        except Exception as e:
            self.logger.warning(f"Stopped forwarding output of {self._display_name}: {e}")
        finally:
            for stream, splitter in splitters.items():
                for line in splitter.flush():
                    self._emit(consumer, stream, line)

    @staticmethod
    def _emit(consumer: OutputConsumer, stream: str, line: str) -> None:
        if stream == "stdout":
            consumer.on_stdout(line)
        else:
            consumer.on_stderr(line)

    async def _fail(self, error: BaseException) -> None:
        if isinstance(error, asyncio.CancelledError):
            self.logger.warning(f"Start of {self._display_name} was cancelled in state {self._state.value}")
        else:
            self.logger.error(f"Failed to start {self._display_name} in state {self._state.value}: {error}")
        if isinstance(error, WaitTimeoutError):
            await self._log_container_output()
        self._transition(ContainerState.FAILED)
        teardown_error = await self._teardown()
        if teardown_error is None:
            return
        self.teardown_error = teardown_error
        self.logger.error(str(teardown_error))
        if isinstance(error, EphemeraError):
            error.teardown_error = teardown_error
        error.add_note(str(teardown_error))

    async def _log_container_output(self) -> None:
        if self._container_id is None:
            return
        try:
            stdout, stderr = await self._client.get_logs(self._container_id)
        except Exception as e:
            self.logger.warning(f"Could not read the output of {self._display_name}: {e}")
            return
        self.logger.error("Container did not become ready. Here's the output from the container.")
        if stdout:
            self.logger.error(stdout)
        if stderr:
            self.logger.error(stderr)

    async def _cancel_output_task(self) -> None:
        task, self._output_task = self._output_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _teardown(self) -> TeardownError | None:
        """Remove everything created so far. Returns the collected errors, if any."""
        errors: list[BaseException] = []
        leaked: list[str] = []
        container_id = self._container_id
        if container_id is not None:
            if self._started:
                try:
                    await self._client.stop_container(container_id, timeout=self._settings.stop_timeout)
                except Exception as e:
                    self.logger.warning(f"Failed to stop container {self._display_name}: {e}")
                    errors.append(e)
            await self._cancel_output_task()
            for network in reversed(self._attached_networks):
                try:
                    await self._client.disconnect_network(container_id, network)
                except Exception as e:
                    self.logger.warning(f"Failed to detach {self._display_name} from network {network}: {e}")
                    errors.append(e)
            self._attached_networks.clear()
            try:
                await self._client.remove_container(container_id)
            except Exception as e:
                self.logger.warning(f"Failed to remove container {self._display_name}: {e}")
                errors.append(e)
                leaked.append(f"container {container_id}")
        else:
            await self._cancel_output_task()
        if self._reservation is not None:
            self._port_arena.release(self._reservation)
        if self._owns_client:
            await self._client.close()
        if not errors:
            return None
        return TeardownError(errors, leaked)
