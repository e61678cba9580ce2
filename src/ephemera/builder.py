"""Persistent container builder.

Every ``with_*`` call returns a new :class:`ContainerBuilder`; the receiver
is never modified. A common base builder can therefore be branched into
several specs, from any number of tasks or threads:

    base = ContainerBuilder().with_image("postgres:16").with_environment("POSTGRES_PASSWORD", "secret")
    primary = base.with_name("primary").build()
    replica = base.with_name("replica").with_environment("REPLICA", "1").build()
"""

from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any, overload

from pydantic import ValidationError
from typing_extensions import Self

from ephemera.exceptions import ConfigurationError
from ephemera.images import PullPolicyFunction
from ephemera.models import (
    AccessMode,
    ContainerSpec,
    ExposedPort,
    Mount,
    MountKind,
    NetworkAttachment,
    PortBinding,
    parse_port,
)
from ephemera.output import OutputConsumer
from ephemera.wait.abstract import WaitStrategy

__all__ = ["ContainerBuilder"]

_EMPTY: Mapping[str, str] = MappingProxyType({})


def _validated(model: type, **kwargs: Any) -> Any:
    try:
        return model(**kwargs)
    except ValidationError as e:
        msg = "; ".join(str(error["msg"]).removeprefix("Value error, ") for error in e.errors())
        raise ConfigurationError(msg) from e


def _parse_port(port: int | str) -> tuple[int, Any]:
    try:
        return parse_port(port)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def _check_strings(kind: str, values: tuple[Any, ...]) -> tuple[str, ...]:
    for value in values:
        if not isinstance(value, str):
            msg = f"{kind} arguments must be strings, got {value!r}"
            raise ConfigurationError(msg)
    return values


class ContainerBuilder:
    def __init__(self) -> None:
        self._options: Mapping[str, Any] = _EMPTY

    def _with(self, **updates: Any) -> Self:
        builder = type(self).__new__(type(self))
        builder._options = MappingProxyType({**self._options, **updates})
        return builder

    def _get(self, key: str, default: Any = ()) -> Any:
        return self._options.get(key, default)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(f'{k}={v!r}' for k, v in self._options.items())})"

    # Scalars: last write wins

    def with_image(self, image: str) -> Self:
        if not isinstance(image, str) or not image.strip():
            msg = "Image must be a non-empty string"
            raise ConfigurationError(msg)
        return self._with(image=image.strip())

    def with_name(self, name: str) -> Self:
        if not name:
            msg = "Container name must not be empty"
            raise ConfigurationError(msg)
        return self._with(name=name)

    def with_hostname(self, hostname: str) -> Self:
        return self._with(hostname=hostname)

    def with_working_directory(self, working_directory: str) -> Self:
        return self._with(working_directory=working_directory)

    def with_entrypoint(self, *entrypoint: str) -> Self:
        """Override the image entrypoint. No arguments restores the image default."""
        return self._with(entrypoint=_check_strings("Entrypoint", entrypoint))

    def with_command(self, *command: str) -> Self:
        """Override the image command. No arguments restores the image default."""
        return self._with(command=_check_strings("Command", command))

    def with_auto_remove(self, auto_remove: bool = True) -> Self:
        """Let the runtime delete the container as soon as it stops."""
        return self._with(auto_remove=bool(auto_remove))

    def with_privileged(self, privileged: bool = True) -> Self:
        return self._with(privileged=bool(privileged))

    def with_pull_policy(self, pull_policy: PullPolicyFunction) -> Self:
        if not callable(pull_policy):
            msg = f"Pull policy must be callable, got {pull_policy!r}"
            raise ConfigurationError(msg)
        return self._with(pull_policy=pull_policy)

    def with_output_consumer(self, output_consumer: OutputConsumer) -> Self:
        if not isinstance(output_consumer, OutputConsumer):
            msg = f"Output consumer must be an OutputConsumer, got {output_consumer!r}"
            raise ConfigurationError(msg)
        return self._with(output_consumer=output_consumer)

    def with_startup_callback(self, startup_callback: Callable[..., Any]) -> Self:
        """Set a function invoked once after start, before any wait strategy.

        It receives the :class:`~ephemera.deployment.container.RunningContainer`
        and may be a coroutine function.
        """
        if not callable(startup_callback):
            msg = f"Startup callback must be callable, got {startup_callback!r}"
            raise ConfigurationError(msg)
        return self._with(startup_callback=startup_callback)

    # Mappings

    @overload
    def with_environment(self, name: str, value: str) -> Self: ...

    @overload
    def with_environment(self, name: Mapping[str, str]) -> Self: ...

    def with_environment(self, name, value=None):
        """Set one environment variable, or several from a mapping."""
        return self._with(environment=self._merge("environment", name, value))

    @overload
    def with_label(self, name: str, value: str) -> Self: ...

    @overload
    def with_label(self, name: Mapping[str, str]) -> Self: ...

    def with_label(self, name, value=None):
        return self._with(labels=self._merge("labels", name, value))

    def _merge(self, key: str, name: str | Mapping[str, str], value: str | None) -> Mapping[str, str]:
        if isinstance(name, Mapping):
            if value is not None:
                msg = f"Pass either a mapping or a name and a value to set {key}"
                raise ConfigurationError(msg)
            updates = dict(name)
        else:
            if value is None:
                msg = f"Missing value for {key} entry {name!r}"
                raise ConfigurationError(msg)
            updates = {name: value}
        for entry_name, entry_value in updates.items():
            if not isinstance(entry_name, str) or not entry_name or "=" in entry_name:
                msg = f"Invalid {key} name {entry_name!r}"
                raise ConfigurationError(msg)
            if not isinstance(entry_value, str):
                msg = f"Value of {key} entry {entry_name!r} must be a string, got {entry_value!r}"
                raise ConfigurationError(msg)
        return MappingProxyType({**self._get(key, _EMPTY), **updates})

    # Ports

    def with_exposed_port(self, port: int | str) -> Self:
        """Expose a container port without publishing it on the host.

        Append ``/tcp``, ``/udp`` or ``/sctp`` to change the protocol, e.g. ``"53/udp"``.
        """
        number, protocol = _parse_port(port)
        exposed = ExposedPort(port=number, protocol=protocol)
        return self._with(exposed_ports=self._get("exposed_ports", frozenset()) | {exposed})

    def with_port_binding(
        self,
        port: int | str,
        container_port: int | str | None = None,
        *,
        assign_random_host_port: bool = False,
        host_ip: str | None = None,
    ) -> Self:
        """Publish a container port on the host.

        ``with_port_binding(80)`` binds host port 80 to container port 80,
        ``with_port_binding(80, assign_random_host_port=True)`` binds a random
        host port to container port 80, and ``with_port_binding(8080, 80)``
        binds host port 8080 to container port 80. Append ``/udp`` or
        ``/sctp`` to the container port to change the protocol.
        """
        if container_port is None:
            number, protocol = _parse_port(port)
            host_port = None if assign_random_host_port else number
        else:
            if assign_random_host_port:
                msg = "assign_random_host_port cannot be combined with an explicit host port"
                raise ConfigurationError(msg)
            host_port, host_protocol = _parse_port(port)
            number, protocol = _parse_port(container_port)
            if isinstance(port, str) and "/" in port and host_protocol != protocol:
                msg = f"Host port {port!r} and container port {container_port!r} use different protocols"
                raise ConfigurationError(msg)
        binding = _validated(
            PortBinding, container_port=number, protocol=protocol, host_port=host_port, host_ip=host_ip
        )
        bindings: tuple[PortBinding, ...] = self._get("port_bindings")
        if binding.host_port is not None and any(
            (b.host_port, b.protocol) == (binding.host_port, binding.protocol) for b in bindings
        ):
            msg = f"Host port {binding.host_port}/{binding.protocol} is already bound"
            raise ConfigurationError(msg)
        return self._with(port_bindings=(*bindings, binding))

    # Mounts

    def with_bind_mount(
        self, source: str, destination: str, access_mode: AccessMode = AccessMode.READ_WRITE
    ) -> Self:
        """Mount the host path ``source`` at ``destination``."""
        return self._with_mount(MountKind.BIND, source, destination, access_mode)

    def with_volume_mount(
        self, source: str, destination: str, access_mode: AccessMode = AccessMode.READ_WRITE
    ) -> Self:
        """Mount the engine-managed volume named ``source`` at ``destination``."""
        return self._with_mount(MountKind.VOLUME, source, destination, access_mode)

    def with_tmpfs_mount(self, destination: str, access_mode: AccessMode = AccessMode.READ_WRITE) -> Self:
        return self._with_mount(MountKind.TMPFS, None, destination, access_mode)

    def _with_mount(
        self, kind: MountKind, source: str | None, destination: str, access_mode: AccessMode | str
    ) -> Self:
        mount = _validated(Mount, kind=kind, source=source, destination=destination, access_mode=access_mode)
        mounts: tuple[Mount, ...] = self._get("mounts")
        if any(m.destination == mount.destination for m in mounts):
            msg = f"Mount destination {mount.destination} is already used"
            raise ConfigurationError(msg)
        return self._with(mounts=(*mounts, mount))

    # Networks

    def with_network(self, network: str, *aliases: str) -> Self:
        """Attach the container to ``network`` (an id or name), optionally with aliases."""
        attachment = _validated(NetworkAttachment, network=network, aliases=aliases)
        networks: tuple[NetworkAttachment, ...] = self._get("networks")
        if any(n.network == attachment.network for n in networks):
            msg = f"Network {network!r} is already attached"
            raise ConfigurationError(msg)
        return self._with(networks=(*networks, attachment))

    def with_network_aliases(self, *aliases: str) -> Self:
        """Add aliases to the most recently attached network."""
        networks: tuple[NetworkAttachment, ...] = self._get("networks")
        if not networks:
            msg = "Network aliases require a network, call with_network() first"
            raise ConfigurationError(msg)
        *previous, last = networks
        updated = _validated(NetworkAttachment, network=last.network, aliases=(*last.aliases, *aliases))
        return self._with(networks=(*previous, updated))

    # Readiness and escape hatches

    def with_wait_strategy(self, wait_strategy: WaitStrategy) -> Self:
        """Append a wait strategy. Strategies run in the order they were added."""
        if not isinstance(wait_strategy, WaitStrategy):
            msg = f"Expected a WaitStrategy, got {wait_strategy!r}"
            raise ConfigurationError(msg)
        return self._with(wait_strategies=(*self._get("wait_strategies"), wait_strategy))

    def with_create_parameters_modifier(self, modifier: Callable[[dict[str, Any]], Any]) -> Self:
        """Add a function that edits the runtime's native creation payload.

        Modifiers run in insertion order right before the container is
        created. A modifier either edits the payload in place or returns a
        replacement. The payload format belongs to the runtime client and
        may change with it.
        """
        if not callable(modifier):
            msg = f"Modifier must be callable, got {modifier!r}"
            raise ConfigurationError(msg)
        return self._with(create_parameters_modifiers=(*self._get("create_parameters_modifiers"), modifier))

    def build(self) -> ContainerSpec:
        """Validate the accumulated options and freeze them into a :class:`ContainerSpec`.

        Raises:
            ConfigurationError: If the image is missing or options conflict.
        """
        options = dict(self._options)
        if not options.get("image"):
            msg = "An image is required, call with_image() first"
            raise ConfigurationError(msg)
        strategies: list[WaitStrategy] = []
        for strategy in options.get("wait_strategies", ()):
            if strategy not in strategies:
                strategies.append(strategy)
        options["wait_strategies"] = tuple(strategies)
        return _validated(ContainerSpec, **options)
