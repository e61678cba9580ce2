from collections.abc import Callable, Mapping
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, InstanceOf, field_validator, model_validator
from typing_extensions import Self

from ephemera.enums import AccessMode, MountKind, Protocol
from ephemera.images import PullPolicy
from ephemera.output import OutputConsumer
from ephemera.wait.abstract import WaitStrategy

__all__ = [
    "AccessMode",
    "ContainerSpec",
    "ExposedPort",
    "Mount",
    "MountKind",
    "NetworkAttachment",
    "PortBinding",
    "Protocol",
]

MIN_PORT = 1
MAX_PORT = 65535


def _check_port(value: int) -> int:
    if not MIN_PORT <= value <= MAX_PORT:
        msg = f"Port {value} is outside of the range {MIN_PORT}-{MAX_PORT}"
        raise ValueError(msg)
    return value


def parse_port(spec: int | str) -> tuple[int, Protocol]:
    """Parse ``80``, ``"80"`` or ``"53/udp"`` into a port number and protocol."""
    if isinstance(spec, bool):
        msg = f"Invalid port: {spec!r}"
        raise ValueError(msg)
    if isinstance(spec, int):
        return _check_port(spec), Protocol.TCP
    port_str, _, protocol_str = spec.strip().partition("/")
    try:
        port = int(port_str)
    except ValueError:
        msg = f"Invalid port: {spec!r}"
        raise ValueError(msg) from None
    try:
        protocol = Protocol(protocol_str.lower()) if protocol_str else Protocol.TCP
    except ValueError:
        msg = f"Invalid protocol {protocol_str!r} in {spec!r}, expected one of tcp, udp, sctp"
        raise ValueError(msg) from None
    return _check_port(port), protocol


class ExposedPort(BaseModel):
    """A container port declared to the runtime without a host mapping."""

    model_config = ConfigDict(frozen=True)

    port: int
    protocol: Protocol = Protocol.TCP

    @field_validator("port")
    @classmethod
    def validate_port(cls, value: int) -> int:
        return _check_port(value)

    @classmethod
    def parse(cls, spec: int | str) -> Self:
        port, protocol = parse_port(spec)
        return cls(port=port, protocol=protocol)

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol}"


class PortBinding(BaseModel):
    """Publishes a container port on the host.

    ``host_port=None`` asks for a randomly assigned host port, which is
    resolved once when the container is started.
    """

    model_config = ConfigDict(frozen=True)

    container_port: int
    protocol: Protocol = Protocol.TCP
    host_port: int | None = None
    host_ip: str | None = None

    @field_validator("container_port")
    @classmethod
    def validate_container_port(cls, value: int) -> int:
        return _check_port(value)

    @field_validator("host_port")
    @classmethod
    def validate_host_port(cls, value: int | None) -> int | None:
        if value is None:
            return value
        return _check_port(value)

    @property
    def key(self) -> str:
        """The runtime's key for the container side, e.g. ``"80/tcp"``."""
        return f"{self.container_port}/{self.protocol}"

    @property
    def is_random(self) -> bool:
        return self.host_port is None


class Mount(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: MountKind
    source: str | None = None
    """Absolute host path for bind mounts, volume name for volume mounts, unset for tmpfs."""
    destination: str
    access_mode: AccessMode = AccessMode.READ_WRITE

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, value: str) -> str:
        if not value or not PurePosixPath(value).is_absolute():
            msg = f"Mount destination must be an absolute path, got {value!r}"
            raise ValueError(msg)
        return str(PurePosixPath(value))

    @model_validator(mode="after")
    def validate_source(self) -> Self:
        if self.kind is MountKind.TMPFS:
            if self.source is not None:
                msg = "tmpfs mounts do not take a source"
                raise ValueError(msg)
        elif not self.source:
            msg = f"{self.kind} mounts require a source"
            raise ValueError(msg)
        elif self.kind is MountKind.BIND and not (
            PurePosixPath(self.source).is_absolute() or _is_windows_absolute(self.source)
        ):
            msg = f"Bind mount source must be an absolute path, got {self.source!r}"
            raise ValueError(msg)
        return self

    @property
    def read_only(self) -> bool:
        return self.access_mode is AccessMode.READ_ONLY


def _is_windows_absolute(path: str) -> bool:
    return len(path) > 2 and path[1] == ":" and path[2] in "\\/"


class NetworkAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    network: str = Field(min_length=1)
    """Network id or name."""
    aliases: tuple[str, ...] = ()

    @field_validator("aliases")
    @classmethod
    def validate_aliases(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        seen: set[str] = set()
        for alias in value:
            if not alias:
                msg = "Network aliases must not be empty"
                raise ValueError(msg)
            if alias in seen:
                msg = f"Duplicate network alias {alias!r}"
                raise ValueError(msg)
            seen.add(alias)
        return value


class ContainerSpec(BaseModel):
    """Fully resolved container configuration.

    Produced by :meth:`ephemera.builder.ContainerBuilder.build` and consumed
    by :class:`ephemera.deployment.container.ContainerDeployment`. Instances
    are frozen; sequences are tuples and mappings are read-only views.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, validate_default=True)

    image: str = Field(min_length=1)
    name: str | None = None
    hostname: str | None = None
    working_directory: str | None = None
    entrypoint: tuple[str, ...] = ()
    """Empty means the image default."""
    command: tuple[str, ...] = ()
    """Empty means the image default."""
    environment: Mapping[str, str] = Field(default_factory=dict)
    labels: Mapping[str, str] = Field(default_factory=dict)
    exposed_ports: frozenset[ExposedPort] = frozenset()
    port_bindings: tuple[PortBinding, ...] = ()
    mounts: tuple[Mount, ...] = ()
    networks: tuple[NetworkAttachment, ...] = ()
    auto_remove: bool = False
    privileged: bool = False
    pull_policy: Callable[[dict[str, Any] | None], bool] = PullPolicy.MISSING
    output_consumer: InstanceOf[OutputConsumer] | None = None
    wait_strategies: tuple[InstanceOf[WaitStrategy], ...] = ()
    """Readiness checks run in order after start. Empty means ready immediately."""
    create_parameters_modifiers: tuple[Callable[[dict[str, Any]], Any], ...] = ()
    startup_callback: Callable[..., Any] | None = None

    @field_validator("environment", "labels", mode="after")
    @classmethod
    def freeze_mapping(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(value))

    @model_validator(mode="after")
    def validate_unique_keys(self) -> Self:
        destinations = [mount.destination for mount in self.mounts]
        duplicates = {d for d in destinations if destinations.count(d) > 1}
        if duplicates:
            msg = f"Mount destinations must be unique, duplicated: {', '.join(sorted(duplicates))}"
            raise ValueError(msg)
        fixed = [(b.host_port, b.protocol) for b in self.port_bindings if b.host_port is not None]
        if len(fixed) != len(set(fixed)):
            msg = "Fixed host ports must be unique"
            raise ValueError(msg)
        networks = [attachment.network for attachment in self.networks]
        if len(networks) != len(set(networks)):
            msg = "A network can only be attached once"
            raise ValueError(msg)
        return self

    def get_network(self, network: str) -> NetworkAttachment | None:
        return next((n for n in self.networks if n.network == network), None)
