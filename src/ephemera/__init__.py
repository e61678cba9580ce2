from importlib.metadata import PackageNotFoundError, version

PACKAGE_NAME = "ephemera"

try:
    __version__ = version(PACKAGE_NAME)
except PackageNotFoundError:  # pragma: no cover - running from a source checkout
    __version__ = "0.0.0"

from ephemera.builder import ContainerBuilder
from ephemera.config import EphemeraSettings
from ephemera.deployment.container import ContainerDeployment, ContainerState, RunningContainer
from ephemera.exceptions import (
    ConfigurationError,
    ContainerRuntimeError,
    EphemeraError,
    ImageResolutionError,
    MountAttachmentError,
    NetworkAttachmentError,
    PortConflictError,
    TeardownError,
    WaitTimeoutError,
)
from ephemera.images import PullPolicy
from ephemera.models import AccessMode, ContainerSpec, Mount, MountKind, Protocol
from ephemera.output import BufferedOutputConsumer, LoggingOutputConsumer, OutputConsumer
from ephemera.wait import (
    UntilCommandIsCompleted,
    UntilContainerIsRunning,
    UntilHttpRequestIsSucceeded,
    UntilMessageIsLogged,
    UntilPortIsAvailable,
    WaitStrategy,
)

__all__ = [
    "PACKAGE_NAME",
    "AccessMode",
    "BufferedOutputConsumer",
    "ConfigurationError",
    "ContainerBuilder",
    "ContainerDeployment",
    "ContainerRuntimeError",
    "ContainerSpec",
    "ContainerState",
    "EphemeraError",
    "EphemeraSettings",
    "ImageResolutionError",
    "LoggingOutputConsumer",
    "Mount",
    "MountAttachmentError",
    "MountKind",
    "NetworkAttachmentError",
    "OutputConsumer",
    "PortConflictError",
    "Protocol",
    "PullPolicy",
    "RunningContainer",
    "TeardownError",
    "UntilCommandIsCompleted",
    "UntilContainerIsRunning",
    "UntilHttpRequestIsSucceeded",
    "UntilMessageIsLogged",
    "UntilPortIsAvailable",
    "WaitStrategy",
    "WaitTimeoutError",
]
