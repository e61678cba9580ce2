from typing import Any


class EphemeraError(Exception):
    """Base class for all errors raised by ephemera.

    Errors raised while starting a container may carry a ``teardown_error``
    describing what could not be cleaned up afterwards.
    """

    teardown_error: "TeardownError | None" = None


class ConfigurationError(EphemeraError, ValueError):
    """An option passed to the builder is invalid or conflicts with another one."""


class ContainerRuntimeError(EphemeraError, RuntimeError):
    """The container runtime rejected or failed an operation."""


class ImageResolutionError(ContainerRuntimeError):
    """The image could not be found locally or pulled from its registry."""


class PortConflictError(ContainerRuntimeError):
    """A fixed host port is already in use."""

    def __init__(self, message: str, *, port: int | None = None):
        super().__init__(message)
        self.port = port


class MountAttachmentError(ContainerRuntimeError):
    pass


class NetworkAttachmentError(ContainerRuntimeError):
    def __init__(self, message: str, *, network: str | None = None):
        super().__init__(message)
        self.network = network


class WaitTimeoutError(EphemeraError, TimeoutError):
    """A wait strategy did not succeed within its timeout.

    Attributes:
        strategy: The strategy that timed out.
        elapsed: Seconds spent polling the strategy.
        last_failure: Description of the last failed attempt, if any.
    """

    def __init__(self, strategy: Any, elapsed: float, last_failure: str | None = None):
        self.strategy = strategy
        self.elapsed = elapsed
        self.last_failure = last_failure
        msg = f"{strategy!r} did not succeed within {elapsed:.2f}s"
        if last_failure:
            msg += f" (last failure: {last_failure})"
        super().__init__(msg)


class TeardownError(EphemeraError):
    """Cleanup after a failed start did not fully succeed.

    Never raised on its own; it is attached to the primary error.
    """

    def __init__(self, errors: list[BaseException], leaked_resources: list[str]):
        self.errors = errors
        self.leaked_resources = leaked_resources
        msg = f"Teardown failed with {len(errors)} error(s)"
        if leaked_resources:
            msg += f"; leaked resources: {', '.join(leaked_resources)}"
        super().__init__(msg)


class ContainerStateError(EphemeraError, RuntimeError):
    """A lifecycle operation was called in a state that does not allow it."""


class ContainerNotStartedError(ContainerStateError):
    def __init__(self, message="Container not started"):
        super().__init__(message)
