"""Host port reservation.

Random host ports are allocated by the host network stack, never guessed.
All allocations go through a process-wide :class:`PortArena`, so two
containers starting concurrently in this process never receive the same
host port.
"""

import contextlib
import errno
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field

from ephemera.exceptions import PortConflictError
from ephemera.models import PortBinding, Protocol
from ephemera.utils.free_port import open_port_socket
from ephemera.utils.log import get_logger

__all__ = ["PortArena", "PortReservation", "get_port_arena", "is_local_host"]

logger = get_logger("ephemera-ports")

_MAX_ALLOCATION_ATTEMPTS = 64

_ADDRESS_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


def is_local_host(host: str) -> bool:
    """Whether ports published by a runtime on ``host`` are bound on this machine."""
    return host.lower() in _LOCAL_HOSTS


@dataclass
class PortReservation:
    """Host ports claimed for one container."""

    bindings: tuple[PortBinding, ...]
    """The requested bindings. Host ports are filled in unless the runtime is remote."""
    keys: frozenset[tuple[int, Protocol]] = field(default_factory=frozenset)
    released: bool = False


class PortArena:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: set[tuple[int, Protocol]] = set()

    def reserve(self, bindings: Sequence[PortBinding], *, local: bool = True) -> PortReservation:
        """Resolve every binding to a concrete host port.

        Either all bindings are reserved or none is. With ``local=False`` the
        runtime publishes ports on another machine: the host network stack of
        this process says nothing about them, so random bindings are left for
        the runtime to assign and fixed ports are only checked against other
        reservations.

        Raises:
            PortConflictError: If a fixed host port is claimed by another
                reservation or cannot be bound on the host.
        """
        resolved: list[PortBinding] = []
        keys: set[tuple[int, Protocol]] = set()
        with self._lock:
            # Sockets for random ports stay open until the batch is complete,
            # otherwise the OS may hand out the same port twice.
            with contextlib.ExitStack() as stack:
                for binding in bindings:
                    if binding.host_port is None:
                        if not local:
                            resolved.append(binding)
                            continue
                        port = self._allocate(stack, binding.protocol, keys)
                    else:
                        port = self._check_fixed(binding, keys, check_host=local)
                    keys.add((port, binding.protocol))
                    resolved.append(binding.model_copy(update={"host_port": port}))
            self._claimed.update(keys)
        if resolved:
            summary = ", ".join(f"{b.host_port or 'auto'}->{b.key}" for b in resolved)
            logger.debug(f"Reserved host ports {summary}")
        return PortReservation(bindings=tuple(resolved), keys=frozenset(keys))

    def release(self, reservation: PortReservation) -> None:
        if reservation.released:
            return
        with self._lock:
            self._claimed.difference_update(reservation.keys)
        reservation.released = True

    def is_claimed(self, port: int, protocol: Protocol = Protocol.TCP) -> bool:
        with self._lock:
            return (port, protocol) in self._claimed

    def _allocate(
        self, stack: contextlib.ExitStack, protocol: Protocol, pending: set[tuple[int, Protocol]]
    ) -> int:
        for _ in range(_MAX_ALLOCATION_ATTEMPTS):
            sock = stack.enter_context(open_port_socket(0, protocol))
            port = sock.getsockname()[1]
            key = (port, protocol)
            if key not in self._claimed and key not in pending:
                return port
        msg = f"Could not allocate a free {protocol} host port after {_MAX_ALLOCATION_ATTEMPTS} attempts"
        raise PortConflictError(msg)

    def _check_fixed(self, binding: PortBinding, pending: set[tuple[int, Protocol]], *, check_host: bool) -> int:
        assert binding.host_port is not None
        key = (binding.host_port, binding.protocol)
        if key in self._claimed or key in pending:
            msg = f"Host port {binding.host_port}/{binding.protocol} is already bound by another container"
            raise PortConflictError(msg, port=binding.host_port)
        if not check_host:
            return binding.host_port
        try:
            open_port_socket(binding.host_port, binding.protocol).close()
        except OSError as e:
            if e.errno not in _ADDRESS_IN_USE:
                # e.g. EACCES for privileged ports, the runtime binds them itself
                logger.debug(f"Could not check host port {binding.host_port}/{binding.protocol}: {e}")
                return binding.host_port
            msg = f"Host port {binding.host_port}/{binding.protocol} is not available: {e}"
            raise PortConflictError(msg, port=binding.host_port) from e
        return binding.host_port


_default_arena = PortArena()


def get_port_arena() -> PortArena:
    """Get the process-wide port arena."""
    return _default_arena
