import socket

from ephemera.enums import Protocol

_SOCKET_TYPES = {
    Protocol.TCP: socket.SOCK_STREAM,
    Protocol.UDP: socket.SOCK_DGRAM,
    # sctp shares the tcp check, most hosts cannot open sctp sockets without a kernel module
    Protocol.SCTP: socket.SOCK_STREAM,
}


def open_port_socket(port: int, protocol: Protocol = Protocol.TCP, host: str = "") -> socket.socket:
    """Bind a socket to ``port`` (``0`` lets the OS pick one). Raises ``OSError`` if the port is taken."""
    sock = socket.socket(socket.AF_INET, _SOCKET_TYPES[protocol])
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def find_free_port(protocol: Protocol = Protocol.TCP) -> int:
    """Find and return an available port from the ephemeral range.

    The port is not reserved; use :class:`ephemera.ports.PortArena` when the
    port must not be handed out twice within this process.
    """
    with open_port_socket(0, protocol) as sock:
        return sock.getsockname()[1]
