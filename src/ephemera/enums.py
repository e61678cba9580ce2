from enum import Enum

__all__ = ["AccessMode", "MountKind", "Protocol"]


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"
    SCTP = "sctp"

    def __str__(self) -> str:
        return self.value


class AccessMode(str, Enum):
    READ_WRITE = "rw"
    READ_ONLY = "ro"

    def __str__(self) -> str:
        return self.value


class MountKind(str, Enum):
    BIND = "bind"
    VOLUME = "volume"
    TMPFS = "tmpfs"

    def __str__(self) -> str:
        return self.value
