"""Image pull policies.

A pull policy decides whether an image is fetched before a container is
created. It receives the metadata of the locally cached image, or ``None``
when no matching image is cached, and returns ``True`` to pull.
"""

from collections.abc import Callable
from typing import Any

__all__ = ["PullPolicy", "PullPolicyFunction"]

PullPolicyFunction = Callable[[dict[str, Any] | None], bool]


def _never(cached_image: dict[str, Any] | None) -> bool:
    return False


def _missing(cached_image: dict[str, Any] | None) -> bool:
    return cached_image is None


def _always(cached_image: dict[str, Any] | None) -> bool:
    return True


class PullPolicy:
    """Pre-configured pull policies.

    Any callable with the same signature can be used as a custom policy.
    """

    NEVER: PullPolicyFunction = staticmethod(_never)
    """Never pull; images are managed out of band."""

    MISSING: PullPolicyFunction = staticmethod(_missing)
    """Pull only when no cached image matches."""

    ALWAYS: PullPolicyFunction = staticmethod(_always)
    """Always pull, refreshing the cached image."""

    @classmethod
    def from_name(cls, name: str) -> PullPolicyFunction:
        """Look up a policy by name (``never``, ``missing`` or ``always``)."""
        policies = {"never": cls.NEVER, "missing": cls.MISSING, "always": cls.ALWAYS}
        try:
            return policies[name.lower()]
        except KeyError:
            msg = f"Unknown pull policy {name!r}, expected one of never, missing, always"
            raise ValueError(msg) from None
